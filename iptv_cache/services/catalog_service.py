"""
Catalog Store

Holds the published channel snapshot, rebuilds it through the external
playlist transform and writes every successful rebuild through to the
catalog database.
"""
from __future__ import annotations

import inspect
import json
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Literal, Protocol

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from iptv_cache.database import Database
from iptv_cache.errors import PersistenceError, ValidationError
from iptv_cache.models import CatalogMetadata, ChannelRow, GenreRow
from iptv_cache.schemas import CatalogConfig, ChannelRecord
from iptv_cache.services.fetch_coordinator import FetchCoordinator
from iptv_cache.services.fetch_types import CatalogSnapshot, TransformResult
from iptv_cache.utils.file_operations import sanitize_url_for_logging
from iptv_cache.utils.ids import normalize_id
from iptv_cache.utils.timezone import resolve_update_interval, utc_now


logger = logging.getLogger(__name__)

ROUTING_PREFIX = "tv|"

CACHE_UPDATED = "cache_updated"
CACHE_ERROR = "cache_error"

FilterKind = Literal["genre", "search"]


class PlaylistTransformer(Protocol):
    """External collaborator turning a playlist URL into channel records"""

    async def load_and_transform(self, url: str, config: CatalogConfig) -> TransformResult:
        ...


class CatalogStore:
    """Single owner of the catalog snapshot and its database."""

    def __init__(
        self,
        database: Database,
        transformer: PlaylistTransformer | None,
        *,
        config: CatalogConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database = database
        self.transformer = transformer
        self.config = config or CatalogConfig()
        self.snapshot: CatalogSnapshot | None = None
        self.last_filter: tuple[FilterKind, str] | None = None
        self._clock = clock
        self._coordinator = FetchCoordinator("Catalog rebuild")
        self._listeners: dict[str, list[Callable[..., Any]]] = defaultdict(list)

    @property
    def is_updating(self) -> bool:
        return self._coordinator.is_running()

    @property
    def channels(self) -> tuple[ChannelRecord, ...]:
        return self.snapshot.channels if self.snapshot else ()

    def add_listener(self, event: str, callback: Callable[..., Any]) -> None:
        self._listeners[event].append(callback)

    def remove_listener(self, event: str, callback: Callable[..., Any]) -> None:
        if callback in self._listeners[event]:
            self._listeners[event].remove(callback)

    async def _emit(self, event: str, payload: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error("Listener for %s failed: %s", event, exc, exc_info=True)

    async def load(self) -> None:
        """Load the last durable snapshot; must run before serving queries"""
        try:
            async with self.database.session_scope() as session:
                metadata_rows = (await session.execute(select(CatalogMetadata))).scalars().all()
                channel_rows = (await session.execute(select(ChannelRow))).scalars().all()
                genres = (await session.execute(select(GenreRow.genre))).scalars().all()
        except SQLAlchemyError as exc:
            logger.error("Failed to load catalog from database: %s", exc, exc_info=True)
            self.snapshot = None
            return

        metadata = {row.key: row.value for row in metadata_rows}

        channels: list[ChannelRecord] = []
        for row in channel_rows:
            try:
                channels.append(ChannelRecord.model_validate_json(row.data))
            except PydanticValidationError as exc:
                logger.error("Skipping unreadable channel row %s: %s", row.id, exc)

        if not channels:
            logger.info("No stored catalog found")
            self.snapshot = None
            return

        last_updated = None
        if metadata.get("lastUpdated"):
            try:
                last_updated = datetime.fromisoformat(metadata["lastUpdated"])
            except ValueError as exc:
                logger.error("Ignoring unreadable catalog lastUpdated: %s", exc)

        guide_urls: tuple[str, ...] = ()
        if metadata.get("epgUrls"):
            try:
                guide_urls = tuple(json.loads(metadata["epgUrls"]))
            except (json.JSONDecodeError, TypeError) as exc:
                logger.error("Ignoring unreadable catalog epgUrls: %s", exc)

        self.snapshot = CatalogSnapshot(
            channels=tuple(channels),
            genres=tuple(genres),
            last_updated=last_updated,
            source_url=metadata.get("m3uUrl"),
            guide_urls=guide_urls,
        )
        logger.info("Loaded %s channels and %s genres from database", len(channels), len(genres))

    async def rebuild(self, url: str, config: CatalogConfig | None = None) -> CatalogSnapshot | None:
        """
        Rebuild the snapshot from the playlist at url.

        Returns:
            The new snapshot, or None when a rebuild is already running

        Raises:
            Whatever the transform raises; the previous snapshot stays published
        """
        return await self._coordinator.execute(lambda: self._run_rebuild(url, config))

    async def _run_rebuild(self, url: str, config: CatalogConfig | None) -> CatalogSnapshot:
        logger.info("Catalog rebuild started for %s", sanitize_url_for_logging(url))
        if config is not None:
            self.config = config

        try:
            if self.transformer is None:
                raise ValidationError("No playlist transformer configured")
            result = await self.transformer.load_and_transform(url, self.config)
        except Exception as exc:
            logger.error("Catalog rebuild failed: %s", exc, exc_info=True)
            await self._emit(CACHE_ERROR, exc)
            raise

        snapshot = CatalogSnapshot(
            channels=tuple(result.channels),
            genres=tuple(result.genres),
            last_updated=self._clock(),
            source_url=url,
            guide_urls=tuple(result.guide_urls),
        )
        self.snapshot = snapshot
        logger.info("Catalog rebuilt: %s channels, %s genres", len(snapshot.channels), len(snapshot.genres))

        try:
            await self._persist(snapshot)
        except PersistenceError as exc:
            logger.error("%s; serving the in-memory catalog", exc)

        await self._emit(CACHE_UPDATED, snapshot)
        return snapshot

    async def _persist(self, snapshot: CatalogSnapshot) -> None:
        """Overwrite every stored catalog row with the snapshot in one transaction"""
        metadata = {
            "lastUpdated": snapshot.last_updated.isoformat() if snapshot.last_updated else None,
            "m3uUrl": snapshot.source_url,
            "epgUrls": json.dumps(list(snapshot.guide_urls)),
        }
        try:
            async with self.database.session_scope() as session:
                await session.execute(delete(ChannelRow))
                await session.execute(delete(GenreRow))
                await session.execute(delete(CatalogMetadata))

                seen: set[str] = set()
                for channel in snapshot.channels:
                    if channel.id in seen:
                        logger.warning("Duplicate channel id %s, keeping first occurrence", channel.id)
                        continue
                    seen.add(channel.id)
                    session.add(ChannelRow(id=channel.id, data=channel.model_dump_json()))

                session.add_all(GenreRow(genre=genre) for genre in dict.fromkeys(snapshot.genres))
                session.add_all(
                    CatalogMetadata(key=key, value=value)
                    for key, value in metadata.items()
                    if value is not None
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to save catalog: {exc}") from exc

        logger.info("Catalog saved to database")

    def is_stale(self, config: CatalogConfig | None = None) -> bool:
        if self.snapshot is None or self.snapshot.last_updated is None:
            return True

        config = config or self.config
        interval = resolve_update_interval(config.update_interval)
        stale = self._clock() - self.snapshot.last_updated >= interval
        if stale:
            logger.info("Catalog is stale, refresh needed")
        return stale

    def get_cached_data(self) -> dict:
        if self.snapshot is None:
            return {"channels": [], "genres": []}
        return {"channels": list(self.snapshot.channels), "genres": list(self.snapshot.genres)}

    def get_channel(self, channel_id: str | None) -> ChannelRecord | None:
        """Match by id, then guide id, then name; all compared normalized"""
        if not channel_id or self.snapshot is None:
            return None
        wanted = normalize_id(channel_id)

        for channel in self.snapshot.channels:
            if normalize_id(channel.id.removeprefix(ROUTING_PREFIX)) == wanted:
                return channel
        for channel in self.snapshot.channels:
            if channel.guide_id and normalize_id(channel.guide_id) == wanted:
                return channel
        for channel in self.snapshot.channels:
            if normalize_id(channel.name) == wanted:
                return channel
        return None

    def get_channels_by_genre(self, genre: str | None) -> list[ChannelRecord]:
        if not genre:
            return []
        return [channel for channel in self.channels if genre in channel.genres]

    def search_channels(self, query: str | None) -> list[ChannelRecord]:
        if not query:
            return list(self.channels)
        wanted = normalize_id(query)
        return [channel for channel in self.channels if wanted in normalize_id(channel.name)]

    def set_last_filter(self, kind: FilterKind, value: str) -> None:
        self.last_filter = (kind, value)

    def get_last_filter(self) -> tuple[FilterKind, str] | None:
        return self.last_filter

    def clear_last_filter(self) -> None:
        self.last_filter = None

    def get_filtered_channels(self) -> list[ChannelRecord]:
        """Replay the last genre/search filter over the current snapshot"""
        if self.last_filter is None:
            return list(self.channels)
        kind, value = self.last_filter
        if kind == "genre":
            return self.get_channels_by_genre(value)
        return self.search_channels(value)
