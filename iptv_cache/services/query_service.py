"""
Query Service

Read façade over the catalog and guide stores. Lookups trigger a lazy
refresh when the backing data is missing or stale.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from iptv_cache.schemas import CatalogConfig, ChannelRecord
from iptv_cache.services.catalog_service import ROUTING_PREFIX, CatalogStore
from iptv_cache.services.fetch_types import CatalogSnapshot, ProgramEntry
from iptv_cache.services.guide_service import GuideStore
from iptv_cache.services.scheduler_service import GUIDE_REFRESH_JOB, CacheScheduler
from iptv_cache.utils.timezone import format_local_time

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ChannelDetails:
    channel: ChannelRecord
    icon: str | None
    current_program: ProgramEntry | None
    upcoming_programs: list[ProgramEntry]


class CacheService:
    """Entry point used by the presentation layer"""

    def __init__(
        self,
        catalog: CatalogStore,
        guide: GuideStore,
        config: CatalogConfig,
    ) -> None:
        self.catalog = catalog
        self.guide = guide
        self.config = config
        self.guide.id_suffix = config.id_suffix
        self.scheduler: CacheScheduler | None = None
        self._guide_task: asyncio.Task | None = None

    def attach_scheduler(self, scheduler: CacheScheduler) -> None:
        self.scheduler = scheduler

    async def start(self) -> None:
        """Load both stores from disk; must complete before serving queries"""
        await self.catalog.load()
        await self.guide.load()
        if self.config.epg and not self.guide.last_source:
            self.guide.last_source = self.config.epg

    async def update_config(self, new_config: CatalogConfig) -> None:
        """Apply a new user configuration, refreshing only what changed"""
        old = self.config
        playlist_changed = old.m3u != new_config.m3u
        guide_changed = old.epg_enabled != new_config.epg_enabled or old.epg != new_config.epg
        suffix_changed = old.id_suffix != new_config.id_suffix
        other_changed = (
            old.update_interval != new_config.update_interval
            or suffix_changed
            or old.remapper_path != new_config.remapper_path
        )

        self.config = new_config
        self.catalog.config = new_config
        self.guide.id_suffix = new_config.id_suffix

        if playlist_changed and new_config.m3u:
            logger.info("Playlist changed, rebuilding catalog")
            await self.rebuild_cache(new_config.m3u, new_config)

        if new_config.epg_enabled and new_config.epg:
            if guide_changed:
                logger.info("Guide source changed, reinitializing guide")
                await self.guide.initialize(new_config.epg)
            elif suffix_changed:
                # Stored rows are keyed with the previous suffix rule
                logger.info("Channel id suffix changed, re-ingesting guide")
                await self.guide.refresh(new_config.epg)

        if self.scheduler and self.scheduler.running:
            if old.epg_enabled and not new_config.epg_enabled:
                logger.info("Guide disabled, cancelling scheduled guide refresh")
                self.scheduler.cancel(GUIDE_REFRESH_JOB)
            elif new_config.epg_enabled and not old.epg_enabled:
                self.scheduler.schedule_guide_refresh()

            if other_changed:
                logger.info("Refresh settings changed, restarting catalog poll")
                self.scheduler.schedule_catalog_poll()

    async def ensure_fresh(self) -> None:
        """
        Refresh whatever is missing or stale before answering a query.

        Catalog failures are logged and the previous snapshot keeps serving;
        the guide refresh runs in the background.
        """
        snapshot = self.catalog.snapshot
        url = self.config.m3u
        if url and (
            snapshot is None
            or snapshot.source_url != url
            or self.catalog.is_stale(self.config)
        ):
            try:
                await self.catalog.rebuild(url, self.config)
            except Exception as exc:
                logger.error("On-demand catalog rebuild failed: %s", exc)

        if self.config.epg_enabled and self.config.epg and self.guide.needs_update():
            self._start_guide_refresh()

    def _start_guide_refresh(self) -> None:
        if self._guide_task and not self._guide_task.done():
            return
        if self.guide.is_updating:
            return
        self._guide_task = asyncio.create_task(self._refresh_guide_in_background())

    async def stop(self) -> None:
        """Cancel a background guide refresh still in flight"""
        if self._guide_task and not self._guide_task.done():
            self._guide_task.cancel()
            try:
                await self._guide_task
            except asyncio.CancelledError:
                logger.info("Background guide refresh cancelled")
        self._guide_task = None

    async def _refresh_guide_in_background(self) -> None:
        try:
            await self.guide.refresh(self.config.epg)
        except Exception as exc:
            logger.error("Background guide refresh failed: %s", exc, exc_info=True)

    async def rebuild_cache(self, url: str, config: CatalogConfig | None = None) -> CatalogSnapshot | None:
        """Rebuild the catalog; emits cache_updated or cache_error on the store"""
        snapshot = await self.catalog.rebuild(url, config or self.config)
        if snapshot is not None and snapshot.guide_urls and not self.config.epg:
            logger.info("Playlist declares %s guide feeds", len(snapshot.guide_urls))
            self.guide.last_source = ",".join(snapshot.guide_urls)
        return snapshot

    async def refresh_guide(self) -> dict:
        source = self.config.epg or self.guide.last_source
        return await self.guide.refresh(source)

    def get_channel(self, channel_id: str | None) -> ChannelRecord | None:
        return self.catalog.get_channel(channel_id)

    def get_channels_by_genre(self, genre: str | None) -> list[ChannelRecord]:
        self.catalog.set_last_filter("genre", genre or "")
        return self.catalog.get_channels_by_genre(genre)

    def search_channels(self, query: str | None) -> list[ChannelRecord]:
        self.catalog.set_last_filter("search", query or "")
        return self.catalog.search_channels(query)

    def get_filtered_channels(self) -> list[ChannelRecord]:
        return self.catalog.get_filtered_channels()

    async def get_current_program(self, channel_id: str | None) -> ProgramEntry | None:
        return await self.guide.get_current_program(channel_id)

    async def get_upcoming_programs(self, channel_id: str | None) -> list[ProgramEntry]:
        return await self.guide.get_upcoming_programs(channel_id)

    async def get_channel_icon(self, channel_id: str | None) -> str | None:
        return await self.guide.get_channel_icon(channel_id)

    async def describe_channel(self, channel_id: str | None) -> ChannelDetails | None:
        """Join a catalog channel with its guide data through the guide id"""
        channel = self.get_channel(channel_id)
        if channel is None:
            return None

        guide_key = channel.guide_id or channel.id.removeprefix(ROUTING_PREFIX)
        icon = channel.logo
        if not icon and channel.guide_id:
            icon = await self.guide.get_channel_icon(guide_key)

        current = None
        upcoming: list[ProgramEntry] = []
        if self.config.epg_enabled:
            current = await self.guide.get_current_program(guide_key)
            upcoming = await self.guide.get_upcoming_programs(guide_key)

        return ChannelDetails(channel=channel, icon=icon, current_program=current, upcoming_programs=upcoming)

    async def check_missing_guide(self) -> list[ChannelRecord]:
        return await self.guide.find_missing_guide(self.catalog.channels)

    async def get_status(self) -> dict:
        guide_status = await self.guide.get_status()
        snapshot = self.catalog.snapshot
        return {
            **guide_status,
            "is_updating": guide_status["is_updating"] or self.catalog.is_updating,
            "catalog_channels": len(snapshot.channels) if snapshot else 0,
            "catalog_genres": len(snapshot.genres) if snapshot else 0,
            "catalog_last_updated": (
                snapshot.last_updated.isoformat() if snapshot and snapshot.last_updated else None
            ),
        }

    def format_time(self, program: ProgramEntry) -> tuple[str, str]:
        """Start/stop rendered in the display offset"""
        return (
            format_local_time(program.start_time, self.guide.display_tz),
            format_local_time(program.stop_time, self.guide.display_tz),
        )


__all__ = ["CacheService", "ChannelDetails"]
