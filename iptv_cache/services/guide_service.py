"""
Guide Store

Owns the guide database: resolves configured sources, runs the
clear-then-refill ingestion under a single-flight guard, evicts expired
programs and answers (channel, time) lookups.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Awaitable, Callable, Literal

from sqlalchemy.exc import SQLAlchemyError

from iptv_cache.database import Database
from iptv_cache.errors import ParseError, PersistenceError, TransportError
from iptv_cache.schemas import ChannelRecord
from iptv_cache.services import guide_db_service
from iptv_cache.services.fetch_coordinator import FetchCoordinator
from iptv_cache.services.fetch_types import ProgramEntry
from iptv_cache.services.xmltv_parser_service import parse_xmltv_payload
from iptv_cache.utils.file_operations import (
    cleanup_temp_file,
    download_file,
    fetch_text,
    read_payload,
    sanitize_url_for_logging,
)
from iptv_cache.utils.ids import normalize_id
from iptv_cache.utils.timezone import format_local_time, resolve_timezone_offset, utc_now


logger = logging.getLogger(__name__)

Downloader = Callable[[str, str], Awaitable[Path]]
TextFetcher = Callable[[str], Awaitable[str]]

LAST_UPDATE_KEY = "lastUpdate"
SOURCE_KEY = "source"


@dataclass(slots=True)
class SourceSummary:
    index: int
    sanitized_url: str
    status: Literal["success", "failed"]
    icons_stored: int = 0
    programs_parsed: int = 0
    programs_inserted: int = 0
    skipped_old: int = 0
    skipped_future: int = 0
    skipped_invalid: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        payload = {
            "source_index": self.index,
            "sanitized_url": self.sanitized_url,
            "status": self.status,
            "icons_stored": self.icons_stored,
            "programs_parsed": self.programs_parsed,
            "programs_inserted": self.programs_inserted,
            "skipped_old": self.skipped_old,
            "skipped_future": self.skipped_future,
            "skipped_invalid": self.skipped_invalid,
        }
        if self.error:
            payload["error"] = self.error
        return payload


class GuideStore:
    """Time-indexed program store keyed by normalized channel id."""

    def __init__(
        self,
        database: Database,
        *,
        chunk_size: int = 5000,
        past_retention: timedelta = timedelta(hours=1),
        future_limit: timedelta = timedelta(days=7),
        stale_after: timedelta = timedelta(hours=24),
        parse_timeout_sec: int = 600,
        fetch_timeout_sec: float = 100.0,
        fetch_max_retries: int = 3,
        timezone_offset: str | None = None,
        id_suffix: str | None = None,
        downloader: Downloader | None = None,
        text_fetcher: TextFetcher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database = database
        self.chunk_size = chunk_size
        self.past_retention = past_retention
        self.future_limit = future_limit
        self.stale_after = stale_after
        self.parse_timeout_sec = parse_timeout_sec
        self.id_suffix = id_suffix
        self.timezone_label, self.display_tz = resolve_timezone_offset(timezone_offset)
        self._clock = clock
        self._downloader = downloader or (
            lambda url, filename: download_file(
                url, filename, timeout=fetch_timeout_sec, max_retries=fetch_max_retries
            )
        )
        self._text_fetcher = text_fetcher or (
            lambda url: fetch_text(url, timeout=fetch_timeout_sec, max_retries=fetch_max_retries)
        )
        self._coordinator = FetchCoordinator("Guide refresh")
        self.last_update: datetime | None = None
        self.last_source: str | None = None

    @property
    def is_updating(self) -> bool:
        return self._coordinator.is_running()

    async def load(self) -> None:
        """Restore freshness metadata persisted by the previous process"""
        try:
            async with self.database.session_scope() as session:
                last_update = await guide_db_service.get_metadata(session, LAST_UPDATE_KEY)
                source = await guide_db_service.get_metadata(session, SOURCE_KEY)
        except SQLAlchemyError as exc:
            logger.error("Failed to load guide metadata: %s", exc, exc_info=True)
            return

        if last_update:
            try:
                self.last_update = datetime.fromisoformat(last_update)
            except ValueError as exc:
                logger.error("Ignoring unreadable guide last update %r: %s", last_update, exc)
        self.last_source = source or self.last_source
        logger.info(
            "Guide metadata loaded (last update: %s)",
            self.last_update.isoformat() if self.last_update else "never",
        )

    async def resolve_sources(self, source: str | Sequence[str]) -> list[str]:
        """
        Expand a configured source into the list of feeds to ingest.

        Accepts a list, a comma-separated string, a direct XMLTV URL, or a URL
        whose body lists further URLs one per line.
        """
        if not isinstance(source, str):
            return [url.strip() for url in source if url and url.strip()]

        if "," in source:
            return [url.strip() for url in source.split(",") if url.strip()]

        url = source.strip()
        if url.endswith(".gz"):
            logger.info("Compressed guide feed detected: %s", sanitize_url_for_logging(url))
            return [url]

        try:
            content = await self._text_fetcher(url)
        except TransportError as exc:
            logger.error("Failed to probe guide source %s: %s", sanitize_url_for_logging(url), exc)
            return [url]

        if "<?xml" in content or "<tv" in content:
            logger.info("Guide source is a direct XMLTV feed")
            return [url]

        urls = [line.strip() for line in content.splitlines() if line.strip().startswith("http")]
        if urls:
            logger.info("Guide source lists %s feeds", len(urls))
            return urls

        logger.warning("No feed URLs found in guide source, using it directly")
        return [url]

    async def initialize(self, source: str | Sequence[str]) -> dict | None:
        """Refresh unless the same source is already loaded and available"""
        if self.last_source == _source_key(source) and await self.is_available():
            logger.info("Guide already initialized for this source, skipping")
            return None
        return await self.refresh(source)

    async def refresh(self, source: str | Sequence[str] | None = None) -> dict:
        """
        Replace the whole guide with freshly fetched data.

        Returns:
            Summary dictionary, or a "skipped" status if a refresh is running
        """
        return await self._coordinator.execute(
            lambda: self._run_refresh(source),
            skipped={"status": "skipped", "message": "Guide refresh already in progress"},
        )

    async def _run_refresh(self, source: str | Sequence[str] | None) -> dict:
        source = source if source is not None else self.last_source
        if not source:
            logger.warning("No guide source configured - refresh aborted")
            return {"status": "error", "error": "No guide source configured"}

        started_at = self._clock()
        logger.info("Guide refresh started at %s", started_at.isoformat())
        self.last_source = _source_key(source)
        summaries: list[SourceSummary] = []

        try:
            urls = await self.resolve_sources(source)
            logger.info("Guide feeds to process: %s", len(urls))

            async with self.database.session_scope() as session:
                await guide_db_service.clear_guide(session)

            for index, url in enumerate(urls, start=1):
                summaries.append(await self._process_source(index, len(urls), url))

            await self._persist_final()
            removed = await self.cleanup()
        finally:
            self.last_update = self._clock()
            await self._save_metadata()

        duration = (self._clock() - started_at).total_seconds()
        succeeded = sum(1 for s in summaries if s.status == "success")
        failed = len(summaries) - succeeded
        if failed and not succeeded:
            status = "failed"
        elif failed:
            status = "partial"
        else:
            status = "success"
        logger.info("Guide refresh finished (%s) in %.1f seconds", status, duration)

        return {
            "status": status,
            "timestamp": self.last_update.isoformat(),
            "sources_processed": len(summaries),
            "sources_succeeded": succeeded,
            "sources_failed": failed,
            "programs_inserted": sum(s.programs_inserted for s in summaries),
            "programs_expired": removed,
            "source_details": [s.to_dict() for s in summaries],
        }

    async def _process_source(self, index: int, total: int, url: str) -> SourceSummary:
        sanitized_url = sanitize_url_for_logging(url)
        logger.info("[Source %s/%s] Processing %s", index, total, sanitized_url)

        now = self._clock()
        window_start = now - self.past_retention
        window_end = now + self.future_limit
        temp_file: Path | None = None

        try:
            temp_file = await self._downloader(url, f"guide_source_{index}.xml")
            icons, programs, stats = await self._parse(temp_file, window_start, window_end)

            async with self.database.session_scope() as session:
                icons_stored = await guide_db_service.store_icons(session, icons)
                inserted = await guide_db_service.store_programs(session, programs, self.chunk_size)
        except (TransportError, ParseError) as exc:
            logger.error("[Source %s] Failed to process %s: %s", index, sanitized_url, exc)
            return SourceSummary(index=index, sanitized_url=sanitized_url, status="failed", error=str(exc))
        except SQLAlchemyError as exc:
            logger.error("[Source %s] Failed to store data: %s", index, exc, exc_info=True)
            return SourceSummary(index=index, sanitized_url=sanitized_url, status="failed", error=str(exc))
        finally:
            if temp_file:
                cleanup_temp_file(temp_file)

        logger.info(
            "[Source %s] Stored %s programs and %s icons (skipped: %s old, %s beyond window, %s invalid)",
            index,
            inserted,
            icons_stored,
            stats.skipped_old,
            stats.skipped_future,
            stats.skipped_invalid,
        )
        return SourceSummary(
            index=index,
            sanitized_url=sanitized_url,
            status="success",
            icons_stored=icons_stored,
            programs_parsed=stats.programs_seen,
            programs_inserted=inserted,
            skipped_old=stats.skipped_old,
            skipped_future=stats.skipped_future,
            skipped_invalid=stats.skipped_invalid,
        )

    async def _parse(self, file_path: Path, window_start: datetime, window_end: datetime):
        """Decompress and parse in a worker thread so the event loop stays responsive"""

        def _work():
            return parse_xmltv_payload(read_payload(file_path), window_start, window_end, self.id_suffix)

        timeout = self.parse_timeout_sec if self.parse_timeout_sec > 0 else None
        try:
            return await asyncio.wait_for(asyncio.to_thread(_work), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ParseError(f"XML parsing timed out after {timeout}s") from exc
        except OSError as exc:
            raise ParseError(f"Cannot read downloaded guide file: {exc}") from exc

    async def _persist_final(self) -> None:
        try:
            await self.database.checkpoint()
        except SQLAlchemyError as exc:
            logger.error("Failed to checkpoint guide database: %s", exc, exc_info=True)

    async def _save_metadata(self) -> None:
        try:
            async with self.database.session_scope() as session:
                await guide_db_service.set_metadata(session, LAST_UPDATE_KEY, self.last_update.isoformat())
                if self.last_source:
                    await guide_db_service.set_metadata(session, SOURCE_KEY, self.last_source)
        except SQLAlchemyError as exc:
            logger.error("Failed to persist guide metadata: %s", exc, exc_info=True)

    async def cleanup(self) -> int:
        """Delete programs that ended more than the retention period ago"""
        cutoff = self._clock() - self.past_retention
        try:
            async with self.database.session_scope() as session:
                removed = await guide_db_service.delete_expired_programs(session, cutoff)
                remaining = len(await guide_db_service.get_guide_channel_ids(session))
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Guide cleanup failed: {exc}") from exc

        logger.info("Guide cleanup removed %s programs, %s channels still have data", removed, remaining)
        return removed

    def channel_key(self, channel_id: str | None) -> str:
        """Storage key for a channel id; ingestion and lookups share this rule"""
        return normalize_id(channel_id, self.id_suffix, remove_suffix=True)

    async def get_current_program(self, channel_id: str | None) -> ProgramEntry | None:
        normalized = self.channel_key(channel_id)
        if not normalized:
            return None
        return await self._read(
            lambda session: guide_db_service.get_current_program(session, normalized, self._clock()),
            default=None,
        )

    async def get_upcoming_programs(self, channel_id: str | None, limit: int = 2) -> list[ProgramEntry]:
        normalized = self.channel_key(channel_id)
        if not normalized:
            return []
        return await self._read(
            lambda session: guide_db_service.get_upcoming_programs(session, normalized, self._clock(), limit),
            default=[],
        )

    async def get_channel_icon(self, channel_id: str | None) -> str | None:
        normalized = self.channel_key(channel_id)
        if not normalized:
            return None
        return await self._read(
            lambda session: guide_db_service.get_channel_icon(session, normalized),
            default=None,
        )

    async def is_available(self) -> bool:
        """Rows exist and no refresh is running"""
        if self.is_updating:
            return False
        return await self._read(guide_db_service.has_programs, default=False)

    def needs_update(self) -> bool:
        if self.last_update is None:
            return True
        return self._clock() - self.last_update >= self.stale_after

    async def get_status(self) -> dict:
        counts = await self._read(
            guide_db_service.get_guide_counts,
            default={"channels_count": 0, "icons_count": 0, "programs_count": 0},
        )
        return {
            "is_updating": self.is_updating,
            "last_update": format_local_time(self.last_update, self.display_tz) if self.last_update else "Never",
            **counts,
            "timezone": self.timezone_label,
            "storage_type": "SQLite (Disk)",
        }

    async def find_missing_guide(self, channels: Sequence[ChannelRecord]) -> list[ChannelRecord]:
        """Channels whose guide id has no program rows"""
        guide_ids = await self._read(guide_db_service.get_guide_channel_ids, default=set())
        missing = [
            channel for channel in channels
            if channel.guide_id and self.channel_key(channel.guide_id) not in guide_ids
        ]
        if missing:
            logger.info("Channels without guide data: %s", ", ".join(ch.guide_id for ch in missing))
        return missing

    async def _read(self, query, *, default):
        """Run a read query; storage failures degrade to the empty result"""
        if not self.database.is_initialized:
            return default
        try:
            async with self.database.session_scope() as session:
                return await query(session)
        except SQLAlchemyError as exc:
            logger.error("Guide query failed: %s", exc, exc_info=True)
            return default


def _source_key(source: str | Sequence[str]) -> str:
    return source if isinstance(source, str) else ",".join(source)
