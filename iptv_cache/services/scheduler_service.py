import logging
from datetime import datetime
from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from iptv_cache.schemas import CatalogConfig
from iptv_cache.services.catalog_service import CatalogStore
from iptv_cache.services.guide_service import GuideStore


logger = logging.getLogger(__name__)

GUIDE_REFRESH_JOB = "guide_refresh"
GUIDE_CLEANUP_JOB = "guide_cleanup"
CATALOG_POLL_JOB = "catalog_poll"


class CacheScheduler:
    """Recurring guide refresh, guide cleanup and catalog staleness poll"""

    def __init__(
        self,
        catalog: CatalogStore,
        guide: GuideStore,
        config_provider: Callable[[], CatalogConfig],
        *,
        refresh_cron: str = "0 3 * * *",
        misfire_grace_sec: int = 3600,
        cleanup_interval_hours: int = 6,
        poll_interval_sec: int = 60,
    ):
        self.catalog = catalog
        self.guide = guide
        self._config_provider = config_provider
        self.refresh_cron = refresh_cron
        self.misfire_grace_sec = misfire_grace_sec
        self.cleanup_interval_hours = cleanup_interval_hours
        self.poll_interval_sec = poll_interval_sec
        self.scheduler: AsyncIOScheduler | None = None

    async def _guide_refresh_job(self) -> None:
        """Background job that re-ingests the last known guide source"""
        if not self._config_provider().epg_enabled:
            logger.info("Guide disabled, skipping scheduled guide refresh")
            return

        logger.info("Scheduled guide refresh triggered")
        try:
            result = await self.guide.refresh()
            if "error" in result:
                logger.error(f"Scheduled guide refresh failed: {result['error']}")
            elif result.get("status") == "failed":
                logger.error("Scheduled guide refresh failed for every source")
        except Exception as e:
            logger.error(f"Exception in scheduled guide refresh: {e}", exc_info=True)

    async def _guide_cleanup_job(self) -> None:
        """Background job that evicts expired programs"""
        logger.info("Scheduled guide cleanup triggered")
        try:
            removed = await self.guide.cleanup()
            if removed:
                logger.info("Scheduled cleanup removed %s programs", removed)
        except Exception as e:
            logger.error(f"Exception in scheduled guide cleanup: {e}", exc_info=True)

    async def _catalog_poll_job(self) -> None:
        """Rebuild the catalog when a snapshot exists and has gone stale"""
        snapshot = self.catalog.snapshot
        if snapshot is None or not snapshot.source_url:
            return

        config = self._config_provider()
        if not self.catalog.is_stale(config):
            return

        logger.info("Catalog stale, rebuilding from %s", snapshot.source_url)
        try:
            await self.catalog.rebuild(snapshot.source_url, config)
        except Exception as e:
            logger.error(f"Exception in scheduled catalog rebuild: {e}", exc_info=True)

    def start(self) -> None:
        """Start the scheduler with all three jobs"""
        if self.scheduler and self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.schedule_guide_refresh()
        self.schedule_guide_cleanup()
        self.schedule_catalog_poll()
        self.scheduler.start()

        next_time = self.get_next_run_time(GUIDE_REFRESH_JOB)
        logger.info(
            "Scheduler started. Next guide refresh: %s",
            next_time.isoformat() if next_time else "unknown"
        )

    def _register(self, job_id: str, func, trigger, **options) -> None:
        if self.scheduler is None:
            raise RuntimeError("Scheduler not started")
        self.cancel(job_id)
        self.scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            max_instances=1,
            coalesce=True,
            **options,
        )
        logger.info("Registered job %s (%s)", job_id, trigger)

    def schedule_guide_refresh(self, cron: str | None = None) -> None:
        if cron:
            self.refresh_cron = cron
        try:
            trigger = CronTrigger.from_crontab(self.refresh_cron, timezone="UTC")
        except (ValueError, KeyError) as exc:
            logger.error("Invalid cron expression '%s': %s", self.refresh_cron, exc)
            raise
        self._register(
            GUIDE_REFRESH_JOB,
            self._guide_refresh_job,
            trigger,
            misfire_grace_time=self.misfire_grace_sec,
        )

    def schedule_guide_cleanup(self, hours: int | None = None) -> None:
        if hours:
            self.cleanup_interval_hours = hours
        self._register(
            GUIDE_CLEANUP_JOB,
            self._guide_cleanup_job,
            IntervalTrigger(hours=self.cleanup_interval_hours),
        )

    def schedule_catalog_poll(self, seconds: int | None = None) -> None:
        if seconds:
            self.poll_interval_sec = seconds
        self._register(
            CATALOG_POLL_JOB,
            self._catalog_poll_job,
            IntervalTrigger(seconds=self.poll_interval_sec),
        )

    def cancel(self, job_id: str) -> bool:
        """Remove a job if registered; True when something was removed"""
        if self.scheduler is None or self.scheduler.get_job(job_id) is None:
            return False
        self.scheduler.remove_job(job_id)
        logger.info("Cancelled job %s", job_id)
        return True

    def shutdown(self) -> None:
        """Shutdown the scheduler"""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        self.scheduler = None

    @property
    def running(self) -> bool:
        return bool(self.scheduler and self.scheduler.running)

    def get_next_run_time(self, job_id: str = GUIDE_REFRESH_JOB) -> datetime | None:
        """Get next run time of a job"""
        if not self.scheduler:
            return None
        job = self.scheduler.get_job(job_id)
        return job.next_run_time if job else None
