"""
Dependency wiring

Builds the single-owner service objects once at startup and exposes them to
FastAPI routes through request.app.state.
"""
import importlib
import logging
from dataclasses import dataclass
from datetime import timedelta

from fastapi import Request

from iptv_cache.config import CustomSettings
from iptv_cache.database import Database
from iptv_cache.errors import ValidationError
from iptv_cache.models import CatalogBase, GuideBase
from iptv_cache.schemas import CatalogConfig
from iptv_cache.services.catalog_service import CatalogStore, PlaylistTransformer
from iptv_cache.services.guide_service import GuideStore
from iptv_cache.services.query_service import CacheService
from iptv_cache.services.scheduler_service import CacheScheduler


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ServiceContainer:
    """Everything the application owns for its lifetime"""
    catalog_db: Database
    guide_db: Database
    service: CacheService
    scheduler: CacheScheduler

    async def start(self) -> None:
        await self.catalog_db.init()
        await self.guide_db.init()
        await self.service.start()
        self.scheduler.start()

    async def stop(self) -> None:
        self.scheduler.shutdown()
        await self.service.stop()
        await self.catalog_db.close()
        await self.guide_db.close()


def load_transformer(path: str | None) -> PlaylistTransformer | None:
    """
    Import a playlist transformer from a "package.module:attribute" path.

    The attribute may be an instance or a zero-argument factory.

    Raises:
        ValidationError: If the path is malformed or cannot be imported
    """
    if not path:
        logger.warning("No playlist transformer configured - catalog rebuilds will fail")
        return None

    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValidationError(f"Invalid transformer path '{path}', expected 'module:attribute'")

    try:
        target = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as exc:
        raise ValidationError(f"Cannot import playlist transformer '{path}': {exc}") from exc

    if hasattr(target, "load_and_transform"):
        return target
    return target()


def build_container(settings: CustomSettings) -> ServiceContainer:
    """Create databases, stores, façade and scheduler from settings"""
    config = CatalogConfig(
        m3u=settings.playlist_url,
        epg=settings.guide_source,
        epg_enabled=settings.epg_enabled,
        update_interval=settings.update_interval,
        id_suffix=settings.id_suffix,
    )

    catalog_db = Database(settings.catalog_database_path, CatalogBase.metadata, name="catalog database")
    guide_db = Database(settings.guide_database_path, GuideBase.metadata, name="guide database")

    catalog = CatalogStore(catalog_db, load_transformer(settings.playlist_transformer), config=config)
    guide = GuideStore(
        guide_db,
        chunk_size=settings.guide_chunk_size,
        past_retention=timedelta(hours=settings.guide_past_retention_hours),
        future_limit=timedelta(days=settings.guide_future_limit_days),
        stale_after=timedelta(hours=settings.guide_stale_after_hours),
        parse_timeout_sec=settings.guide_parse_timeout_sec,
        fetch_timeout_sec=settings.fetch_timeout_sec,
        fetch_max_retries=settings.fetch_max_retries,
        timezone_offset=settings.timezone_offset,
        id_suffix=settings.id_suffix,
    )

    service = CacheService(catalog, guide, config)
    scheduler = CacheScheduler(
        catalog,
        guide,
        lambda: service.config,
        refresh_cron=settings.guide_refresh_cron,
        misfire_grace_sec=settings.guide_refresh_misfire_grace_sec,
        cleanup_interval_hours=settings.guide_cleanup_interval_hours,
        poll_interval_sec=settings.catalog_poll_interval_sec,
    )
    service.attach_scheduler(scheduler)

    return ServiceContainer(catalog_db=catalog_db, guide_db=guide_db, service=service, scheduler=scheduler)


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_cache_service(request: Request) -> CacheService:
    """FastAPI dependency returning the application's CacheService"""
    return request.app.state.container.service
