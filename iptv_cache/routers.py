from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, Query
import logging

from iptv_cache.dependencies import ServiceContainer, get_cache_service, get_container
from iptv_cache.errors import CacheServiceError, TransportError, ParseError
from iptv_cache.schemas import (
    ChannelDetailsResponse,
    ChannelListResponse,
    ProgramResponse,
    RebuildRequest,
    StatusResponse,
)
from iptv_cache.services.fetch_types import ProgramEntry
from iptv_cache.services.query_service import CacheService


logger = logging.getLogger(__name__)

main_router = APIRouter()

CacheServiceDep = Annotated[CacheService, Depends(get_cache_service)]


def _program_response(service: CacheService, program: ProgramEntry) -> ProgramResponse:
    start, stop = service.format_time(program)
    return ProgramResponse(
        title=program.title,
        description=program.description,
        category=program.category,
        start_time=program.start_time.isoformat(),
        stop_time=program.stop_time.isoformat(),
        start=start,
        stop=stop,
    )


@main_router.get("/")
async def root(container: Annotated[ServiceContainer, Depends(get_container)]) -> dict:
    """Root endpoint with service information"""
    next_run = container.scheduler.get_next_run_time()

    return {
        "service": "IPTV Cache Service",
        "version": "0.1.0",
        "next_guide_refresh": next_run.isoformat() if next_run else None,
        "endpoints": {
            "status": "/status - Cache status",
            "channels": "/channels - List channels (query params: genre, search)",
            "channel": "/channels/{channel_id} - Channel with current and upcoming programs",
            "rebuild": "/catalog/rebuild - Rebuild the channel catalog (POST)",
            "refresh": "/guide/refresh - Refresh the program guide (POST)",
            "health": "/health - Health check"
        }
    }


@main_router.get("/health")
async def health_check(container: Annotated[ServiceContainer, Depends(get_container)]) -> dict:
    """Health check endpoint"""
    next_run = container.scheduler.get_next_run_time()
    return {
        "status": "ok",
        "scheduler_running": container.scheduler.running,
        "next_guide_refresh": next_run.isoformat() if next_run else None
    }


@main_router.get("/status", response_model=StatusResponse)
async def get_status(service: CacheServiceDep) -> StatusResponse:
    return StatusResponse(**await service.get_status())


@main_router.get("/channels", response_model=ChannelListResponse)
async def list_channels(
    service: CacheServiceDep,
    genre: Annotated[str | None, Query()] = None,
    search: Annotated[str | None, Query()] = None,
) -> ChannelListResponse:
    """
    List channels, filtered by genre or name search

    Without parameters the last applied filter is replayed.
    """
    await service.ensure_fresh()

    if genre:
        channels = service.get_channels_by_genre(genre)
    elif search is not None:
        channels = service.search_channels(search)
    else:
        channels = service.get_filtered_channels()

    return ChannelListResponse(count=len(channels), channels=channels)


@main_router.get("/channels/{channel_id}", response_model=ChannelDetailsResponse)
async def get_channel(channel_id: str, service: CacheServiceDep) -> ChannelDetailsResponse:
    """Channel joined with its guide data"""
    await service.ensure_fresh()

    details = await service.describe_channel(channel_id.split("|")[-1])
    if details is None:
        raise HTTPException(status_code=404, detail=f"Channel not found: {channel_id}")

    return ChannelDetailsResponse(
        channel=details.channel,
        icon=details.icon,
        current_program=_program_response(service, details.current_program) if details.current_program else None,
        upcoming_programs=[_program_response(service, p) for p in details.upcoming_programs],
    )


@main_router.post("/catalog/rebuild")
async def rebuild_catalog(request: RebuildRequest, service: CacheServiceDep) -> dict:
    """Manually rebuild the channel catalog"""
    url = request.url or service.config.m3u
    if not url:
        raise HTTPException(status_code=400, detail="No playlist URL configured")

    logger.info("Manual catalog rebuild triggered via API")
    try:
        snapshot = await service.rebuild_cache(url, request.config)
    except (TransportError, ParseError) as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    except CacheServiceError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    except Exception as exc:
        logger.error(f"Playlist transform failed: {exc}", exc_info=True)
        raise HTTPException(status_code=502, detail=f"Playlist transform failed: {exc}")

    if snapshot is None:
        return {"status": "skipped", "message": "Catalog rebuild already in progress"}

    return {
        "status": "success",
        "channels": len(snapshot.channels),
        "genres": len(snapshot.genres),
        "last_updated": snapshot.last_updated.isoformat() if snapshot.last_updated else None,
    }


@main_router.post("/guide/refresh")
async def refresh_guide(service: CacheServiceDep) -> dict:
    """
    Manually trigger a guide refresh

    This will download, parse and store guide data from every configured feed
    """
    logger.info("Manual guide refresh triggered via API")
    result = await service.refresh_guide()

    if "error" in result:
        raise HTTPException(status_code=500, detail=result["error"])

    return result
