"""
Database operations for guide data

This module contains all CRUD operations for programs and channel icons.
"""
import logging
from collections.abc import Sequence
from datetime import datetime
from time import perf_counter

from sqlalchemy import delete, func, insert, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from iptv_cache.models import ChannelIcon, GuideMetadata, Program
from iptv_cache.services.fetch_types import IconPayload, ProgramEntry, ProgramPayload


logger = logging.getLogger(__name__)


async def clear_guide(db: AsyncSession) -> None:
    """Remove every program and icon row ahead of a full refresh."""
    await db.execute(delete(Program))
    await db.execute(delete(ChannelIcon))
    logger.info("Cleared programs and channel icons")


async def delete_expired_programs(db: AsyncSession, cutoff_time: datetime) -> int:
    """
    Delete programs that ended before the cutoff.

    Args:
        db: Database session
        cutoff_time: Delete programs with stop_time before this

    Returns:
        Number of deleted programs
    """
    result = await db.execute(
        select(func.count(Program.id)).where(Program.stop_time < cutoff_time)
    )
    deleted_count = result.scalar_one_or_none() or 0

    await db.execute(delete(Program).where(Program.stop_time < cutoff_time))

    logger.info("Deleted %s expired programs (stop_time < %s)", deleted_count, cutoff_time.isoformat())
    return deleted_count


async def store_icons(db: AsyncSession, icons: Sequence[IconPayload]) -> int:
    """
    Upsert channel icons, the last write for a channel id wins.

    Returns:
        Number of icons written
    """
    deduped: dict[str, IconPayload] = {icon.channel_id: icon for icon in icons}
    if not deduped:
        logger.debug("No icons to store")
        return 0

    stmt = sqlite_insert(ChannelIcon)
    stmt = stmt.on_conflict_do_update(
        index_elements=[ChannelIcon.channel_id],
        set_={"icon_url": stmt.excluded.icon_url},
    )

    payload = [
        {"channel_id": icon.channel_id, "icon_url": icon.icon_url}
        for icon in deduped.values()
    ]

    chunk_size = 1000
    for start_index in range(0, len(payload), chunk_size):
        await db.execute(stmt, payload[start_index:start_index + chunk_size])

    logger.debug("Icon upsert complete: %s rows", len(payload))
    return len(payload)


async def store_programs(
    db: AsyncSession,
    programs: Sequence[ProgramPayload],
    chunk_size: int = 5000,
) -> int:
    """
    Insert programs in fixed-size batches.

    Args:
        db: Database session
        programs: Program payloads, already filtered to the retention window
        chunk_size: Rows per executemany batch

    Returns:
        Number of programs inserted
    """
    total_programs = len(programs)
    if not total_programs:
        logger.debug("No programs to store")
        return 0

    logger.info("Storing %s programs in chunks of %s", total_programs, chunk_size)

    stmt = insert(Program)
    inserted_count = 0
    chunk_number = 0

    for start_index in range(0, total_programs, chunk_size):
        chunk_number += 1
        loop_start = perf_counter()

        payload = [
            {
                "channel_id": program.channel_id,
                "start_time": program.start_time,
                "stop_time": program.stop_time,
                "title": program.title,
                "description": program.description,
                "category": program.category,
            }
            for program in programs[start_index:start_index + chunk_size]
        ]

        await db.execute(stmt, payload)
        inserted_count += len(payload)

        logger.debug(
            "Chunk %s persisted: %s rows in %.2fs",
            chunk_number,
            len(payload),
            perf_counter() - loop_start,
        )

        if inserted_count % 50000 < len(payload):
            logger.info("Progress: %s/%s programs stored", inserted_count, total_programs)

    return inserted_count


async def get_current_program(db: AsyncSession, channel_id: str, now: datetime) -> ProgramEntry | None:
    """Program whose interval contains now"""
    stmt = (
        select(Program)
        .where(
            Program.channel_id == channel_id,
            Program.start_time <= now,
            Program.stop_time >= now,
        )
        .order_by(Program.start_time)
        .limit(1)
    )
    result = await db.execute(stmt)
    row = result.scalars().first()
    return _to_entry(row) if row else None


async def get_upcoming_programs(
    db: AsyncSession,
    channel_id: str,
    now: datetime,
    limit: int = 2,
) -> list[ProgramEntry]:
    """Next programs starting at or after now, ascending"""
    stmt = (
        select(Program)
        .where(Program.channel_id == channel_id, Program.start_time >= now)
        .order_by(Program.start_time)
        .limit(limit)
    )
    result = await db.execute(stmt)
    return [_to_entry(row) for row in result.scalars().all()]


async def get_channel_icon(db: AsyncSession, channel_id: str) -> str | None:
    result = await db.execute(
        select(ChannelIcon.icon_url).where(ChannelIcon.channel_id == channel_id)
    )
    return result.scalar_one_or_none()


async def get_guide_counts(db: AsyncSession) -> dict[str, int]:
    """Row counts reported by the status endpoint"""
    channels = await db.execute(select(func.count(func.distinct(Program.channel_id))))
    icons = await db.execute(select(func.count()).select_from(ChannelIcon))
    programs = await db.execute(select(func.count(Program.id)))
    return {
        "channels_count": channels.scalar_one() or 0,
        "icons_count": icons.scalar_one() or 0,
        "programs_count": programs.scalar_one() or 0,
    }


async def has_programs(db: AsyncSession) -> bool:
    result = await db.execute(select(Program.id).limit(1))
    return result.first() is not None


async def get_guide_channel_ids(db: AsyncSession) -> set[str]:
    result = await db.execute(select(Program.channel_id).distinct())
    return set(result.scalars().all())


async def get_metadata(db: AsyncSession, key: str) -> str | None:
    result = await db.execute(select(GuideMetadata.value).where(GuideMetadata.key == key))
    return result.scalar_one_or_none()


async def set_metadata(db: AsyncSession, key: str, value: str) -> None:
    stmt = sqlite_insert(GuideMetadata).values(key=key, value=value)
    stmt = stmt.on_conflict_do_update(
        index_elements=[GuideMetadata.key],
        set_={"value": stmt.excluded.value},
    )
    await db.execute(stmt)


def _to_entry(row: Program) -> ProgramEntry:
    return ProgramEntry(
        channel_id=row.channel_id,
        start_time=row.start_time,
        stop_time=row.stop_time,
        title=row.title,
        description=row.description,
        category=row.category,
    )
