"""
Shared dataclasses used across the catalog and guide pipelines.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from iptv_cache.schemas import ChannelRecord


@dataclass(slots=True)
class IconPayload:
    """Channel icon parsed from an XMLTV <channel> element."""
    channel_id: str
    icon_url: str


@dataclass(slots=True)
class ProgramPayload:
    """In-memory representation of a program row before persistence."""
    channel_id: str
    start_time: datetime
    stop_time: datetime
    title: str
    description: str = ""
    category: str = ""


@dataclass(slots=True, frozen=True)
class ProgramEntry:
    """Program row as returned to readers."""
    channel_id: str
    start_time: datetime
    stop_time: datetime
    title: str
    description: str | None = None
    category: str | None = None


@dataclass(slots=True)
class ParseStats:
    """Counters collected while filtering programmes against the retention window."""
    channels_seen: int = 0
    programs_seen: int = 0
    skipped_invalid: int = 0
    skipped_old: int = 0
    skipped_future: int = 0


@dataclass(slots=True)
class TransformResult:
    """Output of the external playlist transform."""
    channels: list[ChannelRecord]
    genres: list[str]
    guide_urls: list[str] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class CatalogSnapshot:
    """Published catalog state; replaced as a whole, never mutated."""
    channels: tuple[ChannelRecord, ...]
    genres: tuple[str, ...]
    last_updated: datetime | None
    source_url: str | None
    guide_urls: tuple[str, ...] = ()


__all__ = [
    "IconPayload",
    "ProgramPayload",
    "ProgramEntry",
    "ParseStats",
    "TransformResult",
    "CatalogSnapshot",
]
