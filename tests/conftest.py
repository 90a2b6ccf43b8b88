"""
Shared fixtures: temporary SQLite databases, a controllable clock, and fake
collaborators standing in for the network and the playlist transform.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

from iptv_cache.database import Database
from iptv_cache.errors import TransportError
from iptv_cache.models import CatalogBase, GuideBase
from iptv_cache.schemas import CatalogConfig, ChannelRecord
from iptv_cache.services.catalog_service import CatalogStore
from iptv_cache.services.fetch_types import TransformResult
from iptv_cache.services.guide_service import GuideStore


class FakeClock:
    """Callable clock that tests move by hand"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeFeeds:
    """Serves canned bodies by URL, writing downloads under tmp_path"""

    def __init__(self, directory: Path):
        self.directory = directory
        self.bodies: dict[str, bytes] = {}
        self.texts: dict[str, str] = {}
        self.downloads: list[str] = []

    async def download(self, url: str, filename: str) -> Path:
        self.downloads.append(url)
        if url not in self.bodies:
            raise TransportError(f"HTTP 404 fetching {url}")
        path = self.directory / f"{len(self.downloads)}_{filename}"
        path.write_bytes(self.bodies[url])
        return path

    async def fetch_text(self, url: str) -> str:
        if url in self.texts:
            return self.texts[url]
        if url in self.bodies:
            return self.bodies[url].decode("utf-8", errors="replace")
        raise TransportError(f"HTTP 404 fetching {url}")


class FakeTransformer:
    """Playlist transform double that records calls"""

    def __init__(self, result: TransformResult | None = None):
        self.result = result
        self.error: Exception | None = None
        self.calls: list[tuple[str, CatalogConfig]] = []
        self.gate: asyncio.Event | None = None

    async def load_and_transform(self, url: str, config: CatalogConfig) -> TransformResult:
        self.calls.append((url, config))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


def xmltv_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S +0000")


def build_xmltv(channels=(), programmes=()) -> bytes:
    """
    channels: (id, icon_url) pairs
    programmes: (channel, start, stop, title) tuples; start/stop are datetimes or raw strings
    """
    parts = ['<?xml version="1.0" encoding="UTF-8"?>', "<tv>"]
    for channel_id, icon in channels:
        icon_tag = f'<icon src="{icon}"/>' if icon else ""
        parts.append(f'<channel id="{channel_id}"><display-name>{channel_id}</display-name>{icon_tag}</channel>')
    for channel_id, start, stop, title in programmes:
        start = start if isinstance(start, str) else xmltv_time(start)
        stop = stop if isinstance(stop, str) else xmltv_time(stop)
        parts.append(
            f'<programme channel="{channel_id}" start="{start}" stop="{stop}">'
            f"<title>{title}</title><desc>About {title}</desc><category>General</category>"
            "</programme>"
        )
    parts.append("</tv>")
    return "\n".join(parts).encode("utf-8")


SAMPLE_CHANNELS = [
    ChannelRecord(id="tv|Rai1.it", name="Rai 1", genres=["General"], guide_id="Rai1.it", number="1"),
    ChannelRecord(id="tv|SkyNews.uk", name="Sky News 24", genres=["News"], guide_id="SkyNews.uk",
                  logo="http://logos/skynews.png"),
    ChannelRecord(id="tv|Euronews", name="Euronews", genres=["News", "General"], guide_id=None),
]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 10, 10, 15, tzinfo=timezone.utc))


@pytest.fixture
def feeds(tmp_path) -> FakeFeeds:
    download_dir = tmp_path / "downloads"
    download_dir.mkdir()
    return FakeFeeds(download_dir)


@pytest.fixture
def transformer() -> FakeTransformer:
    return FakeTransformer(
        TransformResult(
            channels=list(SAMPLE_CHANNELS),
            genres=["General", "News"],
            guide_urls=["http://guide.example/epg.xml"],
        )
    )


@pytest_asyncio.fixture
async def guide_db(tmp_path):
    database = Database(str(tmp_path / "epg.db"), GuideBase.metadata, name="guide database")
    await database.init()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def catalog_db(tmp_path):
    database = Database(str(tmp_path / "cache.db"), CatalogBase.metadata, name="catalog database")
    await database.init()
    yield database
    await database.close()


@pytest.fixture
def guide_store(guide_db, feeds, clock) -> GuideStore:
    return GuideStore(
        guide_db,
        chunk_size=2,
        downloader=feeds.download,
        text_fetcher=feeds.fetch_text,
        clock=clock,
        timezone_offset="+1:00",
    )


@pytest.fixture
def catalog_store(catalog_db, transformer, clock) -> CatalogStore:
    return CatalogStore(catalog_db, transformer, config=CatalogConfig(update_interval="02:00"), clock=clock)
