from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from iptv_cache.config import CustomSettings
from iptv_cache.dependencies import build_container
from iptv_cache.errors import TransportError
from iptv_cache.routers import main_router
from tests.conftest import build_xmltv

PLAYLIST = "http://playlists.example/list.m3u"
FEED = "http://guide.example/epg.xml"


def _live_feed() -> bytes:
    now = datetime.now(timezone.utc).replace(second=0, microsecond=0)
    return build_xmltv(
        channels=[("SkyNews.uk", "http://icons/sky.png"), ("Rai1.it", "http://icons/rai1.png")],
        programmes=[
            ("SkyNews.uk", now - timedelta(minutes=10), now + timedelta(minutes=20), "Headlines"),
            ("SkyNews.uk", now + timedelta(minutes=20), now + timedelta(minutes=50), "Business"),
            ("Rai1.it", now - timedelta(minutes=30), now + timedelta(minutes=30), "Film"),
        ],
    )


def _make_app(container) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.container = container
        await container.start()
        yield
        await container.stop()

    app = FastAPI(lifespan=lifespan)
    app.include_router(main_router)
    return app


@pytest.fixture
def container(tmp_path, transformer, feeds):
    settings = CustomSettings(
        catalog_database_path=str(tmp_path / "db" / "cache.db"),
        guide_database_path=str(tmp_path / "db" / "epg.db"),
        playlist_url=PLAYLIST,
        guide_source=FEED,
        timezone_offset="+0:00",
    )
    container = build_container(settings)
    container.service.catalog.transformer = transformer
    container.service.guide._downloader = feeds.download
    container.service.guide._text_fetcher = feeds.fetch_text
    feeds.bodies[FEED] = _live_feed()
    return container


@pytest.fixture
def client(container):
    with TestClient(_make_app(container)) as test_client:
        yield test_client


class TestServiceEndpoints:

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        body = response.json()
        assert body["service"] == "IPTV Cache Service"
        assert body["next_guide_refresh"] is not None

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["scheduler_running"] is True

    def test_status_before_any_refresh(self, client):
        response = client.get("/status")

        assert response.status_code == 200
        body = response.json()
        assert body["last_update"] == "Never"
        assert body["catalog_channels"] == 0
        assert body["storage_type"] == "SQLite (Disk)"


class TestRefreshEndpoints:

    def test_rebuild_catalog(self, client, transformer):
        response = client.post("/catalog/rebuild", json={})

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        assert response.json()["channels"] == 3
        assert transformer.calls[0][0] == PLAYLIST

    def test_rebuild_catalog_upstream_failure(self, client, transformer):
        transformer.error = TransportError("playlist host unreachable")

        response = client.post("/catalog/rebuild", json={"url": "http://playlists.example/other.m3u"})

        assert response.status_code == 502

    def test_rebuild_catalog_unexpected_transform_error(self, client, transformer):
        transformer.error = ValueError("unexpected playlist line")

        response = client.post("/catalog/rebuild", json={})

        assert response.status_code == 502
        assert "unexpected playlist line" in response.json()["detail"]
        assert client.get("/health").status_code == 200

    def test_refresh_guide(self, client):
        response = client.post("/guide/refresh")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["programs_inserted"] == 3

        status = client.get("/status").json()
        assert status["programs_count"] == 3
        assert status["icons_count"] == 2


class TestChannelEndpoints:

    @pytest.fixture(autouse=True)
    def _populate(self, client):
        client.post("/guide/refresh")
        client.post("/catalog/rebuild", json={})

    def test_genre_filter_is_replayed(self, client):
        response = client.get("/channels", params={"genre": "News"})

        assert response.json()["count"] == 2

        replayed = client.get("/channels")
        assert [c["name"] for c in replayed.json()["channels"]] == ["Sky News 24", "Euronews"]

    def test_search(self, client):
        response = client.get("/channels", params={"search": "rai"})

        assert [c["id"] for c in response.json()["channels"]] == ["tv|Rai1.it"]

    def test_channel_details(self, client):
        response = client.get("/channels/tv%7CSkyNews.uk")

        assert response.status_code == 200
        body = response.json()
        assert body["channel"]["name"] == "Sky News 24"
        assert body["icon"] == "http://logos/skynews.png"
        assert body["current_program"]["title"] == "Headlines"
        assert [p["title"] for p in body["upcoming_programs"]] == ["Business"]

    def test_channel_icon_falls_back_to_guide(self, client):
        body = client.get("/channels/Rai1.it").json()

        assert body["icon"] == "http://icons/rai1.png"
        assert body["current_program"]["title"] == "Film"

    def test_unknown_channel(self, client):
        response = client.get("/channels/tv%7Cnothing")

        assert response.status_code == 404
