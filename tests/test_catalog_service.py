import asyncio

import pytest
from sqlalchemy import select, update

from iptv_cache.errors import TransportError, ValidationError
from iptv_cache.models import CatalogMetadata, ChannelRow
from iptv_cache.schemas import CatalogConfig
from iptv_cache.services.catalog_service import CACHE_ERROR, CACHE_UPDATED, CatalogStore

PLAYLIST = "http://playlists.example/list.m3u"


class TestRebuild:

    @pytest.mark.asyncio
    async def test_rebuild_publishes_snapshot(self, catalog_store, transformer, clock):
        snapshot = await catalog_store.rebuild(PLAYLIST)

        assert len(snapshot.channels) == 3
        assert snapshot.genres == ("General", "News")
        assert snapshot.last_updated == clock.now
        assert snapshot.source_url == PLAYLIST
        assert catalog_store.snapshot is snapshot
        assert transformer.calls[0][0] == PLAYLIST

    @pytest.mark.asyncio
    async def test_genre_and_search_queries(self, catalog_store):
        await catalog_store.rebuild(PLAYLIST)

        assert [c.name for c in catalog_store.get_channels_by_genre("News")] == ["Sky News 24", "Euronews"]
        assert [c.name for c in catalog_store.get_channels_by_genre("General")] == ["Rai 1", "Euronews"]
        assert catalog_store.get_channels_by_genre("Sport") == []
        assert [c.name for c in catalog_store.search_channels("news")] == ["Sky News 24", "Euronews"]
        assert len(catalog_store.search_channels("")) == 3

    @pytest.mark.asyncio
    async def test_every_channel_genre_is_listed(self, catalog_store):
        snapshot = await catalog_store.rebuild(PLAYLIST)

        for channel in snapshot.channels:
            assert set(channel.genres) <= set(snapshot.genres)

    @pytest.mark.asyncio
    async def test_failed_rebuild_keeps_previous_snapshot(self, catalog_store, transformer):
        errors = []
        catalog_store.add_listener(CACHE_ERROR, errors.append)
        previous = await catalog_store.rebuild(PLAYLIST)

        transformer.error = TransportError("playlist host unreachable")
        with pytest.raises(TransportError):
            await catalog_store.rebuild(PLAYLIST)

        assert catalog_store.snapshot is previous
        assert len(errors) == 1
        assert isinstance(errors[0], TransportError)

    @pytest.mark.asyncio
    async def test_concurrent_rebuild_runs_transform_once(self, catalog_store, transformer, monkeypatch):
        updates = []
        writes = []
        catalog_store.add_listener(CACHE_UPDATED, updates.append)
        persist = catalog_store._persist

        async def counting_persist(snapshot):
            writes.append(snapshot)
            await persist(snapshot)

        monkeypatch.setattr(catalog_store, "_persist", counting_persist)
        transformer.gate = asyncio.Event()

        first = asyncio.create_task(catalog_store.rebuild(PLAYLIST))
        await asyncio.sleep(0)
        assert catalog_store.is_updating is True

        second = await catalog_store.rebuild(PLAYLIST)
        transformer.gate.set()
        snapshot = await first

        assert second is None
        assert snapshot is not None
        assert len(transformer.calls) == 1
        assert writes == [snapshot]
        assert updates == [snapshot]

    @pytest.mark.asyncio
    async def test_async_listener_and_removal(self, catalog_store):
        seen = []

        async def on_update(snapshot):
            seen.append(len(snapshot.channels))

        catalog_store.add_listener(CACHE_UPDATED, on_update)
        await catalog_store.rebuild(PLAYLIST)
        catalog_store.remove_listener(CACHE_UPDATED, on_update)
        await catalog_store.rebuild(PLAYLIST)

        assert seen == [3]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_rebuild(self, catalog_store):
        def broken(_snapshot):
            raise RuntimeError("listener bug")

        catalog_store.add_listener(CACHE_UPDATED, broken)

        assert await catalog_store.rebuild(PLAYLIST) is not None

    @pytest.mark.asyncio
    async def test_missing_transformer(self, catalog_db, clock):
        store = CatalogStore(catalog_db, None, clock=clock)

        with pytest.raises(ValidationError):
            await store.rebuild(PLAYLIST)
        assert store.snapshot is None

    @pytest.mark.asyncio
    async def test_rebuild_applies_new_config(self, catalog_store, transformer):
        config = CatalogConfig(m3u=PLAYLIST, update_interval="06:00")

        await catalog_store.rebuild(PLAYLIST, config)

        assert catalog_store.config is config
        assert transformer.calls[0][1] is config


class TestStaleness:

    @pytest.mark.asyncio
    async def test_is_stale_lifecycle(self, catalog_store, clock):
        assert catalog_store.is_stale() is True

        await catalog_store.rebuild(PLAYLIST)
        assert catalog_store.is_stale() is False

        clock.advance(hours=1, minutes=59)
        assert catalog_store.is_stale() is False

        clock.advance(minutes=1)
        assert catalog_store.is_stale() is True

    @pytest.mark.asyncio
    async def test_zero_interval_is_always_stale(self, catalog_store):
        await catalog_store.rebuild(PLAYLIST)
        assert catalog_store.is_stale(CatalogConfig(update_interval="00:00")) is True

    @pytest.mark.asyncio
    async def test_invalid_interval_uses_default(self, catalog_store, clock):
        await catalog_store.rebuild(PLAYLIST)
        clock.advance(hours=11)

        assert catalog_store.is_stale(CatalogConfig(update_interval="25:99")) is False


class TestPersistence:

    @pytest.mark.asyncio
    async def test_snapshot_survives_restart(self, catalog_store, catalog_db, clock):
        await catalog_store.rebuild(PLAYLIST)

        restarted = CatalogStore(catalog_db, None, clock=clock)
        await restarted.load()

        assert [c.id for c in restarted.channels] == [c.id for c in catalog_store.channels]
        assert restarted.snapshot.genres == ("General", "News")
        assert restarted.snapshot.last_updated == clock.now
        assert restarted.snapshot.source_url == PLAYLIST
        assert restarted.snapshot.guide_urls == ("http://guide.example/epg.xml",)

    @pytest.mark.asyncio
    async def test_rebuild_overwrites_stored_rows(self, catalog_store, catalog_db, transformer, clock):
        await catalog_store.rebuild(PLAYLIST)
        transformer.result.channels = transformer.result.channels[:1]
        transformer.result.genres = ["General"]
        await catalog_store.rebuild(PLAYLIST)

        restarted = CatalogStore(catalog_db, None, clock=clock)
        await restarted.load()

        assert [c.name for c in restarted.channels] == ["Rai 1"]
        assert restarted.snapshot.genres == ("General",)

    @pytest.mark.asyncio
    async def test_empty_database_has_no_snapshot(self, catalog_store):
        await catalog_store.load()

        assert catalog_store.snapshot is None
        assert catalog_store.get_cached_data() == {"channels": [], "genres": []}

    @pytest.mark.asyncio
    async def test_unreadable_rows_are_skipped(self, catalog_store, catalog_db, clock):
        await catalog_store.rebuild(PLAYLIST)
        async with catalog_db.session_scope() as session:
            await session.execute(
                update(ChannelRow).where(ChannelRow.id == "tv|Euronews").values(data="{not json")
            )

        restarted = CatalogStore(catalog_db, None, clock=clock)
        await restarted.load()

        assert [c.id for c in restarted.channels] == ["tv|Rai1.it", "tv|SkyNews.uk"]

    @pytest.mark.asyncio
    async def test_unreadable_metadata_does_not_block_load(self, catalog_store, catalog_db, clock):
        await catalog_store.rebuild(PLAYLIST)
        async with catalog_db.session_scope() as session:
            await session.execute(
                update(CatalogMetadata).where(CatalogMetadata.key == "lastUpdated").values(value="not a date")
            )
            await session.execute(
                update(CatalogMetadata).where(CatalogMetadata.key == "epgUrls").values(value="[broken")
            )

        restarted = CatalogStore(catalog_db, None, clock=clock)
        await restarted.load()

        assert len(restarted.channels) == 3
        assert restarted.snapshot.last_updated is None
        assert restarted.snapshot.guide_urls == ()
        assert restarted.snapshot.source_url == PLAYLIST
        assert restarted.is_stale() is True

    @pytest.mark.asyncio
    async def test_metadata_keys(self, catalog_store, catalog_db):
        await catalog_store.rebuild(PLAYLIST)

        async with catalog_db.session_scope() as session:
            rows = (await session.execute(select(CatalogMetadata))).scalars().all()

        assert {row.key for row in rows} == {"lastUpdated", "m3uUrl", "epgUrls"}


class TestLookups:

    @pytest.mark.asyncio
    async def test_get_channel_lookup_order(self, catalog_store):
        await catalog_store.rebuild(PLAYLIST)

        assert catalog_store.get_channel("skynews.uk").name == "Sky News 24"
        assert catalog_store.get_channel("Rai1.IT").name == "Rai 1"
        assert catalog_store.get_channel("Sky News 24").id == "tv|SkyNews.uk"
        assert catalog_store.get_channel("unknown") is None
        assert catalog_store.get_channel(None) is None

    @pytest.mark.asyncio
    async def test_lookups_before_first_rebuild(self, catalog_store):
        assert catalog_store.get_channel("rai1.it") is None
        assert catalog_store.get_channels_by_genre("News") == []
        assert catalog_store.search_channels("news") == []

    @pytest.mark.asyncio
    async def test_last_filter_replay(self, catalog_store, transformer):
        await catalog_store.rebuild(PLAYLIST)
        assert len(catalog_store.get_filtered_channels()) == 3

        catalog_store.set_last_filter("genre", "News")
        assert catalog_store.get_last_filter() == ("genre", "News")

        transformer.result.channels = transformer.result.channels[1:2]
        await catalog_store.rebuild(PLAYLIST)
        assert [c.name for c in catalog_store.get_filtered_channels()] == ["Sky News 24"]

        catalog_store.set_last_filter("search", "rai")
        assert catalog_store.get_filtered_channels() == []

        catalog_store.clear_last_filter()
        assert catalog_store.get_last_filter() is None
