"""Tests for TableFactory."""

import pytest

from cellttl import TableFactory
from cellttl.config import CellTTLConfig, MetricsConfig, StoreConfig, TableConfig, TTLConfig
from cellttl.errors import InitializationError
from cellttl.reaper import ReaperState
from cellttl.tablestore.memory import MemoryTableStore
from cellttl.tablestore.sqlite import SQLiteTableStore


@pytest.fixture
def config() -> CellTTLConfig:
    return CellTTLConfig(
        ttl=TTLConfig(min_jitter_ms=None, max_jitter_ms=None),
        tables=[TableConfig(name="sessions"), TableConfig(name="views", enable_count=False)],
    )


class TestFactory:
    async def test_clients_share_one_store(self, config):
        async with TableFactory(config) as factory:
            sessions = await factory.get("sessions", start_reaper=False)
            views = await factory.get("views", start_reaper=False)
            assert isinstance(factory.store, MemoryTableStore)
            assert sessions.store is views.store is factory.store

            await sessions.set("s1", {"user": "alice"})
            await views.set("p1", 3)
            assert await sessions.get("s1") == {"user": "alice"}
            assert await sessions.count() == 1
            assert await views.count() == 0

    async def test_get_with_table_config(self, config):
        async with TableFactory(config) as factory:
            client = await factory.get(TableConfig(name="adhoc"), start_reaper=False)
            assert client.name == "adhoc"
            assert factory.store.table_exists("adhoc_metadata")

    async def test_client_uses_factory_settings(self, config):
        config.bulk.insert_limit = 7
        async with TableFactory(config) as factory:
            client = await factory.get("sessions", start_reaper=False)
            assert client.bulk_config.insert_limit == 7
            assert client.ttl_config.min_jitter_ms is None

    async def test_unknown_table_name(self, config):
        async with TableFactory(config) as factory:
            with pytest.raises(KeyError):
                await factory.get("missing")

    async def test_get_before_init(self, config):
        with pytest.raises(InitializationError):
            await TableFactory(config).get("sessions")

    async def test_close_stops_reapers(self, config):
        factory = TableFactory(config)
        await factory.init()
        client = await factory.get("sessions")
        assert client.reaper.running

        await factory.close()
        assert client.reaper.state is ReaperState.CLOSED
        assert not client.reaper.running
        await factory.close()

    async def test_init_idempotent(self, config):
        factory = TableFactory(config)
        await factory.init()
        store = factory.store
        await factory.init()
        assert factory.store is store
        await factory.close()

    async def test_injected_store(self, config):
        store = MemoryTableStore()
        async with TableFactory(config, store=store) as factory:
            client = await factory.get("sessions", start_reaper=False)
            assert client.store is store

    async def test_sqlite_backend(self, config, tmp_path):
        config.store = StoreConfig(backend="sqlite", sqlite_path=str(tmp_path / "cells.db"))
        async with TableFactory(config) as factory:
            assert isinstance(factory.store, SQLiteTableStore)
            client = await factory.get("sessions", start_reaper=False)
            await client.set("s1", "x", ttl=60)
            assert await client.ttl("s1") in (59, 60)

    async def test_store_failure_wrapped(self, config):
        class BrokenStore(MemoryTableStore):
            async def init(self) -> None:
                raise OSError("unreachable")

        factory = TableFactory(config, store=BrokenStore())
        with pytest.raises(InitializationError):
            await factory.init()

    async def test_bad_backend_wrapped(self, config):
        config.store = StoreConfig(backend="nosuch")
        with pytest.raises(InitializationError):
            await TableFactory(config).init()

    async def test_metrics_enabled(self, config):
        from cellttl import metrics

        config.metrics = MetricsConfig(enabled=True)
        async with TableFactory(config):
            assert metrics.reaper_runs_total is not None
