"""Shared pytest fixtures for cellttl tests.

Clients run on a ``MemoryTableStore`` with a controllable clock and the
reaper not started, so tests drive expiry explicitly through
``client.reaper.run_once()`` after advancing the clock.
"""

import pytest

from cellttl.client import TableClient
from cellttl.config import BulkConfig, TableConfig, TTLConfig
from cellttl.tablestore.memory import MemoryTableStore

START_MS = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ttl_config() -> TTLConfig:
    """TTL settings with startup jitter disabled."""
    return TTLConfig(min_jitter_ms=None, max_jitter_ms=None)


@pytest.fixture
async def store():
    """A fresh in-memory table store for each test."""
    s = MemoryTableStore()
    await s.init()
    yield s
    await s.close()


@pytest.fixture
def table_config() -> TableConfig:
    return TableConfig(name="users")


@pytest.fixture
async def client(store, table_config, ttl_config, clock):
    """An initialized client on the memory store, reaper not started."""
    c = TableClient(
        store,
        table_config,
        ttl_config=ttl_config,
        bulk_config=BulkConfig(),
        clock=clock,
    )
    await c.init(start_reaper=False)
    yield c
    await c.close()


@pytest.fixture
async def events(client):
    """Expiration events published by ``client``, in order."""
    received = []
    client.subscribe(received.append)
    return received
