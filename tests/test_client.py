"""Behavioural tests for TableClient.

Expiry is driven by advancing the fake clock and calling
``client.reaper.run_once()`` instead of waiting for the background loop.
"""

import asyncio

import pytest

from cellttl.client import BulkItem, TableClient
from cellttl.config import BulkConfig, TableConfig, TTLConfig
from cellttl.errors import (
    BulkLimitExceeded,
    InitializationError,
    InvalidName,
    TableStoreError,
)
from cellttl.events import ExpirationEvent
from cellttl.ttl_index import METADATA_FAMILY


async def _schedule_rows(store, table="users_metadata"):
    return [row async for row in store.scan(table) if row.key.startswith("ttl#")]


# ---------------------------------------------------------------------------
# Round trip
# ---------------------------------------------------------------------------


class TestRoundTrip:
    @pytest.mark.parametrize(
        "value",
        ["hello", "", "1.0", "true", 0, 42, -3.5, True, [1, "two", None], {"a": {"b": [1]}}],
    )
    async def test_set_get(self, client, value):
        await client.set("alice", value, column="data")
        assert await client.get("alice", "data") == value

    async def test_default_column(self, client):
        await client.set("alice", "v")
        assert await client.get("alice") == "v"
        assert await client.get("alice", "value") == "v"

    async def test_none_stores_default_value(self, store, ttl_config, clock):
        client = TableClient(
            store, TableConfig(name="users", default_value="n/a"), ttl_config, clock=clock
        )
        await client.init(start_reaper=False)
        await client.set("alice", None)
        assert await client.get("alice") == "n/a"

    async def test_missing_is_none(self, client):
        assert await client.get("nobody") is None
        assert await client.get_row("nobody") is None

    async def test_multi_set_and_get_row(self, client):
        await client.multi_set("alice", {"name": "Alice", "age": 30, "tags": ["a"]})
        assert await client.get_row("alice") == {"name": "Alice", "age": 30, "tags": ["a"]}

    async def test_multi_set_empty_is_noop(self, client):
        await client.multi_set("alice", {})
        assert await client.get_row("alice") is None
        assert await client.count() == 0


# ---------------------------------------------------------------------------
# TTL expiry
# ---------------------------------------------------------------------------


class TestExpiry:
    async def test_cell_expires_with_one_notification(self, client, clock, events):
        await client.set("alice", "v", ttl=1, column="c")
        clock.advance(1.5)

        assert await client.reaper.run_once() == 1
        assert await client.get("alice", "c") is None
        assert events == [ExpirationEvent(row="alice", column="c", family="cf", table="users")]

        assert await client.reaper.run_once() == 0
        assert len(events) == 1

    async def test_not_expired_before_deadline(self, client, clock, events):
        await client.set("alice", "v", ttl=10)
        clock.advance(9)
        assert await client.reaper.run_once() == 0
        assert await client.get("alice") == "v"
        assert events == []

    async def test_overwrite_with_longer_ttl_cancels_prior_schedule(self, client, clock, events):
        await client.set("alice", "v1", ttl=1, column="c")
        await client.set("alice", "v2", ttl=100, column="c")
        clock.advance(2)

        assert await client.reaper.run_once() == 0
        assert await client.get("alice", "c") == "v2"
        assert events == []
        assert len(await _schedule_rows(client.store)) == 1

    async def test_overwrite_without_ttl_clears_it(self, client, clock):
        await client.set("alice", "v1", ttl=1)
        await client.set("alice", "v2")
        assert await client.ttl("alice") == -1

        clock.advance(5)
        assert await client.reaper.run_once() == 0
        assert await client.get("alice") == "v2"
        assert await _schedule_rows(client.store) == []

    async def test_deleted_cell_is_not_reported(self, client, clock, events):
        await client.multi_set("alice", {"a": 1, "b": 2}, ttl=1)
        await client.delete("alice", "a")
        clock.advance(1.5)

        assert await client.reaper.run_once() == 1
        assert [(e.row, e.column) for e in events] == [("alice", "b")]

    async def test_multi_set_cells_share_one_schedule(self, client, clock, events):
        await client.multi_set("alice", {"a": 1, "b": 2, "c": 3}, ttl=5)
        assert len(await _schedule_rows(client.store)) == 1
        clock.advance(6)
        assert await client.reaper.run_once() == 3
        assert sorted(e.column for e in events) == ["a", "b", "c"]

    async def test_row_key_with_separator(self, client, clock, events):
        await client.set("tenant#7", "v", ttl=1)
        clock.advance(2)
        await client.reaper.run_once()
        assert events[0].row == "tenant#7"
        assert await client.get("tenant#7") is None

    async def test_ttl_reports_remaining_seconds(self, client, clock):
        await client.set("alice", "v", ttl=60)
        assert await client.ttl("alice") == 60
        clock.advance(20)
        assert await client.ttl("alice") == 40
        assert await client.ttl("alice", "other") == -1

    async def test_ttl_after_expiry(self, client, clock):
        await client.set("alice", "v", ttl=1)
        clock.advance(2)
        await client.reaper.run_once()
        assert await client.ttl("alice") == -1

    async def test_reaping_leaves_no_metadata_behind(self, client, clock):
        await client.multi_set("alice", {"a": 1, "b": 2}, ttl=1)
        clock.advance(2)
        await client.reaper.run_once()
        keys = [row.key async for row in client.store.scan("users_metadata")]
        assert keys == ["counts"]


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------


class TestIncrements:
    async def test_increase_and_decrease(self, client):
        assert await client.increase("alice", "hits") == 1
        assert await client.increase("alice", "hits") == 2
        assert await client.decrease("alice", "hits") == 1
        assert await client.get("alice", "hits") == 1

    async def test_multi_add(self, client):
        result = await client.multi_add("alice", {"a": 5, "b": -2})
        assert result == {"a": 5, "b": -2}
        assert await client.get_row("alice") == {"a": 5, "b": -2}

    async def test_multi_add_skips_non_integer_and_zero(self, client):
        result = await client.multi_add("alice", {"a": 0, "b": "x", "c": True, "d": 1.5})
        assert result == {}
        assert await client.get_row("alice") is None
        assert await client.count() == 0

    async def test_multi_add_schedules_every_column(self, client, clock):
        await client.multi_add("alice", {"a": 1, "b": 0}, ttl=30)
        assert await client.ttl("alice", "a") == 30
        assert await client.ttl("alice", "b") == 30

    async def test_increase_with_ttl_expires(self, client, clock, events):
        await client.increase("alice", "hits", ttl=1)
        clock.advance(2)
        assert await client.reaper.run_once() == 1
        assert await client.get("alice", "hits") is None

    async def test_range_columns_accumulate_values(self, client):
        assert await client.multi_add("alice", {"daterange": 20240101}) == {"daterange": "20240101,"}
        result = await client.multi_add("alice", {"daterange": "20240102", "hits": 1})
        assert result == {"daterange": "20240101,20240102,", "hits": 1}
        assert await client.get("alice", "daterange") == "20240101,20240102,"
        assert await client.count() == 1

    async def test_range_column_with_ttl_expires(self, client, clock, events):
        await client.multi_add("alice", {"pricerange": 0}, ttl=1)
        assert await client.get("alice", "pricerange") == "0,"
        clock.advance(2)
        assert await client.reaper.run_once() == 1
        assert await client.get_row("alice") is None

    async def test_increment_text_cell_fails(self, client):
        await client.set("alice", "hello", column="hits")
        with pytest.raises(TableStoreError):
            await client.increase("alice", "hits")


class TestCount:
    async def test_first_write_counts_once(self, client):
        await client.multi_set("alice", {"a": 1, "b": 2, "c": 3})
        assert await client.count() == 1
        await client.set("alice", 4, column="d")
        assert await client.count() == 1
        await client.set("bob", 1)
        assert await client.count() == 2

    async def test_decrements_only_on_last_cell(self, client):
        await client.multi_set("alice", {"a": 1, "b": 2})
        await client.delete("alice", "a")
        assert await client.count() == 1
        await client.delete("alice", "b")
        assert await client.count() == 0

    async def test_never_negative(self, client):
        await client.set("alice", 1)
        for _ in range(3):
            await client.delete_row("alice")
            await client.delete("alice")
            await client.delete_row("nobody")
        assert await client.count() == 0

    async def test_mixed_sequence(self, client):
        for row in ("a", "b", "c"):
            await client.set(row, 1)
        await client.delete_row("b")
        await client.set("d", 1)
        await client.delete("a")
        assert await client.count() == 2

    async def test_reaper_uncounts_emptied_rows(self, client, clock):
        await client.set("alice", 1, ttl=1)
        await client.multi_set("bob", {"a": 1})
        await client.set("bob", 2, column="b", ttl=1)
        assert await client.count() == 2

        clock.advance(2)
        await client.reaper.run_once()
        assert await client.count() == 1

    async def test_disabled_count(self, store, ttl_config):
        client = TableClient(store, TableConfig(name="users", enable_count=False), ttl_config)
        await client.init(start_reaper=False)
        await client.set("alice", 1)
        assert await client.count() == 0


# ---------------------------------------------------------------------------
# Bulk insert
# ---------------------------------------------------------------------------


class TestBulkInsert:
    async def test_insert_across_rows(self, client):
        await client.bulk_insert([
            BulkItem(row="a", column="x", value=1),
            BulkItem(row="a", column="y", value="two"),
            {"row": "b", "data": {"k": 1}},
        ])
        assert await client.get_row("a") == {"x": 1, "y": "two"}
        assert await client.get("b") == {"k": 1}
        assert await client.count() == 2

    async def test_existing_rows_not_recounted(self, client):
        await client.set("a", 1)
        await client.bulk_insert([{"row": "a", "column": "z", "value": 2}, {"row": "b", "value": 3}])
        assert await client.count() == 2

    async def test_duplicates_last_wins(self, client):
        await client.bulk_insert([
            {"row": "a", "value": "first", "ttl": 1},
            {"row": "a", "value": "last", "ttl": 50},
        ])
        assert await client.get("a") == "last"
        assert await client.ttl("a") == 50

    async def test_item_ttl_overrides_batch_ttl(self, client):
        await client.bulk_insert(
            [{"row": "a", "value": 1, "ttl": 5}, {"row": "b", "value": 2}],
            ttl=100,
        )
        assert await client.ttl("a") == 5
        assert await client.ttl("b") == 100

    async def test_bulk_overwrite_cancels_previous(self, client, clock, events):
        await client.set("a", 1, ttl=1)
        await client.bulk_insert([{"row": "a", "value": 2}])
        clock.advance(2)
        assert await client.reaper.run_once() == 0
        assert await client.get("a") == 2
        assert events == []

    async def test_bulk_ttl_expiry(self, client, clock, events):
        await client.bulk_insert([{"row": f"r{i}", "value": i} for i in range(5)], ttl=1)
        clock.advance(2)
        assert await client.reaper.run_once() == 5
        assert await client.count() == 0
        assert len(events) == 5

    async def test_limit_exceeded_without_ttl(self, client):
        items = [{"row": f"r{i}", "value": i} for i in range(3501)]
        with pytest.raises(BulkLimitExceeded) as exc_info:
            await client.bulk_insert(items)
        assert exc_info.value.limit == 3500
        assert exc_info.value.with_ttl is False
        assert await client.get("r0") is None
        assert await client.count() == 0

    async def test_limit_exceeded_with_batch_ttl(self, client):
        items = [{"row": f"r{i}", "value": i} for i in range(1001)]
        with pytest.raises(BulkLimitExceeded) as exc_info:
            await client.bulk_insert(items, ttl=10)
        assert exc_info.value.limit == 1000
        assert exc_info.value.with_ttl is True
        assert await client.get("r0") is None
        assert await _schedule_rows(client.store) == []

    async def test_limit_exceeded_with_item_ttl(self, client):
        items = [{"row": f"r{i}", "value": i} for i in range(1001)]
        items[500]["ttl"] = 10
        with pytest.raises(BulkLimitExceeded):
            await client.bulk_insert(items)
        assert await client.count() == 0

    async def test_limit_without_ttl_allows_more(self, store, ttl_config):
        client = TableClient(
            store,
            TableConfig(name="users"),
            ttl_config,
            bulk_config=BulkConfig(insert_limit=4, insert_limit_with_ttl=2),
        )
        await client.init(start_reaper=False)
        await client.bulk_insert([{"row": f"r{i}", "value": i} for i in range(4)])
        with pytest.raises(BulkLimitExceeded):
            await client.bulk_insert([{"row": f"s{i}", "value": i} for i in range(3)], ttl=5)
        assert await client.count() == 4

    async def test_empty_batch(self, client):
        await client.bulk_insert([])
        assert await client.count() == 0

    async def test_item_family_must_be_table_family(self, client, store):
        await client.bulk_insert([{"row": "a", "family": "cf", "value": 1}])
        with pytest.raises(InvalidName):
            await client.bulk_insert([
                {"row": "b", "value": 1},
                {"row": "c", "family": "other", "value": 2, "ttl": 5},
            ])
        assert not await store.row_exists("users", "b")
        assert await _schedule_rows(store) == []
        assert await client.count() == 1

    async def test_invalid_column_rejected(self, client):
        with pytest.raises(InvalidName):
            await client.bulk_insert([{"row": "a", "column": "x#y", "value": 1}])


# ---------------------------------------------------------------------------
# Lifecycle and validation
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_use_before_init(self, store, ttl_config):
        client = TableClient(store, TableConfig(name="users"), ttl_config)
        with pytest.raises(InitializationError):
            await client.set("alice", 1)
        with pytest.raises(InitializationError):
            await client.get("alice")

    async def test_init_creates_tables(self, client, store):
        assert store.table_exists("users")
        assert store.table_exists("users_metadata")

    async def test_init_idempotent(self, client):
        await client.init(start_reaper=False)
        await client.set("alice", 1)
        assert await client.get("alice") == 1

    async def test_init_failure_wrapped(self, store, ttl_config):
        async def broken(*args, **kwargs):
            raise RuntimeError("no admin access")

        store.ensure_table = broken
        client = TableClient(store, TableConfig(name="users"), ttl_config)
        with pytest.raises(InitializationError):
            await client.init()

    async def test_close_twice(self, client):
        await client.close()
        await client.close()

    async def test_reads_and_writes_after_close(self, client):
        await client.close()
        await client.set("alice", 1)
        assert await client.get("alice") == 1

    async def test_closed_client_sends_no_more_notifications(self, store, clock):
        client = TableClient(
            store,
            TableConfig(name="users"),
            TTLConfig(reaper_interval_ms=10, min_jitter_ms=None, max_jitter_ms=None),
            clock=clock,
        )
        events = []
        client.subscribe(events.append)
        await client.init()
        await client.close()
        await client.close()

        await client.set("alice", 1, ttl=1)
        clock.advance(5)
        await asyncio.sleep(0.05)
        assert events == []
        assert not client.reaper.running

    async def test_clean_up_drops_tables(self, client, store):
        await client.set("alice", 1)
        await client.clean_up()
        assert not store.table_exists("users")
        assert not store.table_exists("users_metadata")

    async def test_subscribe_returns_unsubscribe(self, client, clock):
        received = []
        unsubscribe = client.subscribe(received.append)
        unsubscribe()
        await client.set("alice", 1, ttl=1)
        clock.advance(2)
        await client.reaper.run_once()
        assert received == []


class TestValidation:
    async def test_reserved_family(self, store):
        with pytest.raises(InvalidName):
            TableClient(store, TableConfig(name="users", column_family="ttl"))

    async def test_invalid_table_name(self, store):
        with pytest.raises(InvalidName):
            TableClient(store, TableConfig(name="bad name"))

    async def test_column_with_separator(self, client):
        with pytest.raises(InvalidName):
            await client.set("alice", 1, column="a#b")

    async def test_empty_row(self, client):
        with pytest.raises(InvalidName):
            await client.set("", 1)

    async def test_metadata_family_untouched_by_data(self, client, store):
        await client.set("alice", 1, ttl=5)
        assert await store.read_row("users", "alice", METADATA_FAMILY) is None


# ---------------------------------------------------------------------------
# Failed writes
# ---------------------------------------------------------------------------


class TestFailedWrites:
    @pytest.fixture
    async def slow_reschedule(self, client, monkeypatch):
        """Delay TTL bookkeeping and record when it finishes."""
        finished = []
        reschedule = client.ttl_index.reschedule
        bulk_reschedule = client.ttl_index.bulk_reschedule

        async def slow(original, *args):
            await asyncio.sleep(0.05)
            await original(*args)
            finished.append(True)

        monkeypatch.setattr(client.ttl_index, "reschedule", lambda *a: slow(reschedule, *a))
        monkeypatch.setattr(
            client.ttl_index, "bulk_reschedule", lambda *a: slow(bulk_reschedule, *a)
        )
        return finished

    @staticmethod
    def _fail(store, monkeypatch, method):
        """Make ``method`` fail for the data table only."""
        original = getattr(store, method)

        async def broken(table, *args):
            if table == "users":
                raise TableStoreError("write rejected")
            return await original(table, *args)

        monkeypatch.setattr(store, method, broken)

    async def test_set_waits_for_ttl_bookkeeping(self, client, store, monkeypatch, slow_reschedule):
        self._fail(store, monkeypatch, "write_cells")
        with pytest.raises(TableStoreError):
            await client.set("alice", "x", ttl=5)
        assert slow_reschedule == [True]

    async def test_multi_add_waits_for_ttl_bookkeeping(
        self, client, store, monkeypatch, slow_reschedule
    ):
        self._fail(store, monkeypatch, "increment")
        with pytest.raises(TableStoreError):
            await client.multi_add("alice", {"hits": 1}, ttl=5)
        assert slow_reschedule == [True]

    async def test_bulk_insert_waits_for_ttl_bookkeeping(
        self, client, store, monkeypatch, slow_reschedule
    ):
        self._fail(store, monkeypatch, "bulk_write")
        with pytest.raises(TableStoreError):
            await client.bulk_insert([{"row": "a", "value": 1}], ttl=5)
        assert slow_reschedule == [True]
