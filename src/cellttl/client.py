"""Table client: the public read/write surface of cellttl.

Every write path follows the same order:

1. The Count Register checks whether the row exists and counts it if not.
   This is awaited first so the check sees the pre-write state.
2. The previous TTL schedule of each written cell is cancelled, then a new
   one is installed if a TTL was given. This runs concurrently with
3. the data write itself.

The call returns once all of these settled. Deletes do not touch the TTL
index; stale schedules of deleted cells are discarded by the reaper's
liveness check.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from cellttl import metrics
from cellttl.config import BulkConfig, TableConfig, TTLConfig
from cellttl.counter import CountRegister
from cellttl.errors import BulkLimitExceeded, InitializationError, InvalidName
from cellttl.events import ExpirationNotifier, Subscriber
from cellttl.reaper import Reaper
from cellttl.serialization import decode_value, encode_value
from cellttl.tablestore import RowWrite, TableStore
from cellttl.ttl_index import METADATA_FAMILY, TTLIndex, make_qualifier, now_ms
from cellttl.validation import (
    validate_column_name,
    validate_family_name,
    validate_row_key,
    validate_table_name,
)

logger = logging.getLogger(__name__)


@dataclass
class BulkItem:
    """One cell of a bulk insert.

    Attributes:
        row: Row key.
        column: Column qualifier; the table's default column when None.
        value: Value to store.
        family: Column family; the table's family when None.
        ttl: TTL in seconds; overrides the batch TTL when set.
    """

    row: str
    column: str | None = None
    value: Any = None
    family: str | None = None
    ttl: float | None = None

    @classmethod
    def from_value(cls, item: BulkItem | Mapping[str, Any]) -> BulkItem:
        """Accept a BulkItem or a mapping; ``data`` is an alias of ``value``."""
        if isinstance(item, BulkItem):
            return item
        fields = dict(item)
        if "data" in fields and "value" not in fields:
            fields["value"] = fields.pop("data")
        return cls(**fields)


# Columns whose name contains this collect appended values instead of a sum.
APPEND_MARKER = "range"


def _is_delta(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value != 0


def _append_suffix(value: Any) -> bytes:
    text = value if isinstance(value, str) else json.dumps(value, separators=(",", ":"))
    return f"{text},".encode("utf-8")


async def _gather_all(*aws: Awaitable[Any]) -> list[Any]:
    """Run awaitables concurrently and wait for all of them.

    Raises:
        The first exception raised by any awaitable, once every one has
        finished.
    """
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


class TableClient:
    """Cell store with TTLs and an approximate row count for one table.

    Attributes:
        store: The shared table store.
        config: The table configuration.
        ttl_index: Schedules cell expirations.
        counter: Approximate row counter.
        notifier: Expiration event subscribers.
        reaper: Background expiry job.
    """

    def __init__(
        self,
        store: TableStore,
        config: TableConfig,
        ttl_config: TTLConfig | None = None,
        bulk_config: BulkConfig | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        validate_table_name(config.name)
        validate_family_name(config.column_family)
        validate_column_name(config.default_column)

        self.store = store
        self.config = config
        self.ttl_config = ttl_config or TTLConfig()
        self.bulk_config = bulk_config or BulkConfig()

        self.ttl_index = TTLIndex(
            store,
            config.metadata_table,
            shard_count=self.ttl_config.shard_count,
            hash_seed=self.ttl_config.hash_seed,
            clock=clock,
        )
        self.counter = CountRegister(
            store, config.name, config.metadata_table, enabled=config.enable_count
        )
        self.notifier = ExpirationNotifier()
        self.reaper = Reaper(
            store, config.name, self.ttl_index, self.counter, self.notifier, self.ttl_config
        )
        self._initialized = False
        self._closed = False

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def family(self) -> str:
        return self.config.column_family

    # -- Lifecycle -------------------------------------------------------------

    async def init(self, start_reaper: bool = True) -> None:
        """Create the data and metadata tables if needed and start the reaper.

        Idempotent.

        Raises:
            InitializationError: If the tables cannot be prepared.
        """
        if self._initialized:
            return
        try:
            await self.store.ensure_table(
                self.name,
                [self.family],
                max_versions=self.config.max_versions,
                max_age_seconds=self.config.max_age_seconds,
            )
            await self.store.ensure_table(self.config.metadata_table, [METADATA_FAMILY])
        except InitializationError:
            raise
        except Exception as e:
            raise InitializationError(f"Cannot prepare table '{self.name}': {e}") from e

        self._initialized = True
        if start_reaper:
            self.reaper.start()
        logger.info("Table client ready: %s", self.name, extra={"table": self.name})

    async def close(self) -> None:
        """Stop the reaper. Idempotent; reads and writes keep working."""
        if self._closed:
            return
        self._closed = True
        await self.reaper.close()

    async def clean_up(self) -> None:
        """Stop the reaper and drop the data and metadata tables."""
        await self.close()
        await self.store.delete_table(self.name)
        await self.store.delete_table(self.config.metadata_table)
        self._initialized = False
        logger.info("Dropped tables for %s", self.name, extra={"table": self.name})

    def _check_ready(self) -> None:
        if not self._initialized:
            raise InitializationError(f"Table client '{self.name}' is not initialized")

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Receive an ``ExpirationEvent`` for every cell the reaper deletes."""
        return self.notifier.subscribe(callback)

    # -- Helpers ---------------------------------------------------------------

    def _column(self, column: str | None) -> str:
        column = column or self.config.default_column
        validate_column_name(column)
        return column

    def _encode(self, value: Any) -> bytes:
        return encode_value(value, self.config.default_value)

    async def _write(self, row: str, cells: dict[str, bytes], ttl: float | None) -> None:
        await self.counter.on_write(row)
        qualifiers = [make_qualifier(self.family, row, column) for column in cells]
        await _gather_all(
            self.ttl_index.reschedule(qualifiers, ttl),
            self.store.write_cells(self.name, row, self.family, cells),
        )

    # -- Writes ----------------------------------------------------------------

    async def set(self, row: str, value: Any, ttl: float | None = None, column: str | None = None) -> None:
        """Store a value in one cell.

        Args:
            row: Row key.
            value: String, number, bool, list, dict or bytes.
            ttl: Seconds until the cell expires. Without a TTL any earlier
                schedule of the cell is cancelled.
            column: Column qualifier; the default column when None.
        """
        self._check_ready()
        validate_row_key(row)
        column = self._column(column)
        await self._write(row, {column: self._encode(value)}, ttl)

    async def multi_set(self, row: str, values: Mapping[str, Any], ttl: float | None = None) -> None:
        """Store several columns of one row, all sharing the same TTL."""
        self._check_ready()
        validate_row_key(row)
        if not values:
            return
        cells = {self._column(column): self._encode(value) for column, value in values.items()}
        await self._write(row, cells, ttl)

    async def multi_add(
        self, row: str, deltas: Mapping[str, Any], ttl: float | None = None
    ) -> dict[str, Any]:
        """Atomically add integer deltas to counter columns of one row.

        Columns whose name contains ``range`` are not summed: ``"<value>,"``
        is appended to them instead, so they accumulate a comma-terminated
        list. Non-integer and zero deltas to other columns are not applied,
        but every listed column is still (re)scheduled with ``ttl``.

        Returns:
            Mapping of column -> new value for the columns changed: an int
            for counters, the accumulated text for ``range`` columns.
        """
        self._check_ready()
        validate_row_key(row)
        columns = [self._column(column) for column in deltas]
        increments: dict[str, int] = {}
        appends: dict[str, bytes] = {}
        for column, delta in zip(columns, deltas.values()):
            if APPEND_MARKER in column:
                if delta is not None:
                    appends[column] = _append_suffix(delta)
            elif _is_delta(delta):
                increments[column] = delta
        qualifiers = [make_qualifier(self.family, row, column) for column in columns]

        if not increments and not appends:
            await self.ttl_index.reschedule(qualifiers, ttl)
            return {}

        async def add() -> dict[str, int]:
            if not increments:
                return {}
            return await self.store.increment(self.name, row, self.family, increments)

        async def append() -> dict[str, bytes]:
            if not appends:
                return {}
            return await self.store.append(self.name, row, self.family, appends)

        await self.counter.on_write(row)
        _, counted, appended = await _gather_all(
            self.ttl_index.reschedule(qualifiers, ttl), add(), append()
        )
        result: dict[str, Any] = dict(counted)
        result.update((column, raw.decode("utf-8")) for column, raw in appended.items())
        return result

    async def increase(self, row: str, column: str | None = None, ttl: float | None = None) -> int:
        """Add 1 to a counter column and return the new value."""
        column = self._column(column)
        return (await self.multi_add(row, {column: 1}, ttl))[column]

    async def decrease(self, row: str, column: str | None = None, ttl: float | None = None) -> int:
        """Subtract 1 from a counter column and return the new value."""
        column = self._column(column)
        return (await self.multi_add(row, {column: -1}, ttl))[column]

    async def bulk_insert(
        self,
        items: Iterable[BulkItem | Mapping[str, Any]],
        ttl: float | None = None,
    ) -> None:
        """Write many cells across rows in one batch.

        Args:
            items: ``BulkItem`` objects or mappings with ``row``, ``column``,
                ``value`` (or ``data``) and optional ``family`` and ``ttl``.
            ttl: TTL for items that carry none of their own.

        Raises:
            BulkLimitExceeded: Before any I/O, if the batch is larger than
                ``insert_limit``, or ``insert_limit_with_ttl`` when any item
                has a TTL.
        """
        self._check_ready()
        batch = [BulkItem.from_value(item) for item in items]

        with_ttl = bool(ttl) or any(item.ttl for item in batch)
        limit = (
            self.bulk_config.insert_limit_with_ttl if with_ttl else self.bulk_config.insert_limit
        )
        if len(batch) > limit:
            if metrics.bulk_rejections_total is not None:
                metrics.bulk_rejections_total.labels(table=self.name).inc()
            raise BulkLimitExceeded(len(batch), limit, with_ttl)
        if not batch:
            return

        # Later items win for the same cell.
        cells: dict[str, tuple[str, str, str, bytes]] = {}
        schedules: dict[str, float | None] = {}
        for item in batch:
            validate_row_key(item.row)
            if item.family:
                validate_family_name(item.family)
                if item.family != self.family:
                    raise InvalidName(
                        "family", item.family, f"table '{self.name}' has no such family"
                    )
            family = item.family or self.family
            column = self._column(item.column)
            qualifier = make_qualifier(family, item.row, column)
            cells[qualifier] = (item.row, family, column, self._encode(item.value))
            schedules[qualifier] = item.ttl or ttl

        grouped: dict[tuple[str, str], dict[str, bytes]] = defaultdict(dict)
        for row, family, column, value in cells.values():
            grouped[(row, family)][column] = value
        writes = [
            RowWrite(key=row, family=family, cells=values)
            for (row, family), values in grouped.items()
        ]

        await self.counter.on_bulk_write(row for row, _ in grouped)
        await _gather_all(
            self.ttl_index.bulk_reschedule(schedules),
            self.store.bulk_write(self.name, writes),
        )

    # -- Reads -----------------------------------------------------------------

    async def get(self, row: str, column: str | None = None) -> Any:
        """Return the value of one cell, or None if it does not exist."""
        self._check_ready()
        raw = await self.store.read_cell(
            self.name, row, self.family, column or self.config.default_column
        )
        return decode_value(raw)

    async def get_row(self, row: str) -> dict[str, Any] | None:
        """Return every column of a row, or None if the row does not exist."""
        self._check_ready()
        columns = await self.store.read_row(self.name, row, self.family)
        if columns is None:
            return None
        return {column: decode_value(raw) for column, raw in columns.items()}

    async def count(self) -> int:
        """Approximate number of rows in the table."""
        self._check_ready()
        return await self.counter.read()

    async def ttl(self, row: str, column: str | None = None) -> int:
        """Seconds until a cell expires, or -1 if it has no TTL."""
        self._check_ready()
        qualifier = make_qualifier(self.family, row, column or self.config.default_column)
        return await self.ttl_index.remaining(qualifier)

    # -- Deletes ---------------------------------------------------------------

    async def delete(self, row: str, column: str | None = None) -> None:
        """Delete one cell (the default column when ``column`` is None)."""
        self._check_ready()
        column = column or self.config.default_column
        await self.counter.on_delete(
            row, lambda: self.store.delete_cells(self.name, row, self.family, [column])
        )

    async def delete_row(self, row: str) -> None:
        """Delete every cell of a row."""
        self._check_ready()
        await self.counter.on_delete(row, lambda: self.store.delete_row(self.name, row))
