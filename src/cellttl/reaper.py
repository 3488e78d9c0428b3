"""Background reaper that deletes cells whose TTL has elapsed.

One reaper runs per client as a single asyncio task. It waits a random
startup jitter (to keep many processes started together from scanning in
lockstep), then repeats: scan due schedules, delete, sleep a fixed interval.
Passes never overlap because the next sleep starts only after the previous
pass finished.

Each pass:

1. Scans every shard range ``ttl#<shard>#0 .. ttl#<shard>#<now>``, at most
   ``scan_batch_size`` schedule rows in total.
2. Splits the rows into chunks of ``delete_chunk_size``.
3. Per chunk, re-reads the data rows and keeps only cells that still exist,
   so cells deleted or already reaped elsewhere are neither deleted again
   nor reported.
4. Concurrently deletes the surviving cells, the schedule rows and the
   Reference Keys of every qualifier in the chunk.
5. Uncounts rows left empty and publishes one event per deleted cell.

Chunk failures are logged and skipped. A schedule row that could not be
deleted is found again by the next pass, which is the only retry.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import defaultdict
from enum import Enum
from typing import TYPE_CHECKING

from cellttl import metrics
from cellttl.events import ExpirationEvent, ExpirationNotifier
from cellttl.tablestore import RowDeletion, TableStore
from cellttl.ttl_index import CellRef, TTLIndex, parse_qualifier

if TYPE_CHECKING:
    from cellttl.config import TTLConfig
    from cellttl.counter import CountRegister

logger = logging.getLogger(__name__)


class ReaperState(Enum):
    """Lifecycle state of a reaper."""

    IDLE = "idle"
    SCANNING = "scanning"
    DELETING = "deleting"
    CLOSED = "closed"


def _chunks(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class Reaper:
    """Periodic TTL reaper for one data table.

    Attributes:
        store: The table store.
        table: The data table cells are deleted from.
        ttl_index: Index providing due schedules.
        counter: Count register updated when rows are emptied.
        notifier: Receives one event per deleted cell.
        config: Interval, jitter and batch settings.
        state: Current ``ReaperState``.
    """

    def __init__(
        self,
        store: TableStore,
        table: str,
        ttl_index: TTLIndex,
        counter: CountRegister,
        notifier: ExpirationNotifier,
        config: TTLConfig,
    ) -> None:
        self.store = store
        self.table = table
        self.ttl_index = ttl_index
        self.counter = counter
        self.notifier = notifier
        self.config = config
        self.state = ReaperState.IDLE
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def first_delay(self) -> float:
        """Seconds before the first pass: a random jitter, or the interval."""
        low, high = self.config.min_jitter_ms, self.config.max_jitter_ms
        if low is None or high is None:
            return self.config.reaper_interval_ms / 1000
        return random.uniform(min(low, high), max(low, high)) / 1000

    def start(self) -> None:
        """Start the background loop. No-op if already running or closed."""
        if self.state is ReaperState.CLOSED or self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"cellttl-reaper-{self.table}")
        logger.info("TTL reaper started for %s", self.table)

    async def _sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if the reaper was stopped meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _loop(self) -> None:
        delay = self.first_delay()
        while not self._stop.is_set():
            if await self._sleep(delay):
                break
            try:
                await self.run_once()
            except Exception:
                logger.exception("TTL scan failed for %s", self.table, extra={"table": self.table})
            delay = self.config.reaper_interval_ms / 1000

    async def close(self) -> None:
        """Stop future passes and wait for an in-flight pass to finish. Idempotent."""
        if self.state is ReaperState.CLOSED:
            return
        self.state = ReaperState.CLOSED
        self._stop.set()
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            await task
        logger.info("TTL reaper stopped for %s", self.table)

    # -- One pass --------------------------------------------------------------

    def _set_state(self, state: ReaperState) -> None:
        if self.state is not ReaperState.CLOSED:
            self.state = state

    async def run_once(self) -> int:
        """Run a single scan-and-delete pass.

        Returns:
            Number of cells deleted.

        Raises:
            Exception: Whatever the schedule scan raised; chunk failures are
                logged instead.
        """
        started = time.monotonic()
        self._set_state(ReaperState.SCANNING)
        try:
            due = await self.ttl_index.due(self.config.scan_batch_size)
            reaped = 0
            if due:
                self._set_state(ReaperState.DELETING)
                for chunk in _chunks(due, self.config.delete_chunk_size):
                    reaped += await self._reap_chunk(chunk)
        except Exception:
            if metrics.reaper_runs_total is not None:
                metrics.reaper_runs_total.labels(status="error").inc()
            raise
        finally:
            self._set_state(ReaperState.IDLE)

        if metrics.reaper_runs_total is not None:
            metrics.reaper_runs_total.labels(status="ok").inc()
        if due:
            logger.debug(
                "Reaped %d cells from %d schedules in %s",
                reaped,
                len(due),
                self.table,
                extra={
                    "table": self.table,
                    "deleted": reaped,
                    "duration_ms": round((time.monotonic() - started) * 1000, 2),
                },
            )
        return reaped

    def _parse_chunk(self, chunk: list[tuple[str, list[str]]]) -> dict[str, CellRef]:
        cells: dict[str, CellRef] = {}
        for schedule_key, qualifiers in chunk:
            for qualifier in qualifiers:
                try:
                    cells[qualifier] = parse_qualifier(qualifier)
                except ValueError:
                    logger.warning(
                        "Skipping malformed qualifier %r", qualifier,
                        extra={"table": self.table, "shard_key": schedule_key},
                    )
        return cells

    async def _live(self, cells: dict[str, CellRef]) -> list[CellRef]:
        """Keep only cells still present in the data table."""
        rows = sorted({ref.row for ref in cells.values()})
        if not rows:
            return []
        live = {row.key: row async for row in self.store.scan(self.table, keys=rows)}
        return [
            ref for ref in cells.values()
            if ref.row in live and live[ref.row].has_cell(ref.family, ref.column)
        ]

    async def _delete_cells(self, expired: list[CellRef]) -> None:
        if not expired:
            return
        by_row: dict[str, list[tuple[str, str]]] = defaultdict(list)
        for ref in expired:
            by_row[ref.row].append((ref.family, ref.column))
        await self.store.bulk_delete(
            self.table,
            [RowDeletion(key=row, columns=columns) for row, columns in by_row.items()],
        )

    async def _reap_chunk(self, chunk: list[tuple[str, list[str]]]) -> int:
        metadata_table = self.ttl_index.metadata_table
        try:
            cells = self._parse_chunk(chunk)
            expired = await self._live(cells)
            results = await asyncio.gather(
                self._delete_cells(expired),
                self.store.bulk_delete(
                    metadata_table, [RowDeletion(key=key) for key, _ in chunk]
                ),
                self.store.bulk_delete(
                    metadata_table, [RowDeletion(key=qualifier) for qualifier in cells]
                ),
                return_exceptions=True,
            )
        except Exception:
            logger.exception("TTL chunk failed for %s", self.table, extra={"table": self.table})
            self._count_failure()
            return 0

        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            if not isinstance(failure, Exception):
                raise failure
            logger.error(
                "TTL deletion failed for %s: %s", self.table, failure,
                exc_info=failure, extra={"table": self.table},
            )
        if failures:
            self._count_failure()
        if isinstance(results[0], BaseException):
            return 0

        try:
            await self.counter.on_bulk_delete({ref.row for ref in expired})
        except Exception:
            logger.exception("Count update after TTL deletion failed for %s", self.table)

        for ref in expired:
            self.notifier.publish(
                ExpirationEvent(row=ref.row, column=ref.column, family=ref.family, table=self.table)
            )
        if metrics.cells_expired_total is not None and expired:
            metrics.cells_expired_total.labels(table=self.table).inc(len(expired))
        return len(expired)

    def _count_failure(self) -> None:
        if metrics.reaper_chunk_failures_total is not None:
            metrics.reaper_chunk_failures_total.labels(table=self.table).inc()
