"""TTL index: durable, scannable expiry schedules for cells.

Layout in the metadata table (column family ``metadata``):

    ttl#<shard>#<expireAtMs>     one column per scheduled qualifier, value = TTL seconds
    <family>#<row>#<column>      Reference Key, column ``ttl`` = current schedule key

``shard`` is ``xxh32(expireAtMs) % shard_count``. ``expireAtMs`` is written
zero-padded to ``EXPIRY_DIGITS`` digits, so schedule keys of one shard sort
by time and ``ttl#<shard>#0..0`` .. ``ttl#<shard>#<now>`` selects everything
due.

A qualifier has at most one live schedule: every write cancels the
schedule its Reference Key points at before installing a new one.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass

import xxhash

from cellttl.tablestore import KeyRange, RowDeletion, RowWrite, TableStore
from cellttl.validation import QUALIFIER_SEPARATOR

logger = logging.getLogger(__name__)

METADATA_FAMILY = "metadata"
SCHEDULE_PREFIX = "ttl"
REFERENCE_COLUMN = "ttl"

# Sentinel returned by remaining() when a cell has no schedule.
NO_TTL = -1

# Schedule keys carry the expiry zero-padded to this many digits so that
# string order matches time order. Later expiries are clamped.
EXPIRY_DIGITS = 16
MAX_EXPIRE_AT_MS = 10**EXPIRY_DIGITS - 1


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CellRef:
    """A cell addressed by family, row and column."""

    family: str
    row: str
    column: str

    @property
    def qualifier(self) -> str:
        return QUALIFIER_SEPARATOR.join((self.family, self.row, self.column))


def make_qualifier(family: str, row: str, column: str) -> str:
    """Build the fully-qualified cell identifier used in TTL bookkeeping."""
    return CellRef(family, row, column).qualifier


def parse_qualifier(qualifier: str) -> CellRef:
    """Split a qualifier back into family, row and column.

    Family and column never contain the separator; the row may.

    Raises:
        ValueError: If the qualifier has fewer than three parts.
    """
    family, sep, rest = qualifier.partition(QUALIFIER_SEPARATOR)
    row, sep2, column = rest.rpartition(QUALIFIER_SEPARATOR)
    if not sep or not sep2:
        raise ValueError(f"Malformed qualifier: {qualifier!r}")
    return CellRef(family, row, column)


def _schedule_key(shard: int, expire_at_ms: int) -> str:
    sep = QUALIFIER_SEPARATOR
    return f"{SCHEDULE_PREFIX}{sep}{shard}{sep}{expire_at_ms:0{EXPIRY_DIGITS}d}"


def parse_schedule_key(key: str) -> tuple[int, int]:
    """Return ``(shard, expire_at_ms)`` encoded in a schedule key.

    Raises:
        ValueError: If the key is not a schedule key.
    """
    prefix, shard, expire_at = key.split(QUALIFIER_SEPARATOR)
    if prefix != SCHEDULE_PREFIX:
        raise ValueError(f"Not a schedule key: {key!r}")
    return int(shard), int(expire_at)


class TTLIndex:
    """Schedules, cancels and discovers cell expirations.

    Attributes:
        store: The table store holding the metadata table.
        metadata_table: Name of the metadata table.
        shard_count: Number of independent schedule ranges.
        hash_seed: Seed of the shard hash.
    """

    def __init__(
        self,
        store: TableStore,
        metadata_table: str,
        shard_count: int = 3,
        hash_seed: int = 0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.metadata_table = metadata_table
        self.shard_count = shard_count
        self.hash_seed = hash_seed
        self._clock = clock

    # -- Keys ------------------------------------------------------------------

    def shard_for(self, expire_at_ms: int) -> int:
        digest = xxhash.xxh32_intdigest(str(expire_at_ms).encode("utf-8"), seed=self.hash_seed)
        return digest % self.shard_count

    def key_for(self, expire_at_ms: int) -> str:
        expire_at_ms = min(expire_at_ms, MAX_EXPIRE_AT_MS)
        shard = self.shard_for(expire_at_ms)
        return _schedule_key(shard, expire_at_ms)

    def schedule_key(self, ttl_seconds: float) -> str:
        """Compute the schedule key for a TTL starting now."""
        return self.key_for(self._clock() + int(ttl_seconds * 1000))

    def due_ranges(self, now: int | None = None) -> list[KeyRange]:
        """One key range per shard covering every schedule due by ``now``."""
        if now is None:
            now = self._clock()
        return [
            KeyRange(start=_schedule_key(shard, 0), end=_schedule_key(shard, now))
            for shard in range(self.shard_count)
        ]

    # -- Schedule bookkeeping --------------------------------------------------

    async def references(self, qualifiers: Iterable[str]) -> dict[str, str]:
        """Read the current schedule key of each qualifier that has one."""
        keys = sorted(set(qualifiers))
        if not keys:
            return {}
        result: dict[str, str] = {}
        async for row in self.store.scan(self.metadata_table, keys=keys):
            raw = row.family(METADATA_FAMILY).get(REFERENCE_COLUMN)
            if raw is not None:
                result[row.key] = raw.decode("utf-8")
        return result

    async def cancel(self, qualifiers: Iterable[str]) -> None:
        """Remove the active schedule of every qualifier.

        Deletes the qualifier's column from the schedule row its Reference
        Key points at, and the Reference Key itself.
        """
        refs = await self.references(qualifiers)
        if not refs:
            return

        by_schedule: dict[str, list[tuple[str, str]]] = defaultdict(list)
        for qualifier, schedule_key in refs.items():
            by_schedule[schedule_key].append((METADATA_FAMILY, qualifier))

        deletions = [RowDeletion(key=key, columns=cols) for key, cols in by_schedule.items()]
        deletions.extend(RowDeletion(key=qualifier) for qualifier in refs)
        await self.store.bulk_delete(self.metadata_table, deletions)
        logger.debug("Cancelled %d schedules in %s", len(refs), self.metadata_table)

    def _install_writes(self, schedules: dict[str, list[str]], ttls: dict[str, float]) -> list[RowWrite]:
        writes: list[RowWrite] = []
        for schedule_key, qualifiers in schedules.items():
            ttl = str(ttls[schedule_key]).encode("utf-8")
            writes.append(
                RowWrite(
                    key=schedule_key,
                    family=METADATA_FAMILY,
                    cells={qualifier: ttl for qualifier in qualifiers},
                )
            )
            writes.extend(
                RowWrite(
                    key=qualifier,
                    family=METADATA_FAMILY,
                    cells={REFERENCE_COLUMN: schedule_key.encode("utf-8")},
                )
                for qualifier in qualifiers
            )
        return writes

    async def install(self, qualifiers: list[str], schedule_key: str, ttl_seconds: float) -> None:
        """Record ``qualifiers`` under ``schedule_key`` and point their Reference Keys at it."""
        if not qualifiers:
            return
        writes = self._install_writes({schedule_key: list(qualifiers)}, {schedule_key: ttl_seconds})
        await self.store.bulk_write(self.metadata_table, writes)

    async def reschedule(self, qualifiers: list[str], ttl_seconds: float | None) -> None:
        """Cancel any previous schedule, then install a new one if a TTL is given."""
        await self.cancel(qualifiers)
        if ttl_seconds:
            await self.install(qualifiers, self.schedule_key(ttl_seconds), ttl_seconds)

    async def bulk_reschedule(self, schedules: dict[str, float | None]) -> None:
        """Reschedule many qualifiers with one cancel and one write.

        Args:
            schedules: Mapping of qualifier -> TTL seconds, or None to only
                cancel the existing schedule.
        """
        await self.cancel(schedules)

        key_by_ttl: dict[float, str] = {}
        grouped: dict[str, list[str]] = defaultdict(list)
        ttls: dict[str, float] = {}
        for qualifier, ttl in schedules.items():
            if not ttl:
                continue
            if ttl not in key_by_ttl:
                key_by_ttl[ttl] = self.schedule_key(ttl)
            schedule_key = key_by_ttl[ttl]
            grouped[schedule_key].append(qualifier)
            ttls[schedule_key] = ttl

        if grouped:
            await self.store.bulk_write(self.metadata_table, self._install_writes(grouped, ttls))

    async def remaining(self, qualifier: str) -> int:
        """Seconds until ``qualifier`` expires, 0 if overdue, ``NO_TTL`` if unscheduled."""
        raw = await self.store.read_cell(
            self.metadata_table, qualifier, METADATA_FAMILY, REFERENCE_COLUMN
        )
        if raw is None:
            return NO_TTL
        _, expire_at = parse_schedule_key(raw.decode("utf-8"))
        return max(0, round((expire_at - self._clock()) / 1000))

    async def due(self, limit: int) -> list[tuple[str, list[str]]]:
        """Find schedule rows due by now.

        Returns:
            ``(schedule_key, qualifiers)`` pairs, at most ``limit`` rows
            across all shards.
        """
        result: list[tuple[str, list[str]]] = []
        async for row in self.store.scan(
            self.metadata_table, ranges=self.due_ranges(), limit=limit
        ):
            result.append((row.key, list(row.family(METADATA_FAMILY))))
        return result
