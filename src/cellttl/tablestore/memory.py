"""In-memory table store for cellttl.

Useful for testing and ephemeral deployments. Data is lost on restart.
Rows that lose their last cell are dropped, matching Bigtable.
"""

import logging
from collections.abc import AsyncIterator

from cellttl.errors import TableStoreError
from cellttl.serialization import COUNTER_WIDTH, decode_counter, encode_counter
from cellttl.tablestore.models import KeyRange, RowData, RowDeletion, RowWrite

logger = logging.getLogger(__name__)

# table -> row key -> family -> column -> value
_Rows = dict[str, dict[str, dict[str, bytes]]]


class MemoryTableStore:
    """In-memory table store using Python dicts.

    Only the latest version of a cell is kept; ``max_versions`` and
    ``max_age_seconds`` are recorded but not enforced.
    """

    def __init__(self) -> None:
        self._tables: dict[str, _Rows] = {}
        self._families: dict[str, set[str]] = {}
        self._options: dict[str, dict[str, int | None]] = {}

    async def init(self) -> None:
        logger.info("Memory table store initialized")

    async def close(self) -> None:
        self._tables.clear()
        self._families.clear()
        self._options.clear()

    def _rows(self, table: str) -> _Rows:
        try:
            return self._tables[table]
        except KeyError:
            raise TableStoreError(f"Table not found: {table}") from None

    def _check_family(self, table: str, family: str) -> None:
        if family not in self._families.get(table, set()):
            raise TableStoreError(f"Column family not found: {table}:{family}")

    def _prune(self, rows: _Rows, key: str) -> None:
        row = rows.get(key)
        if row is None:
            return
        for family in [f for f, cols in row.items() if not cols]:
            del row[family]
        if not row:
            del rows[key]

    # -- Table administration --------------------------------------------------

    async def ensure_table(
        self,
        table: str,
        families: list[str],
        max_versions: int = 1,
        max_age_seconds: int | None = None,
    ) -> None:
        self._tables.setdefault(table, {})
        self._families.setdefault(table, set()).update(families)
        self._options[table] = {
            "max_versions": max_versions,
            "max_age_seconds": max_age_seconds,
        }

    async def delete_table(self, table: str) -> None:
        self._tables.pop(table, None)
        self._families.pop(table, None)
        self._options.pop(table, None)

    def table_exists(self, table: str) -> bool:
        return table in self._tables

    # -- Reads -----------------------------------------------------------------

    async def row_exists(self, table: str, key: str) -> bool:
        return key in self._rows(table)

    async def read_row(self, table: str, key: str, family: str) -> dict[str, bytes] | None:
        row = self._rows(table).get(key)
        if row is None or not row.get(family):
            return None
        return dict(row[family])

    async def read_cell(self, table: str, key: str, family: str, column: str) -> bytes | None:
        row = self._rows(table).get(key)
        if row is None:
            return None
        return row.get(family, {}).get(column)

    async def scan(
        self,
        table: str,
        ranges: list[KeyRange] | None = None,
        keys: list[str] | None = None,
        limit: int | None = None,
    ) -> AsyncIterator[RowData]:
        rows = self._rows(table)
        wanted = set(keys) if keys is not None else None

        yielded = 0
        for key in sorted(rows):
            if limit is not None and yielded >= limit:
                return
            if ranges is not None or wanted is not None:
                in_range = ranges is not None and any(r.contains(key) for r in ranges)
                in_keys = wanted is not None and key in wanted
                if not (in_range or in_keys):
                    continue
            row = rows.get(key)
            if row is None:
                continue
            yielded += 1
            yield RowData(
                key=key,
                cells={family: dict(cols) for family, cols in row.items()},
            )

    # -- Writes ----------------------------------------------------------------

    async def write_cells(self, table: str, key: str, family: str, cells: dict[str, bytes]) -> None:
        rows = self._rows(table)
        self._check_family(table, family)
        if not cells:
            return
        rows.setdefault(key, {}).setdefault(family, {}).update(cells)

    async def bulk_write(self, table: str, writes: list[RowWrite]) -> None:
        rows = self._rows(table)
        for write in writes:
            self._check_family(table, write.family)
        for write in writes:
            if write.cells:
                rows.setdefault(write.key, {}).setdefault(write.family, {}).update(write.cells)

    async def increment(
        self, table: str, key: str, family: str, deltas: dict[str, int]
    ) -> dict[str, int]:
        rows = self._rows(table)
        self._check_family(table, family)
        columns = rows.get(key, {}).get(family, {})

        current: dict[str, int] = {}
        for column in deltas:
            raw = columns.get(column)
            if raw is None:
                current[column] = 0
            elif len(raw) != COUNTER_WIDTH:
                raise TableStoreError(
                    f"Cannot increment non-counter cell {table}:{key}:{family}:{column}"
                )
            else:
                current[column] = decode_counter(raw)

        result = {column: current[column] + delta for column, delta in deltas.items()}
        target = rows.setdefault(key, {}).setdefault(family, {})
        for column, value in result.items():
            target[column] = encode_counter(value)
        return result

    async def append(
        self, table: str, key: str, family: str, suffixes: dict[str, bytes]
    ) -> dict[str, bytes]:
        rows = self._rows(table)
        self._check_family(table, family)
        if not suffixes:
            return {}
        target = rows.setdefault(key, {}).setdefault(family, {})
        for column, suffix in suffixes.items():
            target[column] = target.get(column, b"") + suffix
        return {column: target[column] for column in suffixes}

    # -- Deletes ---------------------------------------------------------------

    async def delete_cells(self, table: str, key: str, family: str, columns: list[str]) -> None:
        rows = self._rows(table)
        row = rows.get(key)
        if row is None:
            return
        family_cells = row.get(family, {})
        for column in columns:
            family_cells.pop(column, None)
        self._prune(rows, key)

    async def delete_row(self, table: str, key: str) -> None:
        self._rows(table).pop(key, None)

    async def bulk_delete(self, table: str, deletions: list[RowDeletion]) -> None:
        rows = self._rows(table)
        for deletion in deletions:
            if not deletion.columns:
                rows.pop(deletion.key, None)
                continue
            row = rows.get(deletion.key)
            if row is None:
                continue
            for family, column in deletion.columns:
                row.get(family, {}).pop(column, None)
            self._prune(rows, deletion.key)
