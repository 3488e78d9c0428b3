"""Approximate per-table row counter.

The counter lives in the metadata table under row ``counts``, column
``count``. It moves by +1 when a write creates a row and by -1 when a
delete removes a row's last cell. Existence checks and mutations are not
atomic together, so concurrent writers to the same new row may both count
it; the value is an approximation.
"""

import logging
from collections.abc import Awaitable, Callable, Iterable

from cellttl.serialization import decode_counter
from cellttl.tablestore import TableStore
from cellttl.ttl_index import METADATA_FAMILY

logger = logging.getLogger(__name__)

COUNT_ROW = "counts"
COUNT_COLUMN = "count"


class CountRegister:
    """Existence-guarded row counter for one table.

    Attributes:
        store: The table store holding both tables.
        table: The data table whose rows are counted.
        metadata_table: The table holding the counter cell.
        enabled: When False every hook is a no-op and read() returns 0.
    """

    def __init__(
        self,
        store: TableStore,
        table: str,
        metadata_table: str,
        enabled: bool = True,
    ) -> None:
        self.store = store
        self.table = table
        self.metadata_table = metadata_table
        self.enabled = enabled

    async def _add(self, delta: int) -> None:
        if delta == 0:
            return
        await self.store.increment(
            self.metadata_table, COUNT_ROW, METADATA_FAMILY, {COUNT_COLUMN: delta}
        )

    async def _missing(self, rows: Iterable[str]) -> set[str]:
        keys = sorted(set(rows))
        if not keys:
            return set()
        present = {row.key async for row in self.store.scan(self.table, keys=keys)}
        return set(keys) - present

    async def on_write(self, row: str) -> None:
        """Count ``row`` if it does not exist yet. Await before writing it."""
        if not self.enabled:
            return
        if not await self.store.row_exists(self.table, row):
            await self._add(1)

    async def on_delete(self, row: str, deletion: Callable[[], Awaitable[None]]) -> None:
        """Run ``deletion`` and uncount ``row`` if it removed the row's last cell."""
        if not self.enabled:
            await deletion()
            return
        existed = await self.store.row_exists(self.table, row)
        await deletion()
        if existed and not await self.store.row_exists(self.table, row):
            await self._add(-1)

    async def on_bulk_write(self, rows: Iterable[str]) -> None:
        """Count every distinct row of a batch that does not exist yet."""
        if not self.enabled:
            return
        await self._add(len(await self._missing(rows)))

    async def on_bulk_delete(self, rows: Iterable[str]) -> None:
        """Uncount rows that no longer exist after a batched deletion.

        ``rows`` must be rows known to have existed before the deletion.
        """
        if not self.enabled:
            return
        gone = await self._missing(rows)
        if gone:
            logger.debug("Rows emptied in %s: %d", self.table, len(gone))
        await self._add(-len(gone))

    async def read(self) -> int:
        """Return the counter value, or 0 if unset or disabled."""
        if not self.enabled:
            return 0
        raw = await self.store.read_cell(
            self.metadata_table, COUNT_ROW, METADATA_FAMILY, COUNT_COLUMN
        )
        if raw is None:
            return 0
        return decode_counter(raw)
