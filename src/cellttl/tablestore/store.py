"""Abstract table store protocol for cellttl."""

from typing import AsyncIterator, Protocol

from cellttl.tablestore.models import KeyRange, RowData, RowDeletion, RowWrite


class TableStore(Protocol):
    """Protocol defining the column-family table store interface.

    All adapters (in-memory, SQLite, Bigtable) must implement this
    interface. Values are raw bytes; counter cells hold 64-bit big-endian
    signed integers. A row exists exactly as long as it holds at least
    one cell. Reads of absent rows or cells return ``None``; every other
    failure is raised.
    """

    async def init(self) -> None:
        """Connect to the backing store and create the instance if needed."""
        ...

    async def close(self) -> None:
        """Release resources held by the store."""
        ...

    # -- Table administration --------------------------------------------------

    async def ensure_table(
        self,
        table: str,
        families: list[str],
        max_versions: int = 1,
        max_age_seconds: int | None = None,
    ) -> None:
        """Create a table and its column families if they do not exist.

        Args:
            table: The table name.
            families: Column families the table must have.
            max_versions: Number of cell versions kept per column.
            max_age_seconds: Optional age after which cells are garbage
                collected by the store itself.
        """
        ...

    async def delete_table(self, table: str) -> None:
        """Drop a table and all of its rows."""
        ...

    # -- Reads -----------------------------------------------------------------

    async def row_exists(self, table: str, key: str) -> bool:
        """Check whether a row holds any cell."""
        ...

    async def read_row(self, table: str, key: str, family: str) -> dict[str, bytes] | None:
        """Read every column of one family of a row.

        Returns:
            Mapping of column -> value, or None if the row has no cell in
            the family.
        """
        ...

    async def read_cell(self, table: str, key: str, family: str, column: str) -> bytes | None:
        """Read a single cell, or None if it does not exist."""
        ...

    def scan(
        self,
        table: str,
        ranges: list[KeyRange] | None = None,
        keys: list[str] | None = None,
        limit: int | None = None,
    ) -> AsyncIterator[RowData]:
        """Stream rows in key order.

        Args:
            table: The table name.
            ranges: Key ranges to include (start inclusive, end exclusive).
            keys: Explicit row keys to include.
            limit: Maximum number of rows yielded across all ranges/keys.

        Returns:
            An async iterator of matching rows. With neither ranges nor
            keys every row is scanned.
        """
        ...

    # -- Writes ----------------------------------------------------------------

    async def write_cells(self, table: str, key: str, family: str, cells: dict[str, bytes]) -> None:
        """Set one or more cells on a row."""
        ...

    async def bulk_write(self, table: str, writes: list[RowWrite]) -> None:
        """Set cells on many rows in one request."""
        ...

    async def increment(
        self, table: str, key: str, family: str, deltas: dict[str, int]
    ) -> dict[str, int]:
        """Atomically add deltas to counter cells of one row.

        Missing cells start at zero.

        Returns:
            Mapping of column -> new value.
        """
        ...

    async def append(
        self, table: str, key: str, family: str, suffixes: dict[str, bytes]
    ) -> dict[str, bytes]:
        """Atomically append bytes to cells of one row.

        Missing cells start empty.

        Returns:
            Mapping of column -> new value.
        """
        ...

    # -- Deletes ---------------------------------------------------------------

    async def delete_cells(self, table: str, key: str, family: str, columns: list[str]) -> None:
        """Delete columns of one family from a row."""
        ...

    async def delete_row(self, table: str, key: str) -> None:
        """Delete a whole row."""
        ...

    async def bulk_delete(self, table: str, deletions: list[RowDeletion]) -> None:
        """Apply many row or cell deletions in one request."""
        ...
