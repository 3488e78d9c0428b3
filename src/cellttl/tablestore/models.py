"""Data model types for cellttl table stores.

These dataclasses describe the rows, writes, deletions and key ranges
exchanged between the TTL core and a table store adapter.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class KeyRange:
    """A lexicographic row-key range.

    Attributes:
        start: Inclusive start key.
        end: Exclusive end key.
    """

    start: str
    end: str

    def contains(self, key: str) -> bool:
        return self.start <= key < self.end


@dataclass
class RowData:
    """A row returned by a scan.

    Attributes:
        key: The row key.
        cells: Mapping of family -> column -> raw value.
    """

    key: str
    cells: dict[str, dict[str, bytes]] = field(default_factory=dict)

    def family(self, name: str) -> dict[str, bytes]:
        """Return the columns of one family (empty if the family is absent)."""
        return self.cells.get(name, {})

    def has_cell(self, family: str, column: str) -> bool:
        return column in self.cells.get(family, {})


@dataclass
class RowWrite:
    """Cells to set on one row in a bulk write.

    Attributes:
        key: The row key.
        family: Column family the cells belong to.
        cells: Mapping of column -> raw value.
    """

    key: str
    family: str
    cells: dict[str, bytes] = field(default_factory=dict)


@dataclass
class RowDeletion:
    """A deletion in a bulk delete.

    Attributes:
        key: The row key.
        columns: ``(family, column)`` pairs to delete. Empty deletes the
            whole row.
    """

    key: str
    columns: list[tuple[str, str]] = field(default_factory=list)
