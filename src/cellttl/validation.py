"""Name validation helpers for cellttl.

TTL bookkeeping identifies a cell by the qualifier ``<family>#<row>#<column>``
and stores schedules in rows keyed ``ttl#<shard>#<expireAtMs>``. These checks
keep names from making either form ambiguous. Each function raises
``InvalidName`` on invalid input.
"""

import re

from cellttl.errors import InvalidName

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

QUALIFIER_SEPARATOR = "#"

# Bigtable table IDs: 1-50 characters of [_a-zA-Z0-9][-_.a-zA-Z0-9]*
_TABLE_RE = re.compile(r"^[_a-zA-Z0-9][-_.a-zA-Z0-9]{0,49}$")

# Bigtable column family names: 1-64 characters of [_a-zA-Z0-9][-_.a-zA-Z0-9]*
_FAMILY_RE = re.compile(r"^[_a-zA-Z0-9][-_.a-zA-Z0-9]{0,63}$")

# "ttl" would let reference keys collide with schedule rows in the
# metadata table.
_RESERVED_FAMILIES = frozenset({"ttl"})

_MAX_ROW_KEY_BYTES = 4096


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_table_name(name: str) -> None:
    """Validate a table name.

    Raises:
        InvalidName: If the name is empty or uses unsupported characters.
    """
    if not _TABLE_RE.match(name or ""):
        raise InvalidName("table", name)


def validate_family_name(name: str) -> None:
    """Validate a column family name.

    Raises:
        InvalidName: If the name is malformed or reserved.
    """
    if not _FAMILY_RE.match(name or ""):
        raise InvalidName("column family", name)
    if name in _RESERVED_FAMILIES:
        raise InvalidName("column family", name, "reserved")


def validate_column_name(name: str) -> None:
    """Validate a column qualifier.

    Raises:
        InvalidName: If the name is empty or contains the qualifier separator.
    """
    if not name:
        raise InvalidName("column", name, "empty")
    if QUALIFIER_SEPARATOR in name:
        raise InvalidName("column", name, f"contains '{QUALIFIER_SEPARATOR}'")


def validate_row_key(key: str) -> None:
    """Validate a row key.

    Row keys may contain the qualifier separator; the family and column
    parts of a qualifier never do, so the row part is recovered unambiguously.

    Raises:
        InvalidName: If the key is empty or too long.
    """
    if not key:
        raise InvalidName("row", key, "empty")
    if len(key.encode("utf-8")) > _MAX_ROW_KEY_BYTES:
        raise InvalidName("row", key[:32], f"longer than {_MAX_ROW_KEY_BYTES} bytes")
