"""Cell value serialization for cellttl.

Table stores hold raw bytes. Values written through the client are encoded
as follows:

- ``str`` is stored as UTF-8 text, unless the text would itself parse as
  JSON (``"1.0"``, ``"true"``, ``"[1]"``). Those are JSON-encoded so they
  read back as strings rather than numbers or lists.
- ``bytes`` are stored unchanged.
- Everything else (numbers, booleans, dicts, lists) is JSON-encoded.

Counter cells written by atomic increments hold 64-bit big-endian signed
integers, the representation Bigtable's read-modify-write uses.
"""

from __future__ import annotations

import json
import struct
from dataclasses import dataclass
from typing import Any, Literal

COUNTER_WIDTH = 8

_COUNTER = struct.Struct(">q")


@dataclass(frozen=True)
class StoredValue:
    """A decoded cell value tagged with how it was stored.

    Attributes:
        kind: ``counter`` for 64-bit integers written by increments,
            ``json`` for JSON-encoded values, ``text`` for raw strings.
        value: The decoded Python value.
    """

    kind: Literal["counter", "json", "text"]
    value: Any


def encode_counter(value: int) -> bytes:
    """Encode an integer as a 64-bit big-endian counter cell."""
    return _COUNTER.pack(value)


def decode_counter(raw: bytes) -> int:
    """Decode a 64-bit big-endian counter cell.

    Raises:
        struct.error: If ``raw`` is not exactly 8 bytes.
    """
    return _COUNTER.unpack(raw)[0]


def _looks_like_counter(raw: bytes) -> bool:
    if len(raw) != COUNTER_WIDTH:
        return False
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        return True
    return any(ord(ch) < 0x20 and ch not in "\t\n\r" for ch in text)


def _parses_as_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def encode_value(value: Any, default_value: str = "") -> bytes:
    """Encode a Python value into the bytes stored in a cell.

    Args:
        value: The value to store. ``None`` stores ``default_value``.
        default_value: Text stored in place of ``None``.

    Returns:
        The encoded cell bytes.

    Raises:
        TypeError: If the value is not JSON serializable.
    """
    if value is None:
        value = default_value
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        if _parses_as_json(value):
            return json.dumps(value).encode("utf-8")
        return value.encode("utf-8")
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


def decode_stored(raw: bytes) -> StoredValue:
    """Decode cell bytes into a tagged ``StoredValue``."""
    if _looks_like_counter(raw):
        return StoredValue("counter", decode_counter(raw))
    text = raw.decode("utf-8", errors="replace")
    try:
        return StoredValue("json", json.loads(text))
    except ValueError:
        return StoredValue("text", text)


def decode_value(raw: bytes | None) -> Any:
    """Decode cell bytes into a Python value, or ``None`` for a missing cell."""
    if raw is None:
        return None
    return decode_stored(raw).value
