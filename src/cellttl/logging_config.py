"""Logging setup for applications embedding cellttl.

cellttl modules log through ``logging.getLogger(__name__)`` and never
install handlers themselves. An application that wants cellttl's output
formatted calls ``configure_logging`` (or ``configure_from`` with the
``logging`` section of a loaded config) once at startup.

Reaper and client records attach structured extras (``table``,
``deleted``, ``duration_ms``, ...) which ``JSONFormatter`` emits as
top-level keys.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, TYPE_CHECKING

if TYPE_CHECKING:
    from cellttl.config import LoggingConfig

_EXTRA_FIELDS = ("table", "shard_key", "row", "column", "deleted", "duration_ms")

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

FORMATS = ("text", "json")


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects.

    Fields: timestamp, level, logger, message, any cellttl extras present
    on the record, and exception when one is attached.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, getattr(record, key))
            for key in _EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _formatter(fmt: str) -> logging.Formatter:
    if fmt == "json":
        return JSONFormatter()
    if fmt == "text":
        return logging.Formatter(_TEXT_FORMAT)
    raise ValueError(f"Unknown log format {fmt!r}; expected one of {', '.join(FORMATS)}")


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    logger_name: str = "",
    stream: IO[str] | None = None,
) -> logging.Logger:
    """Replace the handlers of a logger with one stream handler.

    Args:
        level: Level name (DEBUG, INFO, ...). Unknown names fall back to INFO.
        fmt: ``text`` for human-readable lines, ``json`` for structured lines.
        logger_name: Logger to configure; the root logger when empty. Pass
            ``"cellttl"`` to format only this library's records.
        stream: Destination stream, stderr by default.

    Returns:
        The configured logger.

    Raises:
        ValueError: If ``fmt`` is not a known format.
    """
    formatter = _formatter(fmt)
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    target = logging.getLogger(logger_name or None)
    target.setLevel(numeric_level)
    for handler in target.handlers[:]:
        target.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(formatter)
    target.addHandler(handler)
    return target


def configure_from(config: LoggingConfig, logger_name: str = "") -> logging.Logger:
    """Apply the ``logging`` section of a ``CellTTLConfig``."""
    return configure_logging(config.level, config.format, logger_name=logger_name)
