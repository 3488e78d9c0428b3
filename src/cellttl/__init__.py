"""cellttl: cell-level TTL expiration and approximate row counts for column-family stores."""

from cellttl.client import BulkItem, TableClient
from cellttl.config import CellTTLConfig, TableConfig, load_config
from cellttl.errors import (
    BulkLimitExceeded,
    CellTTLError,
    InitializationError,
    InvalidName,
    TableStoreError,
)
from cellttl.events import ExpirationEvent
from cellttl.factory import TableFactory

__version__ = "0.1.0"

__all__ = [
    "BulkItem",
    "BulkLimitExceeded",
    "CellTTLConfig",
    "CellTTLError",
    "ExpirationEvent",
    "InitializationError",
    "InvalidName",
    "TableClient",
    "TableConfig",
    "TableFactory",
    "TableStoreError",
    "load_config",
]
