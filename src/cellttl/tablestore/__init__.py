"""Table store adapters for cellttl."""

from typing import TYPE_CHECKING

from cellttl.tablestore.models import KeyRange, RowData, RowDeletion, RowWrite
from cellttl.tablestore.store import TableStore

if TYPE_CHECKING:
    from cellttl.config import StoreConfig

__all__ = [
    "create_table_store",
    "KeyRange",
    "RowData",
    "RowDeletion",
    "RowWrite",
    "TableStore",
]


def create_table_store(config: "StoreConfig") -> TableStore:
    """Create a table store instance based on configuration.

    Args:
        config: The store configuration.

    Returns:
        A table store instance implementing the TableStore protocol.

    Raises:
        ValueError: If the backend is unknown or required config is missing.
    """
    backend = config.backend

    if backend == "memory":
        from cellttl.tablestore.memory import MemoryTableStore

        return MemoryTableStore()

    elif backend == "sqlite":
        from cellttl.tablestore.sqlite import SQLiteTableStore

        return SQLiteTableStore(config.sqlite_path)

    elif backend == "bigtable":
        from cellttl.tablestore.bigtable import BigtableTableStore

        if not config.instance:
            raise ValueError("store.bigtable.instance is required when backend is 'bigtable'")
        return BigtableTableStore(
            project=config.project,
            instance_id=config.instance,
            credentials_file=config.credentials_file,
            create_instance=config.create_instance,
            zone=config.zone,
        )

    else:
        raise ValueError(f"Unknown table store backend: {backend}")
