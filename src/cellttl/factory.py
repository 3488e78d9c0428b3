"""Factory owning the shared table store and the clients built on it."""

from __future__ import annotations

import logging
from collections.abc import Callable

from cellttl import metrics
from cellttl.client import TableClient
from cellttl.config import CellTTLConfig, TableConfig
from cellttl.errors import InitializationError
from cellttl.tablestore import TableStore, create_table_store
from cellttl.ttl_index import now_ms

logger = logging.getLogger(__name__)


class TableFactory:
    """Creates initialized ``TableClient`` objects sharing one table store.

    Usage::

        async with TableFactory(config) as factory:
            users = await factory.get("users")
            await users.set("alice", {"plan": "pro"}, ttl=3600)

    Attributes:
        config: The full cellttl configuration.
        store: The table store, built from ``config.store`` unless injected.
    """

    def __init__(
        self,
        config: CellTTLConfig | None = None,
        store: TableStore | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.config = config or CellTTLConfig()
        self.store = store
        self._clock = clock
        self._clients: list[TableClient] = []
        self._initialized = False

    async def init(self) -> None:
        """Build and connect the table store. Idempotent.

        Raises:
            InitializationError: If the store cannot be created or reached.
        """
        if self._initialized:
            return
        try:
            if self.store is None:
                self.store = create_table_store(self.config.store)
            await self.store.init()
        except InitializationError:
            raise
        except Exception as e:
            raise InitializationError(f"Cannot initialize table store: {e}") from e

        if self.config.metrics.enabled:
            metrics.init_metrics()
        self._initialized = True
        logger.info("Table factory initialized (backend=%s)", self.config.store.backend)

    async def get(self, table: TableConfig | str, start_reaper: bool = True) -> TableClient:
        """Create and initialize a client for a table.

        Args:
            table: A table configuration, or the name of a table listed in
                ``config.tables``.
            start_reaper: Whether the client's reaper starts immediately.

        Raises:
            InitializationError: If the factory is not initialized or the
                tables cannot be prepared.
            KeyError: If a name is given that is not configured.
        """
        if not self._initialized or self.store is None:
            raise InitializationError("Table factory is not initialized")
        table_config = self.config.table(table) if isinstance(table, str) else table

        client = TableClient(
            self.store,
            table_config,
            ttl_config=self.config.ttl,
            bulk_config=self.config.bulk,
            clock=self._clock,
        )
        await client.init(start_reaper=start_reaper)
        self._clients.append(client)
        return client

    async def close(self) -> None:
        """Close every client handed out, then the table store."""
        clients, self._clients = self._clients, []
        for client in clients:
            await client.close()
        if self.store is not None and self._initialized:
            await self.store.close()
        self._initialized = False

    async def __aenter__(self) -> TableFactory:
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
