"""Google Cloud Bigtable table store for cellttl.

Data operations go through ``BigtableDataClientAsync``. Instance and table
administration uses the synchronous admin client from a worker thread, since
it is only called during initialization and clean-up.

Row keys and qualifiers are UTF-8 encoded. Only the latest version of each
cell is read (``CellsColumnLimitFilter(1)``), so ``max_versions`` greater
than one keeps history in Bigtable without changing what callers see.

Credentials are resolved from ``credentials_file`` when set, otherwise via
Application Default Credentials. ``BIGTABLE_EMULATOR_HOST`` is honored by
the library; the emulator has no instance admin API, so the instance check
is skipped when it is set.
"""

import asyncio
import datetime
import logging
import os
from collections.abc import AsyncIterator
from typing import Any

from cellttl.errors import InitializationError
from cellttl.tablestore.models import KeyRange, RowData, RowDeletion, RowWrite

logger = logging.getLogger(__name__)

_EMULATOR_ENV = "BIGTABLE_EMULATOR_HOST"


def _encode(text: str) -> bytes:
    return text.encode("utf-8")


def _decode(raw: bytes | str) -> str:
    return raw if isinstance(raw, str) else raw.decode("utf-8")


def _row_family(row: Any, family: str) -> dict[str, bytes]:
    """Collect the latest value of every column of one family of a Row."""
    result: dict[str, bytes] = {}
    for cell in row.cells:
        if cell.family != family:
            continue
        qualifier = _decode(cell.qualifier)
        # Cells arrive newest first within a column.
        result.setdefault(qualifier, cell.value)
    return result


def _row_data(row: Any) -> RowData:
    data = RowData(key=_decode(row.row_key))
    for cell in row.cells:
        data.cells.setdefault(cell.family, {}).setdefault(_decode(cell.qualifier), cell.value)
    return data


class BigtableTableStore:
    """Table store backed by a Google Cloud Bigtable instance.

    Attributes:
        project: The GCP project ID.
        instance_id: The Bigtable instance ID.
        credentials_file: Optional service-account JSON key path.
        create_instance: Whether init() creates a missing instance.
        zone: Zone for the cluster of a newly created instance.
    """

    def __init__(
        self,
        project: str,
        instance_id: str,
        credentials_file: str = "",
        create_instance: bool = True,
        zone: str = "us-central1-b",
    ) -> None:
        self.project = project
        self.instance_id = instance_id
        self.credentials_file = credentials_file
        self.create_instance = create_instance
        self.zone = zone
        self._admin: Any = None
        self._instance: Any = None
        self._data: Any = None
        self._tables: dict[str, Any] = {}

    def _credentials(self) -> Any:
        if not self.credentials_file:
            return None
        from google.oauth2 import service_account

        return service_account.Credentials.from_service_account_file(self.credentials_file)

    async def init(self) -> None:
        """Create the admin and data clients and make sure the instance exists.

        Raises:
            InitializationError: If the instance is missing and cannot be created.
        """
        from google.cloud import bigtable
        from google.cloud.bigtable.data import BigtableDataClientAsync

        kwargs: dict[str, Any] = {}
        if self.project:
            kwargs["project"] = self.project
        credentials = self._credentials()
        if credentials is not None:
            kwargs["credentials"] = credentials

        self._admin = bigtable.Client(admin=True, **kwargs)
        self._instance = self._admin.instance(self.instance_id)

        if not os.environ.get(_EMULATOR_ENV):
            try:
                await asyncio.to_thread(self._ensure_instance)
            except Exception as e:
                self._admin.close()
                self._admin = None
                raise InitializationError(
                    f"Cannot prepare Bigtable instance '{self.instance_id}': {e}"
                ) from e

        self._data = BigtableDataClientAsync(**kwargs)
        logger.info(
            "Bigtable table store initialized: project=%s instance=%s",
            self.project or "default",
            self.instance_id,
        )

    def _ensure_instance(self) -> None:
        if self._instance.exists():
            return
        if not self.create_instance:
            raise InitializationError(f"Bigtable instance not found: {self.instance_id}")

        from google.cloud.bigtable import enums

        instance = self._admin.instance(
            self.instance_id,
            instance_type=enums.Instance.Type.DEVELOPMENT,
        )
        cluster = instance.cluster(
            f"{self.instance_id}-c1",
            location_id=self.zone,
            default_storage_type=enums.StorageType.SSD,
        )
        instance.create(clusters=[cluster]).result(timeout=300)
        self._instance = instance
        logger.info("Created Bigtable instance %s in %s", self.instance_id, self.zone)

    async def close(self) -> None:
        """Close the data and admin clients."""
        self._tables.clear()
        if self._data is not None:
            await self._data.close()
            self._data = None
        if self._admin is not None:
            self._admin.close()
            self._admin = None

    def _table(self, table: str) -> Any:
        if self._data is None:
            raise InitializationError("Bigtable table store is not initialized")
        handle = self._tables.get(table)
        if handle is None:
            handle = self._data.get_table(self.instance_id, table)
            self._tables[table] = handle
        return handle

    @staticmethod
    def _latest_only() -> Any:
        from google.cloud.bigtable.data import row_filters

        return row_filters.CellsColumnLimitFilter(1)

    # -- Table administration --------------------------------------------------

    async def ensure_table(
        self,
        table: str,
        families: list[str],
        max_versions: int = 1,
        max_age_seconds: int | None = None,
    ) -> None:
        await asyncio.to_thread(
            self._ensure_table_sync, table, families, max_versions, max_age_seconds
        )

    def _ensure_table_sync(
        self,
        table: str,
        families: list[str],
        max_versions: int,
        max_age_seconds: int | None,
    ) -> None:
        from google.cloud.bigtable import column_family

        gc_rule: Any = column_family.MaxVersionsGCRule(max_versions)
        if max_age_seconds:
            gc_rule = column_family.GCRuleUnion(
                rules=[
                    gc_rule,
                    column_family.MaxAgeGCRule(datetime.timedelta(seconds=max_age_seconds)),
                ]
            )

        admin_table = self._instance.table(table)
        if not admin_table.exists():
            admin_table.create(column_families={family: gc_rule for family in families})
            logger.info("Created table %s with families %s", table, families)
            return

        existing = admin_table.list_column_families()
        for family in families:
            if family not in existing:
                admin_table.column_family(family, gc_rule=gc_rule).create()
                logger.info("Created column family %s:%s", table, family)

    async def delete_table(self, table: str) -> None:
        handle = self._tables.pop(table, None)
        if handle is not None:
            await handle.close()
        await asyncio.to_thread(self._delete_table_sync, table)

    def _delete_table_sync(self, table: str) -> None:
        admin_table = self._instance.table(table)
        if admin_table.exists():
            admin_table.delete()
            logger.info("Deleted table %s", table)

    # -- Reads -----------------------------------------------------------------

    async def row_exists(self, table: str, key: str) -> bool:
        return await self._table(table).row_exists(_encode(key))

    async def read_row(self, table: str, key: str, family: str) -> dict[str, bytes] | None:
        row = await self._table(table).read_row(_encode(key), row_filter=self._latest_only())
        if row is None:
            return None
        return _row_family(row, family) or None

    async def read_cell(self, table: str, key: str, family: str, column: str) -> bytes | None:
        columns = await self.read_row(table, key, family)
        if columns is None:
            return None
        return columns.get(column)

    async def scan(
        self,
        table: str,
        ranges: list[KeyRange] | None = None,
        keys: list[str] | None = None,
        limit: int | None = None,
    ) -> AsyncIterator[RowData]:
        from google.cloud.bigtable.data import ReadRowsQuery, RowRange

        if (ranges is not None or keys is not None) and not ranges and not keys:
            return

        query = ReadRowsQuery(
            row_keys=[_encode(key) for key in keys] if keys else None,
            row_ranges=[
                RowRange(start_key=_encode(r.start), end_key=_encode(r.end))
                for r in ranges
            ] if ranges else None,
            limit=limit,
            row_filter=self._latest_only(),
        )
        stream = await self._table(table).read_rows_stream(query)
        async for row in stream:
            yield _row_data(row)

    # -- Writes ----------------------------------------------------------------

    async def write_cells(self, table: str, key: str, family: str, cells: dict[str, bytes]) -> None:
        from google.cloud.bigtable.data import SetCell

        if not cells:
            return
        await self._table(table).mutate_row(
            _encode(key),
            [SetCell(family, _encode(column), value) for column, value in cells.items()],
        )

    async def bulk_write(self, table: str, writes: list[RowWrite]) -> None:
        from google.cloud.bigtable.data import RowMutationEntry, SetCell

        entries = [
            RowMutationEntry(
                _encode(write.key),
                [SetCell(write.family, _encode(column), value) for column, value in write.cells.items()],
            )
            for write in writes
            if write.cells
        ]
        if entries:
            await self._table(table).bulk_mutate_rows(entries)

    async def increment(
        self, table: str, key: str, family: str, deltas: dict[str, int]
    ) -> dict[str, int]:
        from google.cloud.bigtable.data.read_modify_write_rules import IncrementRule

        from cellttl.serialization import decode_counter

        row = await self._table(table).read_modify_write_row(
            _encode(key),
            [IncrementRule(family, _encode(column), delta) for column, delta in deltas.items()],
        )
        columns = _row_family(row, family)
        return {column: decode_counter(columns[column]) for column in deltas if column in columns}

    async def append(
        self, table: str, key: str, family: str, suffixes: dict[str, bytes]
    ) -> dict[str, bytes]:
        from google.cloud.bigtable.data.read_modify_write_rules import AppendValueRule

        if not suffixes:
            return {}
        row = await self._table(table).read_modify_write_row(
            _encode(key),
            [AppendValueRule(family, _encode(column), suffix) for column, suffix in suffixes.items()],
        )
        columns = _row_family(row, family)
        return {column: columns[column] for column in suffixes if column in columns}

    # -- Deletes ---------------------------------------------------------------

    async def delete_cells(self, table: str, key: str, family: str, columns: list[str]) -> None:
        from google.cloud.bigtable.data import DeleteRangeFromColumn

        if not columns:
            return
        await self._table(table).mutate_row(
            _encode(key),
            [DeleteRangeFromColumn(family, _encode(column)) for column in columns],
        )

    async def delete_row(self, table: str, key: str) -> None:
        from google.cloud.bigtable.data import DeleteAllFromRow

        await self._table(table).mutate_row(_encode(key), [DeleteAllFromRow()])

    async def bulk_delete(self, table: str, deletions: list[RowDeletion]) -> None:
        from google.cloud.bigtable.data import (
            DeleteAllFromRow,
            DeleteRangeFromColumn,
            RowMutationEntry,
        )

        entries = []
        for deletion in deletions:
            if deletion.columns:
                mutations = [
                    DeleteRangeFromColumn(family, _encode(column))
                    for family, column in deletion.columns
                ]
            else:
                mutations = [DeleteAllFromRow()]
            entries.append(RowMutationEntry(_encode(deletion.key), mutations))
        if entries:
            await self._table(table).bulk_mutate_rows(entries)
