"""SQLite-backed table store for cellttl.

Implements the TableStore protocol using aiosqlite for async access.
Every logical table shares one ``cells`` table keyed by
(tbl, row_key, family, qualifier); a row exists while it has any cell.
Schema creation uses CREATE TABLE IF NOT EXISTS for idempotency.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from cellttl.errors import TableStoreError
from cellttl.serialization import COUNTER_WIDTH, decode_counter, encode_counter
from cellttl.tablestore.models import KeyRange, RowData, RowDeletion, RowWrite

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


class SQLiteTableStore:
    """Table store backed by a local SQLite database.

    Attributes:
        db_path: Path to the SQLite database file.
        _db: The aiosqlite connection, set after init().
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the SQLite table store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Use ':memory:' for an in-memory database (useful in tests).
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._families: dict[str, set[str]] = {}
        # Serializes read-modify-write increments issued from this process.
        self._write_lock = asyncio.Lock()

    async def init(self) -> None:
        """Open the database and create the schema if it does not exist.

        Sets WAL journal mode, NORMAL synchronous, enables foreign keys,
        and sets a 5-second busy timeout. Idempotent.
        """
        if self._db is not None:
            return
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute("PRAGMA synchronous = NORMAL")
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.execute("PRAGMA busy_timeout = 5000")

        await self._create_tables()
        await self._load_families()
        logger.info("SQLite table store initialized: %s", self.db_path)

    async def _create_tables(self) -> None:
        """Create all tables and indexes if they do not already exist."""
        assert self._db is not None

        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS tables (
                name             TEXT PRIMARY KEY,
                max_versions     INTEGER NOT NULL DEFAULT 1,
                max_age_seconds  INTEGER,
                created_at       TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS families (
                tbl     TEXT NOT NULL,
                family  TEXT NOT NULL,

                PRIMARY KEY (tbl, family),
                FOREIGN KEY (tbl) REFERENCES tables(name) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS cells (
                tbl         TEXT NOT NULL,
                row_key     TEXT NOT NULL,
                family      TEXT NOT NULL,
                qualifier   TEXT NOT NULL,
                value       BLOB NOT NULL,
                updated_at  TEXT NOT NULL,

                PRIMARY KEY (tbl, row_key, family, qualifier),
                FOREIGN KEY (tbl, family) REFERENCES families(tbl, family) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS schema_version (
                version    INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            );
        """)

        async with self._db.execute(
            "SELECT version FROM schema_version WHERE version = 1"
        ) as cursor:
            if await cursor.fetchone() is None:
                await self._db.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (1, ?)",
                    (_now_iso(),),
                )

        await self._db.commit()

    async def _load_families(self) -> None:
        assert self._db is not None
        self._families = {}
        async with self._db.execute(
            "SELECT t.name AS name, f.family AS family "
            "FROM tables t LEFT JOIN families f ON f.tbl = t.name"
        ) as cursor:
            async for row in cursor:
                families = self._families.setdefault(row["name"], set())
                if row["family"] is not None:
                    families.add(row["family"])

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _conn(self, table: str) -> aiosqlite.Connection:
        if self._db is None:
            raise TableStoreError("SQLite table store is not initialized")
        if table not in self._families:
            raise TableStoreError(f"Table not found: {table}")
        return self._db

    def _check_family(self, table: str, family: str) -> None:
        if family not in self._families.get(table, set()):
            raise TableStoreError(f"Column family not found: {table}:{family}")

    # -- Table administration --------------------------------------------------

    async def ensure_table(
        self,
        table: str,
        families: list[str],
        max_versions: int = 1,
        max_age_seconds: int | None = None,
    ) -> None:
        if self._db is None:
            raise TableStoreError("SQLite table store is not initialized")
        await self._db.execute(
            "INSERT INTO tables (name, max_versions, max_age_seconds, created_at) "
            "VALUES (?, ?, ?, ?) "
            "ON CONFLICT(name) DO UPDATE SET "
            "max_versions = excluded.max_versions, "
            "max_age_seconds = excluded.max_age_seconds",
            (table, max_versions, max_age_seconds, _now_iso()),
        )
        await self._db.executemany(
            "INSERT OR IGNORE INTO families (tbl, family) VALUES (?, ?)",
            [(table, family) for family in families],
        )
        await self._db.commit()
        self._families.setdefault(table, set()).update(families)

    async def delete_table(self, table: str) -> None:
        if self._db is None:
            raise TableStoreError("SQLite table store is not initialized")
        await self._db.execute("DELETE FROM cells WHERE tbl = ?", (table,))
        await self._db.execute("DELETE FROM families WHERE tbl = ?", (table,))
        await self._db.execute("DELETE FROM tables WHERE name = ?", (table,))
        await self._db.commit()
        self._families.pop(table, None)

    # -- Reads -----------------------------------------------------------------

    async def row_exists(self, table: str, key: str) -> bool:
        db = self._conn(table)
        async with db.execute(
            "SELECT 1 FROM cells WHERE tbl = ? AND row_key = ? LIMIT 1",
            (table, key),
        ) as cursor:
            return await cursor.fetchone() is not None

    async def read_row(self, table: str, key: str, family: str) -> dict[str, bytes] | None:
        db = self._conn(table)
        async with db.execute(
            "SELECT qualifier, value FROM cells "
            "WHERE tbl = ? AND row_key = ? AND family = ? ORDER BY qualifier",
            (table, key, family),
        ) as cursor:
            rows = await cursor.fetchall()
        if not rows:
            return None
        return {row["qualifier"]: bytes(row["value"]) for row in rows}

    async def read_cell(self, table: str, key: str, family: str, column: str) -> bytes | None:
        db = self._conn(table)
        async with db.execute(
            "SELECT value FROM cells "
            "WHERE tbl = ? AND row_key = ? AND family = ? AND qualifier = ?",
            (table, key, family, column),
        ) as cursor:
            row = await cursor.fetchone()
        return None if row is None else bytes(row["value"])

    async def scan(
        self,
        table: str,
        ranges: list[KeyRange] | None = None,
        keys: list[str] | None = None,
        limit: int | None = None,
    ) -> AsyncIterator[RowData]:
        db = self._conn(table)

        clauses: list[str] = []
        params: list[Any] = [table]
        for key_range in ranges or []:
            clauses.append("(row_key >= ? AND row_key < ?)")
            params.extend([key_range.start, key_range.end])
        if keys:
            clauses.append(f"row_key IN ({', '.join('?' for _ in keys)})")
            params.extend(keys)
        if (ranges is not None or keys is not None) and not clauses:
            return

        where = "tbl = ?"
        if clauses:
            where += f" AND ({' OR '.join(clauses)})"
        row_keys = f"SELECT DISTINCT row_key FROM cells WHERE {where} ORDER BY row_key"
        if limit is not None:
            row_keys += " LIMIT ?"
            params.append(limit)

        async with db.execute(
            "SELECT row_key, family, qualifier, value FROM cells "
            f"WHERE tbl = ? AND row_key IN ({row_keys}) "
            "ORDER BY row_key, family, qualifier",
            [table, *params],
        ) as cursor:
            rows = await cursor.fetchall()

        current: RowData | None = None
        for row in rows:
            if current is None or current.key != row["row_key"]:
                if current is not None:
                    yield current
                current = RowData(key=row["row_key"])
            current.cells.setdefault(row["family"], {})[row["qualifier"]] = bytes(row["value"])
        if current is not None:
            yield current

    # -- Writes ----------------------------------------------------------------

    async def _upsert(self, db: aiosqlite.Connection, table: str, writes: list[RowWrite]) -> None:
        now = _now_iso()
        await db.executemany(
            "INSERT INTO cells (tbl, row_key, family, qualifier, value, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(tbl, row_key, family, qualifier) DO UPDATE SET "
            "value = excluded.value, updated_at = excluded.updated_at",
            [
                (table, write.key, write.family, column, value, now)
                for write in writes
                for column, value in write.cells.items()
            ],
        )

    async def write_cells(self, table: str, key: str, family: str, cells: dict[str, bytes]) -> None:
        await self.bulk_write(table, [RowWrite(key=key, family=family, cells=cells)])

    async def bulk_write(self, table: str, writes: list[RowWrite]) -> None:
        db = self._conn(table)
        for write in writes:
            self._check_family(table, write.family)
        async with self._write_lock:
            await self._upsert(db, table, writes)
            await db.commit()

    async def increment(
        self, table: str, key: str, family: str, deltas: dict[str, int]
    ) -> dict[str, int]:
        db = self._conn(table)
        self._check_family(table, family)
        async with self._write_lock:
            current = await self.read_row(table, key, family) or {}
            result: dict[str, int] = {}
            for column, delta in deltas.items():
                raw = current.get(column)
                if raw is not None and len(raw) != COUNTER_WIDTH:
                    raise TableStoreError(
                        f"Cannot increment non-counter cell {table}:{key}:{family}:{column}"
                    )
                result[column] = (0 if raw is None else decode_counter(raw)) + delta
            await self._upsert(
                db,
                table,
                [RowWrite(
                    key=key,
                    family=family,
                    cells={column: encode_counter(value) for column, value in result.items()},
                )],
            )
            await db.commit()
        return result

    async def append(
        self, table: str, key: str, family: str, suffixes: dict[str, bytes]
    ) -> dict[str, bytes]:
        db = self._conn(table)
        self._check_family(table, family)
        if not suffixes:
            return {}
        async with self._write_lock:
            current = await self.read_row(table, key, family) or {}
            result = {
                column: current.get(column, b"") + suffix for column, suffix in suffixes.items()
            }
            await self._upsert(db, table, [RowWrite(key=key, family=family, cells=result)])
            await db.commit()
        return result

    # -- Deletes ---------------------------------------------------------------

    async def delete_cells(self, table: str, key: str, family: str, columns: list[str]) -> None:
        if not columns:
            return
        await self.bulk_delete(
            table, [RowDeletion(key=key, columns=[(family, column) for column in columns])]
        )

    async def delete_row(self, table: str, key: str) -> None:
        await self.bulk_delete(table, [RowDeletion(key=key)])

    async def bulk_delete(self, table: str, deletions: list[RowDeletion]) -> None:
        db = self._conn(table)
        rows = [d.key for d in deletions if not d.columns]
        cells = [
            (table, d.key, family, column)
            for d in deletions
            for family, column in d.columns
        ]
        async with self._write_lock:
            if rows:
                await db.executemany(
                    "DELETE FROM cells WHERE tbl = ? AND row_key = ?",
                    [(table, key) for key in rows],
                )
            if cells:
                await db.executemany(
                    "DELETE FROM cells "
                    "WHERE tbl = ? AND row_key = ? AND family = ? AND qualifier = ?",
                    cells,
                )
            await db.commit()
