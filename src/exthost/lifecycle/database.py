"""SQLite database layer with async access via aiosqlite.

Extension schema namespaces are attached databases: an extension whose
schema name is ``simple_blog`` owns every object addressed as
``"simple_blog"."<table>"`` on the shared connection.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS extension_versions (
    identifier    TEXT NOT NULL,
    version       TEXT NOT NULL,
    installed_at  TEXT NOT NULL,
    PRIMARY KEY (identifier, version)
);
"""

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]+$")

# Set while the current task is inside Database.transaction().
_in_transaction: contextvars.ContextVar[bool] = contextvars.ContextVar(
    "exthost_in_transaction", default=False
)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def quote_identifier(name: str) -> str:
    """Double-quote a schema, table, column or index name."""
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


class Database:
    """Async SQLite database wrapper using aiosqlite.

    Parameters
    ----------
    db_path:
        Path to the host SQLite database file.  Use ``":memory:"`` for tests.

    All statements go through one shared connection.  Statements issued
    outside a transaction wait for any transaction opened by another task,
    so a transaction never contains statements of a different extension.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._tx_lock = asyncio.Lock()
        self._attached: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _create_connection(self) -> aiosqlite.Connection:
        """Create and configure the aiosqlite connection."""
        # isolation_level=None enables autocommit mode; transactions are
        # opened explicitly with BEGIN in transaction().
        conn = await aiosqlite.connect(self.db_path, isolation_level=None)
        conn.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA busy_timeout = 5000")
        await conn.execute("PRAGMA foreign_keys=ON")
        return conn

    async def initialize(self) -> None:
        """Open the connection and create the host tables."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = await self._create_connection()
        await self._conn.executescript(_SCHEMA_SQL)
        logger.debug("Database initialized at %s", self.db_path)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            self._attached.clear()

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    # ------------------------------------------------------------------
    # Schema namespaces
    # ------------------------------------------------------------------

    async def attach_schema(self, name: str, path: str) -> None:
        """Attach *path* as schema *name*.  No-op when already attached."""
        conn = self._require_conn()
        if name in self._attached:
            return
        if _in_transaction.get():
            raise RuntimeError("Schemas cannot be attached inside a transaction")
        async with self._tx_lock:
            await conn.execute(f"ATTACH DATABASE ? AS {quote_identifier(name)}", (path,))
        self._attached[name] = path
        logger.debug("Attached schema %s (%s)", name, path)

    async def detach_schema(self, name: str) -> None:
        conn = self._require_conn()
        if name not in self._attached:
            return
        async with self._tx_lock:
            await conn.execute(f"DETACH DATABASE {quote_identifier(name)}")
        del self._attached[name]

    async def list_schemas(self) -> list[str]:
        """Names of every schema visible on the connection (``main`` included)."""
        rows = await self.execute_fetchall("PRAGMA database_list")
        return [row["name"] for row in rows]

    async def schema_exists(self, name: str) -> bool:
        return name in await self.list_schemas()

    # ------------------------------------------------------------------
    # Transaction support
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self):
        """Async context manager for multi-statement transactions.

        Uses an asyncio lock to prevent concurrent coroutines from
        attempting nested BEGIN on the shared connection.  Calls to
        ``execute*`` made by the owning task inside the block join the
        transaction.
        """
        conn = self._require_conn()
        if _in_transaction.get():
            raise RuntimeError("Nested transactions are not supported")
        async with self._tx_lock:
            token = _in_transaction.set(True)
            try:
                await conn.execute("BEGIN")
                try:
                    yield conn
                    await conn.commit()
                except BaseException:
                    await conn.rollback()
                    raise
            finally:
                _in_transaction.reset(token)

    @asynccontextmanager
    async def _statement(self):
        conn = self._require_conn()
        if _in_transaction.get():
            yield conn
        else:
            async with self._tx_lock:
                yield conn

    @property
    def in_transaction(self) -> bool:
        return _in_transaction.get()

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    async def executescript(self, sql: str) -> None:
        """Execute a multi-statement SQL script.

        SQLite commits any open transaction before running a script, so
        this is refused inside :meth:`transaction`.
        """
        if _in_transaction.get():
            raise RuntimeError("executescript() cannot run inside a transaction")
        async with self._statement() as conn:
            await conn.executescript(sql)

    async def execute_fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        async with self._statement() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def execute_fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        async with self._statement() as conn:
            cursor = await conn.execute(sql, params)
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def execute(self, sql: str, params: tuple = ()) -> int:
        """Execute one statement and return the number of affected rows."""
        async with self._statement() as conn:
            cursor = await conn.execute(sql, params)
        return cursor.rowcount

    async def execute_returning(self, sql: str, params: tuple = ()) -> list[dict]:
        """Execute a statement with a RETURNING clause and return the rows."""
        async with self._statement() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def execute_insert(self, sql: str, params: tuple = ()) -> int:
        """Execute an INSERT and return the new row id."""
        async with self._statement() as conn:
            cursor = await conn.execute(sql, params)
        return cursor.lastrowid

    # ------------------------------------------------------------------
    # Version ledger
    # ------------------------------------------------------------------

    async def record_extension_version(self, identifier: str, version: str) -> None:
        await self.execute(
            "INSERT OR IGNORE INTO extension_versions (identifier, version, installed_at) "
            "VALUES (?, ?, ?)",
            (identifier, version, _utcnow()),
        )

    async def get_extension_versions(self, identifier: str) -> list[str]:
        rows = await self.execute_fetchall(
            "SELECT version FROM extension_versions WHERE identifier = ? ORDER BY installed_at",
            (identifier,),
        )
        return [row["version"] for row in rows]
