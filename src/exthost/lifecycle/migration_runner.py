"""Apply an extension's migration artifacts inside its schema namespace."""

from __future__ import annotations

import importlib.util
import inspect
import logging
import sqlite3
from datetime import datetime, timezone
from types import ModuleType

from exthost import versioning
from exthost.lifecycle.database import Database, quote_identifier
from exthost.lifecycle.migration_files import MigrationFile, list_migration_files
from exthost.lifecycle.registry import Extension

logger = logging.getLogger(__name__)

HISTORY_TABLE = "_migrations_history"

# Messages SQLite raises when a statement was already applied earlier.
_IDEMPOTENT_MARKERS = ("already exists", "duplicate column name")


def _is_idempotent_error(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _IDEMPOTENT_MARKERS)


def _load_module(extension: Extension, migration: MigrationFile) -> ModuleType:
    module_name = f"exthost_migration_{extension.schema_name}_{migration.timestamp}"
    spec = importlib.util.spec_from_file_location(module_name, str(migration.path))
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load migration {migration.path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _find_up(module: ModuleType, name: str):
    """Return the ``up`` callable of a class-based or function-based migration."""
    for value in vars(module).values():
        if (
            inspect.isclass(value)
            and value.__module__ == module.__name__
            and callable(getattr(value, "up", None))
        ):
            return value().up
    up = getattr(module, "up", None)
    if callable(up):
        return up
    raise ImportError(f"Migration {name} does not define an 'up' function or class")


class _StatementCounter:
    """Passes a migration's calls through to the database, counting the
    ``execute*`` statements that succeeded."""

    def __init__(self, db: Database) -> None:
        self._db = db
        self.succeeded = 0

    def __getattr__(self, name: str):
        attr = getattr(self._db, name)
        if not name.startswith("execute") or not callable(attr):
            return attr

        async def counted(*args, **kwargs):
            result = await attr(*args, **kwargs)
            self.succeeded += 1
            return result

        return counted


class MigrationRunner:
    """Executes migration files for one version of one extension.

    The ``_migrations_history`` table inside each extension schema records
    which files have run, so a retried step skips completed files.

    Parameters
    ----------
    db:
        An initialised :class:`~exthost.lifecycle.database.Database` with the
        extension's schema attached.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def _history(self, extension: Extension) -> str:
        return f"{quote_identifier(extension.schema_name)}.{quote_identifier(HISTORY_TABLE)}"

    async def ensure_history_table(self, extension: Extension) -> None:
        await self._db.execute(
            f"CREATE TABLE IF NOT EXISTS {self._history(extension)} ("
            "name TEXT PRIMARY KEY, "
            "version TEXT NOT NULL, "
            "timestamp INTEGER NOT NULL, "
            "executed_at TEXT NOT NULL)"
        )

    async def executed_migrations(self, extension: Extension) -> set[str]:
        rows = await self._db.execute_fetchall(f"SELECT name FROM {self._history(extension)}")
        return {row["name"] for row in rows}

    async def _record(self, extension: Extension, migration: MigrationFile) -> None:
        await self._db.execute(
            f"INSERT OR IGNORE INTO {self._history(extension)} "
            "(name, version, timestamp, executed_at) VALUES (?, ?, ?, ?)",
            (migration.name, migration.version, migration.timestamp,
             datetime.now(timezone.utc).isoformat()),
        )

    def migrations_for(
        self, extension: Extension, version: str, cumulative: bool = False
    ) -> list[MigrationFile]:
        """Migration files tagged with *version* (or ``<= version`` when cumulative)."""
        selected = []
        for migration in list_migration_files(extension.migrations_dir):
            order = versioning.compare(migration.version, version)
            if order == 0 or (cumulative and order < 0):
                selected.append(migration)
        return selected

    async def execute_migration(self, extension: Extension, migration: MigrationFile) -> bool:
        """Run one migration in its own transaction.

        Returns False when it had already been executed.  An "already
        exists" or "duplicate column" error counts as a previous run only
        when no earlier statement of the file succeeded; otherwise the
        rollback would discard new work, so the error is raised.
        """
        if migration.name in await self.executed_migrations(extension):
            logger.info("[%s] Migration already executed, skipping: %s", extension.identifier, migration.name)
            return False

        up = _find_up(_load_module(extension, migration), migration.name)
        logger.info("[%s] Executing migration: %s", extension.identifier, migration.name)
        counter = _StatementCounter(self._db)
        try:
            async with self._db.transaction():
                result = up(counter)
                if inspect.isawaitable(result):
                    await result
                await self._record(extension, migration)
        except Exception as exc:
            if not _is_idempotent_error(exc) or counter.succeeded:
                logger.error("[%s] Migration failed: %s - %s", extension.identifier, migration.name, exc)
                raise
            logger.warning(
                "[%s] Migration %s hit '%s' (likely already applied), marking as completed",
                extension.identifier, migration.name, exc,
            )
            await self._record(extension, migration)
            return False

        logger.info("[%s] Migration completed: %s", extension.identifier, migration.name)
        return True

    async def run(self, extension: Extension, version: str, cumulative: bool = False) -> list[str]:
        """Apply the migrations of *version* in timestamp order.

        Returns
        -------
        list[str]
            Names of the migrations executed by this call.
        """
        migrations = self.migrations_for(extension, version, cumulative=cumulative)
        if not migrations:
            return []
        await self.ensure_history_table(extension)
        applied: list[str] = []
        for migration in migrations:
            if await self.execute_migration(extension, migration):
                applied.append(migration.name)
        return applied
