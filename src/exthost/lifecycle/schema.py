"""Create and drop the schema namespace owned by each extension."""

from __future__ import annotations

import logging
from pathlib import Path

from exthost.lifecycle.database import Database
from exthost.lifecycle.registry import Extension

logger = logging.getLogger(__name__)


class ExtensionSchemaManager:
    """Manages one isolated schema per extension.

    Parameters
    ----------
    db:
        Host database.
    schemas_dir:
        Directory holding one SQLite file per schema.  ``None`` keeps every
        schema in memory (tests).
    """

    def __init__(self, db: Database, schemas_dir: Path | None = None) -> None:
        self._db = db
        self.schemas_dir = Path(schemas_dir) if schemas_dir else None

    def schema_path(self, schema_name: str) -> str:
        if self.schemas_dir is None:
            return ":memory:"
        return str(self.schemas_dir / f"{schema_name}.db")

    async def ensure_schema(self, extension: Extension) -> str:
        """Attach the extension's schema, creating it when missing."""
        schema = extension.schema_name
        if await self._db.schema_exists(schema):
            logger.debug('Schema "%s" already exists, skipping', schema)
            return schema
        if self.schemas_dir is not None:
            self.schemas_dir.mkdir(parents=True, exist_ok=True)
        await self._db.attach_schema(schema, self.schema_path(schema))
        logger.info('[%s] Created schema "%s"', extension.identifier, schema)
        return schema

    async def attach_existing(self, extension: Extension) -> bool:
        """Attach the schema only if its storage already exists."""
        schema = extension.schema_name
        if await self._db.schema_exists(schema):
            return True
        if self.schemas_dir is None or not Path(self.schema_path(schema)).exists():
            return False
        await self._db.attach_schema(schema, self.schema_path(schema))
        return True

    async def drop_schema(self, extension: Extension) -> None:
        """Detach the extension's schema and delete its storage."""
        schema = extension.schema_name
        await self._db.detach_schema(schema)
        if self.schemas_dir is not None:
            path = Path(self.schema_path(schema))
            for candidate in (path, path.with_name(path.name + "-wal"), path.with_name(path.name + "-shm")):
                if candidate.exists():
                    candidate.unlink()
        logger.info('[%s] Dropped schema "%s"', extension.identifier, schema)
