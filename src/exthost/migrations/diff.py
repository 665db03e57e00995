"""Compare entity definitions with the live database and emit SQL.

The engine is dialect-specific (SQLite).  Every statement it produces is
schema-qualified, e.g. ``ALTER TABLE "simple_blog"."article" ADD COLUMN``,
so the generator can later keep only the statements of one namespace.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import aiosqlite

from exthost.errors import SchemaDiffError
from exthost.lifecycle.database import Database, quote_identifier
from exthost.lifecycle.migration_runner import HISTORY_TABLE
from exthost.migrations.entities import ColumnDefinition, EntityDefinition, IndexDefinition
from exthost.migrations.templates import camel_case, render_generated

logger = logging.getLogger(__name__)

IGNORED_TABLES = frozenset({HISTORY_TABLE})


@dataclass
class SchemaDiff:
    """Ordered forward statements and their inverses.

    ``down`` undoes ``up`` statement by statement, in reverse order.
    """

    changes: list[tuple[str, list[str]]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add(self, up: str, *down: str) -> None:
        self.changes.append((up, list(down)))

    @property
    def up(self) -> list[str]:
        return [up for up, _ in self.changes]

    @property
    def down(self) -> list[str]:
        statements: list[str] = []
        for _, inverse in reversed(self.changes):
            statements.extend(inverse)
        return statements

    def is_empty(self) -> bool:
        return not self.changes


# ------------------------------------------------------------------
# SQL rendering
# ------------------------------------------------------------------


def _qualified(schema: str, name: str) -> str:
    return f"{quote_identifier(schema)}.{quote_identifier(name)}"


def column_sql(column: ColumnDefinition, inline_pk: bool = True) -> str:
    """Render a column definition as used by CREATE TABLE / ADD COLUMN."""
    parts = [quote_identifier(column.name)]
    if column.type:
        parts.append(column.type)
    if column.primary_key and inline_pk:
        parts.append("PRIMARY KEY")
    elif not column.nullable:
        parts.append("NOT NULL")
    if column.unique and not column.primary_key:
        parts.append("UNIQUE")
    if column.default is not None:
        parts.append(f"DEFAULT {column.default}")
    if column.references is not None:
        ref = column.references
        parts.append(f"REFERENCES {quote_identifier(ref.table)} ({quote_identifier(ref.column)})")
        if ref.on_delete:
            parts.append(f"ON DELETE {ref.on_delete}")
    return " ".join(parts)


def create_table_sql(schema: str, table: str, columns: tuple[ColumnDefinition, ...]) -> str:
    pk = [c.name for c in columns if c.primary_key]
    inline_pk = len(pk) <= 1
    definitions = [column_sql(c, inline_pk=inline_pk) for c in columns]
    if not inline_pk:
        definitions.append(f"PRIMARY KEY ({', '.join(quote_identifier(n) for n in pk)})")
    return f"CREATE TABLE {_qualified(schema, table)} ({', '.join(definitions)})"


def drop_table_sql(schema: str, table: str) -> str:
    return f"DROP TABLE {_qualified(schema, table)}"


def add_column_sql(schema: str, table: str, column: ColumnDefinition) -> str:
    return f"ALTER TABLE {_qualified(schema, table)} ADD COLUMN {column_sql(column)}"


def drop_column_sql(schema: str, table: str, column: str) -> str:
    return f"ALTER TABLE {_qualified(schema, table)} DROP COLUMN {quote_identifier(column)}"


def create_index_sql(schema: str, table: str, index: IndexDefinition) -> str:
    unique = "UNIQUE " if index.unique else ""
    columns = ", ".join(quote_identifier(c) for c in index.columns)
    return (
        f"CREATE {unique}INDEX {_qualified(schema, index.name)} "
        f"ON {quote_identifier(table)} ({columns})"
    )


def drop_index_sql(schema: str, index: str) -> str:
    return f"DROP INDEX {_qualified(schema, index)}"


# ------------------------------------------------------------------
# Engine
# ------------------------------------------------------------------


class SchemaDiffEngine:
    """Diffs entity definitions against the live database.

    Entities without an explicit ``schema`` belong to *default_schema*.  Only
    schemas referenced by the entity set are inspected.
    """

    def __init__(self, db: Database, ignored_tables: frozenset[str] = IGNORED_TABLES) -> None:
        self._db = db
        self._ignored = ignored_tables

    # -- introspection -------------------------------------------------

    async def _live_tables(self, schema: str) -> list[str]:
        rows = await self._db.execute_fetchall(
            f"SELECT name FROM {quote_identifier(schema)}.sqlite_master "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [row["name"] for row in rows if row["name"] not in self._ignored]

    async def _live_columns(self, schema: str, table: str) -> tuple[ColumnDefinition, ...]:
        rows = await self._db.execute_fetchall(
            f"PRAGMA {quote_identifier(schema)}.table_info({quote_identifier(table)})"
        )
        return tuple(
            ColumnDefinition(
                name=row["name"],
                type=(row["type"] or "").upper(),
                nullable=not row["notnull"] and not row["pk"],
                primary_key=bool(row["pk"]),
                default=row["dflt_value"],
            )
            for row in sorted(rows, key=lambda r: r["cid"])
        )

    async def _live_indexes(self, schema: str, table: str) -> dict[str, IndexDefinition]:
        q_schema = quote_identifier(schema)
        rows = await self._db.execute_fetchall(
            f"PRAGMA {q_schema}.index_list({quote_identifier(table)})"
        )
        indexes: dict[str, IndexDefinition] = {}
        for row in rows:
            # Only explicitly created indexes; 'u'/'pk' belong to constraints.
            if row.get("origin", "c") != "c":
                continue
            info = await self._db.execute_fetchall(
                f"PRAGMA {q_schema}.index_info({quote_identifier(row['name'])})"
            )
            indexes[row["name"]] = IndexDefinition(
                name=row["name"],
                columns=tuple(r["name"] for r in sorted(info, key=lambda r: r["seqno"])),
                unique=bool(row["unique"]),
            )
        return indexes

    # -- diffing -------------------------------------------------------

    def _diff_new_table(self, diff: SchemaDiff, schema: str, entity: EntityDefinition) -> None:
        diff.add(create_table_sql(schema, entity.name, entity.columns), drop_table_sql(schema, entity.name))
        for index in entity.indexes:
            diff.add(create_index_sql(schema, entity.name, index), drop_index_sql(schema, index.name))

    async def _diff_existing_table(self, diff: SchemaDiff, schema: str, entity: EntityDefinition) -> None:
        table = entity.name
        live_columns = await self._live_columns(schema, table)
        live_by_name = {c.name: c for c in live_columns}
        live_indexes = await self._live_indexes(schema, table)
        declared_indexes = {i.name: i for i in entity.indexes}

        # Stale indexes go first: SQLite refuses to drop an indexed column.
        stale = []
        for name, live in live_indexes.items():
            declared = declared_indexes.get(name)
            if declared is None or (declared.columns, declared.unique) != (live.columns, live.unique):
                stale.append(name)
                diff.add(drop_index_sql(schema, name), create_index_sql(schema, table, live))

        for live in live_columns:
            if entity.column(live.name) is not None:
                continue
            if live.primary_key:
                message = f'Cannot drop primary key column "{schema}"."{table}"."{live.name}"'
                logger.warning(message)
                diff.warnings.append(message)
                continue
            diff.add(drop_column_sql(schema, table, live.name), add_column_sql(schema, table, live))

        for column in entity.columns:
            live = live_by_name.get(column.name)
            if live is None:
                if column.primary_key or column.unique:
                    raise SchemaDiffError(
                        f'Cannot add PRIMARY KEY or UNIQUE column "{column.name}" to existing '
                        f'table "{schema}"."{table}"'
                    )
                if not column.nullable and column.default is None:
                    raise SchemaDiffError(
                        f'Cannot add NOT NULL column "{column.name}" without a default to '
                        f'existing table "{schema}"."{table}"'
                    )
                diff.add(add_column_sql(schema, table, column), drop_column_sql(schema, table, column.name))
            elif live.type != column.type:
                message = (
                    f'Column "{schema}"."{table}"."{column.name}" changed type '
                    f"{live.type or '(none)'} -> {column.type}; SQLite cannot alter column types"
                )
                logger.warning(message)
                diff.warnings.append(message)

        for index in entity.indexes:
            if index.name not in live_indexes or index.name in stale:
                diff.add(create_index_sql(schema, table, index), drop_index_sql(schema, index.name))

    async def _diff_dropped_table(self, diff: SchemaDiff, schema: str, table: str) -> None:
        columns = await self._live_columns(schema, table)
        indexes = await self._live_indexes(schema, table)
        diff.add(
            drop_table_sql(schema, table),
            create_table_sql(schema, table, columns),
            *(create_index_sql(schema, table, i) for i in indexes.values()),
        )

    async def diff(self, entities: list[EntityDefinition], default_schema: str) -> SchemaDiff:
        """Compute the statements that bring the live schema to *entities*."""
        by_schema: dict[str, list[EntityDefinition]] = {}
        for entity in entities:
            by_schema.setdefault(entity.schema or default_schema, []).append(entity)

        diff = SchemaDiff()
        try:
            for schema in sorted(by_schema):
                if not await self._db.schema_exists(schema):
                    raise SchemaDiffError(f'Schema "{schema}" does not exist in the database')
                live_tables = await self._live_tables(schema)
                declared = by_schema[schema]
                for entity in declared:
                    if entity.name in self._ignored:
                        continue
                    if entity.name in live_tables:
                        await self._diff_existing_table(diff, schema, entity)
                    else:
                        self._diff_new_table(diff, schema, entity)
                declared_names = {e.name for e in declared}
                for table in live_tables:
                    if table not in declared_names:
                        await self._diff_dropped_table(diff, schema, table)
        except (aiosqlite.Error, ValueError) as exc:
            raise SchemaDiffError(f"Schema comparison failed: {exc}") from exc
        return diff

    async def write_temp_migration(
        self,
        entities: list[EntityDefinition],
        default_schema: str,
        output_dir: Path,
        description: str,
        timestamp: int,
    ) -> Path:
        """Diff and write the raw migration source to a temporary file.

        The file is named ``<timestamp>-temp_<description>.py`` and defines
        ``Temp<Description><timestamp>``.  Raises SchemaDiffError when the
        entity set matches the database.
        """
        diff = await self.diff(entities, default_schema)
        if diff.is_empty():
            raise SchemaDiffError("No changes in database schema were found")

        output_dir.mkdir(parents=True, exist_ok=True)
        path = output_dir / f"{timestamp}-temp_{description}.py"
        class_name = f"Temp{camel_case(description)}{timestamp}"
        path.write_text(render_generated(class_name, diff.up, diff.down))
        logger.debug("Wrote %d statement(s) to %s", len(diff.up), path.name)
        return path
