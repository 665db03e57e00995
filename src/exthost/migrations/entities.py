"""Compiled entity definitions produced by an extension build.

Each ``build/db/entities/<name>.entity.yaml`` describes one table::

    name: article
    schema: main            # optional, defaults to the extension schema
    columns:
      - {name: id, type: INTEGER, primary_key: true}
      - {name: title, type: TEXT, nullable: false, default: "''"}
      - {name: category_id, type: INTEGER, references: {table: category, column: id}}
    indexes:
      - {name: idx_article_title, columns: [title], unique: false}
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

ENTITY_SUFFIX = ".entity.yaml"

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TYPE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_ ]*(\(\s*\d+\s*(,\s*\d+\s*)?\))?$")


def _require_name(value: Any, what: str, source: str) -> str:
    if not isinstance(value, str) or not _NAME_RE.match(value):
        raise ValueError(f"Invalid {what} name {value!r} in {source}")
    return value


@dataclass(frozen=True)
class ForeignKey:
    table: str
    column: str
    on_delete: str | None = None


@dataclass(frozen=True)
class ColumnDefinition:
    name: str
    type: str
    nullable: bool = True
    primary_key: bool = False
    unique: bool = False
    default: str | None = None
    references: ForeignKey | None = None


@dataclass(frozen=True)
class IndexDefinition:
    name: str
    columns: tuple[str, ...]
    unique: bool = False


@dataclass(frozen=True)
class EntityDefinition:
    name: str
    schema: str | None = None
    columns: tuple[ColumnDefinition, ...] = ()
    indexes: tuple[IndexDefinition, ...] = field(default_factory=tuple)

    def column(self, name: str) -> ColumnDefinition | None:
        for column in self.columns:
            if column.name == name:
                return column
        return None


def _parse_column(raw: Any, source: str) -> ColumnDefinition:
    if not isinstance(raw, dict):
        raise ValueError(f"Column entries must be mappings in {source}")
    name = _require_name(raw.get("name"), "column", source)
    col_type = raw.get("type")
    if not isinstance(col_type, str) or not _TYPE_RE.match(col_type):
        raise ValueError(f"Invalid type {col_type!r} for column '{name}' in {source}")
    references = None
    ref_raw = raw.get("references")
    if ref_raw is not None:
        if not isinstance(ref_raw, dict):
            raise ValueError(f"'references' of column '{name}' must be a mapping in {source}")
        on_delete = ref_raw.get("on_delete")
        if on_delete is not None and str(on_delete).upper() not in ("CASCADE", "SET NULL", "RESTRICT", "NO ACTION"):
            raise ValueError(f"Invalid on_delete {on_delete!r} for column '{name}' in {source}")
        references = ForeignKey(
            table=_require_name(ref_raw.get("table"), "referenced table", source),
            column=_require_name(ref_raw.get("column", "id"), "referenced column", source),
            on_delete=str(on_delete).upper() if on_delete is not None else None,
        )
    default = raw.get("default")
    if isinstance(default, bool):
        default = int(default)
    primary_key = bool(raw.get("primary_key", False))
    return ColumnDefinition(
        name=name,
        type=col_type.upper(),
        nullable=bool(raw.get("nullable", not primary_key)),
        primary_key=primary_key,
        unique=bool(raw.get("unique", False)),
        default=None if default is None else str(default),
        references=references,
    )


def parse_entity(data: Any, source: str = "<entity>") -> EntityDefinition:
    """Build an EntityDefinition from a decoded YAML document."""
    if not isinstance(data, dict):
        raise ValueError(f"Entity definition must be a mapping: {source}")
    name = _require_name(data.get("name"), "entity", source)
    schema = data.get("schema")
    if schema is not None:
        schema = _require_name(schema, "schema", source)

    columns_raw = data.get("columns") or []
    if not isinstance(columns_raw, list) or not columns_raw:
        raise ValueError(f"Entity '{name}' declares no columns in {source}")
    columns = tuple(_parse_column(c, source) for c in columns_raw)
    seen: set[str] = set()
    for column in columns:
        if column.name in seen:
            raise ValueError(f"Duplicate column '{column.name}' in entity '{name}' ({source})")
        seen.add(column.name)

    indexes = []
    for raw in data.get("indexes") or []:
        if not isinstance(raw, dict):
            raise ValueError(f"Index entries must be mappings in {source}")
        index_columns = raw.get("columns") or []
        if not index_columns:
            raise ValueError(f"Index {raw.get('name')!r} has no columns in {source}")
        for col in index_columns:
            if col not in seen:
                raise ValueError(f"Index {raw.get('name')!r} references unknown column {col!r} in {source}")
        indexes.append(IndexDefinition(
            name=_require_name(raw.get("name"), "index", source),
            columns=tuple(index_columns),
            unique=bool(raw.get("unique", False)),
        ))

    return EntityDefinition(name=name, schema=schema, columns=columns, indexes=tuple(indexes))


def entity_files(entities_dir: Path) -> list[Path]:
    if not entities_dir.is_dir():
        return []
    return sorted(p for p in entities_dir.iterdir() if p.is_file() and p.name.endswith(ENTITY_SUFFIX))


def load_entities(entities_dir: Path) -> list[EntityDefinition]:
    """Load every ``*.entity.yaml`` file, raising ValueError on bad input."""
    entities: list[EntityDefinition] = []
    names: set[tuple[str | None, str]] = set()
    for path in entity_files(entities_dir):
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ValueError(f"Cannot parse {path.name}: {exc}") from exc
        entity = parse_entity(data, path.name)
        key = (entity.schema, entity.name)
        if key in names:
            raise ValueError(f"Entity '{entity.name}' is defined twice ({path.name})")
        names.add(key)
        entities.append(entity)
    return entities
