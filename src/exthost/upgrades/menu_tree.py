"""Rebuild a hierarchical menu table from a declarative source.

The source is a list of menu items; each may carry ``children``::

    - name: Blog
      path: /blog
      children:
        - {name: Articles, path: /blog/articles, sort: 1}

The table is cleared and refilled: every parent is saved before its
children so a child can reference the id assigned to its parent.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml

from exthost.lifecycle.database import Database, quote_identifier
from exthost.lifecycle.hooks import UpgradeContext, UpgradeHook

logger = logging.getLogger(__name__)

MENU_TABLE = "menus"

_MENU_FIELDS = ("name", "path", "icon", "permission", "sort", "type")


def _table(schema: str) -> str:
    return f"{quote_identifier(schema)}.{quote_identifier(MENU_TABLE)}"


async def ensure_menu_table(db: Database, schema: str) -> None:
    # INTEGER PRIMARY KEY without AUTOINCREMENT: ids restart at 1 after a
    # full clear, so a rebuild assigns the same ids every time.
    await db.execute(
        f"CREATE TABLE IF NOT EXISTS {_table(schema)} ("
        "id INTEGER PRIMARY KEY, "
        "parent_id INTEGER, "
        "name TEXT NOT NULL, "
        "path TEXT, "
        "icon TEXT, "
        "permission TEXT, "
        "sort INTEGER NOT NULL DEFAULT 0, "
        "type TEXT, "
        "meta TEXT)"
    )


def load_menu_file(path: Path) -> list[dict]:
    """Read a YAML or JSON menu source."""
    with open(path) as f:
        data = yaml.safe_load(f)
    if isinstance(data, dict):
        data = data.get("menus")
    if not isinstance(data, list):
        raise ValueError(f"{path.name} must contain a list of menus")
    return data


async def _save_tree(db: Database, schema: str, items: list[dict], parent_id: int | None) -> int:
    saved = 0
    for item in items:
        if not isinstance(item, dict) or not item.get("name"):
            raise ValueError(f"Menu item without a name: {item!r}")
        data = {k: v for k, v in item.items() if k != "children"}
        values: dict[str, Any] = {f: data.pop(f, None) for f in _MENU_FIELDS}
        values["sort"] = values["sort"] or 0
        meta = json.dumps(data, sort_keys=True) if data else None

        menu_id = await db.execute_insert(
            f"INSERT INTO {_table(schema)} "
            "(parent_id, name, path, icon, permission, sort, type, meta) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (parent_id, values["name"], values["path"], values["icon"],
             values["permission"], values["sort"], values["type"], meta),
        )
        saved += 1
        children = item.get("children") or []
        if children:
            saved += await _save_tree(db, schema, children, menu_id)
    return saved


async def rebuild_menu_tree(db: Database, schema: str, menus: list[dict]) -> int:
    """Clear the menu table of *schema* and re-insert *menus*.

    Returns the number of menu rows written.
    """
    await ensure_menu_table(db, schema)
    row = await db.execute_fetchone(f"SELECT COUNT(*) AS cnt FROM {_table(schema)}")
    existing = row["cnt"] if row else 0
    if existing:
        logger.info("Deleting %d existing menu item(s) from %s", existing, schema)
        await db.execute(f"DELETE FROM {_table(schema)}")

    saved = await _save_tree(db, schema, menus, None)
    logger.info("Imported %d menu item(s) (%d top level) into %s", saved, len(menus), schema)
    return saved


def rebuild_menu_tree_from_file(filename: str = "menu.yaml") -> UpgradeHook:
    """Hook factory: rebuild from ``upgrade/<version>/<filename>``."""

    async def hook(context: UpgradeContext) -> int:
        path = context.data_dir / filename
        if not path.is_file():
            raise FileNotFoundError(f"Menu source not found: {path}")
        return await rebuild_menu_tree(context.db, context.schema, load_menu_file(path))

    return hook
