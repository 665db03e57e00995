"""Synchronise the built-in AI provider/model catalog.

Rows are matched by natural key (``provider`` for providers,
``(provider_id, model)`` for models) and updated in place, so running the
sync again with the same input creates nothing new.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from exthost.lifecycle.database import Database, quote_identifier
from exthost.lifecycle.hooks import UpgradeContext, UpgradeHook

logger = logging.getLogger(__name__)

PROVIDERS_TABLE = "ai_providers"
MODELS_TABLE = "ai_models"


@dataclass
class CatalogSyncResult:
    providers_created: int = 0
    providers_updated: int = 0
    models_created: int = 0
    models_updated: int = 0

    @property
    def created(self) -> int:
        return self.providers_created + self.models_created

    @property
    def updated(self) -> int:
        return self.providers_updated + self.models_updated


def _q(schema: str, table: str) -> str:
    return f"{quote_identifier(schema)}.{quote_identifier(table)}"


async def ensure_catalog_tables(db: Database, schema: str) -> None:
    await db.execute(
        f"CREATE TABLE IF NOT EXISTS {_q(schema, PROVIDERS_TABLE)} ("
        "id INTEGER PRIMARY KEY, "
        "provider TEXT NOT NULL UNIQUE, "
        "name TEXT NOT NULL, "
        "icon_url TEXT, "
        "supported_model_types TEXT NOT NULL DEFAULT '[]', "
        "is_built_in INTEGER NOT NULL DEFAULT 0, "
        "is_active INTEGER NOT NULL DEFAULT 0, "
        "sort_order INTEGER NOT NULL DEFAULT 0)"
    )
    await db.execute(
        f"CREATE TABLE IF NOT EXISTS {_q(schema, MODELS_TABLE)} ("
        "id INTEGER PRIMARY KEY, "
        f"provider_id INTEGER NOT NULL REFERENCES {quote_identifier(PROVIDERS_TABLE)} (id), "
        "name TEXT NOT NULL, "
        "model TEXT NOT NULL, "
        "model_type TEXT, "
        "features TEXT NOT NULL DEFAULT '[]', "
        "model_config TEXT NOT NULL DEFAULT '{}', "
        "is_built_in INTEGER NOT NULL DEFAULT 0, "
        "is_active INTEGER NOT NULL DEFAULT 1, "
        "sort_order INTEGER NOT NULL DEFAULT 0, "
        "UNIQUE (provider_id, model))"
    )


def load_catalog_file(path: Path) -> list[dict]:
    """Read a YAML or JSON catalog; the document must hold a ``configs`` list."""
    with open(path) as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict) or not isinstance(data.get("configs"), list):
        raise ValueError(f"{path.name} is malformed: missing 'configs' list")
    return data["configs"]


def _model_config(model: dict) -> dict[str, Any]:
    config = dict(model.get("model_properties") or {})
    if config.get("context_size"):
        config["maxContext"] = config["context_size"]
    return config


async def _upsert_provider(db: Database, schema: str, config: dict, result: CatalogSyncResult) -> int:
    table = _q(schema, PROVIDERS_TABLE)
    key = config.get("provider")
    if not key:
        raise ValueError(f"Provider config without 'provider' key: {config!r}")
    name = config.get("label") or key
    icon_url = config.get("icon_url")
    model_types = json.dumps(config.get("supported_model_types") or [])

    row = await db.execute_fetchone(f"SELECT id FROM {table} WHERE provider = ?", (key,))
    if row is None:
        provider_id = await db.execute_insert(
            f"INSERT INTO {table} (provider, name, icon_url, supported_model_types, is_built_in, is_active) "
            "VALUES (?, ?, ?, ?, 1, 0)",
            (key, name, icon_url, model_types),
        )
        result.providers_created += 1
        logger.info("Created AI provider: %s", name)
        return provider_id

    # is_active and sort_order belong to the operator and are left alone.
    await db.execute(
        f"UPDATE {table} SET name = ?, icon_url = ?, supported_model_types = ?, is_built_in = 1 "
        "WHERE id = ?",
        (name, icon_url, model_types, row["id"]),
    )
    result.providers_updated += 1
    logger.info("Updated AI provider: %s", name)
    return row["id"]


async def _upsert_model(
    db: Database, schema: str, provider_id: int, model: dict, result: CatalogSyncResult
) -> None:
    table = _q(schema, MODELS_TABLE)
    key = model.get("model")
    if not key:
        raise ValueError(f"Model config without 'model' key: {model!r}")
    features = model.get("features")
    values = (
        model.get("label") or key,
        model.get("model_type"),
        json.dumps(features if isinstance(features, list) else []),
        json.dumps(_model_config(model), sort_keys=True),
    )

    row = await db.execute_fetchone(
        f"SELECT id FROM {table} WHERE provider_id = ? AND model = ?", (provider_id, key)
    )
    if row is None:
        await db.execute_insert(
            f"INSERT INTO {table} "
            "(provider_id, model, name, model_type, features, model_config, is_built_in, is_active) "
            "VALUES (?, ?, ?, ?, ?, ?, 1, 1)",
            (provider_id, key, *values),
        )
        result.models_created += 1
    else:
        await db.execute(
            f"UPDATE {table} SET name = ?, model_type = ?, features = ?, model_config = ?, "
            "is_built_in = 1 WHERE id = ?",
            (*values, row["id"]),
        )
        result.models_updated += 1


async def sync_catalog(db: Database, schema: str, configs: list[dict]) -> CatalogSyncResult:
    """Upsert every provider in *configs* and its models."""
    await ensure_catalog_tables(db, schema)
    result = CatalogSyncResult()
    logger.info("Syncing %d AI provider config(s) into %s", len(configs), schema)
    for config in configs:
        provider_id = await _upsert_provider(db, schema, config, result)
        for model in config.get("models") or []:
            await _upsert_model(db, schema, provider_id, model, result)
    logger.info(
        "AI catalog sync done: %d created, %d updated",
        result.created, result.updated,
    )
    return result


def sync_catalog_from_file(filename: str = "model-config.yaml") -> UpgradeHook:
    """Hook factory: sync from ``upgrade/<version>/<filename>``."""

    async def hook(context: UpgradeContext) -> CatalogSyncResult:
        path = context.data_dir / filename
        if not path.is_file():
            raise FileNotFoundError(f"Catalog source not found: {path}")
        return await sync_catalog(context.db, context.schema, load_catalog_file(path))

    return hook
