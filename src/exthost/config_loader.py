"""Load and validate host configuration from ``config/exthost.yaml``."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config") / "exthost.yaml"

MARKER_BACKENDS = ("filesystem", "database", "memory")
FAILURE_POLICIES = ("continue", "abort")
LOG_FORMATS = ("dev", "json")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _get_required(data: dict, key: str, context: str = "config") -> Any:
    """Get a required key from a dict, raising ValueError with a clear message."""
    keys = key.split(".")
    current = data
    for k in keys:
        if not isinstance(current, dict) or k not in current:
            raise ValueError(f"Missing required key '{key}' in {context}")
        current = current[k]
    return current


def _validate_range(value: Any, name: str, minimum: int = 1, maximum: int | None = None) -> None:
    """Validate a numeric config value is within bounds."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < minimum:
        raise ValueError(f"Config '{name}' must be >= {minimum}, got {value!r}")
    if maximum is not None and value > maximum:
        raise ValueError(f"Config '{name}' must be <= {maximum}, got {value!r}")


def _validate_choice(value: Any, name: str, choices: tuple[str, ...]) -> str:
    if value not in choices:
        raise ValueError(f"Config '{name}' must be one of {', '.join(choices)}, got {value!r}")
    return value


def _section(data: dict, key: str) -> dict:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{key}' must be a mapping")
    return value


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class DatabaseConfig:
    path: str = "data/exthost.db"
    schemas_dir: str | None = "data/schemas"


@dataclass
class ExtensionsConfig:
    dir: str = "extensions"
    registry_file: str | None = None


@dataclass
class UpgradeConfig:
    """How the orchestrator runs at host start-up."""

    failure_policy: str = "continue"
    max_concurrency: int = 1
    marker_backend: str = "filesystem"


@dataclass
class LoggingConfig:
    format: str | None = None
    level: str | None = None


@dataclass
class HostConfig:
    """Top-level host settings loaded from config/exthost.yaml."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    extensions: ExtensionsConfig = field(default_factory=ExtensionsConfig)
    upgrade: UpgradeConfig = field(default_factory=UpgradeConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def registry_file(self) -> str:
        return self.extensions.registry_file or str(Path(self.extensions.dir) / "extensions.json")


def _resolve(base: Path, value: str | None) -> str | None:
    if value is None or value == ":memory:":
        return value
    path = Path(value).expanduser()
    return str(path if path.is_absolute() else base / path)


def load_host_config(path: Path = DEFAULT_CONFIG_PATH) -> HostConfig:
    """Load host configuration from a YAML file.

    Parameters
    ----------
    path:
        Path to the YAML file.  A missing file yields the defaults.

    Returns
    -------
    HostConfig
        Parsed configuration; relative paths are resolved against the
        project root (the parent of the ``config/`` directory).

    Raises
    ------
    ValueError
        If a value is missing its required shape or out of range.
    """
    path = Path(path)
    data: dict = {}
    if path.exists():
        with open(path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Cannot parse config file {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain a mapping: {path}")
    else:
        logger.debug("Host config %s not found, using defaults", path)

    base = path.resolve().parent.parent
    db_raw = _section(data, "database")
    ext_raw = _section(data, "extensions")
    upgrade_raw = _section(data, "upgrade")
    log_raw = _section(data, "logging")

    database = DatabaseConfig(
        path=_resolve(base, str(db_raw.get("path", DatabaseConfig.path))),
        schemas_dir=_resolve(base, db_raw.get("schemas_dir", DatabaseConfig.schemas_dir)),
    )
    if ext_raw:
        _get_required(data, "extensions.dir", str(path.name))

    extensions = ExtensionsConfig(
        dir=_resolve(base, str(ext_raw.get("dir", "extensions"))),
        registry_file=_resolve(base, ext_raw.get("registry_file")),
    )

    upgrade = UpgradeConfig(
        failure_policy=_validate_choice(
            upgrade_raw.get("failure_policy", "continue"), "upgrade.failure_policy", FAILURE_POLICIES
        ),
        max_concurrency=upgrade_raw.get("max_concurrency", 1),
        marker_backend=_validate_choice(
            upgrade_raw.get("marker_backend", "filesystem"), "upgrade.marker_backend", MARKER_BACKENDS
        ),
    )
    _validate_range(upgrade.max_concurrency, "upgrade.max_concurrency", 1, 64)

    logging_config = LoggingConfig(format=log_raw.get("format"), level=log_raw.get("level"))
    if logging_config.format is not None:
        _validate_choice(logging_config.format, "logging.format", LOG_FORMATS)

    return HostConfig(
        database=database,
        extensions=extensions,
        upgrade=upgrade,
        logging=logging_config,
    )
