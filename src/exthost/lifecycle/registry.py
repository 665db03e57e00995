"""Installed extensions and the host registry file that lists them."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

# Sections of extensions.json that list extensions.
REGISTRY_SECTIONS = ("applications", "functionals")


def get_schema_name(identifier: str) -> str:
    """Derive the schema namespace owned by an extension."""
    return re.sub(r"[^a-zA-Z0-9_]", "_", identifier)


def validate_identifier(identifier: str) -> str:
    if not isinstance(identifier, str) or not _IDENTIFIER_RE.match(identifier):
        raise ValueError(f"Invalid extension identifier: {identifier!r}")
    return identifier


@dataclass(frozen=True)
class Extension:
    """An installed extension discovered by the host.

    Directory layout::

        root/
          extension.yaml            manifest (identifier, version)
          data/versions/<version>   installed-version markers
          upgrade/__init__.py       register(hooks) for custom upgrade hooks
          upgrade/<version>/        data files used by that version's hook
          db/migrations/            <timestamp>-<version>-<description>.py
          build/db/entities/        compiled *.entity.yaml definitions
    """

    identifier: str
    root: Path
    enabled: bool = True

    def __post_init__(self) -> None:
        validate_identifier(self.identifier)
        object.__setattr__(self, "root", Path(self.root))

    @property
    def schema_name(self) -> str:
        return get_schema_name(self.identifier)

    @property
    def manifest_path(self) -> Path:
        return self.root / "extension.yaml"

    @property
    def versions_dir(self) -> Path:
        return self.root / "data" / "versions"

    @property
    def upgrade_dir(self) -> Path:
        return self.root / "upgrade"

    @property
    def migrations_dir(self) -> Path:
        return self.root / "db" / "migrations"

    @property
    def entities_dir(self) -> Path:
        return self.root / "build" / "db" / "entities"

    def is_ready(self) -> bool:
        return self.root.is_dir()


class ExtensionRegistry:
    """Lists the extensions known to the host.

    Parameters
    ----------
    extensions_dir:
        Directory holding one sub-directory per extension.
    registry_file:
        Path to ``extensions.json``.  Its ``applications`` and
        ``functionals`` sections map identifiers to ``{"enabled": bool}``.
    """

    def __init__(self, extensions_dir: Path, registry_file: Path | None = None) -> None:
        self.extensions_dir = Path(extensions_dir)
        self.registry_file = Path(registry_file) if registry_file else self.extensions_dir / "extensions.json"

    def _load(self) -> dict:
        if not self.registry_file.exists():
            logger.warning("Extensions registry file not found: %s", self.registry_file)
            return {}
        with open(self.registry_file) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Extensions registry must be a JSON object: {self.registry_file}")
        return data

    def list_extensions(self, enabled_only: bool = True) -> list[Extension]:
        data = self._load()
        extensions: list[Extension] = []
        seen: set[str] = set()
        for section in REGISTRY_SECTIONS:
            for identifier, entry in (data.get(section) or {}).items():
                if identifier in seen:
                    logger.warning("Extension %s listed twice in %s", identifier, self.registry_file)
                    continue
                enabled = bool((entry or {}).get("enabled", False))
                if enabled_only and not enabled:
                    continue
                try:
                    extension = Extension(
                        identifier=identifier,
                        root=self.extensions_dir / identifier,
                        enabled=enabled,
                    )
                except ValueError as exc:
                    logger.warning("Skipping extension entry: %s", exc)
                    continue
                seen.add(identifier)
                extensions.append(extension)
        return extensions

    def get(self, identifier: str) -> Extension:
        """Return the extension with *identifier*, enabled or not.

        Extensions present on disk but absent from the registry file are
        still returned so that the offline tooling can work on them.
        """
        validate_identifier(identifier)
        for extension in self.list_extensions(enabled_only=False):
            if extension.identifier == identifier:
                return extension
        root = self.extensions_dir / identifier
        if root.is_dir():
            return Extension(identifier=identifier, root=root, enabled=False)
        raise KeyError(f"Extension not found: {identifier} ({root})")
