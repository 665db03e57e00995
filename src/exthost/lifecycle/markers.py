"""Persistence of installed-version markers.

A marker records that an extension completed its upgrade to one version.
Markers are append-only and their existence is the only signal; the
repositories below differ only in where that fact is stored.
"""

from __future__ import annotations

import abc
import logging
from datetime import datetime, timezone

from exthost.lifecycle.database import Database
from exthost.lifecycle.registry import Extension

logger = logging.getLogger(__name__)


class VersionMarkerRepository(abc.ABC):
    """Append-only store of version markers."""

    @abc.abstractmethod
    async def list_markers(self, extension: Extension) -> list[str]:
        """Return every stored marker name, valid or not."""

    @abc.abstractmethod
    async def add_marker(self, extension: Extension, version: str) -> None:
        """Store a marker named *version*.  Storing it twice is a no-op."""


class FilesystemMarkerRepository(VersionMarkerRepository):
    """One empty file per version under ``<extension root>/data/versions``."""

    async def list_markers(self, extension: Extension) -> list[str]:
        versions_dir = extension.versions_dir
        if not versions_dir.is_dir():
            return []
        return sorted(p.name for p in versions_dir.iterdir() if p.is_file())

    async def add_marker(self, extension: Extension, version: str) -> None:
        versions_dir = extension.versions_dir
        versions_dir.mkdir(parents=True, exist_ok=True)
        marker = versions_dir / version
        if marker.exists():
            return
        marker.write_text(datetime.now(timezone.utc).isoformat() + "\n")


class InMemoryMarkerRepository(VersionMarkerRepository):
    """Markers kept in a dict, for tests."""

    def __init__(self, markers: dict[str, list[str]] | None = None) -> None:
        self._markers: dict[str, list[str]] = {k: list(v) for k, v in (markers or {}).items()}

    async def list_markers(self, extension: Extension) -> list[str]:
        return list(self._markers.get(extension.identifier, []))

    async def add_marker(self, extension: Extension, version: str) -> None:
        markers = self._markers.setdefault(extension.identifier, [])
        if version not in markers:
            markers.append(version)


class DatabaseMarkerRepository(VersionMarkerRepository):
    """Markers stored in the host ``extension_versions`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def list_markers(self, extension: Extension) -> list[str]:
        return await self._db.get_extension_versions(extension.identifier)

    async def add_marker(self, extension: Extension, version: str) -> None:
        await self._db.record_extension_version(extension.identifier, version)


def create_marker_repository(backend: str, db: Database | None = None) -> VersionMarkerRepository:
    """Build the repository named by the ``upgrade.marker_backend`` setting."""
    if backend == "filesystem":
        return FilesystemMarkerRepository()
    if backend == "database":
        if db is None:
            raise ValueError("The database marker backend needs a Database")
        return DatabaseMarkerRepository(db)
    if backend == "memory":
        return InMemoryMarkerRepository()
    raise ValueError(f"Unknown marker backend: {backend!r}")
