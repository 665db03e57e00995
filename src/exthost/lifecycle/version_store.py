"""Installed and current versions of an extension."""

from __future__ import annotations

import logging

import yaml

from exthost import versioning
from exthost.errors import ManifestReadError
from exthost.lifecycle.markers import VersionMarkerRepository
from exthost.lifecycle.registry import Extension

logger = logging.getLogger(__name__)


class VersionStore:
    """Reads the declared version and reads/writes installed-version markers.

    Parameters
    ----------
    markers:
        Repository holding the markers.
    """

    def __init__(self, markers: VersionMarkerRepository) -> None:
        self._markers = markers

    def read_manifest(self, extension: Extension) -> dict:
        """Load ``extension.yaml``, raising ManifestReadError on any problem."""
        path = extension.manifest_path
        if not path.exists():
            raise ManifestReadError(extension.identifier, f"Manifest not found: {path}")
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as exc:
            raise ManifestReadError(extension.identifier, f"Failed to read manifest {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ManifestReadError(extension.identifier, f"Manifest must be a mapping: {path}")

        declared = data.get("identifier")
        if declared is not None and declared != extension.identifier:
            raise ManifestReadError(
                extension.identifier,
                f"Manifest declares identifier {declared!r}, expected {extension.identifier!r}",
            )
        return data

    async def get_current_version(self, extension: Extension) -> str:
        data = self.read_manifest(extension)
        version = data.get("version")
        if version is None:
            raise ManifestReadError(extension.identifier, "Manifest has no 'version' field")
        version = str(version)
        if not versioning.is_valid(version):
            raise ManifestReadError(extension.identifier, f"Manifest version is not semver: {version!r}")
        return version

    async def installed_versions(self, extension: Extension) -> list[str]:
        """Every valid marker, ascending."""
        names = await self._markers.list_markers(extension)
        valid = []
        for name in names:
            if versioning.is_valid(name):
                valid.append(name)
            else:
                logger.debug("[%s] Ignoring malformed version marker %r", extension.identifier, name)
        return versioning.sort_versions(valid)

    async def get_installed_version(self, extension: Extension) -> str | None:
        """Return the highest marker, or None on a fresh install."""
        return versioning.latest(await self._markers.list_markers(extension))

    async def mark_installed(self, extension: Extension, version: str) -> None:
        """Record that *version* completed.  Markers are never removed."""
        if not versioning.is_valid(version):
            raise ValueError(f"Cannot mark malformed version {version!r} as installed")
        installed = await self.get_installed_version(extension)
        if installed is not None and versioning.compare(version, installed) < 0:
            raise ValueError(
                f"[{extension.identifier}] Version {version} is older than installed {installed}"
            )
        await self._markers.add_marker(extension, version)
        logger.info("[%s] Marked version %s as installed", extension.identifier, version)
