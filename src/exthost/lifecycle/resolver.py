"""Compute the ordered list of versions an extension must go through."""

from __future__ import annotations

import logging
from typing import Iterable

from exthost import versioning
from exthost.lifecycle.hooks import UpgradeHookRegistry
from exthost.lifecycle.migration_files import list_migration_files
from exthost.lifecycle.registry import Extension

logger = logging.getLogger(__name__)


class VersionResolver:
    """Plans upgrades from version-tagged artifacts.

    Versions are collected from three places:

    - directories named after a version under ``upgrade/``,
    - the version embedded in migration filenames,
    - versions with a registered upgrade hook.
    """

    def available_versions(
        self, extension: Extension, hooks: UpgradeHookRegistry | None = None
    ) -> set[str]:
        versions: set[str] = set()

        upgrade_dir = extension.upgrade_dir
        if upgrade_dir.is_dir():
            for path in upgrade_dir.iterdir():
                if path.is_dir() and versioning.is_valid(path.name):
                    versions.add(path.name)

        for migration in list_migration_files(extension.migrations_dir):
            versions.add(migration.version)

        if hooks is not None:
            versions.update(hooks.versions())

        return versions

    @staticmethod
    def plan(installed: str | None, current: str, available: Iterable[str]) -> list[str]:
        """Return the versions to apply, ascending, ending with *current*.

        - no installed version: ``[current]`` (fresh install, no replay),
        - installed equals current: ``[]``,
        - otherwise every available version in ``(installed, current]``.

        A downgrade (installed newer than current) plans nothing.
        """
        if installed is None:
            return [current]
        if versioning.compare(installed, current) >= 0:
            return []

        in_range = [
            v for v in available
            if versioning.is_valid(v)
            and versioning.compare(v, installed) > 0
            and versioning.compare(v, current) <= 0
        ]
        planned = versioning.sort_versions(in_range)
        if not planned or not versioning.same_precedence(planned[-1], current):
            planned.append(current)
        elif planned[-1] != current:
            # same precedence, different build metadata: target the declared string
            planned[-1] = current
        return planned

    def resolve(
        self,
        extension: Extension,
        installed: str | None,
        current: str,
        hooks: UpgradeHookRegistry | None = None,
    ) -> list[str]:
        if installed is None or versioning.same_precedence(installed, current):
            return self.plan(installed, current, ())
        if versioning.compare(installed, current) > 0:
            logger.warning(
                "[%s] Installed version %s is newer than current %s, nothing to apply",
                extension.identifier, installed, current,
            )
            return []
        available = self.available_versions(extension, hooks)
        planned = self.plan(installed, current, available)
        logger.info(
            "[%s] Upgrade path %s -> %s: %s",
            extension.identifier, installed, current, " -> ".join(planned),
        )
        return planned
