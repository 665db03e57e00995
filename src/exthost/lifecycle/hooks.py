"""Custom upgrade hooks keyed by exact version string.

An extension contributes hooks from ``upgrade/__init__.py``::

    from exthost.upgrades.catalog import sync_catalog_from_file

    def register(hooks):
        hooks.register("1.0.0-beta.8", sync_catalog_from_file("model-config.yaml"))

Lookups use the exact version string; nothing is resolved by name or
reflection at upgrade time.
"""

from __future__ import annotations

import importlib.util
import inspect
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from exthost import versioning
from exthost.errors import HookRegistrationError

if TYPE_CHECKING:
    from exthost.lifecycle.database import Database
    from exthost.lifecycle.registry import Extension

logger = logging.getLogger(__name__)


@dataclass
class UpgradeContext:
    """Everything a hook may use while it runs."""

    extension: Extension
    version: str
    db: Database
    fresh_install: bool = False
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("exthost.upgrades"))

    @property
    def schema(self) -> str:
        return self.extension.schema_name

    @property
    def data_dir(self) -> Path:
        """``upgrade/<version>/`` inside the extension."""
        return self.extension.upgrade_dir / self.version


UpgradeHook = Callable[[UpgradeContext], Any]


class UpgradeHookRegistry:
    """Maps a version string to the hook that upgrades to it."""

    def __init__(self) -> None:
        self._hooks: dict[str, UpgradeHook] = {}

    def register(self, version: str, hook: UpgradeHook) -> None:
        if not versioning.is_valid(version):
            raise HookRegistrationError(f"Hook version is not semver: {version!r}")
        if not callable(hook):
            raise HookRegistrationError(f"Hook for version {version} is not callable")
        if version in self._hooks:
            raise HookRegistrationError(f"Hook already registered for version {version}")
        self._hooks[version] = hook

    def hook(self, version: str) -> Callable[[UpgradeHook], UpgradeHook]:
        """Decorator form of :meth:`register`."""
        def decorator(fn: UpgradeHook) -> UpgradeHook:
            self.register(version, fn)
            return fn
        return decorator

    def get(self, version: str) -> UpgradeHook | None:
        return self._hooks.get(version)

    def versions(self) -> set[str]:
        return set(self._hooks)

    def __contains__(self, version: str) -> bool:
        return version in self._hooks

    def __len__(self) -> int:
        return len(self._hooks)


async def run_hook(hook: UpgradeHook, context: UpgradeContext) -> Any:
    """Invoke a sync or async hook."""
    if inspect.iscoroutinefunction(hook):
        return await hook(context)
    result = hook(context)
    if inspect.isawaitable(result):
        result = await result
    return result


def load_extension_hooks(extension: Extension) -> UpgradeHookRegistry:
    """Load hooks from ``upgrade/__init__.py`` of *extension*.

    A missing file yields an empty registry.  A module without a
    ``register(hooks)`` function, or one that fails while loading, raises
    HookRegistrationError: silently skipping upgrade logic is never safe.
    """
    registry = UpgradeHookRegistry()
    init_file = extension.upgrade_dir / "__init__.py"
    if not init_file.exists():
        return registry

    module_name = f"exthost_upgrade_{extension.schema_name}"
    try:
        spec = importlib.util.spec_from_file_location(
            module_name,
            str(init_file),
            submodule_search_locations=[str(extension.upgrade_dir)],
        )
        if spec is None or spec.loader is None:
            raise HookRegistrationError(f"[{extension.identifier}] Cannot load {init_file}")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
    except HookRegistrationError:
        raise
    except Exception as exc:
        raise HookRegistrationError(
            f"[{extension.identifier}] Failed to load upgrade hooks from {init_file}: {exc}"
        ) from exc

    register = getattr(module, "register", None)
    if not callable(register):
        raise HookRegistrationError(
            f"[{extension.identifier}] {init_file} has no register(hooks) function"
        )
    try:
        register(registry)
    except Exception as exc:
        raise HookRegistrationError(f"[{extension.identifier}] register() failed: {exc}") from exc
    logger.info(
        "[%s] Loaded %d upgrade hook(s): %s",
        extension.identifier, len(registry), ", ".join(versioning.sort_versions(registry.versions())),
    )
    return registry
