"""Drive every installed extension from its installed to its current version."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from exthost.errors import ExtensionLifecycleError, StepExecutionError
from exthost.lifecycle.database import Database
from exthost.lifecycle.hooks import UpgradeHookRegistry, load_extension_hooks
from exthost.lifecycle.registry import Extension
from exthost.lifecycle.resolver import VersionResolver
from exthost.lifecycle.schema import ExtensionSchemaManager
from exthost.lifecycle.step import StepContext, StepState, UpgradeStep
from exthost.lifecycle.version_store import VersionStore

logger = logging.getLogger(__name__)


class FailurePolicy(str, enum.Enum):
    """What a failed extension upgrade means for the host.

    ``continue`` logs the failure and leaves that extension at its last
    committed version; ``abort`` re-raises so the host refuses to start.
    """

    CONTINUE = "continue"
    ABORT = "abort"


@dataclass
class UpgradeReport:
    """Outcome of one orchestration run for one extension.

    ``applied`` lists committed versions that ran a migration or hook,
    ``skipped`` committed versions with nothing to run (code-only bumps).
    """

    identifier: str
    installed: str | None = None
    current: str | None = None
    plan: list[str] = field(default_factory=list)
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    hook_results: dict[str, Any] = field(default_factory=dict)
    failed_version: str | None = None
    error: BaseException | None = None
    ready: bool = True

    @property
    def committed(self) -> list[str]:
        return [v for v in self.plan if v in self.applied or v in self.skipped]

    @property
    def status(self) -> str:
        if not self.ready:
            return "not_ready"
        if self.error is not None:
            return "failed"
        if not self.plan:
            return "up_to_date"
        return "upgraded"

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "status": self.status,
            "installed": self.installed,
            "current": self.current,
            "plan": list(self.plan),
            "applied": list(self.applied),
            "skipped": list(self.skipped),
            "failed_version": self.failed_version,
            "error": str(self.error) if self.error is not None else None,
        }


class UpgradeOrchestrator:
    """Plans and applies upgrades per extension.

    Parameters
    ----------
    db:
        Host database shared by every step.
    store:
        Installed/current version access.
    schemas:
        Creates each extension's schema namespace before its steps run.
    resolver, step:
        Injected collaborators; defaults are built from *db*.
    hook_loader:
        Returns the hook registry of an extension.
    failure_policy:
        See :class:`FailurePolicy`.
    max_concurrency:
        How many extensions may upgrade at the same time.  Versions of one
        extension always run sequentially.
    """

    def __init__(
        self,
        db: Database,
        store: VersionStore,
        schemas: ExtensionSchemaManager,
        step: UpgradeStep,
        resolver: VersionResolver | None = None,
        hook_loader: Callable[[Extension], UpgradeHookRegistry] = load_extension_hooks,
        failure_policy: FailurePolicy = FailurePolicy.CONTINUE,
        max_concurrency: int = 1,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._db = db
        self._store = store
        self._schemas = schemas
        self._step = step
        self._resolver = resolver or VersionResolver()
        self._hook_loader = hook_loader
        self.failure_policy = FailurePolicy(failure_policy)
        self.max_concurrency = max_concurrency

    async def run(self, extension: Extension) -> UpgradeReport:
        """Upgrade one extension.  Errors are captured in the report."""
        report = UpgradeReport(identifier=extension.identifier)
        if not extension.is_ready():
            logger.warning("[%s] Extension directory not found, skipping upgrade", extension.identifier)
            report.ready = False
            return report

        try:
            report.current = await self._store.get_current_version(extension)
            report.installed = await self._store.get_installed_version(extension)
            await self._schemas.ensure_schema(extension)
            hooks = self._hook_loader(extension)
            report.plan = self._resolver.resolve(extension, report.installed, report.current, hooks)
        except ExtensionLifecycleError as exc:
            logger.error("[%s] Upgrade check failed: %s", extension.identifier, exc)
            report.error = exc
            return report
        except Exception as exc:
            logger.exception("[%s] Upgrade check failed", extension.identifier)
            report.error = exc
            return report

        if not report.plan:
            logger.info("[%s] Up to date at version %s", extension.identifier, report.current)
            return report

        context = StepContext(db=self._db, hooks=hooks, fresh_install=report.installed is None)
        if context.fresh_install:
            logger.info("[%s] Fresh install of version %s", extension.identifier, report.current)

        for version in report.plan:
            try:
                outcome = await self._step.apply(extension, version, context)
                await self._store.mark_installed(extension, version)
            except StepExecutionError as exc:
                logger.error("[%s] Upgrade stopped at version %s: %s", extension.identifier, version, exc)
                report.failed_version = version
                report.error = exc
                return report
            except Exception as exc:
                logger.error("[%s] Upgrade stopped at version %s: %s", extension.identifier, version, exc)
                report.failed_version = version
                report.error = StepExecutionError(extension.identifier, version, "commit", str(exc))
                report.error.__cause__ = exc
                return report

            outcome.state = StepState.COMMITTED
            if outcome.did_work:
                report.applied.append(version)
            else:
                report.skipped.append(version)
            if outcome.hook_ran and outcome.hook_result is not None:
                report.hook_results[version] = outcome.hook_result

        logger.info(
            "[%s] Upgraded %s -> %s (%d version(s))",
            extension.identifier, report.installed or "fresh", report.current, len(report.plan),
        )
        return report

    async def run_all(self, extensions: list[Extension]) -> list[UpgradeReport]:
        """Upgrade every extension; one failure never stops the others.

        With :attr:`FailurePolicy.ABORT` the first failure is re-raised once
        every extension has finished.
        """
        if not extensions:
            logger.info("No enabled extensions found")
            return []

        logger.info(
            "Starting extension upgrade check for %d extension(s): %s",
            len(extensions), ", ".join(e.identifier for e in extensions),
        )
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _guarded(extension: Extension) -> UpgradeReport:
            async with semaphore:
                return await self.run(extension)

        reports = list(await asyncio.gather(*(_guarded(e) for e in extensions)))

        upgraded = sum(1 for r in reports if r.status == "upgraded")
        skipped = sum(1 for r in reports if r.status in ("up_to_date", "not_ready"))
        failed = [r for r in reports if r.status == "failed"]
        logger.info(
            "Extension upgrade check completed. Upgraded: %d, Skipped: %d, Failed: %d",
            upgraded, skipped, len(failed),
        )

        if failed and self.failure_policy is FailurePolicy.ABORT:
            failed[0].raise_for_error()
        return reports
