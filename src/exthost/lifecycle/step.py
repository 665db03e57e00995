"""One version's unit of upgrade work: schema phase, then logic phase."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any

from exthost.errors import StepExecutionError
from exthost.lifecycle.database import Database
from exthost.lifecycle.hooks import UpgradeContext, UpgradeHookRegistry, run_hook
from exthost.lifecycle.migration_runner import MigrationRunner
from exthost.lifecycle.registry import Extension

logger = logging.getLogger(__name__)


class StepState(str, enum.Enum):
    PENDING = "pending"
    SCHEMA_APPLIED = "schema_applied"
    LOGIC_APPLIED = "logic_applied"
    COMMITTED = "committed"


@dataclass
class StepContext:
    """Inputs shared by every step of one orchestration run."""

    db: Database
    hooks: UpgradeHookRegistry = field(default_factory=UpgradeHookRegistry)
    fresh_install: bool = False


@dataclass
class StepOutcome:
    version: str
    state: StepState = StepState.PENDING
    migrations: list[str] = field(default_factory=list)
    hook_ran: bool = False
    hook_result: Any = None

    @property
    def did_work(self) -> bool:
        return bool(self.migrations) or self.hook_ran


class UpgradeStep:
    """Applies one version to one extension.

    The schema phase runs every migration tagged with the version (all
    migrations up to it on a fresh install).  The logic phase runs the
    version's hook, if any, inside a single transaction.  Both phases are
    safe to repeat, so a crash before the version is committed only causes
    the same step to run again.
    """

    def __init__(self, runner: MigrationRunner) -> None:
        self._runner = runner

    async def apply(self, extension: Extension, version: str, context: StepContext) -> StepOutcome:
        outcome = StepOutcome(version=version)

        try:
            outcome.migrations = await self._runner.run(
                extension, version, cumulative=context.fresh_install
            )
        except Exception as exc:
            raise StepExecutionError(extension.identifier, version, "schema", str(exc)) from exc
        outcome.state = StepState.SCHEMA_APPLIED

        hook = context.hooks.get(version)
        if hook is None:
            logger.info("[%s] No upgrade hook for version %s", extension.identifier, version)
        else:
            hook_context = UpgradeContext(
                extension=extension,
                version=version,
                db=context.db,
                fresh_install=context.fresh_install,
            )
            logger.info("[%s] Executing upgrade hook for version %s", extension.identifier, version)
            try:
                async with context.db.transaction():
                    outcome.hook_result = await run_hook(hook, hook_context)
            except Exception as exc:
                logger.error(
                    "[%s] Upgrade hook failed for version %s: %s", extension.identifier, version, exc
                )
                raise StepExecutionError(extension.identifier, version, "logic", str(exc)) from exc
            outcome.hook_ran = True
            logger.info("[%s] Upgrade hook completed for version %s", extension.identifier, version)
        outcome.state = StepState.LOGIC_APPLIED
        return outcome
