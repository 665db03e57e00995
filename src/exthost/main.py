"""exthost: extension lifecycle and versioned upgrades. Main entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sqlite3
import sys
from pathlib import Path

from dotenv import load_dotenv

from exthost.config_loader import DEFAULT_CONFIG_PATH, HostConfig, load_host_config
from exthost.errors import (
    BuildNotReadyError,
    ExtensionLifecycleError,
    InvalidArgumentError,
    SchemaDiffError,
)
from exthost.lifecycle.database import Database
from exthost.lifecycle.hooks import load_extension_hooks
from exthost.lifecycle.markers import create_marker_repository
from exthost.lifecycle.migration_runner import MigrationRunner
from exthost.lifecycle.orchestrator import FailurePolicy, UpgradeOrchestrator, UpgradeReport
from exthost.lifecycle.registry import ExtensionRegistry
from exthost.lifecycle.resolver import VersionResolver
from exthost.lifecycle.schema import ExtensionSchemaManager
from exthost.lifecycle.step import UpgradeStep
from exthost.lifecycle.version_store import VersionStore
from exthost.logging_config import setup_logging
from exthost.migrations.generator import SchemaMigrationGenerator, create_blank_migration

logger = logging.getLogger(__name__)


class Host:
    """Central container for the lifecycle components."""

    def __init__(self, config: HostConfig, db: Database, registry: ExtensionRegistry,
                 store: VersionStore, schemas: ExtensionSchemaManager,
                 orchestrator: UpgradeOrchestrator):
        self.config = config
        self.db = db
        self.registry = registry
        self.store = store
        self.schemas = schemas
        self.orchestrator = orchestrator
        self.resolver = VersionResolver()

    async def shutdown(self) -> None:
        await self.db.close()


async def build_host(config: HostConfig) -> Host:
    """Wire every component from *config* and open the database."""
    db = Database(config.database.path)
    await db.initialize()

    registry = ExtensionRegistry(Path(config.extensions.dir), Path(config.registry_file))
    store = VersionStore(create_marker_repository(config.upgrade.marker_backend, db))
    schemas_dir = config.database.schemas_dir
    schemas = ExtensionSchemaManager(db, Path(schemas_dir) if schemas_dir else None)
    orchestrator = UpgradeOrchestrator(
        db=db,
        store=store,
        schemas=schemas,
        step=UpgradeStep(MigrationRunner(db)),
        failure_policy=FailurePolicy(config.upgrade.failure_policy),
        max_concurrency=config.upgrade.max_concurrency,
    )
    return Host(config, db, registry, store, schemas, orchestrator)


# ------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------


async def run_upgrades(host: Host, identifiers: list[str] | None = None) -> list[UpgradeReport]:
    if identifiers:
        extensions = [host.registry.get(i) for i in identifiers]
    else:
        extensions = host.registry.list_extensions()
    return await host.orchestrator.run_all(extensions)


async def show_status(host: Host) -> None:
    """Print installed/current version and pending plan per extension."""
    extensions = host.registry.list_extensions()
    print(f"\n=== Extensions ({len(extensions)}) ===\n")
    for extension in extensions:
        if not extension.is_ready():
            print(f"  {extension.identifier}: not installed ({extension.root})")
            continue
        try:
            current = await host.store.get_current_version(extension)
            installed = await host.store.get_installed_version(extension)
            hooks = load_extension_hooks(extension)
            plan = host.resolver.resolve(extension, installed, current, hooks)
        except ExtensionLifecycleError as exc:
            print(f"  {extension.identifier}: error: {exc}")
            continue
        pending = " -> ".join(plan) if plan else "up to date"
        print(f"  {extension.identifier}: installed {installed or '-'}, current {current} ({pending})")


def _diagnose(exc: BaseException) -> str:
    """Map a generation failure to an operator-facing category."""
    if isinstance(exc, (sqlite3.Error, FileNotFoundError, ConnectionError)):
        return "Database unreachable"
    if isinstance(exc, SchemaDiffError):
        message = str(exc).lower()
        if "does not exist" in message:
            return "Target schema absent"
        if "no schema changes" in message or "no changes" in message:
            return "No schema changes detected"
        return "Schema diff failed"
    if isinstance(exc, BuildNotReadyError):
        return "Extension not built"
    if isinstance(exc, InvalidArgumentError):
        return "Invalid arguments"
    if isinstance(exc, KeyError):
        return "Extension not found"
    if isinstance(exc, ValueError):
        return "Connection misconfigured"
    return "Migration generation failed"


async def generate_migration(config: HostConfig, identifier: str, version: str, description: str):
    db_path = config.database.path
    if db_path != ":memory:" and not Path(db_path).exists():
        raise FileNotFoundError(f"Database file not found: {db_path}")

    host = await build_host(config)
    try:
        extension = host.registry.get(identifier)
        if not await host.schemas.attach_existing(extension):
            raise SchemaDiffError(f'Schema "{extension.schema_name}" does not exist in the database')
        return await SchemaMigrationGenerator(host.db).generate(extension, version, description)
    finally:
        await host.shutdown()


_GENERATE_COMMON_ISSUES = (
    "Database unreachable: the host database file is missing or cannot be opened",
    "Connection misconfigured: check database.path and database.schemas_dir in the host config",
    "No schema changes detected: the entity definitions already match the database",
    "Target schema absent: run 'exthost upgrade <identifier>' to create the extension schema",
)


def _load_config(args) -> HostConfig:
    path = args.config or os.environ.get("EXTHOST_CONFIG") or DEFAULT_CONFIG_PATH
    config = load_host_config(Path(path))
    if config.logging.format or config.logging.level:
        setup_logging(config.logging.format, config.logging.level)
    return config


def _cmd_generate(args) -> int:
    print(f"Generating migration for extension: {args.identifier}")
    print(f"  Version: {args.version}")
    print(f"  Description: {args.description}\n")
    try:
        config = _load_config(args)
        artifact = asyncio.run(
            generate_migration(config, args.identifier, args.version, args.description)
        )
    except Exception as exc:
        print(f"{_diagnose(exc)}: {exc}", file=sys.stderr)
        print("\nCommon issues:", file=sys.stderr)
        for issue in _GENERATE_COMMON_ISSUES:
            print(f"  - {issue}", file=sys.stderr)
        return 1

    print(f"Migration created: {artifact.path}")
    print(f"  Statements: {artifact.statements}")
    print("\nNext steps:")
    print("  1. Review the generated migration file")
    print(f"  2. Run 'exthost upgrade {args.identifier}' to apply it")
    return 0


def _cmd_create(args) -> int:
    try:
        config = _load_config(args)
        registry = ExtensionRegistry(Path(config.extensions.dir), Path(config.registry_file))
        artifact = create_blank_migration(registry.get(args.identifier), args.version, args.description)
    except (ExtensionLifecycleError, ValueError, KeyError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"Migration created: {artifact.path}")
    return 0


def _cmd_upgrade(args) -> int:
    try:
        config = _load_config(args)
    except (OSError, ValueError) as exc:
        print(f"Error: invalid host config: {exc}", file=sys.stderr)
        return 1

    async def _run() -> list[UpgradeReport]:
        host = await build_host(config)
        try:
            return await run_upgrades(host, args.identifiers)
        finally:
            await host.shutdown()

    try:
        reports = asyncio.run(_run())
    except (ExtensionLifecycleError, KeyError) as exc:
        print(f"Upgrade aborted: {exc}", file=sys.stderr)
        return 1

    for report in reports:
        line = f"  {report.identifier}: {report.status}"
        if report.plan:
            line += f" ({', '.join(report.committed) or 'nothing committed'})"
        if report.error is not None:
            line += f" - {report.error}"
        print(line)
    return 1 if any(r.status == "failed" for r in reports) else 0


def _cmd_status(args) -> int:
    try:
        config = _load_config(args)
    except (OSError, ValueError) as exc:
        print(f"Error: invalid host config: {exc}", file=sys.stderr)
        return 1

    async def _run() -> None:
        host = await build_host(config)
        try:
            await show_status(host)
        finally:
            await host.shutdown()

    asyncio.run(_run())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="exthost", description="Extension lifecycle and upgrade tool")
    parser.add_argument("--config", default=None, help="Path to exthost.yaml")
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # generate
    gen_parser = sub.add_parser("generate", help="Generate a schema migration from entity definitions")
    gen_parser.add_argument("identifier", help="Extension identifier")
    gen_parser.add_argument("version", help="Target version (semver)")
    gen_parser.add_argument("description", help="Kebab-case description")

    # create
    create_parser = sub.add_parser("create", help="Create a blank migration")
    create_parser.add_argument("identifier", help="Extension identifier")
    create_parser.add_argument("version", help="Target version (semver)")
    create_parser.add_argument("description", help="Kebab-case description")

    # upgrade
    upgrade_parser = sub.add_parser("upgrade", help="Upgrade extensions to their current version")
    upgrade_parser.add_argument("identifiers", nargs="*", help="Extensions to upgrade (default: all enabled)")

    # status
    sub.add_parser("status", help="Show installed and current versions")
    return parser


_COMMANDS = {
    "generate": _cmd_generate,
    "create": _cmd_create,
    "upgrade": _cmd_upgrade,
    "status": _cmd_status,
}


def cli_main(argv: list[str] | None = None) -> int:
    load_dotenv()
    setup_logging()

    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1
    return _COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(cli_main())
