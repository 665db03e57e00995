"""Offline generation of extension migration artifacts."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from exthost import versioning
from exthost.errors import BuildNotReadyError, InvalidArgumentError, SchemaDiffError
from exthost.lifecycle.database import Database
from exthost.lifecycle.migration_files import format_migration_filename, parse_migration_filename
from exthost.lifecycle.registry import Extension
from exthost.migrations.diff import SchemaDiffEngine
from exthost.migrations.entities import entity_files, load_entities
from exthost.migrations.filtering import filter_migration_source
from exthost.migrations.templates import find_class_name, render_blank, render_header, rename_class

logger = logging.getLogger(__name__)

BUILD_STEP = "build"


@dataclass(frozen=True)
class MigrationArtifact:
    path: Path
    timestamp: int
    version: str
    description: str
    statements: int = 0

    @property
    def name(self) -> str:
        return self.path.name


def _now_ms() -> int:
    return int(time.time() * 1000)


def validate_arguments(version: str, description: str, timestamp: int) -> str:
    """Check the arguments and return the artifact filename.

    Raises InvalidArgumentError before anything touches the filesystem.
    """
    if not versioning.is_valid(version):
        raise InvalidArgumentError(
            f"Invalid version '{version}'. Version must be a valid semver (e.g. 1.0.0, 1.0.0-beta.3)"
        )
    if not versioning.is_kebab_case(description):
        raise InvalidArgumentError(
            f"Invalid description '{description}'. Description must be in kebab-case (e.g. add-tags-table)"
        )
    filename = format_migration_filename(timestamp, version, description)
    if parse_migration_filename(filename) != (timestamp, version, description):
        raise InvalidArgumentError(
            f"Version '{version}' and description '{description}' produce an ambiguous "
            f"migration filename: {filename}"
        )
    return filename


class SchemaMigrationGenerator:
    """Produces a migration artifact from the entity/database diff.

    Parameters
    ----------
    db:
        Initialised database with the target extension schema attached.
    engine:
        Diff engine; defaults to a :class:`SchemaDiffEngine` over *db*.
    """

    def __init__(self, db: Database, engine: SchemaDiffEngine | None = None) -> None:
        self._db = db
        self._engine = engine or SchemaDiffEngine(db)

    async def generate(
        self,
        extension: Extension,
        version: str,
        description: str,
        timestamp: int | None = None,
    ) -> MigrationArtifact:
        timestamp = _now_ms() if timestamp is None else timestamp
        filename = validate_arguments(version, description, timestamp)

        if not entity_files(extension.entities_dir):
            raise BuildNotReadyError(
                extension.identifier,
                f"No compiled entity definitions found in {extension.entities_dir}",
                build_step=BUILD_STEP,
            )
        try:
            entities = load_entities(extension.entities_dir)
        except ValueError as exc:
            raise BuildNotReadyError(
                extension.identifier, f"Unusable entity definitions: {exc}", build_step=BUILD_STEP
            ) from exc

        schema = extension.schema_name
        output_dir = extension.migrations_dir
        logger.info("[%s] Generating migration %s for schema %s", extension.identifier, filename, schema)

        temp_path: Path | None = None
        try:
            temp_path = await self._engine.write_temp_migration(
                entities, schema, output_dir, description, timestamp
            )
            source = temp_path.read_text()

            filtered = filter_migration_source(source, schema)
            if filtered.dropped:
                logger.info(
                    "[%s] Removed %d statement(s) outside schema %s",
                    extension.identifier, filtered.dropped, schema,
                )
            if not filtered.kept["up"]:
                raise SchemaDiffError(
                    f'No schema changes detected for schema "{schema}" after filtering'
                )

            source = filtered.source
            old_name = find_class_name(source)
            if old_name is not None:
                source = rename_class(source, old_name, f"Migration{timestamp}")
            source = render_header(extension.identifier, version, description, timestamp) + source

            final_path = output_dir / filename
            final_path.write_text(source)
        finally:
            if temp_path is not None and temp_path.exists():
                temp_path.unlink()

        logger.info("[%s] Migration created: %s", extension.identifier, final_path)
        return MigrationArtifact(
            path=final_path,
            timestamp=timestamp,
            version=version,
            description=description,
            statements=filtered.kept["up"],
        )


def create_blank_migration(
    extension: Extension,
    version: str,
    description: str,
    timestamp: int | None = None,
) -> MigrationArtifact:
    """Write an empty function-based migration for hand-written SQL."""
    timestamp = _now_ms() if timestamp is None else timestamp
    filename = validate_arguments(version, description, timestamp)

    extension.migrations_dir.mkdir(parents=True, exist_ok=True)
    path = extension.migrations_dir / filename
    if path.exists():
        raise InvalidArgumentError(f"Migration file already exists: {path}")
    path.write_text(render_blank(extension.identifier, extension.schema_name, version, description, timestamp))
    logger.info("[%s] Migration created: %s", extension.identifier, path)
    return MigrationArtifact(path=path, timestamp=timestamp, version=version, description=description)
