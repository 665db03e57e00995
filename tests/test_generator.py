"""Tests for SchemaMigrationGenerator and blank migration scaffolding."""

from __future__ import annotations

import pytest

from exthost.errors import BuildNotReadyError, InvalidArgumentError, SchemaDiffError
from exthost.lifecycle.database import Database
from exthost.lifecycle.migration_files import list_migration_files
from exthost.lifecycle.migration_runner import MigrationRunner
from exthost.lifecycle.schema import ExtensionSchemaManager
from exthost.migrations.generator import SchemaMigrationGenerator, create_blank_migration

TS = 1762769127629

ARTICLE_ENTITY = """
    name: article
    columns:
      - {name: id, type: INTEGER, primary_key: true}
      - {name: title, type: TEXT, nullable: false, default: "''"}
    indexes:
      - {name: idx_article_title, columns: [title]}
"""

HOST_ENTITY = """
    name: users
    schema: main
    columns:
      - {name: id, type: INTEGER, primary_key: true}
"""


@pytest.fixture
def generator(db: Database) -> SchemaMigrationGenerator:
    return SchemaMigrationGenerator(db)


@pytest.fixture
async def blog(db: Database, make_extension):
    ext = make_extension(entities={
        "article.entity.yaml": ARTICLE_ENTITY,
        "users.entity.yaml": HOST_ENTITY,
    })
    await ExtensionSchemaManager(db).ensure_schema(ext)
    return ext


# ------------------------------------------------------------------
# Argument validation
# ------------------------------------------------------------------


@pytest.mark.parametrize("version,description,match", [
    ("1.0", "add-tags", "Invalid version"),
    ("1.0.0", "Add_Tags", "Invalid description"),
    ("1.0.0-beta", "add-tags", "ambiguous"),
])
async def test_invalid_arguments_have_no_side_effects(generator, blog, version, description, match):
    with pytest.raises(InvalidArgumentError, match=match):
        await generator.generate(blog, version, description, timestamp=TS)
    assert not blog.migrations_dir.exists()


async def test_missing_build_output(generator, db, make_extension):
    ext = make_extension()
    with pytest.raises(BuildNotReadyError) as exc_info:
        await generator.generate(ext, "1.0.0", "init", timestamp=TS)
    assert exc_info.value.build_step == "build"
    assert "run the 'build' step" in str(exc_info.value)


async def test_malformed_entities_are_build_errors(generator, db, make_extension):
    ext = make_extension(entities={"broken.entity.yaml": "name: broken\ncolumns: []\n"})
    with pytest.raises(BuildNotReadyError, match="declares no columns"):
        await generator.generate(ext, "1.0.0", "init", timestamp=TS)


# ------------------------------------------------------------------
# Generation
# ------------------------------------------------------------------


async def test_generates_filtered_artifact(generator, blog):
    artifact = await generator.generate(blog, "1.0.0-beta.3", "add-articles", timestamp=TS)

    assert artifact.name == f"{TS}-1.0.0-beta.3-add-articles.py"
    assert artifact.statements == 2
    assert [p.name for p in blog.migrations_dir.iterdir()] == [artifact.name]

    source = artifact.path.read_text()
    assert source.startswith('"""Extension migration: add-articles\n')
    assert "Extension: simple-blog" in source
    assert "Version: 1.0.0-beta.3" in source
    assert "Generated: 2025-11-10T" in source
    assert f"class Migration{TS}:" in source
    assert "Temp" not in source
    assert '"main"' not in source
    compile(source, artifact.name, "exec")


async def test_artifact_is_discovered_and_applied(generator, blog, db):
    artifact = await generator.generate(blog, "1.0.0", "init", timestamp=TS)

    files = list_migration_files(blog.migrations_dir)
    assert [(f.version, f.description) for f in files] == [("1.0.0", "init")]

    applied = await MigrationRunner(db).run(blog, "1.0.0")
    assert applied == [artifact.name]
    row = await db.execute_fetchone(
        "SELECT COUNT(*) AS cnt FROM \"simple_blog\".sqlite_master WHERE name = 'article'"
    )
    assert row["cnt"] == 1


async def test_only_foreign_changes_means_no_changes(generator, db, make_extension):
    ext = make_extension(entities={"users.entity.yaml": HOST_ENTITY})
    await ExtensionSchemaManager(db).ensure_schema(ext)

    with pytest.raises(SchemaDiffError, match="No schema changes detected"):
        await generator.generate(ext, "1.0.0", "host-only", timestamp=TS)
    assert list(ext.migrations_dir.iterdir()) == []


async def test_missing_schema_leaves_no_files(generator, make_extension):
    ext = make_extension(entities={"article.entity.yaml": ARTICLE_ENTITY})
    with pytest.raises(SchemaDiffError, match="does not exist"):
        await generator.generate(ext, "1.0.0", "init", timestamp=TS)
    assert not ext.migrations_dir.exists() or list(ext.migrations_dir.iterdir()) == []


# ------------------------------------------------------------------
# Blank migrations
# ------------------------------------------------------------------


def test_create_blank_migration(make_extension):
    ext = make_extension()
    artifact = create_blank_migration(ext, "1.0.0-beta.2", "backfill-slugs", timestamp=TS)

    assert artifact.path == ext.migrations_dir / f"{TS}-1.0.0-beta.2-backfill-slugs.py"
    source = artifact.path.read_text()
    assert "async def up(db):" in source
    assert '"simple_blog"' in source
    compile(source, artifact.name, "exec")


def test_create_blank_migration_refuses_overwrite(make_extension):
    ext = make_extension()
    create_blank_migration(ext, "1.0.0", "init", timestamp=TS)
    with pytest.raises(InvalidArgumentError, match="already exists"):
        create_blank_migration(ext, "1.0.0", "init", timestamp=TS)


def test_create_blank_migration_validates_arguments(make_extension):
    ext = make_extension()
    with pytest.raises(InvalidArgumentError):
        create_blank_migration(ext, "next", "init", timestamp=TS)
