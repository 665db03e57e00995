"""Tests for MigrationRunner (schema phase)."""

from __future__ import annotations

import pytest

from exthost.lifecycle.database import Database
from exthost.lifecycle.migration_runner import HISTORY_TABLE, MigrationRunner
from exthost.lifecycle.schema import ExtensionSchemaManager

CREATE_ARTICLE = """
class Migration1700000000100:
    async def up(self, db):
        await db.execute('CREATE TABLE "simple_blog"."article" (id INTEGER PRIMARY KEY, title TEXT)')

    async def down(self, db):
        await db.execute('DROP TABLE "simple_blog"."article"')
"""

ADD_TAGS = """
async def up(db):
    await db.execute('ALTER TABLE "simple_blog"."article" ADD COLUMN tags TEXT')
"""

CREATE_COMMENT = """
def up(db):
    return db.execute('CREATE TABLE "simple_blog"."comment" (id INTEGER PRIMARY KEY)')
"""

MIGRATIONS = {
    "1700000000100-1.0.0-beta.1-create-article.py": CREATE_ARTICLE,
    "1700000000200-1.0.0-beta.2-add-tags.py": ADD_TAGS,
    "1700000000300-1.0.0-beta.3-create-comment.py": CREATE_COMMENT,
}


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
async def runner(db: Database) -> MigrationRunner:
    return MigrationRunner(db)


@pytest.fixture
async def blog(db: Database, make_extension):
    ext = make_extension(migrations=MIGRATIONS)
    await ExtensionSchemaManager(db).ensure_schema(ext)
    return ext


async def _tables(db: Database) -> set[str]:
    rows = await db.execute_fetchall(
        "SELECT name FROM \"simple_blog\".sqlite_master WHERE type = 'table'"
    )
    return {r["name"] for r in rows}


# ------------------------------------------------------------------
# Tests
# ------------------------------------------------------------------


async def test_runs_only_migrations_of_the_version(runner, blog, db):
    applied = await runner.run(blog, "1.0.0-beta.1")
    assert applied == ["1700000000100-1.0.0-beta.1-create-article.py"]
    assert await _tables(db) == {"article", HISTORY_TABLE}


async def test_cumulative_runs_everything_up_to_version(runner, blog, db):
    applied = await runner.run(blog, "1.0.0-beta.2", cumulative=True)
    assert applied == [
        "1700000000100-1.0.0-beta.1-create-article.py",
        "1700000000200-1.0.0-beta.2-add-tags.py",
    ]
    columns = await db.execute_fetchall('PRAGMA "simple_blog".table_info("article")')
    assert [c["name"] for c in columns] == ["id", "title", "tags"]


async def test_function_based_sync_migration(runner, blog, db):
    await runner.run(blog, "1.0.0-beta.3")
    assert "comment" in await _tables(db)


async def test_rerun_skips_recorded_migrations(runner, blog, db):
    await runner.run(blog, "1.0.0-beta.1")
    assert await runner.run(blog, "1.0.0-beta.1") == []

    rows = await db.execute_fetchall(
        f'SELECT name, version FROM "simple_blog"."{HISTORY_TABLE}"'
    )
    assert rows == [{"name": "1700000000100-1.0.0-beta.1-create-article.py", "version": "1.0.0-beta.1"}]


async def test_already_exists_is_recorded_as_applied(runner, blog, db):
    await db.execute('CREATE TABLE "simple_blog"."article" (id INTEGER PRIMARY KEY, title TEXT)')

    assert await runner.run(blog, "1.0.0-beta.1") == []
    assert await runner.executed_migrations(blog) == {"1700000000100-1.0.0-beta.1-create-article.py"}


async def test_duplicate_column_is_recorded_as_applied(runner, blog, db):
    await runner.run(blog, "1.0.0-beta.1")
    await db.execute('ALTER TABLE "simple_blog"."article" ADD COLUMN tags TEXT')

    assert await runner.run(blog, "1.0.0-beta.2") == []
    assert "1700000000200-1.0.0-beta.2-add-tags.py" in await runner.executed_migrations(blog)


async def test_already_exists_after_new_statements_is_raised(db, make_extension):
    ext = make_extension(migrations={
        "1700000000050-1.0.0-create-article.py": """
            async def up(db):
                await db.execute('CREATE TABLE "simple_blog"."article" (id INTEGER PRIMARY KEY)')
        """,
        "1700000000100-1.1.0-add-tags.py": """
            async def up(db):
                await db.execute('ALTER TABLE "simple_blog"."article" ADD COLUMN tags TEXT')
                await db.execute('CREATE TABLE "simple_blog"."legacy" (id INTEGER)')
        """,
    })
    await ExtensionSchemaManager(db).ensure_schema(ext)
    runner = MigrationRunner(db)
    await runner.run(ext, "1.0.0")
    await db.execute('CREATE TABLE "simple_blog"."legacy" (id INTEGER)')

    with pytest.raises(Exception, match="already exists"):
        await runner.run(ext, "1.1.0")

    assert "1700000000100-1.1.0-add-tags.py" not in await runner.executed_migrations(ext)
    columns = await db.execute_fetchall('PRAGMA "simple_blog".table_info("article")')
    assert [c["name"] for c in columns] == ["id"]

    # Once the conflicting table is gone the whole file applies.
    await db.execute('DROP TABLE "simple_blog"."legacy"')
    assert await runner.run(ext, "1.1.0") == ["1700000000100-1.1.0-add-tags.py"]
    columns = await db.execute_fetchall('PRAGMA "simple_blog".table_info("article")')
    assert [c["name"] for c in columns] == ["id", "tags"]


async def test_failing_migration_rolls_back_and_is_not_recorded(db, make_extension):
    ext = make_extension(migrations={
        "1700000000100-1.0.0-broken.py": """
            async def up(db):
                await db.execute('CREATE TABLE "simple_blog"."partial" (id INTEGER)')
                await db.execute('INSERT INTO "simple_blog"."missing" VALUES (1)')
        """,
    })
    await ExtensionSchemaManager(db).ensure_schema(ext)
    runner = MigrationRunner(db)

    with pytest.raises(Exception, match="no such table"):
        await runner.run(ext, "1.0.0")

    assert "partial" not in await _tables(db)
    assert await runner.executed_migrations(ext) == set()


async def test_no_migrations_for_version(runner, blog, db):
    assert await runner.run(blog, "2.0.0") == []
    assert HISTORY_TABLE not in await _tables(db)
