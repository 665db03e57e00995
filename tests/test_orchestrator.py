"""Tests for UpgradeOrchestrator end to end."""

from __future__ import annotations

import pytest

from exthost.errors import StepExecutionError
from exthost.lifecycle.database import Database
from exthost.lifecycle.markers import InMemoryMarkerRepository
from exthost.lifecycle.migration_runner import MigrationRunner
from exthost.lifecycle.orchestrator import FailurePolicy, UpgradeOrchestrator
from exthost.lifecycle.registry import Extension
from exthost.lifecycle.resolver import VersionResolver
from exthost.lifecycle.schema import ExtensionSchemaManager
from exthost.lifecycle.step import UpgradeStep
from exthost.lifecycle.version_store import VersionStore

MIGRATIONS = {
    "1700000000100-1.0.0-beta.1-create-posts.py": """
        async def up(db):
            await db.execute('CREATE TABLE "simple_blog"."post" (id INTEGER PRIMARY KEY, title TEXT)')
    """,
    "1700000000500-1.0.0-beta.5-add-slug.py": """
        async def up(db):
            await db.execute('ALTER TABLE "simple_blog"."post" ADD COLUMN slug TEXT')
    """,
}

UPGRADE_INIT = """
    from exthost.upgrades.catalog import sync_catalog_from_file


    def _beta3(ctx):
        ctx.logger.info("beta.3 hook")
        return "beta.3"


    async def _beta5(ctx):
        if not (ctx.data_dir / "ready").exists():
            raise RuntimeError("beta.5 data not ready")
        await ctx.db.execute(
            'UPDATE "simple_blog"."post" SET slug = lower(title) WHERE slug IS NULL'
        )
        return "beta.5"


    def register(hooks):
        hooks.register("1.0.0-beta.3", _beta3)
        hooks.register("1.0.0-beta.5", _beta5)
        hooks.register("1.0.0-beta.8", sync_catalog_from_file("model-config.yaml"))
"""

CATALOG_YAML = """
    configs:
      - provider: openai
        label: OpenAI
        supported_model_types: [llm]
        models:
          - {model: gpt-4o, label: GPT-4o, model_type: llm}
"""


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def markers() -> InMemoryMarkerRepository:
    return InMemoryMarkerRepository()


@pytest.fixture
def build_orchestrator(db: Database, markers: InMemoryMarkerRepository):
    def build(policy: FailurePolicy = FailurePolicy.CONTINUE, max_concurrency: int = 1):
        return UpgradeOrchestrator(
            db=db,
            store=VersionStore(markers),
            schemas=ExtensionSchemaManager(db),
            step=UpgradeStep(MigrationRunner(db)),
            failure_policy=policy,
            max_concurrency=max_concurrency,
        )
    return build


@pytest.fixture
def blog(make_extension):
    def build(current: str = "1.0.0-beta.8", ready: bool = True) -> Extension:
        files = {"1.0.0-beta.8/model-config.yaml": CATALOG_YAML}
        if ready:
            files["1.0.0-beta.5/ready"] = ""
        return make_extension(
            version=current,
            migrations=MIGRATIONS,
            upgrade_init=UPGRADE_INIT,
            upgrade_files=files,
        )
    return build


async def _seed_installed(db: Database, markers, ext: Extension, version: str) -> None:
    """Simulate an extension already installed at *version*."""
    await ExtensionSchemaManager(db).ensure_schema(ext)
    await db.execute('CREATE TABLE "simple_blog"."post" (id INTEGER PRIMARY KEY, title TEXT)')
    await db.execute('INSERT INTO "simple_blog"."post" (title) VALUES (?)', ("Hello",))
    await markers.add_marker(ext, version)


# ------------------------------------------------------------------
# Single extension
# ------------------------------------------------------------------


async def test_upgrade_beta3_to_beta8(db, markers, build_orchestrator, blog):
    ext = blog()
    await _seed_installed(db, markers, ext, "1.0.0-beta.3")

    report = await build_orchestrator().run(ext)

    assert report.status == "upgraded"
    assert report.installed == "1.0.0-beta.3"
    assert report.plan == ["1.0.0-beta.5", "1.0.0-beta.8"]
    assert report.applied == ["1.0.0-beta.5", "1.0.0-beta.8"]
    assert await markers.list_markers(ext) == ["1.0.0-beta.3", "1.0.0-beta.5", "1.0.0-beta.8"]
    assert report.hook_results["1.0.0-beta.5"] == "beta.5"
    assert report.hook_results["1.0.0-beta.8"].created == 2
    summary = report.to_dict()
    assert summary["status"] == "upgraded"
    assert summary["applied"] == ["1.0.0-beta.5", "1.0.0-beta.8"]
    assert summary["error"] is None

    row = await db.execute_fetchone('SELECT slug FROM "simple_blog"."post"')
    assert row["slug"] == "hello"


async def test_failure_stops_and_is_resumable(db, markers, build_orchestrator, blog):
    ext = blog(ready=False)
    await _seed_installed(db, markers, ext, "1.0.0-beta.3")
    orchestrator = build_orchestrator()

    report = await orchestrator.run(ext)

    assert report.status == "failed"
    assert report.failed_version == "1.0.0-beta.5"
    assert isinstance(report.error, StepExecutionError)
    assert report.error.phase == "logic"
    assert report.committed == []
    assert await markers.list_markers(ext) == ["1.0.0-beta.3"]

    # Same plan on the next start.
    assert VersionResolver().resolve(ext, "1.0.0-beta.3", "1.0.0-beta.8") == [
        "1.0.0-beta.5", "1.0.0-beta.8",
    ]

    (ext.upgrade_dir / "1.0.0-beta.5").mkdir()
    (ext.upgrade_dir / "1.0.0-beta.5" / "ready").write_text("")
    retry = await orchestrator.run(ext)

    assert retry.status == "upgraded"
    assert retry.plan == ["1.0.0-beta.5", "1.0.0-beta.8"]
    assert await markers.list_markers(ext) == ["1.0.0-beta.3", "1.0.0-beta.5", "1.0.0-beta.8"]


async def test_fresh_install_builds_schema_and_runs_current_hook_only(db, markers, build_orchestrator, blog):
    ext = blog()

    report = await build_orchestrator().run(ext)

    assert report.installed is None
    assert report.plan == ["1.0.0-beta.8"]
    assert await markers.list_markers(ext) == ["1.0.0-beta.8"]
    assert "1.0.0-beta.3" not in report.hook_results
    assert "1.0.0-beta.5" not in report.hook_results
    columns = await db.execute_fetchall('PRAGMA "simple_blog".table_info("post")')
    assert [c["name"] for c in columns] == ["id", "title", "slug"]


async def test_up_to_date(db, markers, build_orchestrator, blog):
    ext = blog()
    await markers.add_marker(ext, "1.0.0-beta.8")

    report = await build_orchestrator().run(ext)
    assert report.status == "up_to_date"
    assert report.plan == []


async def test_code_only_versions_are_skipped_but_marked(db, markers, build_orchestrator, make_extension):
    ext = make_extension(version="1.2.0", upgrade_dirs=["1.1.0"])
    await markers.add_marker(ext, "1.0.0")

    report = await build_orchestrator().run(ext)

    assert report.plan == ["1.1.0", "1.2.0"]
    assert report.skipped == ["1.1.0", "1.2.0"]
    assert report.applied == []
    assert await markers.list_markers(ext) == ["1.0.0", "1.1.0", "1.2.0"]


async def test_missing_root_is_not_ready(build_orchestrator, tmp_path):
    ext = Extension(identifier="ghost", root=tmp_path / "nowhere")
    report = await build_orchestrator().run(ext)
    assert report.status == "not_ready"


async def test_manifest_error_is_reported(build_orchestrator, make_extension):
    ext = make_extension(version=None)
    report = await build_orchestrator().run(ext)
    assert report.status == "failed"
    assert report.failed_version is None
    assert "Manifest not found" in str(report.error)


async def test_bad_hook_module_is_reported(build_orchestrator, make_extension):
    ext = make_extension(upgrade_init="def register(hooks):\n    hooks.register('nope', print)\n")
    report = await build_orchestrator().run(ext)
    assert report.status == "failed"
    assert "not semver" in str(report.error)


async def test_max_concurrency_must_be_positive(build_orchestrator):
    with pytest.raises(ValueError):
        build_orchestrator(max_concurrency=0)


# ------------------------------------------------------------------
# Many extensions
# ------------------------------------------------------------------


def _simple(make_extension, identifier: str, version: str = "1.0.0", **kwargs) -> Extension:
    schema = identifier.replace("-", "_")
    return make_extension(
        identifier,
        version,
        migrations={
            "1700000000000-1.0.0-init.py": f"""
                async def up(db):
                    await db.execute('CREATE TABLE "{schema}"."item" (id INTEGER PRIMARY KEY)')
                    await db.execute('INSERT INTO "{schema}"."item" (id) VALUES (1)')
            """,
        },
        **kwargs,
    )


async def test_run_all_isolates_failures(markers, build_orchestrator, make_extension):
    good = _simple(make_extension, "good-ext")
    bad = _simple(make_extension, "bad-ext", upgrade_init="""
        def register(hooks):
            def fail(ctx):
                raise ValueError("bad data")
            hooks.register("1.0.0", fail)
    """)

    reports = await build_orchestrator(max_concurrency=2).run_all([good, bad])

    by_id = {r.identifier: r for r in reports}
    assert by_id["good-ext"].status == "upgraded"
    assert by_id["bad-ext"].status == "failed"
    assert by_id["bad-ext"].failed_version == "1.0.0"
    assert await markers.list_markers(good) == ["1.0.0"]
    assert await markers.list_markers(bad) == []


async def test_run_all_abort_policy_raises_after_all_finish(markers, build_orchestrator, make_extension):
    good = _simple(make_extension, "good-ext")
    bad = _simple(make_extension, "bad-ext", upgrade_init="""
        def register(hooks):
            def fail(ctx):
                raise ValueError("bad data")
            hooks.register("1.0.0", fail)
    """)

    with pytest.raises(StepExecutionError, match="bad data"):
        await build_orchestrator(policy=FailurePolicy.ABORT).run_all([bad, good])
    assert await markers.list_markers(good) == ["1.0.0"]


async def test_run_all_concurrent_extensions(db, markers, build_orchestrator, make_extension):
    extensions = [_simple(make_extension, f"ext-{i}") for i in range(4)]

    reports = await build_orchestrator(max_concurrency=4).run_all(extensions)

    assert [r.status for r in reports] == ["upgraded"] * 4
    for i in range(4):
        row = await db.execute_fetchone(f'SELECT COUNT(*) AS cnt FROM "ext_{i}"."item"')
        assert row["cnt"] == 1


async def test_run_all_empty(build_orchestrator):
    assert await build_orchestrator().run_all([]) == []
