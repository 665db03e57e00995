# tests/conftest.py
from __future__ import annotations

from pathlib import Path
from textwrap import dedent

import pytest

from exthost.lifecycle.database import Database
from exthost.lifecycle.registry import Extension


@pytest.fixture
async def db():
    """Create an in-memory database, initialise it, and tear it down after the test."""
    database = Database(":memory:")
    await database.initialize()
    yield database
    await database.close()


class ExtensionBuilder:
    """Writes extension trees under a temporary directory."""

    def __init__(self, base: Path) -> None:
        self.base = base

    def __call__(
        self,
        identifier: str = "simple-blog",
        version: str | None = "1.0.0",
        *,
        migrations: dict[str, str] | None = None,
        upgrade_init: str | None = None,
        upgrade_dirs: list[str] | tuple[str, ...] = (),
        upgrade_files: dict[str, str] | None = None,
        markers: list[str] | tuple[str, ...] = (),
        entities: dict[str, str] | None = None,
    ) -> Extension:
        root = self.base / identifier
        root.mkdir(parents=True, exist_ok=True)
        if version is not None:
            (root / "extension.yaml").write_text(
                f"identifier: {identifier}\nversion: \"{version}\"\nname: Test extension\n"
            )
        for name, source in (migrations or {}).items():
            path = root / "db" / "migrations" / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(dedent(source))
        if upgrade_init is not None:
            path = root / "upgrade" / "__init__.py"
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(dedent(upgrade_init))
        for name in upgrade_dirs:
            (root / "upgrade" / name).mkdir(parents=True, exist_ok=True)
        for rel, content in (upgrade_files or {}).items():
            path = root / "upgrade" / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(dedent(content))
        for marker in markers:
            path = root / "data" / "versions" / marker
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("")
        for name, content in (entities or {}).items():
            path = root / "build" / "db" / "entities" / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(dedent(content))
        return Extension(identifier=identifier, root=root)


@pytest.fixture
def make_extension(tmp_path) -> ExtensionBuilder:
    """Factory building an extension directory tree under tmp_path."""
    return ExtensionBuilder(tmp_path / "extensions")
