"""Migration artifact filename contract.

Artifacts are named ``<timestamp>-<semver>-<kebab-description>.py``.  A
semver may itself contain hyphens (``1.0.0-beta.3``), so the name is split
at the first hyphen after the timestamp that leaves a valid semver on the
left and a kebab-case description on the right.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from exthost import versioning

MIGRATION_SUFFIX = ".py"

_TIMESTAMP_RE = re.compile(r"^(\d+)-(.+)$")


@dataclass(frozen=True)
class MigrationFile:
    name: str
    path: Path
    timestamp: int
    version: str
    description: str


def format_migration_filename(timestamp: int, version: str, description: str) -> str:
    return f"{timestamp}-{version}-{description}{MIGRATION_SUFFIX}"


def parse_migration_filename(filename: str) -> tuple[int, str, str] | None:
    """Return ``(timestamp, version, description)`` or None.

    >>> parse_migration_filename("1762769127629-1.0.0-beta.3-add-tags.py")
    (1762769127629, '1.0.0-beta.3', 'add-tags')
    """
    if not filename.endswith(MIGRATION_SUFFIX) or filename.startswith("."):
        return None
    match = _TIMESTAMP_RE.match(filename[: -len(MIGRATION_SUFFIX)])
    if not match:
        return None
    timestamp, rest = match.groups()
    start = 0
    while True:
        idx = rest.find("-", start)
        if idx == -1:
            return None
        version, description = rest[:idx], rest[idx + 1:]
        if versioning.is_valid(version) and versioning.is_kebab_case(description):
            return int(timestamp), version, description
        start = idx + 1


def list_migration_files(directory: Path) -> list[MigrationFile]:
    """All well-named artifacts in *directory*, sorted by timestamp."""
    if not directory.is_dir():
        return []
    files: list[MigrationFile] = []
    for path in directory.iterdir():
        if not path.is_file():
            continue
        parsed = parse_migration_filename(path.name)
        if parsed is None:
            continue
        timestamp, version, description = parsed
        files.append(MigrationFile(
            name=path.name,
            path=path,
            timestamp=timestamp,
            version=version,
            description=description,
        ))
    return sorted(files, key=lambda m: (m.timestamp, m.name))
