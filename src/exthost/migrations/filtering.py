"""Restrict generated migration source to one schema namespace.

A diff run against a shared database may emit statements for the host
application or for sibling extensions.  Every ``await db.execute(...)``
line of the ``up``/``down`` bodies that does not mention the extension's
quoted schema name is dropped; comments and blank lines are kept.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from exthost.migrations.templates import STATEMENT_CALL

_METHOD_RE = re.compile(r"^    async def (up|down)\(self, db\):\s*$")
_BODY_INDENT = "        "


@dataclass
class FilterResult:
    source: str
    kept: dict[str, int]
    dropped: int


def _is_code(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and not stripped.startswith("#")


def filter_statements(lines: list[str], schema_name: str) -> tuple[list[str], int]:
    """Filter one method body.  Returns the kept lines and the drop count."""
    pattern = f'"{schema_name}"'
    kept: list[str] = []
    dropped = 0
    for line in lines:
        if not _is_code(line) or pattern in line:
            kept.append(line)
        elif STATEMENT_CALL in line:
            dropped += 1
        else:
            kept.append(line)
    if not any(_is_code(line) for line in kept):
        kept.append(f"{_BODY_INDENT}pass")
    return kept, dropped


def filter_migration_source(source: str, schema_name: str) -> FilterResult:
    """Filter the ``up`` and ``down`` bodies of generated migration source."""
    lines = source.split("\n")
    output: list[str] = []
    kept: dict[str, int] = {"up": 0, "down": 0}
    dropped = 0
    i = 0
    while i < len(lines):
        line = lines[i]
        output.append(line)
        match = _METHOD_RE.match(line)
        i += 1
        if not match:
            continue

        body: list[str] = []
        while i < len(lines) and (not lines[i].strip() or lines[i].startswith(_BODY_INDENT)):
            body.append(lines[i])
            i += 1
        trailing: list[str] = []
        while body and not body[-1].strip():
            trailing.insert(0, body.pop())

        filtered, body_dropped = filter_statements(body, schema_name)
        dropped += body_dropped
        kept[match.group(1)] = sum(1 for b in filtered if STATEMENT_CALL in b)
        output.extend(filtered)
        output.extend(trailing)

    return FilterResult(source="\n".join(output), kept=kept, dropped=dropped)
