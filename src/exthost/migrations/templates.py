"""Source templates for migration artifacts."""

from __future__ import annotations

import re
from datetime import datetime, timezone

STATEMENT_CALL = "await db.execute("

_GENERATED_TEMPLATE = '''class {class_name}:
    """Schema changes detected by the diff engine."""

    async def up(self, db):
{up_body}

    async def down(self, db):
{down_body}
'''

_BLANK_TEMPLATE = '''"""Extension migration: {description}
Extension: {identifier}
Version: {version}
Created: {created}
"""


async def up(db):
    """Run migration."""
    # Add your migration logic here, for example:
    # await db.execute('ALTER TABLE "{schema}"."article" ADD COLUMN "new_field" TEXT')


async def down(db):
    """Revert migration (optional)."""
    # await db.execute('ALTER TABLE "{schema}"."article" DROP COLUMN "new_field"')
'''

_HEADER_TEMPLATE = '''"""Extension migration: {description}
Extension: {identifier}
Version: {version}
Generated: {generated}

This migration was generated automatically from the extension's entity
definitions.  Review it before committing.
"""

'''

_CLASS_RE = re.compile(r"^class (\w+)\b", re.MULTILINE)


def _isoformat(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def camel_case(description: str) -> str:
    return "".join(part.capitalize() for part in re.split(r"[-_]", description) if part)


def render_body(statements: list[str]) -> str:
    if not statements:
        return "        pass"
    return "\n".join(f"        {STATEMENT_CALL}{sql!r})" for sql in statements)


def render_generated(class_name: str, up: list[str], down: list[str]) -> str:
    return _GENERATED_TEMPLATE.format(
        class_name=class_name,
        up_body=render_body(up),
        down_body=render_body(down),
    )


def render_header(identifier: str, version: str, description: str, timestamp_ms: int) -> str:
    return _HEADER_TEMPLATE.format(
        description=description,
        identifier=identifier,
        version=version,
        generated=_isoformat(timestamp_ms),
    )


def render_blank(identifier: str, schema: str, version: str, description: str, timestamp_ms: int) -> str:
    return _BLANK_TEMPLATE.format(
        description=description,
        identifier=identifier,
        version=version,
        created=_isoformat(timestamp_ms),
        schema=schema,
    )


def find_class_name(source: str) -> str | None:
    match = _CLASS_RE.search(source)
    return match.group(1) if match else None


def rename_class(source: str, old: str, new: str) -> str:
    return re.sub(rf"\b{re.escape(old)}\b", new, source)
