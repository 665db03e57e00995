"""Semantic version helpers.

Thin wrappers over :mod:`semver` so that every component compares
versions with the same precedence rules (semver 2.0.0: major.minor.patch,
then pre-release identifiers, build metadata ignored).
"""

from __future__ import annotations

import re
from typing import Iterable

import semver

KEBAB_CASE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")


def is_valid(version: object) -> bool:
    """Return True when *version* is a well-formed semver string."""
    if not isinstance(version, str):
        return False
    return semver.Version.is_valid(version)


def parse(version: str) -> semver.Version:
    """Parse *version*, raising ``ValueError`` when it is malformed."""
    return semver.Version.parse(version)


def compare(left: str, right: str) -> int:
    """Return -1, 0 or 1 following semver precedence."""
    return parse(left).compare(right)


def same_precedence(left: str, right: str) -> bool:
    return compare(left, right) == 0


def sort_versions(versions: Iterable[str]) -> list[str]:
    """Sort version strings ascending and drop precedence duplicates.

    When two strings share precedence (``1.0.0`` and ``1.0.0+build.7``)
    the one that sorts first lexically is kept so the result is stable.
    """
    ordered = sorted(set(versions), key=lambda v: (parse(v), v))
    result: list[str] = []
    for version in ordered:
        if result and same_precedence(result[-1], version):
            continue
        result.append(version)
    return result


def latest(versions: Iterable[str]) -> str | None:
    """Return the highest valid version, ignoring malformed entries."""
    valid = [v for v in versions if is_valid(v)]
    if not valid:
        return None
    return max(valid, key=lambda v: (parse(v), v))


def is_kebab_case(value: object) -> bool:
    return isinstance(value, str) and bool(KEBAB_CASE.match(value))
