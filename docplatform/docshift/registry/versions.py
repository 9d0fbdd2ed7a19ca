"""
Semantic schema versions.

A SchemaVersion is an ordered (major, minor, patch) triple. Versions are
totally ordered by lexicographic comparison of the triple; a major bump
marks a breaking change.

Example:
    >>> v = SchemaVersion.parse("1.4.2")
    >>> v.next(VersionBump.MINOR)
    SchemaVersion(major=1, minor=5, patch=0)
    >>> is_breaking_change("1.9.0", "2.0.0")
    True
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from ..errors import InvalidVersionError

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


class VersionBump(Enum):
    """Which component of a version to increment."""

    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"


@dataclass(frozen=True, order=True)
class SchemaVersion:
    """An ordered (major, minor, patch) triple."""

    major: int
    minor: int
    patch: int

    def __post_init__(self) -> None:
        if min(self.major, self.minor, self.patch) < 0:
            raise InvalidVersionError(f"{self.major}.{self.minor}.{self.patch}")

    @classmethod
    def parse(cls, value: str | SchemaVersion) -> SchemaVersion:
        """Parse "major.minor.patch".

        Raises:
            InvalidVersionError: If the string is malformed
        """
        if isinstance(value, SchemaVersion):
            return value
        match = _VERSION_RE.match(value.strip()) if isinstance(value, str) else None
        if not match:
            raise InvalidVersionError(str(value))
        return cls(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return bool(isinstance(value, str) and _VERSION_RE.match(value.strip()))

    def next(self, bump: VersionBump | str) -> SchemaVersion:
        """Return the next version for the given bump kind."""
        bump = VersionBump(bump) if isinstance(bump, str) else bump
        if bump == VersionBump.MAJOR:
            return SchemaVersion(self.major + 1, 0, 0)
        if bump == VersionBump.MINOR:
            return SchemaVersion(self.major, self.minor + 1, 0)
        return SchemaVersion(self.major, self.minor, self.patch + 1)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def is_breaking_change(from_version: str | SchemaVersion, to_version: str | SchemaVersion) -> bool:
    """A change is breaking when the major component increases."""
    return SchemaVersion.parse(to_version).major > SchemaVersion.parse(from_version).major


def version_range(
    from_version: str | SchemaVersion,
    to_version: str | SchemaVersion,
    versions: Iterable[str | SchemaVersion],
) -> list[SchemaVersion]:
    """Versions v with from < v <= to, ascending."""
    low = SchemaVersion.parse(from_version)
    high = SchemaVersion.parse(to_version)
    selected = {SchemaVersion.parse(v) for v in versions}
    return sorted(v for v in selected if low < v <= high)
