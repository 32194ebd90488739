"""Schema version values and comparison helpers.

Versions are ``major.minor.patch`` strings naming migration directories.
Ordering is numeric per component, never lexical, and each component is
assumed to stay below 1000 so a version packs into one integer.
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import cmp_to_key
import re
from typing import Any, Iterable

from indiestore.core.errors import DataValidationError


_VERSION_SCALE = 1000
_VERSION_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


@dataclass(frozen=True, order=True)
class SchemaVersion:
    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, value: str) -> SchemaVersion:
        match = _VERSION_RE.match(value) if isinstance(value, str) else None
        if match is None:
            raise DataValidationError(f"invalid schema version {value!r}")
        major, minor, patch = (int(part) for part in match.groups())
        return cls(major=major, minor=minor, patch=patch)

    @classmethod
    def from_row(cls, row: Any) -> SchemaVersion:
        # Accept ORM rows, mappings, or tuples from _meta_schema_version.
        if isinstance(row, dict):
            return cls(int(row["major"]), int(row["minor"]), int(row["patch"]))
        if hasattr(row, "major"):
            return cls(int(row.major), int(row.minor), int(row.patch))
        major, minor, patch = row
        return cls(int(major), int(minor), int(patch))

    def to_number(self) -> int:
        return version_to_number(self)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class SupportedVersions:
    min: SchemaVersion
    max: SchemaVersion

    def contains(self, version: SchemaVersion) -> bool:
        return self.min.to_number() <= version.to_number() <= self.max.to_number()


def version_to_number(version: SchemaVersion) -> int:
    return (version.major * _VERSION_SCALE + version.minor) * _VERSION_SCALE + version.patch


def version_string_to_number(value: str) -> int:
    return version_to_number(SchemaVersion.parse(value))


def compare_versions(a: str, b: str) -> int:
    # Three-way comparator over version strings, for cmp_to_key.
    left = version_string_to_number(a)
    right = version_string_to_number(b)
    return (left > right) - (left < right)


def sort_versions(versions: Iterable[str]) -> list[str]:
    return sorted(versions, key=cmp_to_key(compare_versions))


def is_version_string(value: str) -> bool:
    return bool(_VERSION_RE.match(value))
