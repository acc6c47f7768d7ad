"""Debian version ordering and version constraints.

Ordering follows deb-version(7): the epoch compares numerically, then the
upstream version and the revision are compared run by run, alternating
non-digit runs (where ``~`` sorts before everything, even the end of the
string, and letters sort before other characters) and digit runs (compared
numerically). ``python-debian`` implements exactly this, so it is used here
instead of a local reimplementation.
"""

import re
from enum import IntEnum, StrEnum
from functools import lru_cache

from debian.debian_support import Version
from pydantic import BaseModel, ConfigDict

from deblayer.errors import ParseError


class Ordering(IntEnum):
    LESS = -1
    EQUAL = 0
    GREATER = 1


class Relation(StrEnum):
    EARLIER = "<<"
    EARLIER_EQUAL = "<="
    EXACT = "="
    LATER_EQUAL = ">="
    LATER = ">>"

    @classmethod
    def parse(cls, value: str) -> "Relation":
        value = value.strip()
        # "<" and ">" are obsolete spellings of "<=" and ">="
        if value == "<":
            return cls.EARLIER_EQUAL
        if value == ">":
            return cls.LATER_EQUAL
        try:
            return cls(value)
        except ValueError as e:
            raise ParseError(f"Unknown version relation: {value!r}") from e


@lru_cache(maxsize=65536)
def parse_version(value: str) -> Version:
    """Parse a Debian version string, raising ParseError if it is malformed."""
    if not isinstance(value, str) or not value.strip() or value != value.strip():
        raise ParseError(f"Invalid Debian version: {value!r}")
    try:
        return Version(value)
    except (TypeError, ValueError) as e:
        raise ParseError(f"Invalid Debian version: {value!r}") from e


def compare(a: str, b: str) -> Ordering:
    """Compare two Debian version strings."""
    va, vb = parse_version(a), parse_version(b)
    if va < vb:
        return Ordering.LESS
    if va > vb:
        return Ordering.GREATER
    return Ordering.EQUAL


def version_key(value: str) -> Version:
    """Sort key for Debian version strings."""
    return parse_version(value)


_CONSTRAINT_RE = re.compile(r"^\(?\s*(?P<relation>[<>=]+)\s*(?P<version>[^\s)]+)\s*\)?$")


class VersionConstraint(BaseModel):
    """A relation against a version, e.g. ``>= 7.68.0``."""

    model_config = ConfigDict(frozen=True)

    relation: Relation
    version: str

    @classmethod
    def parse(cls, value: str) -> "VersionConstraint":
        """Parse ``">= 1.0"`` or ``"(>= 1.0)"``."""
        match = _CONSTRAINT_RE.match(value.strip())
        if not match:
            raise ParseError(f"Invalid version constraint: {value!r}")
        version = match.group("version")
        parse_version(version)
        return cls(relation=Relation.parse(match.group("relation")), version=version)

    def satisfied_by(self, version: str) -> bool:
        order = compare(version, self.version)
        match self.relation:
            case Relation.EARLIER:
                return order == Ordering.LESS
            case Relation.EARLIER_EQUAL:
                return order != Ordering.GREATER
            case Relation.EXACT:
                return order == Ordering.EQUAL
            case Relation.LATER_EQUAL:
                return order != Ordering.LESS
            case Relation.LATER:
                return order == Ordering.GREATER
        raise ParseError(f"Unknown version relation: {self.relation!r}")

    def __str__(self) -> str:
        return f"{self.relation.value} {self.version}"
