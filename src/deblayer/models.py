"""Data models for repositories, package descriptors and install results."""

import os
from collections.abc import Mapping
from pathlib import Path
from urllib.parse import urljoin

from pydantic import BaseModel, ConfigDict, Field, field_validator

from deblayer.version import VersionConstraint


def _parse_constraint(value):
    if isinstance(value, str):
        return VersionConstraint.parse(value)
    return value


class PackageRequest(BaseModel):
    """A package requested for installation."""

    model_config = ConfigDict(frozen=True)

    name: str
    version_constraint: VersionConstraint | None = None
    # install even when the build image already has this package
    force: bool = False
    skip_dependencies: bool = False

    @field_validator("version_constraint", mode="before")
    @classmethod
    def coerce_constraint(cls, value):
        return _parse_constraint(value)


class RepositorySource(BaseModel):
    """One suite/component/architecture of a signed APT repository."""

    model_config = ConfigDict(frozen=True)

    base_url: str
    suite: str
    component: str = "main"
    architecture: str = "amd64"
    trusted_keys: tuple[str, ...] = Field(default=(), repr=False)

    @property
    def label(self) -> str:
        return f"{self.base_url.rstrip('/')} {self.suite}/{self.component} [{self.architecture}]"

    def dists_url(self, relative_path: str) -> str:
        """URL of a file below ``dists/<suite>/``."""
        return urljoin(f"{self.base_url.rstrip('/')}/", f"dists/{self.suite}/{relative_path}")

    def archive_url(self, filename: str) -> str:
        """URL of a pool file, as named by a descriptor's ``Filename`` field."""
        return urljoin(f"{self.base_url.rstrip('/')}/", filename.lstrip("/"))


class Alternative(BaseModel):
    """One alternative of an OR-group, or one entry of Conflicts/Breaks."""

    model_config = ConfigDict(frozen=True)

    name: str
    version_constraint: VersionConstraint | None = None

    @field_validator("version_constraint", mode="before")
    @classmethod
    def coerce_constraint(cls, value):
        return _parse_constraint(value)

    def matches(self, name: str, version: str | None) -> bool:
        """Whether a package (or provided name) called ``name`` at ``version`` satisfies this entry.

        A versioned requirement is never met by an unversioned name.
        """
        if name != self.name:
            return False
        if self.version_constraint is None:
            return True
        return version is not None and self.version_constraint.satisfied_by(version)

    def __str__(self) -> str:
        if self.version_constraint is None:
            return self.name
        return f"{self.name} ({self.version_constraint})"


type OrGroup = tuple[Alternative, ...]


def format_group(group: OrGroup) -> str:
    return " | ".join(str(alt) for alt in group)


class ProvidedName(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    version: str | None = None


class PackageDescriptor(BaseModel):
    """A binary package stanza from a Packages index."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    architecture: str
    depends: tuple[OrGroup, ...] = ()
    pre_depends: tuple[OrGroup, ...] = ()
    provides: tuple[ProvidedName, ...] = ()
    conflicts: tuple[Alternative, ...] = ()
    breaks: tuple[Alternative, ...] = ()
    filename: str
    sha256: str
    size: int

    @property
    def label(self) -> str:
        return f"{self.name}={self.version}"

    def provided_version(self, name: str) -> tuple[bool, str | None]:
        """Return ``(provides, version)`` for a virtual name."""
        for provided in self.provides:
            if provided.name == name:
                return True, provided.version
        return False, None


class ReleaseEntry(BaseModel):
    """One file listed in a Release document's SHA256 manifest."""

    model_config = ConfigDict(frozen=True)

    path: str
    sha256: str
    size: int


class RepositoryIndex(BaseModel):
    """The authenticated, parsed content of one repository source."""

    model_config = ConfigDict(frozen=True)

    source: RepositorySource
    manifest: dict[str, ReleaseEntry] = Field(default_factory=dict, repr=False)
    packages: tuple[PackageDescriptor, ...] = Field(default=(), repr=False)


class ResolvedPackage(BaseModel):
    model_config = ConfigDict(frozen=True)

    descriptor: PackageDescriptor
    source: RepositorySource
    resolution_order_index: int

    @property
    def url(self) -> str:
        return self.source.archive_url(self.descriptor.filename)


class ResolvedPackageSet(BaseModel):
    """Concrete package name -> resolved package, plus the resolver configuration hash."""

    model_config = ConfigDict(frozen=True)

    packages: dict[str, ResolvedPackage] = Field(default_factory=dict)
    resolver_digest: str = ""

    def ordered(self) -> list[ResolvedPackage]:
        """Packages in ascending resolution order."""
        return sorted(self.packages.values(), key=lambda p: p.resolution_order_index)

    def names(self) -> list[str]:
        return [p.descriptor.name for p in self.ordered()]

    def __len__(self) -> int:
        return len(self.packages)

    def __contains__(self, name: object) -> bool:
        return name in self.packages

    def __getitem__(self, name: str) -> ResolvedPackage:
        return self.packages[name]


class VerifiedArchive(BaseModel):
    """A downloaded archive whose bytes matched the descriptor checksum."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: Path
    sha256: str
    size: int


class PackageRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    sha256: str


class InstalledLayer(BaseModel):
    """A materialized layer directory and the environment it exports."""

    model_config = ConfigDict(frozen=True)

    path: Path
    fingerprint: str
    packages: list[PackageRecord] = Field(default_factory=list)
    # variable -> paths relative to the layer, highest precedence first
    env: dict[str, list[str]] = Field(default_factory=dict)
    cache_hit: bool = False

    def env_paths(self, variable: str) -> list[Path]:
        return [self.path / rel for rel in self.env.get(variable, [])]

    def environment(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Variables with layer paths prepended to any values in ``base``."""
        base = os.environ if base is None else base
        result: dict[str, str] = {}
        for variable in self.env:
            paths = [str(p) for p in self.env_paths(variable)]
            if existing := base.get(variable):
                paths.append(existing)
            result[variable] = os.pathsep.join(paths)
        return result
