"""Parsers for Release documents, Packages indices and the dpkg status database."""

import datetime
import logging
from collections.abc import Iterable
from pathlib import Path

from debian import deb822
from debian.deb822 import PkgRelation

from deblayer.errors import ParseError
from deblayer.models import Alternative, OrGroup, PackageDescriptor, ProvidedName, ReleaseEntry
from deblayer.utils import try_parse_date
from deblayer.version import VersionConstraint, parse_version

logger = logging.getLogger(__name__)

REQUIRED_PACKAGE_FIELDS = ("Package", "Version", "Architecture", "Filename", "SHA256", "Size")


def parse_release(text: str) -> tuple[deb822.Release, dict[str, ReleaseEntry]]:
    """Parse a Release document into its fields and its SHA256 manifest."""
    try:
        release = deb822.Release(text)
    except (ValueError, UnicodeError) as e:
        raise ParseError(f"Malformed Release document: {e}") from e

    if not release:
        raise ParseError("Empty Release document")

    manifest: dict[str, ReleaseEntry] = {}
    for entry in release.get("SHA256", []):
        try:
            manifest[entry["name"]] = ReleaseEntry(
                path=entry["name"],
                sha256=entry["sha256"].lower(),
                size=int(entry["size"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError(f"Malformed SHA256 entry in Release document: {entry!r}") from e

    if not manifest:
        raise ParseError("Release document has no SHA256 checksums")
    return release, manifest


def release_is_expired(release: deb822.Release, now: datetime.datetime | None = None) -> bool:
    """Whether the Release document's Valid-Until date has passed."""
    valid_until = try_parse_date(release.get("Valid-Until"))
    if valid_until is None:
        return False
    now = now or datetime.datetime.now(datetime.UTC)
    return valid_until < now


def _arch_allowed(relation: dict, architecture: str) -> bool:
    restrictions = relation.get("arch")
    if not restrictions:
        return True
    positive = [r.arch for r in restrictions if r.enabled]
    negative = [r.arch for r in restrictions if not r.enabled]
    if positive and architecture not in positive:
        return False
    return architecture not in negative


def _to_alternative(relation: dict) -> Alternative:
    constraint = None
    if relation.get("version"):
        relop, version = relation["version"]
        constraint = VersionConstraint.parse(f"{relop} {version}")
    return Alternative(name=relation["name"], version_constraint=constraint)


def parse_relation_groups(value: str | None, architecture: str) -> tuple[OrGroup, ...]:
    """Parse a Depends-style field into AND-of-OR groups.

    Alternatives restricted to other architectures are dropped, and a group left
    empty by that filtering does not apply to this architecture at all.
    Architecture qualifiers (``:any``, ``:native``) are ignored.
    """
    if not value or not value.strip():
        return ()
    groups: list[OrGroup] = []
    for or_group in PkgRelation.parse_relations(value):
        alternatives = tuple(_to_alternative(rel) for rel in or_group if _arch_allowed(rel, architecture))
        if alternatives:
            groups.append(alternatives)
    return tuple(groups)


def parse_provides(value: str | None) -> tuple[ProvidedName, ...]:
    if not value or not value.strip():
        return ()
    provided: list[ProvidedName] = []
    for or_group in PkgRelation.parse_relations(value):
        for rel in or_group:
            version = None
            if rel.get("version"):
                relop, version = rel["version"]
                if relop != "=":
                    raise ParseError(f"Provides may only use '=': {value!r}")
            provided.append(ProvidedName(name=rel["name"], version=version))
    return tuple(provided)


def _flatten(groups: tuple[OrGroup, ...]) -> tuple[Alternative, ...]:
    return tuple(alt for group in groups for alt in group)


def parse_package(paragraph: dict, architecture: str) -> PackageDescriptor:
    """Convert one Packages paragraph into a descriptor."""
    missing = [field for field in REQUIRED_PACKAGE_FIELDS if not paragraph.get(field)]
    if missing:
        name = paragraph.get("Package", "<unknown>")
        raise ParseError(f"Package stanza {name} is missing required fields: {', '.join(missing)}")

    parse_version(paragraph["Version"])
    try:
        size = int(paragraph["Size"])
    except ValueError as e:
        raise ParseError(f"Invalid Size for {paragraph['Package']}: {paragraph['Size']!r}") from e

    return PackageDescriptor(
        name=paragraph["Package"],
        version=paragraph["Version"],
        architecture=paragraph["Architecture"],
        depends=parse_relation_groups(paragraph.get("Depends"), architecture),
        pre_depends=parse_relation_groups(paragraph.get("Pre-Depends"), architecture),
        provides=parse_provides(paragraph.get("Provides")),
        conflicts=_flatten(parse_relation_groups(paragraph.get("Conflicts"), architecture)),
        breaks=_flatten(parse_relation_groups(paragraph.get("Breaks"), architecture)),
        filename=paragraph["Filename"],
        sha256=paragraph["SHA256"].lower(),
        size=size,
    )


def parse_packages(text: str | Iterable[str], architecture: str) -> tuple[PackageDescriptor, ...]:
    """Parse a verified Packages body, keeping packages built for ``architecture`` or ``all``."""
    descriptors: list[PackageDescriptor] = []
    skipped = 0
    for paragraph in deb822.Packages.iter_paragraphs(text, use_apt_pkg=False):
        if not paragraph:
            continue
        if paragraph.get("Architecture") not in (architecture, "all"):
            skipped += 1
            continue
        descriptors.append(parse_package(paragraph, architecture))
    if skipped:
        logger.debug(f"Skipped {skipped} packages not built for {architecture}")
    return tuple(descriptors)


def read_installed_packages(status_path: Path) -> dict[str, str]:
    """Read the installed packages (name -> version) from a dpkg status file.

    Returns an empty mapping if the file does not exist.
    """
    if not status_path.is_file():
        logger.debug(f"No dpkg status file at {status_path}")
        return {}

    installed: dict[str, str] = {}
    with status_path.open("rt", encoding="utf-8", errors="replace") as handle:
        for paragraph in deb822.Packages.iter_paragraphs(handle, use_apt_pkg=False):
            name = paragraph.get("Package")
            version = paragraph.get("Version")
            status = paragraph.get("Status", "").split()
            if name and version and status[-1:] == ["installed"]:
                installed[name] = version
    return installed
