"""Dependency resolution over one or more repository indices."""

import logging
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field

from deblayer.config import ResolverConfig
from deblayer.errors import PackageNotFound, UnsatisfiableConstraint, VersionConflict
from deblayer.events import Event, EventKind, EventSink, log_event
from deblayer.models import (
    Alternative,
    OrGroup,
    PackageDescriptor,
    PackageRequest,
    RepositoryIndex,
    RepositorySource,
    ResolvedPackage,
    ResolvedPackageSet,
    format_group,
)
from deblayer.utils import edit_distance
from deblayer.version import VersionConstraint, version_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    descriptor: PackageDescriptor
    source: RepositorySource
    source_position: int
    # set when the candidate matched through Provides
    virtual_name: str | None = None
    provided_version: str | None = None

    @property
    def version_for_match(self) -> str | None:
        return self.provided_version if self.virtual_name else self.descriptor.version


@dataclass
class WorkItem:
    name: str
    constraints: tuple[VersionConstraint, ...]
    origin: str
    force: bool = False
    skip_dependencies: bool = False
    requested: bool = False


def _rank(candidates: list[Candidate], by_provider_name: bool = False) -> list[Candidate]:
    # stable sorts, least significant key first
    ranked = sorted(
        candidates,
        key=lambda c: (c.source_position, c.descriptor.filename, c.descriptor.sha256),
    )
    ranked.sort(key=lambda c: version_key(c.descriptor.version), reverse=True)
    if by_provider_name:
        ranked.sort(key=lambda c: c.descriptor.name)
    return ranked


def _describe(constraints: Sequence[VersionConstraint]) -> str:
    return ", ".join(str(c) for c in constraints)


def merge_requests(requests: Sequence[PackageRequest]) -> list[WorkItem]:
    """Collapse duplicate requests per name, in name order.

    Every constraint given for a name applies. ``force`` applies if any request
    sets it; dependencies are skipped only if every request skips them.
    """
    grouped: dict[str, list[PackageRequest]] = {}
    for request in requests:
        grouped.setdefault(request.name, []).append(request)

    items = []
    for name in sorted(grouped):
        group = grouped[name]
        constraints = {str(r.version_constraint): r.version_constraint for r in group if r.version_constraint}
        items.append(
            WorkItem(
                name=name,
                constraints=tuple(constraints[key] for key in sorted(constraints)),
                origin=f"request for {name}",
                force=any(r.force for r in group),
                skip_dependencies=all(r.skip_dependencies for r in group),
                requested=True,
            )
        )
    return items


@dataclass
class _Resolution:
    config: ResolverConfig
    sink: EventSink
    by_name: dict[str, list[Candidate]] = field(default_factory=dict)
    providers: dict[str, list[Candidate]] = field(default_factory=dict)
    resolved: dict[str, ResolvedPackage] = field(default_factory=dict)
    # concrete name -> what caused it to be resolved
    origins: dict[str, str] = field(default_factory=dict)
    queue: deque[WorkItem] = field(default_factory=deque)

    def load(self, indices: Sequence[RepositoryIndex]) -> None:
        by_name: dict[str, list[Candidate]] = {}
        providers: dict[str, list[Candidate]] = {}
        for position, index in enumerate(indices):
            for descriptor in index.packages:
                by_name.setdefault(descriptor.name, []).append(
                    Candidate(descriptor=descriptor, source=index.source, source_position=position)
                )
                for provided in descriptor.provides:
                    providers.setdefault(provided.name, []).append(
                        Candidate(
                            descriptor=descriptor,
                            source=index.source,
                            source_position=position,
                            virtual_name=provided.name,
                            provided_version=provided.version,
                        )
                    )
        self.by_name = {name: _rank(cands) for name, cands in by_name.items()}
        self.providers = {name: _rank(cands, by_provider_name=True) for name, cands in providers.items()}

    def is_virtual(self, name: str) -> bool:
        return name not in self.by_name

    # -- lookups over the current resolved set --------------------------------

    def resolved_match(self, name: str) -> tuple[ResolvedPackage, str | None] | None:
        """The resolved package answering for ``name`` and the version it answers with."""
        if name in self.resolved:
            resolved = self.resolved[name]
            return resolved, resolved.descriptor.version
        if self.is_virtual(name):
            for resolved in sorted(self.resolved.values(), key=lambda r: r.resolution_order_index):
                provides, version = resolved.descriptor.provided_version(name)
                if provides:
                    return resolved, version
        return None

    def satisfied(self, alt: Alternative) -> bool:
        if match := self.resolved_match(alt.name):
            _, version = match
            return alt.matches(alt.name, version)
        installed = self.config.installed_packages.get(alt.name)
        return installed is not None and alt.matches(alt.name, installed)

    def resolved_incompatibly(self, alt: Alternative) -> bool:
        match = self.resolved_match(alt.name)
        return match is not None and not alt.matches(alt.name, match[1])

    def can_satisfy(self, alt: Alternative) -> bool:
        """Whether any repository (or the build image) could in principle satisfy ``alt``."""
        installed = self.config.installed_packages.get(alt.name)
        if installed is not None and alt.matches(alt.name, installed):
            return True
        if not self.is_virtual(alt.name):
            return any(alt.matches(alt.name, c.descriptor.version) for c in self.by_name[alt.name])
        return any(alt.matches(alt.name, c.provided_version) for c in self.providers.get(alt.name, []))

    # -- queue processing -----------------------------------------------------

    def run(self, requests: Sequence[PackageRequest]) -> None:
        self.queue.extend(merge_requests(requests))
        while self.queue:
            self.process(self.queue.popleft())
        self.check_conflicts()

    def process(self, item: WorkItem) -> None:
        if match := self.resolved_match(item.name):
            self.check_compatible(item, *match)
            if item.requested:
                self.warn(
                    item.name,
                    f"{item.name} was already selected as {match[0].descriptor.label} "
                    f"for {self.origins[match[0].descriptor.name]}",
                )
            return

        installed = self.config.installed_packages.get(item.name)
        if (
            installed is not None
            and not item.force
            and all(c.satisfied_by(installed) for c in item.constraints)
        ):
            if item.requested:
                self.warn(
                    item.name,
                    f"skipping {item.name} because {item.name}={installed} is already installed on the system",
                )
            return

        candidate = self.select(item)
        self.record(candidate, item)

        if item.skip_dependencies:
            return
        descriptor = candidate.descriptor
        for group in (*descriptor.pre_depends, *descriptor.depends):
            self.expand(group, requester=descriptor.label)

    def check_compatible(self, item: WorkItem, resolved: ResolvedPackage, version: str | None) -> None:
        for constraint in item.constraints:
            if version is None or not constraint.satisfied_by(version):
                name = resolved.descriptor.name
                raise VersionConflict(
                    f"{resolved.descriptor.label} (selected for {self.origins[name]})",
                    item.origin,
                    f"{item.origin} requires {item.name} ({constraint})",
                )

    def select(self, item: WorkItem) -> Candidate:
        def acceptable(candidate: Candidate) -> bool:
            version = candidate.version_for_match
            return version is not None and all(c.satisfied_by(version) for c in item.constraints)

        if not self.is_virtual(item.name):
            direct = self.by_name[item.name]
            candidates = [c for c in direct if acceptable(c)]
            if not candidates:
                available = ", ".join(dict.fromkeys(c.descriptor.version for c in direct))
                raise PackageNotFound(
                    item.name,
                    self.suggest(item.name),
                    detail=f"no version satisfies {_describe(item.constraints)}; available: {available}",
                )
            return candidates[0]

        providers = self.providers.get(item.name, [])
        if item.constraints:
            candidates = [c for c in providers if acceptable(c)]
        else:
            candidates = list(providers)
        # a provider already resolved under its own name can't be selected again at another version
        candidates = [c for c in candidates if c.descriptor.name not in self.resolved]
        if not candidates:
            raise PackageNotFound(item.name, self.suggest(item.name))

        chosen = candidates[0]
        names = list(dict.fromkeys(c.descriptor.name for c in candidates))
        if len(names) > 1:
            self.warn(
                item.name,
                f"virtual package {item.name} is provided by {', '.join(names)}; using {chosen.descriptor.label}",
            )
        elif item.requested:
            self.warn(
                item.name,
                f"virtual package {item.name} is provided by {chosen.descriptor.label} "
                f"(consider requesting {chosen.descriptor.name} instead)",
            )
        return chosen

    def record(self, candidate: Candidate, item: WorkItem) -> None:
        name = candidate.descriptor.name
        self.resolved[name] = ResolvedPackage(
            descriptor=candidate.descriptor,
            source=candidate.source,
            resolution_order_index=len(self.resolved),
        )
        self.origins[name] = item.origin
        logger.debug(f"Selected {candidate.descriptor.label} from {candidate.source.label} for {item.origin}")

    def expand(self, group: OrGroup, requester: str) -> None:
        if any(self.satisfied(alt) for alt in group):
            return
        viable = [alt for alt in group if self.can_satisfy(alt)]
        if not viable:
            raise UnsatisfiableConstraint(requester, format_group(group))
        # prefer an alternative that does not clash with what is already selected;
        # if every one does, queue the first so the clash is reported as a conflict
        chosen = next((alt for alt in viable if not self.resolved_incompatibly(alt)), viable[0])
        constraints = (chosen.version_constraint,) if chosen.version_constraint else ()
        self.queue.append(WorkItem(name=chosen.name, constraints=constraints, origin=requester))

    def check_conflicts(self) -> None:
        ordered = sorted(self.resolved.values(), key=lambda r: r.resolution_order_index)
        for package in ordered:
            descriptor = package.descriptor
            for kind, entries in (("conflicts with", descriptor.conflicts), ("breaks", descriptor.breaks)):
                for entry in entries:
                    for other in ordered:
                        if other is package:
                            continue
                        if self.hits(entry, other.descriptor):
                            raise VersionConflict(
                                descriptor.label,
                                other.descriptor.label,
                                f"{descriptor.name} {kind} {entry}",
                            )

    @staticmethod
    def hits(entry: Alternative, other: PackageDescriptor) -> bool:
        if entry.matches(other.name, other.version):
            return True
        provides, version = other.provided_version(entry.name)
        return provides and entry.matches(entry.name, version)

    # -- reporting ------------------------------------------------------------

    def suggest(self, name: str) -> list[str]:
        if self.config.suggestion_count == 0:
            return []
        known = (set(self.by_name) | set(self.providers)) - {name}
        ranked = sorted(known, key=lambda known_name: (edit_distance(name, known_name), known_name))
        return ranked[: self.config.suggestion_count]

    def warn(self, package: str, message: str) -> None:
        self.sink(Event(kind=EventKind.RESOLUTION_WARNING, package=package, message=message))


class Resolver:
    """Computes a complete, deterministic install set for a list of requests.

    Resolution is a breadth-first fixed point over a work queue: each name is
    selected at most once, and later requirements on an already selected name
    are only checked against it. The result does not depend on the order of
    the requests or of the entries within an index.
    """

    def __init__(self, config: ResolverConfig | None = None, sink: EventSink = log_event):
        self.config = config or ResolverConfig()
        self.sink = sink

    def resolve(self, requests: Sequence[PackageRequest], indices: Sequence[RepositoryIndex]) -> ResolvedPackageSet:
        self.sink(
            Event(
                kind=EventKind.RESOLUTION_STARTED,
                message=f"resolving {len(requests)} requested packages",
                data={"count": len(requests)},
            )
        )

        state = _Resolution(config=self.config, sink=self.sink)
        state.load(indices)
        state.run(requests)
        resolved = ResolvedPackageSet(packages=state.resolved, resolver_digest=self.config.digest())

        self.sink(
            Event(
                kind=EventKind.RESOLUTION_COMPLETED,
                message=f"resolved {len(resolved)} packages: "
                + ", ".join(p.descriptor.label for p in resolved.ordered()),
                data={"count": len(resolved)},
            )
        )
        return resolved
