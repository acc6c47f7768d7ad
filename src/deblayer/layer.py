"""Fingerprinted layer cache.

A layer is a directory tree at ``layer_dir`` plus a metadata document at
``<layer_dir>.json``. The metadata is only written after the tree is in
place, and moved aside before the tree is replaced, so a tree is valid exactly
when metadata with a matching fingerprint sits next to it.
"""

import hashlib
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path

import aiofiles
from pydantic import BaseModel, Field, ValidationError

from deblayer.archive import Extractor
from deblayer.download import Downloader
from deblayer.environment import discover_environment, rewrite_package_configs
from deblayer.errors import ExtractionError
from deblayer.events import Event, EventKind, EventSink, log_event
from deblayer.models import InstalledLayer, PackageRecord, ResolvedPackageSet

logger = logging.getLogger(__name__)

METADATA_SUFFIX = ".json"


class LayerMetadata(BaseModel):
    fingerprint: str
    packages: list[PackageRecord] = Field(default_factory=list)
    env: dict[str, list[str]] = Field(default_factory=dict)


def package_records(resolved: ResolvedPackageSet) -> list[PackageRecord]:
    return sorted(
        (
            PackageRecord(name=p.descriptor.name, version=p.descriptor.version, sha256=p.descriptor.sha256)
            for p in resolved.ordered()
        ),
        key=lambda r: (r.name, r.version, r.sha256),
    )


def fingerprint(resolved: ResolvedPackageSet) -> str:
    """Stable hash of the resolved ``(name, version, sha256)`` triples and the resolver configuration."""
    payload = {
        "packages": [[r.name, r.version, r.sha256] for r in package_records(resolved)],
        "resolver": resolved.resolver_digest,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


class LayerCache:
    """Reuses the layer at ``layer_dir`` when its fingerprint matches, else rebuilds it."""

    def __init__(
        self,
        layer_dir: Path,
        downloader: Downloader,
        extractor: Extractor,
        multiarch_triplet: str,
        sink: EventSink = log_event,
    ):
        self.layer_dir = Path(layer_dir).absolute()
        self.downloader = downloader
        self.extractor = extractor
        self.multiarch_triplet = multiarch_triplet
        self.sink = sink

    @property
    def metadata_path(self) -> Path:
        return self.layer_dir.with_name(self.layer_dir.name + METADATA_SUFFIX)

    async def read_metadata(self) -> LayerMetadata | None:
        """Stored metadata, or None when absent or unreadable."""
        if not self.metadata_path.is_file():
            return None
        try:
            async with aiofiles.open(self.metadata_path, "r") as f:
                content = await f.read()
            return LayerMetadata.model_validate_json(content)
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable layer metadata {self.metadata_path}: {e}")
            return None

    async def materialize(self, resolved: ResolvedPackageSet) -> InstalledLayer:
        expected = fingerprint(resolved)
        stored = await self.read_metadata()
        if stored is not None and stored.fingerprint == expected and self.layer_dir.is_dir():
            self.sink(Event(kind=EventKind.CACHE_HIT, message=f"{self.layer_dir} ({expected[:12]})"))
            return InstalledLayer(
                path=self.layer_dir,
                fingerprint=expected,
                packages=stored.packages,
                env=stored.env,
                cache_hit=True,
            )

        reason = "no layer" if stored is None else "fingerprint changed"
        self.sink(Event(kind=EventKind.CACHE_MISS, message=f"{self.layer_dir}: {reason}"))
        metadata = await self.build(resolved, expected)
        return InstalledLayer(
            path=self.layer_dir,
            fingerprint=expected,
            packages=metadata.packages,
            env=metadata.env,
            cache_hit=False,
        )

    async def build(self, resolved: ResolvedPackageSet, expected: str) -> LayerMetadata:
        """Download and extract into a sibling work directory, then swap it into place."""
        try:
            self.layer_dir.parent.mkdir(parents=True, exist_ok=True)
            work_dir = Path(tempfile.mkdtemp(prefix=f".{self.layer_dir.name}.", dir=self.layer_dir.parent))
        except OSError as e:
            raise ExtractionError(self.layer_dir.name, f"cannot create work directory: {e}") from e
        try:
            tree = work_dir / "tree"
            tree.mkdir()
            archives = await self.downloader.fetch_all(resolved, work_dir / "downloads")
            await self.extractor.extract_all(resolved, archives, tree, work_dir / "staging")

            try:
                rewrite_package_configs(tree, self.layer_dir)
                env = discover_environment(tree, self.multiarch_triplet)
            except OSError as e:
                raise ExtractionError(self.layer_dir.name, f"cannot prepare layer environment: {e}") from e
            metadata = LayerMetadata(fingerprint=expected, packages=package_records(resolved), env=env)
            self.commit(tree, metadata, work_dir)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.info(f"Layer {self.layer_dir} now holds {len(resolved)} packages ({expected[:12]})")
        return metadata

    def commit(self, tree: Path, metadata: LayerMetadata, work_dir: Path) -> None:
        """Replace the current layer with ``tree`` and record ``metadata``.

        Runs without suspending, so a deadline can't interrupt it halfway. If
        the new tree cannot be moved into place the previous tree and metadata
        are restored.
        """
        # both removed along with the work directory once the swap succeeds
        previous_tree = work_dir / "previous"
        previous_metadata = work_dir / "previous.json"
        moved: list[tuple[Path, Path]] = []
        try:
            for current, aside in ((self.metadata_path, previous_metadata), (self.layer_dir, previous_tree)):
                if current.exists() or current.is_symlink():
                    os.replace(current, aside)
                    moved.append((aside, current))
            try:
                os.replace(tree, self.layer_dir)
            except OSError:
                for aside, current in reversed(moved):
                    os.replace(aside, current)
                raise

            pending = work_dir / "metadata.json"
            pending.write_text(metadata.model_dump_json(indent=2))
            os.replace(pending, self.metadata_path)
        except OSError as e:
            raise ExtractionError(self.layer_dir.name, f"cannot commit layer {self.layer_dir}: {e}") from e
