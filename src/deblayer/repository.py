"""Repository metadata: authenticated Release documents and Packages indices."""

import asyncio
import hashlib
import logging
from collections.abc import Sequence

import httpx

from deblayer.compression import DECODE_ERRORS, Codec
from deblayer.config import RetryPolicy
from deblayer.constants import PACKAGES_VARIANTS
from deblayer.errors import NetworkError, ParseError, SignatureError
from deblayer.fetcher import fetch_bytes
from deblayer.index import parse_packages, parse_release, release_is_expired
from deblayer.models import ReleaseEntry, RepositoryIndex, RepositorySource
from deblayer.signing import GnupgVerifier, SignatureVerifier

logger = logging.getLogger(__name__)


def select_packages_entry(source: RepositorySource, manifest: dict[str, ReleaseEntry]) -> ReleaseEntry:
    """Pick the Packages index for the source's component/architecture from a Release manifest."""
    for variant in PACKAGES_VARIANTS:
        path = f"{source.component}/binary-{source.architecture}/{variant}"
        if path in manifest:
            return manifest[path]
    raise ParseError(
        f"Release for {source.label} lists no Packages index for "
        f"{source.component}/binary-{source.architecture}"
    )


def decode_packages(entry: ReleaseEntry, content: bytes) -> str:
    """Check ``content`` against the Release manifest, then decompress and decode it."""
    digest = hashlib.sha256(content).hexdigest()
    if digest != entry.sha256 or len(content) != entry.size:
        raise ParseError(
            f"{entry.path} does not match the Release manifest "
            f"(expected sha256 {entry.sha256} / {entry.size} bytes, got {digest} / {len(content)} bytes)"
        )

    if entry.path.endswith("/Packages"):
        raw = content
    else:
        try:
            raw = Codec.from_filename(entry.path).decompress(content)
        except DECODE_ERRORS as e:
            raise ParseError(f"Unable to decompress {entry.path}: {e}") from e

    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(f"{entry.path} is not valid UTF-8: {e}") from e


class RepositoryService:
    """Fetches, authenticates and parses repository indices.

    Indices are cached in memory for the lifetime of the service, which should
    be a single install run. Nothing is persisted.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        retry: RetryPolicy,
        verifier: SignatureVerifier | None = None,
    ):
        self.client = client
        self.retry = retry
        self.verifier = verifier or GnupgVerifier()
        self._indices: dict[RepositorySource, RepositoryIndex] = {}

    async def fetch(self, source: RepositorySource) -> RepositoryIndex:
        """Fetch the authenticated index for one source."""
        if cached := self._indices.get(source):
            return cached
        index = await self._load(source)
        self._indices[source] = index
        return index

    async def fetch_all(self, sources: Sequence[RepositorySource]) -> list[RepositoryIndex]:
        """Fetch every source concurrently, returning indices in source order.

        If any source fails, the error of the first failing source (in
        declaration order) is raised.
        """
        unique = list(dict.fromkeys(sources))
        results = await asyncio.gather(*(self.fetch(source) for source in unique), return_exceptions=True)
        by_source: dict[RepositorySource, RepositoryIndex] = {}
        for source, result in zip(unique, results, strict=True):
            if isinstance(result, BaseException):
                raise result
            by_source[source] = result
        return [by_source[source] for source in unique]

    async def _fetch_release(self, source: RepositorySource) -> tuple[bytes, bytes]:
        release = await fetch_bytes(self.client, source.dists_url("Release"), self.retry)
        try:
            signature = await fetch_bytes(self.client, source.dists_url("Release.gpg"), self.retry)
        except NetworkError as e:
            if e.status_code == 404:
                raise SignatureError(f"Release for {source.label} has no detached signature") from e
            raise
        return release, signature

    async def _load(self, source: RepositorySource) -> RepositoryIndex:
        logger.debug(f"Fetching Release for {source.label}")
        release_bytes, signature = await self._fetch_release(source)

        # gpg runs as a subprocess
        await asyncio.to_thread(self.verifier.verify, release_bytes, signature, source.trusted_keys, source.label)

        try:
            release_text = release_bytes.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"Release for {source.label} is not valid UTF-8") from e
        release, manifest = parse_release(release_text)
        if release_is_expired(release):
            raise SignatureError(f"Release for {source.label} expired on {release.get('Valid-Until')}")

        entry = select_packages_entry(source, manifest)
        content = await fetch_bytes(self.client, source.dists_url(entry.path), self.retry)
        packages_text = decode_packages(entry, content)
        packages = parse_packages(packages_text, source.architecture)

        logger.info(f"Loaded {len(packages)} packages from {source.label}")
        return RepositoryIndex(source=source, manifest=manifest, packages=packages)
