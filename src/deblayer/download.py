"""Download and checksum verification of resolved package archives."""

import asyncio
import logging
from pathlib import Path, PurePosixPath

import httpx

from deblayer.config import RetryPolicy
from deblayer.errors import ChecksumMismatch, DebLayerError, ParseError
from deblayer.events import Event, EventKind, EventSink, log_event
from deblayer.fetcher import download_file
from deblayer.models import ResolvedPackage, ResolvedPackageSet, VerifiedArchive

logger = logging.getLogger(__name__)


class Downloader:
    """Fetches archives for a resolved set with bounded concurrency."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        retry: RetryPolicy,
        concurrency: int = 8,
        sink: EventSink = log_event,
    ):
        self.client = client
        self.retry = retry
        self.concurrency = concurrency
        self.sink = sink

    async def fetch(self, package: ResolvedPackage, download_dir: Path) -> VerifiedArchive:
        """Download one archive and check it against the descriptor's SHA-256."""
        descriptor = package.descriptor
        basename = PurePosixPath(descriptor.filename).name
        if not basename or basename in (".", ".."):
            raise ParseError(f"Invalid Filename for {descriptor.label}: {descriptor.filename!r}")

        url = package.url
        path = download_dir / f"{package.resolution_order_index:05d}-{basename}"
        self.sink(Event(kind=EventKind.DOWNLOAD_STARTED, package=descriptor.name, message=f"from {url}"))
        try:
            digest, size = await download_file(self.client, url, path, self.retry)
            if digest != descriptor.sha256:
                raise ChecksumMismatch(url, descriptor.sha256, digest)
        except DebLayerError as e:
            if path.is_file():
                path.unlink()
            self.sink(Event(kind=EventKind.DOWNLOAD_FAILED, package=descriptor.name, message=str(e)))
            raise

        if size != descriptor.size:
            logger.warning(f"{descriptor.label}: index declares {descriptor.size} bytes, downloaded {size}")
        self.sink(
            Event(
                kind=EventKind.DOWNLOAD_COMPLETED,
                package=descriptor.name,
                message=f"{descriptor.label} ({size} bytes)",
                data={"size": size},
            )
        )
        return VerifiedArchive(name=descriptor.name, path=path, sha256=digest, size=size)

    async def fetch_all(self, resolved: ResolvedPackageSet, download_dir: Path) -> dict[str, VerifiedArchive]:
        """Download every package in the set.

        A failing package does not cancel the others; once all have finished,
        the first failure in resolution order is raised.
        """
        download_dir.mkdir(parents=True, exist_ok=True)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(package: ResolvedPackage) -> VerifiedArchive:
            async with semaphore:
                return await self.fetch(package, download_dir)

        ordered = resolved.ordered()
        results = await asyncio.gather(*(_bounded(p) for p in ordered), return_exceptions=True)

        failures = [(p, r) for p, r in zip(ordered, results, strict=True) if isinstance(r, BaseException)]
        if failures:
            for package, error in failures[1:]:
                logger.error(f"Also failed: {package.descriptor.label}: {error}")
            raise failures[0][1]

        return {p.descriptor.name: r for p, r in zip(ordered, results, strict=True)}  # type: ignore[misc]
