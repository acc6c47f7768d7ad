"""Whole-operation entry point: fetch indices, resolve, and materialize a layer."""

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path

import httpx

from deblayer.archive import Extractor
from deblayer.config import InstallerConfig
from deblayer.download import Downloader
from deblayer.errors import OperationTimeout
from deblayer.events import EventSink, log_event
from deblayer.fetcher import create_client
from deblayer.layer import LayerCache
from deblayer.models import InstalledLayer, PackageRequest, RepositorySource
from deblayer.repository import RepositoryService
from deblayer.resolver import Resolver
from deblayer.signing import SignatureVerifier

logger = logging.getLogger(__name__)


async def install_packages(
    requests: Sequence[PackageRequest],
    sources: Sequence[RepositorySource],
    layer_dir: Path,
    config: InstallerConfig | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    verifier: SignatureVerifier | None = None,
    sink: EventSink = log_event,
) -> InstalledLayer:
    """Install ``requests`` from ``sources`` into the layer at ``layer_dir``.

    The whole operation shares one deadline (``config.deadline``). On any
    error, the deadline included, the layer and its metadata are left as they
    were before the call.
    """
    config = config or InstallerConfig()
    try:
        async with asyncio.timeout(config.deadline):
            async with create_client(config.retry, transport=transport) as client:
                repositories = RepositoryService(client, config.retry, verifier=verifier)
                indices = await repositories.fetch_all(sources)

                resolved = Resolver(config.resolver, sink=sink).resolve(requests, indices)

                cache = LayerCache(
                    layer_dir,
                    Downloader(client, config.retry, config.download_concurrency, sink=sink),
                    Extractor(config.extract_workers, sink=sink),
                    config.resolver.multiarch_triplet,
                    sink=sink,
                )
                return await cache.materialize(resolved)
    except TimeoutError as e:
        if isinstance(e, OperationTimeout):
            raise
        raise OperationTimeout(f"Installing packages into {layer_dir} exceeded {config.deadline}s") from e
