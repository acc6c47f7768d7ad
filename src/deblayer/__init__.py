import logging

import httpx
from rich.logging import RichHandler

from deblayer.config import InstallerConfig, ResolverConfig, RetryPolicy
from deblayer.errors import (
    ChecksumMismatch,
    DebLayerError,
    ExtractionError,
    NetworkError,
    OperationTimeout,
    PackageNotFound,
    ParseError,
    SignatureError,
    UnsatisfiableConstraint,
    VersionConflict,
)
from deblayer.events import Event, EventKind, EventSink
from deblayer.install import install_packages
from deblayer.models import InstalledLayer, PackageRequest, RepositorySource, ResolvedPackageSet
from deblayer.resolver import Resolver
from deblayer.version import compare


def configure_logging(level: int = logging.INFO) -> None:
    """Send log records (and default-sink events) to a rich console handler."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                rich_tracebacks=True,
                tracebacks_suppress=[httpx],
            )
        ],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("gnupg").setLevel(logging.WARNING)


__all__ = [
    "ChecksumMismatch",
    "DebLayerError",
    "Event",
    "EventKind",
    "EventSink",
    "ExtractionError",
    "InstallerConfig",
    "InstalledLayer",
    "NetworkError",
    "OperationTimeout",
    "PackageNotFound",
    "PackageRequest",
    "ParseError",
    "RepositorySource",
    "ResolvedPackageSet",
    "Resolver",
    "ResolverConfig",
    "RetryPolicy",
    "SignatureError",
    "UnsatisfiableConstraint",
    "VersionConflict",
    "compare",
    "configure_logging",
    "install_packages",
]
