"""Immutable configuration values passed to the pipeline's constructors."""

import hashlib
import json

from pydantic import BaseModel, ConfigDict, Field

from deblayer.constants import (
    DEFAULT_ARCHITECTURE,
    DEFAULT_DEADLINE,
    DEFAULT_DOWNLOAD_CONCURRENCY,
    DEFAULT_EXTRACT_WORKERS,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_SUGGESTION_COUNT,
    MULTIARCH_TRIPLETS,
)


class RetryPolicy(BaseModel):
    """Retry/backoff policy for HTTP requests.

    The delay before retry ``n`` (1-based) is
    ``min(max_backoff, initial_backoff * multiplier ** (n - 1))``, scaled by a
    random factor in ``[0.5, 1.0]`` when ``jitter`` is enabled.
    """

    model_config = ConfigDict(frozen=True)

    attempts: int = Field(default=DEFAULT_RETRY_ATTEMPTS, ge=1)
    initial_backoff: float = Field(default=0.5, ge=0)
    max_backoff: float = Field(default=10.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    jitter: bool = True
    timeout: float = Field(default=DEFAULT_HTTP_TIMEOUT, gt=0)


class ResolverConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    architecture: str = DEFAULT_ARCHITECTURE
    # packages already present in the build image, name -> version
    installed_packages: dict[str, str] = Field(default_factory=dict)
    suggestion_count: int = Field(default=DEFAULT_SUGGESTION_COUNT, ge=0)

    @property
    def multiarch_triplet(self) -> str:
        return MULTIARCH_TRIPLETS.get(self.architecture, f"{self.architecture}-linux-gnu")

    def digest(self) -> str:
        """Stable hash of this configuration, used in layer fingerprints."""
        canonical = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()


class InstallerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    download_concurrency: int = Field(default=DEFAULT_DOWNLOAD_CONCURRENCY, ge=1)
    extract_workers: int = Field(default=DEFAULT_EXTRACT_WORKERS, ge=1)
    # seconds for the whole install operation
    deadline: float = Field(default=DEFAULT_DEADLINE, gt=0)
