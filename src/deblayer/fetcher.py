"""HTTP retrieval for repository metadata and package archives."""

import asyncio
import hashlib
import logging
import random
from collections.abc import Awaitable, Callable
from pathlib import Path

import aiofiles
import httpx

from deblayer.config import RetryPolicy
from deblayer.errors import NetworkError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

# request failures that fail the same way on every attempt
FATAL_REQUEST_ERRORS = (httpx.UnsupportedProtocol, httpx.TooManyRedirects, httpx.DecodingError)


def create_client(policy: RetryPolicy, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """Create the shared client used for every request in one install run."""
    return httpx.AsyncClient(follow_redirects=True, timeout=policy.timeout, transport=transport)


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
    delay = min(policy.max_backoff, policy.initial_backoff * policy.multiplier ** (attempt - 1))
    if policy.jitter:
        delay *= random.uniform(0.5, 1.0)
    return delay


async def with_retries[T](url: str, policy: RetryPolicy, operation: Callable[[], Awaitable[T]]) -> T:
    """Run ``operation``, retrying connection errors and 5xx responses.

    Every other HTTP failure (4xx, redirect loops, bad schemes) and any local
    file error is raised as ``NetworkError`` without a retry. Other exceptions,
    checksum failures included, propagate unchanged.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            error = NetworkError(url, f"HTTP {status}", status_code=status, retryable=status >= 500)
            cause: Exception = e
        except FATAL_REQUEST_ERRORS as e:
            error = NetworkError(url, f"{type(e).__name__}: {e}")
            cause = e
        except httpx.TransportError as e:
            error = NetworkError(url, f"{type(e).__name__}: {e}", retryable=True)
            cause = e
        except httpx.HTTPError as e:
            error = NetworkError(url, f"{type(e).__name__}: {e}")
            cause = e
        except OSError as e:
            error = NetworkError(url, f"cannot write download: {e}")
            cause = e

        if not error.retryable or attempt >= policy.attempts:
            if error.status_code == 404:
                logger.debug(f"Not found: {url}")
            raise error from cause

        delay = backoff_delay(policy, attempt)
        logger.warning(f"Request to {url} failed ({error}), retry {attempt}/{policy.attempts - 1} in {delay:.1f}s")
        await asyncio.sleep(delay)


async def fetch_bytes(client: httpx.AsyncClient, url: str, policy: RetryPolicy) -> bytes:
    """GET a (small) document into memory."""

    async def _get() -> bytes:
        response = await client.get(url)
        response.raise_for_status()
        return response.content

    content = await with_retries(url, policy, _get)
    logger.debug(f"Fetched {url} ({len(content)} bytes)")
    return content


async def download_file(
    client: httpx.AsyncClient,
    url: str,
    output_path: Path,
    policy: RetryPolicy,
) -> tuple[str, int]:
    """Stream a URL to a local file, hashing the bytes as they arrive.

    Args:
        client: The shared HTTP client
        url: The URL to download from
        output_path: Where to save the downloaded file (overwritten on each attempt)
        policy: Retry policy for transient failures

    Returns:
        Tuple of (sha256 hex digest, size in bytes)
    """

    async def _stream() -> tuple[str, int]:
        hasher = hashlib.sha256()
        size = 0
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            output_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(output_path, "wb") as f:
                async for chunk in response.aiter_bytes(CHUNK_SIZE):
                    hasher.update(chunk)
                    size += len(chunk)
                    await f.write(chunk)
        return hasher.hexdigest(), size

    digest, size = await with_retries(url, policy, _stream)
    logger.debug(f"Downloaded {url} to {output_path} ({size} bytes)")
    return digest, size
