import httpx
import pytest

from deblayer.compression import Codec, UnsupportedCompression
from deblayer.config import RetryPolicy
from deblayer.errors import NetworkError
from deblayer.fetcher import backoff_delay, fetch_bytes


def test_backoff_delay():
    policy = RetryPolicy(initial_backoff=0.5, multiplier=2, max_backoff=3, jitter=False)
    assert [backoff_delay(policy, n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_backoff_jitter_bounds():
    policy = RetryPolicy(initial_backoff=1, multiplier=2, max_backoff=10, jitter=True)
    for _ in range(50):
        assert 1.0 <= backoff_delay(policy, 2) <= 2.0


async def test_connection_errors_are_retried(retry):
    calls = []

    def handler(request):
        calls.append(request.url.path)
        if len(calls) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, content=b"ok")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        assert await fetch_bytes(client, "http://deb.example.test/x", retry) == b"ok"
    assert len(calls) == 3


async def test_connection_errors_exhaust_attempts(retry):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(NetworkError, match="ConnectError") as exc_info:
            await fetch_bytes(client, "http://deb.example.test/x", retry)
    assert exc_info.value.retryable
    assert exc_info.value.status_code is None


@pytest.mark.parametrize(
    "filename, codec",
    [("data.tar.gz", Codec.GZIP), ("data.tar.xz", Codec.XZ), ("data.tar.zst", Codec.ZSTD), ("Packages.xz", Codec.XZ)],
)
def test_codec_from_filename(filename, codec):
    assert Codec.from_filename(filename) is codec


@pytest.mark.parametrize("filename", ["data.tar.bz2", "data.tar", "data.tar.lzma"])
def test_unsupported_codec(filename):
    with pytest.raises(UnsupportedCompression):
        Codec.from_filename(filename)


async def test_redirect_loop_is_not_retried(retry):
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(302, headers={"Location": "http://deb.example.test/loop"})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, follow_redirects=True, max_redirects=2) as client:
        with pytest.raises(NetworkError, match="TooManyRedirects") as exc_info:
            await fetch_bytes(client, "http://deb.example.test/loop", retry)
    assert not exc_info.value.retryable
    # one attempt: the first request plus two redirects
    assert len(calls) == 3


@pytest.mark.parametrize(
    "error",
    [
        lambda request: httpx.UnsupportedProtocol("unsupported protocol 'ftp://'", request=request),
        lambda request: httpx.DecodingError("bad gzip body", request=request),
    ],
)
async def test_permanent_request_errors_are_not_retried(retry, error):
    calls = []

    def handler(request):
        calls.append(request.url.path)
        raise error(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(NetworkError) as exc_info:
            await fetch_bytes(client, "http://deb.example.test/x", retry)
    assert not exc_info.value.retryable
    assert isinstance(exc_info.value.__cause__, httpx.HTTPError)
    assert len(calls) == 1
