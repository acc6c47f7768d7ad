import httpx
import pytest

from builders import Entry, stanza
from deblayer.errors import NetworkError, ParseError, SignatureError
from deblayer.repository import RepositoryService


async def fetch(repo, verifier, retry):
    async with httpx.AsyncClient(transport=repo.transport()) as client:
        service = RepositoryService(client, retry, verifier=verifier)
        return await service.fetch(repo.source)


@pytest.mark.parametrize("variant", ["Packages.xz", "Packages.gz", "Packages"])
async def test_fetch_index(repo, verifier, retry, variant):
    repo.variant = variant
    repo.add_package("curl", "7.68.0", [Entry("./usr/bin/curl", b"curl")], depends="libcurl4 (>= 7.68.0)")
    repo.stanzas.append(stanza("foreign", "1.0", architecture="arm64"))
    repo.publish()

    index = await fetch(repo, verifier, retry)

    assert [p.name for p in index.packages] == ["curl"]
    assert f"main/binary-amd64/{variant}" in index.manifest
    assert verifier.calls == 1
    assert f"dists/stable/main/binary-amd64/{variant}" in repo.requests


async def test_prefers_compressed_variant(repo, verifier, retry):
    repo.stanzas.append(stanza("plain", "1.0"))
    repo.variant = "Packages"
    repo.publish()
    plain_release = repo.files["dists/stable/Release"]
    repo.variant = "Packages.xz"
    repo.publish()
    # list both variants in the manifest
    xz_line = repo.files["dists/stable/Release"].decode().splitlines()[-1]
    repo.files["dists/stable/Release"] = plain_release + f"{xz_line}\n".encode()

    await fetch(repo, verifier, retry)

    assert "dists/stable/main/binary-amd64/Packages.xz" in repo.requests
    assert "dists/stable/main/binary-amd64/Packages" not in repo.requests


async def test_bad_signature_rejects_source(repo, verifier, retry):
    repo.stanzas.append(stanza("curl", "7.68.0"))
    repo.files["dists/stable/Release.gpg"] = b"forged"
    repo.publish()

    with pytest.raises(SignatureError):
        await fetch(repo, verifier, retry)
    assert not any("binary-amd64" in path for path in repo.requests)


async def test_missing_signature(repo, verifier, retry):
    repo.stanzas.append(stanza("curl", "7.68.0"))
    repo.publish()
    del repo.files["dists/stable/Release.gpg"]

    with pytest.raises(SignatureError, match="no detached signature"):
        await fetch(repo, verifier, retry)


async def test_expired_release(repo, verifier, retry):
    repo.release_extra = "Valid-Until: Thu, 01 Jan 2015 00:00:00 UTC\n"
    repo.stanzas.append(stanza("curl", "7.68.0"))
    repo.publish()

    with pytest.raises(SignatureError, match="expired"):
        await fetch(repo, verifier, retry)


async def test_packages_checksum_mismatch(repo, verifier, retry):
    repo.stanzas.append(stanza("curl", "7.68.0"))
    repo.publish()
    path = "dists/stable/main/binary-amd64/Packages.xz"
    repo.files[path] = repo.files[path][:-1] + bytes([repo.files[path][-1] ^ 0xFF])

    with pytest.raises(ParseError, match="does not match the Release manifest"):
        await fetch(repo, verifier, retry)


async def test_missing_release(repo, verifier, retry):
    with pytest.raises(NetworkError) as exc_info:
        await fetch(repo, verifier, retry)
    assert exc_info.value.status_code == 404
    # 4xx is not retried
    assert repo.requests == ["dists/stable/Release"]


async def test_cached_per_service(repo, verifier, retry):
    repo.stanzas.append(stanza("curl", "7.68.0"))
    repo.publish()

    async with httpx.AsyncClient(transport=repo.transport()) as client:
        service = RepositoryService(client, retry, verifier=verifier)
        first = await service.fetch(repo.source)
        count = len(repo.requests)
        (second,) = await service.fetch_all([repo.source, repo.source])

    assert second is first
    assert len(repo.requests) == count
