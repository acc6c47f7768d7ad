import shutil

import gnupg
import pytest

from deblayer.errors import SignatureError
from deblayer.signing import GnupgVerifier

pytestmark = pytest.mark.skipif(shutil.which("gpg") is None, reason="gpg is not installed")

RELEASE = b"Origin: Test\nSuite: stable\nSHA256:\n 00 0 main/binary-amd64/Packages\n"


class Signer:
    def __init__(self, home, email):
        self.gpg = gnupg.GPG(gnupghome=str(home))
        params = self.gpg.gen_key_input(
            key_type="RSA",
            key_length=2048,
            name_real="Test Archive",
            name_email=email,
            no_protection=True,
        )
        self.fingerprint = self.gpg.gen_key(params).fingerprint
        self.public_key = self.gpg.export_keys(self.fingerprint)

    def sign(self, document: bytes) -> bytes:
        return self.gpg.sign(document, keyid=self.fingerprint, detach=True, binary=True).data


@pytest.fixture(scope="module")
def archive_key(tmp_path_factory):
    return Signer(tmp_path_factory.mktemp("archive"), "archive@example.test")


@pytest.fixture(scope="module")
def other_key(tmp_path_factory):
    return Signer(tmp_path_factory.mktemp("other"), "other@example.test")


def test_valid_signature(archive_key):
    GnupgVerifier().verify(RELEASE, archive_key.sign(RELEASE), [archive_key.public_key], "test")


def test_valid_with_several_trusted_keys(archive_key, other_key):
    trusted = [other_key.public_key, archive_key.public_key]
    GnupgVerifier().verify(RELEASE, archive_key.sign(RELEASE), trusted, "test")


def test_tampered_document(archive_key):
    signature = archive_key.sign(RELEASE)
    with pytest.raises(SignatureError):
        GnupgVerifier().verify(RELEASE + b"Extra: field\n", signature, [archive_key.public_key], "test")


def test_untrusted_key(archive_key, other_key):
    with pytest.raises(SignatureError):
        GnupgVerifier().verify(RELEASE, other_key.sign(RELEASE), [archive_key.public_key], "test")


@pytest.mark.parametrize("signature", [b"", b"not a signature"])
def test_garbage_signature(archive_key, signature):
    with pytest.raises(SignatureError):
        GnupgVerifier().verify(RELEASE, signature, [archive_key.public_key], "test")


def test_no_trusted_keys(archive_key):
    with pytest.raises(SignatureError, match="No trusted keys"):
        GnupgVerifier().verify(RELEASE, archive_key.sign(RELEASE), [], "test")
