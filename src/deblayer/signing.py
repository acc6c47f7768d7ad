"""Detached OpenPGP signature verification for Release documents."""

import logging
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

import gnupg

from deblayer.errors import SignatureError

logger = logging.getLogger(__name__)


class SignatureVerifier(Protocol):
    def verify(self, document: bytes, signature: bytes, trusted_keys: Sequence[str], label: str) -> None:
        """Raise SignatureError unless ``signature`` is a valid signature of ``document`` by a trusted key."""
        ...


class GnupgVerifier:
    """Verify signatures with gpg against a throwaway keyring holding only the trusted keys.

    The keyring is rebuilt for every verification so that keys trusted for one
    source can never authenticate another.
    """

    def __init__(self, gpg_binary: str = "gpg"):
        self.gpg_binary = gpg_binary

    def verify(self, document: bytes, signature: bytes, trusted_keys: Sequence[str], label: str) -> None:
        if not trusted_keys:
            raise SignatureError(f"No trusted keys configured for {label}")
        if not signature.strip():
            raise SignatureError(f"Empty signature for {label}")

        with tempfile.TemporaryDirectory(prefix="deblayer-gpg-", ignore_cleanup_errors=True) as home:
            try:
                gpg = gnupg.GPG(gnupghome=home, gpgbinary=self.gpg_binary)
            except (OSError, ValueError) as e:
                raise SignatureError(f"Unable to run {self.gpg_binary}: {e}") from e

            fingerprints: set[str] = set()
            for armored in trusted_keys:
                result = gpg.import_keys(armored)
                fingerprints.update(fp.upper() for fp in result.fingerprints if fp)
            if not fingerprints:
                raise SignatureError(f"None of the trusted keys for {label} could be imported")

            sig_path = Path(home) / "Release.gpg"
            sig_path.write_bytes(signature)
            verified = gpg.verify_data(str(sig_path), document)

        if not verified.valid:
            raise SignatureError(f"Bad or untrusted signature for {label}: {verified.status or 'no valid signature'}")

        signer = (verified.pubkey_fingerprint or verified.fingerprint or "").upper()
        if signer not in fingerprints:
            raise SignatureError(f"Release for {label} is signed by untrusted key {signer or verified.key_id}")
        logger.debug(f"Verified Release signature for {label} (key {signer})")
