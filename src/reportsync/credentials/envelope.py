"""AES-256-GCM envelopes for OAuth token material at rest.

Persisted format: ``base64(nonce[16] || tag[16] || ciphertext)``.  The key
is the UTF-8 encoding of ``ENCRYPTION_KEY`` truncated or zero-padded to
32 bytes; records written by earlier deployments depend on that exact
rule, so it must not change.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import time
from typing import Any, Dict, Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import IntegrityError

logger = logging.getLogger(__name__)

ALGORITHM = "AES-256-GCM"
NONCE_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32


def normalize_key(secret: str) -> bytes:
    """Truncate or zero-pad *secret* to the cipher key length."""
    if not secret:
        raise ValueError("ENCRYPTION_KEY environment variable is not set")
    raw = secret.encode("utf-8")
    if len(raw) >= KEY_LENGTH:
        return raw[:KEY_LENGTH]
    return raw.ljust(KEY_LENGTH, b"\x00")


def generate_encryption_key() -> str:
    """Return a fresh random key suitable for ``ENCRYPTION_KEY``."""
    return base64.b64encode(os.urandom(KEY_LENGTH)).decode("ascii")


def is_encrypted(record: Any) -> bool:
    """A record is encrypted only if it carries ``encrypted: true``."""
    return isinstance(record, Mapping) and record.get("encrypted") is True


class CredentialCipher:
    """Authenticated encryption of token strings.

    Construct once per process; the normalized key is derived in
    ``__init__`` and reused for every call.
    """

    def __init__(self, secret: str) -> None:
        self._aead = AESGCM(normalize_key(secret))

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # cryptography appends the tag; the stored layout puts it first.
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, envelope: str) -> str:
        try:
            combined = base64.b64decode(envelope, validate=True)
        except (binascii.Error, TypeError, ValueError) as exc:
            raise IntegrityError("Envelope is not valid base64") from exc
        if len(combined) < NONCE_LENGTH + TAG_LENGTH:
            raise IntegrityError("Envelope too short to contain nonce and tag")

        nonce = combined[:NONCE_LENGTH]
        tag = combined[NONCE_LENGTH : NONCE_LENGTH + TAG_LENGTH]
        ciphertext = combined[NONCE_LENGTH + TAG_LENGTH :]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise IntegrityError("Envelope failed authentication") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise IntegrityError("Decrypted payload is not UTF-8") from exc

    def encrypt_tokens(
        self, access_token: str, refresh_token: str, expires_at: int
    ) -> Dict[str, Any]:
        return {
            "access_token": self.encrypt(access_token),
            "refresh_token": self.encrypt(refresh_token),
            "expires_at": int(expires_at),
            "encrypted": True,
            "encryption_algorithm": ALGORITHM,
        }

    def decrypt_tokens(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        refresh = record.get("refresh_token") or ""
        return {
            "access_token": self.decrypt(record["access_token"]),
            "refresh_token": self.decrypt(refresh) if refresh else "",
            "expires_at": record.get("expires_at"),
        }

    def self_test(self) -> bool:
        """Round-trip a sample value; False means the key is unusable."""
        sample = f"test-encryption-{int(time.time() * 1000)}"
        try:
            return self.decrypt(self.encrypt(sample)) == sample
        except IntegrityError:
            logger.exception("Encryption self-test failed")
            return False
