from __future__ import annotations

import base64

import pytest

from reportsync.credentials.envelope import (
    ALGORITHM,
    KEY_LENGTH,
    NONCE_LENGTH,
    TAG_LENGTH,
    CredentialCipher,
    generate_encryption_key,
    is_encrypted,
    normalize_key,
)
from reportsync.errors import IntegrityError


def _flip(envelope: str, index: int) -> str:
    raw = bytearray(base64.b64decode(envelope))
    raw[index] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


@pytest.mark.parametrize("plaintext", ["", "ya29.a0AfH6SMB", "トークン-ñ-✓"])
def test_decrypt_returns_original_plaintext(plaintext):
    cipher = CredentialCipher("unit-test-secret")
    assert cipher.decrypt(cipher.encrypt(plaintext)) == plaintext


def test_envelope_layout_is_nonce_tag_ciphertext():
    cipher = CredentialCipher("unit-test-secret")
    raw = base64.b64decode(cipher.encrypt("abcdef"))
    assert len(raw) == NONCE_LENGTH + TAG_LENGTH + len("abcdef")


def test_same_plaintext_encrypts_differently():
    cipher = CredentialCipher("unit-test-secret")
    assert cipher.encrypt("same") != cipher.encrypt("same")


@pytest.mark.parametrize(
    "index",
    [0, NONCE_LENGTH, NONCE_LENGTH + TAG_LENGTH - 1, NONCE_LENGTH + TAG_LENGTH],
)
def test_any_flipped_bit_fails_authentication(index):
    cipher = CredentialCipher("unit-test-secret")
    envelope = cipher.encrypt("refresh-token-value")
    with pytest.raises(IntegrityError):
        cipher.decrypt(_flip(envelope, index))


def test_wrong_key_fails_authentication():
    envelope = CredentialCipher("key-one").encrypt("secret")
    with pytest.raises(IntegrityError):
        CredentialCipher("key-two").decrypt(envelope)


def test_malformed_envelopes_raise_integrity_error():
    cipher = CredentialCipher("unit-test-secret")
    with pytest.raises(IntegrityError):
        cipher.decrypt("not base64 !!")
    with pytest.raises(IntegrityError):
        cipher.decrypt(base64.b64encode(b"short").decode("ascii"))


def test_key_normalization_truncates_and_pads():
    assert normalize_key("k") == b"k" + b"\x00" * (KEY_LENGTH - 1)
    long_secret = "x" * 40
    assert normalize_key(long_secret) == b"x" * KEY_LENGTH
    # Truncation means only the first 32 bytes matter.
    envelope = CredentialCipher("y" * 32 + "tail-a").encrypt("v")
    assert CredentialCipher("y" * 32 + "tail-b").decrypt(envelope) == "v"


def test_missing_key_is_a_configuration_error():
    with pytest.raises(ValueError):
        CredentialCipher("")


def test_encrypt_tokens_marks_record_encrypted():
    cipher = CredentialCipher("unit-test-secret")
    record = cipher.encrypt_tokens("access", "refresh", 1_700_000_000_000)

    assert is_encrypted(record)
    assert record["encryption_algorithm"] == ALGORITHM
    assert record["access_token"] != "access"
    assert cipher.decrypt_tokens(record) == {
        "access_token": "access",
        "refresh_token": "refresh",
        "expires_at": 1_700_000_000_000,
    }


def test_is_encrypted_requires_literal_true():
    assert not is_encrypted({"encrypted": "true"})
    assert not is_encrypted({"access_token": "plain"})
    assert not is_encrypted(None)


def test_self_test_and_generated_key():
    key = generate_encryption_key()
    assert len(base64.b64decode(key)) == KEY_LENGTH
    assert CredentialCipher(key).self_test() is True
