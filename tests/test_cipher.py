"""Unit tests for auth/cipher.py -- AES-256-GCM field encryption.

Covers:
- blob layout length and per-call randomness
- tampering, truncation, bad base64 and wrong key all fail authentication
- missing key raises MissingKeyError
- encrypt_fields/decrypt_fields markers and idempotence
"""

import base64

import pytest

from auth.cipher import (
    IV_LENGTH,
    SALT_LENGTH,
    TAG_LENGTH,
    decrypt,
    decrypt_fields,
    encrypt,
    encrypt_fields,
)
from auth.errors import AuthenticationFailedError, MissingKeyError

KEY = "k" * 64


def test_blob_layout_and_roundtrip():
    blob = encrypt("+81 90 1234 5678", KEY)
    raw = base64.b64decode(blob)
    assert len(raw) == SALT_LENGTH + IV_LENGTH + TAG_LENGTH + len("+81 90 1234 5678".encode())
    assert decrypt(blob, KEY) == "+81 90 1234 5678"


def test_each_encryption_is_randomized():
    assert encrypt("same", KEY) != encrypt("same", KEY)


def test_unicode_plaintext():
    assert decrypt(encrypt("東京都千代田区", KEY), KEY) == "東京都千代田区"


def test_tampered_ciphertext_fails():
    raw = bytearray(base64.b64decode(encrypt("secret notes", KEY)))
    raw[-1] ^= 0x01
    with pytest.raises(AuthenticationFailedError):
        decrypt(base64.b64encode(bytes(raw)).decode(), KEY)


def test_wrong_key_fails():
    blob = encrypt("secret notes", KEY)
    with pytest.raises(AuthenticationFailedError):
        decrypt(blob, "z" * 64)


def test_truncated_blob_fails():
    short = base64.b64encode(b"\x00" * (SALT_LENGTH + IV_LENGTH)).decode()
    with pytest.raises(AuthenticationFailedError):
        decrypt(short, KEY)


def test_invalid_base64_fails():
    with pytest.raises(AuthenticationFailedError):
        decrypt("%%% not base64 %%%", KEY)


@pytest.mark.parametrize("key", [None, ""])
def test_missing_key(key):
    with pytest.raises(MissingKeyError):
        encrypt("x", key)
    with pytest.raises(MissingKeyError):
        decrypt("eA==", key)


def test_encrypt_fields_marks_only_sensitive_fields():
    profile = {"first_name": "Alice", "phone_number": "555-0100", "address": ""}
    sealed = encrypt_fields(profile, KEY)
    assert sealed["first_name"] == "Alice"
    assert sealed["phone_number"] != "555-0100"
    assert sealed["phone_number_encrypted"] is True
    assert "address_encrypted" not in sealed
    assert profile["phone_number"] == "555-0100"


def test_encrypt_fields_is_idempotent():
    once = encrypt_fields({"counseling_notes": "notes"}, KEY)
    twice = encrypt_fields(once, KEY)
    assert twice == once
    assert decrypt_fields(twice, KEY) == {"counseling_notes": "notes"}


def test_decrypt_fields_passes_plaintext_through():
    assert decrypt_fields({"phone_number": "555-0100"}, KEY) == {"phone_number": "555-0100"}
