"""
auth/cipher.py -- Symmetric Field Cipher for sensitive profile fields at rest.

Blob layout (base64 of the concatenation):

    salt (32) || iv (16) || tag (16) || ciphertext (n)

Each call draws a fresh salt and IV and derives the AES-256 key with
PBKDF2-HMAC-SHA256 (100 000 iterations) from the master key and that salt.
The GCM tag is verified before any plaintext is returned; a tampered or
truncated blob raises AuthenticationFailedError.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from auth.errors import AuthenticationFailedError, MissingKeyError

SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
KDF_ITERATIONS = 100_000

_HEADER_LENGTH = SALT_LENGTH + IV_LENGTH + TAG_LENGTH

SENSITIVE_FIELDS: tuple[str, ...] = ("phone_number", "address", "date_of_birth", "counseling_notes")

_MARKER_SUFFIX = "_encrypted"


def _derive_key(master_key: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_LENGTH, salt=salt, iterations=KDF_ITERATIONS)
    return kdf.derive(master_key.encode("utf-8"))


def encrypt(plaintext: str, master_key: str | None) -> str:
    """Encrypt plaintext into an opaque base64 blob."""
    if not master_key:
        raise MissingKeyError("Encryption key is not configured.")
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_derive_key(master_key, salt)).encrypt(iv, plaintext.encode("utf-8"), None)
    # cryptography appends the tag; the blob stores it ahead of the ciphertext.
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")


def decrypt(blob: str, master_key: str | None) -> str:
    """Decrypt a blob produced by encrypt(). Never returns unauthenticated data."""
    if not master_key:
        raise MissingKeyError("Encryption key is not configured.")
    try:
        raw = base64.b64decode(blob.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise AuthenticationFailedError("Encrypted value is not valid base64.") from exc
    if len(raw) < _HEADER_LENGTH:
        raise AuthenticationFailedError("Encrypted value is truncated.")

    salt = raw[:SALT_LENGTH]
    iv = raw[SALT_LENGTH : SALT_LENGTH + IV_LENGTH]
    tag = raw[SALT_LENGTH + IV_LENGTH : _HEADER_LENGTH]
    ciphertext = raw[_HEADER_LENGTH:]
    try:
        plaintext = AESGCM(_derive_key(master_key, salt)).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise AuthenticationFailedError("Encrypted value failed authentication.") from exc
    return plaintext.decode("utf-8")


def encrypt_fields(data: dict, master_key: str | None) -> dict:
    """Return a copy of data with every present sensitive field encrypted.

    Fields already carrying a true "<field>_encrypted" marker are left as is,
    so encrypting twice is harmless.
    """
    result = dict(data)
    for name in SENSITIVE_FIELDS:
        value = result.get(name)
        if value in (None, "") or result.get(name + _MARKER_SUFFIX) is True:
            continue
        result[name] = encrypt(str(value), master_key)
        result[name + _MARKER_SUFFIX] = True
    return result


def decrypt_fields(data: dict, master_key: str | None) -> dict:
    """Return a copy of data with every marked field decrypted and unmarked.

    Values without a marker are plaintext already and pass through.
    """
    result = dict(data)
    for name in SENSITIVE_FIELDS:
        marker = name + _MARKER_SUFFIX
        if result.get(marker) is not True:
            continue
        if result.get(name):
            result[name] = decrypt(result[name], master_key)
        del result[marker]
    return result
