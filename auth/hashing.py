"""
auth/hashing.py -- Credential Hasher (bcrypt).

bcrypt is used directly rather than through passlib: passlib's wrap-bug
detection feeds bcrypt 4.x a password longer than 72 bytes, which it rejects.

bcrypt only reads the first 72 bytes of its input. The policy allows up to
128 characters, so the input is cut to 72 bytes here, identically on hash and
verify, rather than left to the library (newer bcrypt releases raise instead
of truncating).
"""

from __future__ import annotations

import bcrypt

from auth.errors import ConfigurationError, CorruptHashError
from core.config import get_settings

_BCRYPT_MAX_BYTES = 72


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    Raises ConfigurationError if the password is empty or shorter than the
    minimum policy length -- callers are expected to have run the password
    policy first, so reaching this is a programming error.
    """
    settings = get_settings()
    if not plain or len(plain) < settings.password_min_length:
        raise ConfigurationError(
            f"Refusing to hash a password shorter than {settings.password_min_length} characters."
        )
    salt = bcrypt.gensalt(rounds=rounds or settings.bcrypt_rounds)
    return bcrypt.hashpw(_encode(plain), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the hash (constant-time).

    A mismatch returns False. A stored value that is not a bcrypt hash
    raises CorruptHashError.
    """
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError as exc:
        raise CorruptHashError("Stored password hash is malformed.") from exc


# Timing equalization dummy hash [C1]. Verified against when the identity
# does not exist so response time does not reveal account existence.
DUMMY_HASH: str = hash_password("accountcore_timing_dummy")
