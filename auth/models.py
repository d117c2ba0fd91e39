"""
auth/models.py -- Domain dataclasses for account entities.

Pattern: Data class (pure data container, zero logic). Stores own the mapping
to rows; the service and lockout modules do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of account roles. Authorization checks use set membership."""

    user = "user"
    counselor = "counselor"
    admin = "admin"


def default_preferences() -> dict:
    return {
        "language": "ja",
        "timezone": "Asia/Tokyo",
        "notifications": {"email": True, "push": True},
    }


@dataclass
class RefreshTokenEntry:
    """One persisted refresh token. Expires 30 days after issued_at."""

    token: str
    issued_at: datetime


@dataclass
class User:
    """The Identity Record. One per unique email and per unique username.

    password_hash is an empty string only on records loaded with
    include_secret=False; a stored record always carries a bcrypt hash.

    The verification and reset token pairs (hash + expiry) are always both
    set or both None -- the store writes them in a single UPDATE.

    profile values listed in auth.cipher.SENSITIVE_FIELDS are ciphertext at
    rest, flagged by a companion "<field>_encrypted" key.
    """

    email: str
    username: str
    password_hash: str
    id: str | None = None
    role: Role = Role.user
    is_active: bool = True
    is_email_verified: bool = False
    email_verification_token_hash: str | None = None
    email_verification_expires_at: datetime | None = None
    password_reset_token_hash: str | None = None
    password_reset_expires_at: datetime | None = None
    refresh_tokens: list[RefreshTokenEntry] = field(default_factory=list)
    login_attempts: int = 0
    lock_until: datetime | None = None
    last_login: datetime | None = None
    profile: dict = field(default_factory=dict)
    preferences: dict = field(default_factory=default_preferences)
    created_at: datetime | None = None
    updated_at: datetime | None = None
