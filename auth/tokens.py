"""
auth/tokens.py -- Token Factory: access JWTs, refresh JWTs, opaque tokens.

Security design decisions:
  Access tokens: python-jose HS256 signed with ACCESS_TOKEN_SECRET, claims
       {sub, type="access", iat, exp, jti}. Stateless.

  Refresh tokens: same shape with type="refresh", signed with the separate
       REFRESH_TOKEN_SECRET, 30-day life. A valid signature is only half the
       check -- the token must also still be in the user's persisted set,
       which UserStore.rotate_refresh_token() enforces atomically. jti makes
       two tokens minted in the same second for the same user distinct.

  Verification results: verify_access()/verify_refresh() return a TokenCheck
       instead of raising, so callers branch on TokenFailure rather than
       catching and matching exception messages. EXPIRED tells a client to
       try its refresh token; INVALID tells it to log in again.

  Opaque tokens (email verification, password reset): 32 random bytes as hex.
       Only sha256(raw) is persisted; the raw value goes out by email. A
       plain SHA-256 is enough because the input has 256 bits of entropy.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from jose import JWTError, jwt

from core.config import Settings

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenFailure(str, Enum):
    INVALID = "invalid"
    EXPIRED = "expired"


@dataclass(frozen=True)
class TokenCheck:
    """Outcome of verifying a signed token: a subject or a failure kind."""

    user_id: str | None = None
    failure: TokenFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.user_id is not None


@dataclass(frozen=True)
class OpaqueToken:
    raw: str
    hashed: str
    expires_at: datetime


def hash_opaque(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class TokenFactory:
    """Issues and verifies the three token families.

    Usage:
        factory = TokenFactory(get_settings())
        access = factory.issue_access(user.id)
        check = factory.verify_access(access)
        if check.ok: ...
    """

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utcnow) -> None:
        self._access_secret = settings.access_token_secret
        self._refresh_secret = settings.refresh_token_secret
        self._access_ttl = timedelta(seconds=settings.access_token_expire_seconds)
        self._refresh_ttl = timedelta(seconds=settings.refresh_token_expire_seconds)
        self._clock = clock

    @property
    def refresh_ttl(self) -> timedelta:
        return self._refresh_ttl

    # ------------------------------------------------------------------
    # Signed tokens
    # ------------------------------------------------------------------

    def _encode(self, user_id: str, token_type: str, secret: str, ttl: timedelta) -> str:
        now = self._clock()
        payload = {
            "sub": user_id,
            "type": token_type,
            "iat": now,
            "exp": now + ttl,
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    def _decode(self, token: str, token_type: str, secret: str) -> TokenCheck:
        # Expiry is judged against the injected clock, not jose's wall clock.
        try:
            payload = jwt.decode(token, secret, algorithms=[_ALGORITHM], options={"verify_exp": False})
        except JWTError:
            return TokenCheck(failure=TokenFailure.INVALID)
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return TokenCheck(failure=TokenFailure.INVALID)
        if exp <= self._clock().timestamp():
            return TokenCheck(failure=TokenFailure.EXPIRED)
        subject = payload.get("sub")
        if payload.get("type") != token_type or not isinstance(subject, str) or not subject:
            return TokenCheck(failure=TokenFailure.INVALID)
        return TokenCheck(user_id=subject)

    def issue_access(self, user_id: str) -> str:
        return self._encode(user_id, ACCESS, self._access_secret, self._access_ttl)

    def verify_access(self, token: str) -> TokenCheck:
        return self._decode(token, ACCESS, self._access_secret)

    def issue_refresh(self, user_id: str) -> str:
        return self._encode(user_id, REFRESH, self._refresh_secret, self._refresh_ttl)

    def verify_refresh(self, token: str) -> TokenCheck:
        """Check signature, shape and expiry only. Membership is the store's job."""
        return self._decode(token, REFRESH, self._refresh_secret)

    # ------------------------------------------------------------------
    # Opaque single-use tokens
    # ------------------------------------------------------------------

    def issue_opaque(self, ttl: timedelta) -> OpaqueToken:
        raw = secrets.token_hex(32)
        return OpaqueToken(raw=raw, hashed=hash_opaque(raw), expires_at=self._clock() + ttl)

    def redeem_opaque(self, raw: str, stored_hash: str | None, stored_expiry: datetime | None) -> bool:
        """Return True if raw matches the stored hash and has not expired.

        Clearing the stored pair after a successful redemption is the
        caller's job (a conditional store update).
        """
        if not raw or stored_hash is None or stored_expiry is None:
            return False
        if not hmac.compare_digest(hash_opaque(raw), stored_hash):
            return False
        return self._clock() < stored_expiry
