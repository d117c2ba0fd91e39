"""
auth/errors.py -- Failure taxonomy for the account subsystem.

Three families, handled differently by callers:

  AccountError   Expected use-case failures. Each subclass carries a stable
                 machine-readable `code` and a public `message`. The API layer
                 maps `code` to an HTTP status; nothing else inspects messages.

  CryptoError    Integrity failures (corrupt hash, failed GCM tag, missing
                 key). Never retried, never swallowed -- they indicate an
                 attack or a deployment defect.

  ConfigurationError  Re-exported from core.config. Raised at startup or by
                 the hasher when asked to hash a policy-violating secret.

Enumeration rules: InvalidCredentialsError covers both "no such email" and
"wrong password". Duplicate email and duplicate username are separate types
so logs can tell them apart, but share one public message.
"""

from __future__ import annotations

from datetime import datetime

from core.config import ConfigurationError

__all__ = [
    "AccountError",
    "AccountInactiveError",
    "AccountLockedError",
    "AlreadyVerifiedError",
    "AuthenticationFailedError",
    "ConfigurationError",
    "CorruptHashError",
    "CryptoError",
    "DuplicateEmailError",
    "DuplicateUsernameError",
    "ExpiredTokenError",
    "InvalidCredentialsError",
    "InvalidOrExpiredTokenError",
    "InvalidTokenError",
    "MissingKeyError",
    "UserNotFoundError",
    "WeakPasswordError",
]


class AccountError(Exception):
    code: str = "account_error"
    message: str = "The request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message


_DUPLICATE_IDENTITY = "An account with that email address or username cannot be created."


class DuplicateEmailError(AccountError):
    code = "duplicate_identity"
    message = _DUPLICATE_IDENTITY


class DuplicateUsernameError(AccountError):
    code = "duplicate_identity"
    message = _DUPLICATE_IDENTITY


class WeakPasswordError(AccountError):
    code = "weak_password"
    message = "Password does not meet the password policy."

    def __init__(self, reasons: list[str] | None = None) -> None:
        super().__init__()
        self.reasons = reasons or []


class InvalidCredentialsError(AccountError):
    code = "bad_credentials"
    message = "Invalid email or password."


class AccountLockedError(AccountError):
    """Raised without comparing the password. `until` is for logs only."""

    code = "account_locked"
    message = "Account is temporarily locked. Try again later."

    def __init__(self, until: datetime | None = None) -> None:
        super().__init__()
        self.until = until


class AccountInactiveError(AccountError):
    code = "account_inactive"
    message = "Account is disabled."


class InvalidTokenError(AccountError):
    code = "invalid_token"
    message = "Token is invalid."


class ExpiredTokenError(AccountError):
    code = "token_expired"
    message = "Token has expired."


class InvalidOrExpiredTokenError(AccountError):
    code = "invalid_or_expired_token"
    message = "Token is invalid or has expired."


class UserNotFoundError(AccountError):
    code = "user_not_found"
    message = "User not found."


class AlreadyVerifiedError(AccountError):
    code = "already_verified"
    message = "Email address is already verified."


class CryptoError(Exception):
    pass


class CorruptHashError(CryptoError):
    pass


class AuthenticationFailedError(CryptoError):
    pass


class MissingKeyError(CryptoError):
    pass
