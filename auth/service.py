"""
auth/service.py -- Account Service: registration, login and credential lifecycle.

Every use case reads and writes the Identity Record through UserStore and
uses the hasher, cipher and TokenFactory for cryptography. Failures are
raised as AccountError subclasses (auth/errors.py); the API layer maps their
`code` to an HTTP status. CryptoError and ConfigurationError are not caught
here -- they mean tampering or a broken deployment.

Enumeration rules [C1]:
  - login(): unknown email and wrong password raise the same
    InvalidCredentialsError, and an unknown email still pays for one bcrypt
    comparison against DUMMY_HASH.
  - request_password_reset(): same return value whether or not the email
    exists.
  - register(): duplicate email and duplicate username share one public
    message.

All methods are synchronous. bcrypt and PBKDF2 are CPU-bound; FastAPI runs
sync route handlers in its worker thread pool, which keeps them off the
event loop.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from auth.cipher import decrypt_fields, encrypt_fields
from auth.errors import (
    AccountInactiveError,
    AccountLockedError,
    AlreadyVerifiedError,
    DuplicateEmailError,
    DuplicateUsernameError,
    ExpiredTokenError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidTokenError,
    UserNotFoundError,
    WeakPasswordError,
)
from auth.hashing import DUMMY_HASH, hash_password, verify_password
from auth.lockout import is_locked, record_failure, record_success
from auth.models import User
from auth.notify import NotificationKind, Notifier, build_notifier
from auth.store import UserStore
from auth.tokens import OpaqueToken, TokenFactory, TokenFailure, hash_opaque, utcnow
from core.config import Settings, get_settings

logger = logging.getLogger("accountcore.auth")

PASSWORD_RESET_REQUESTED = "If an account exists for that email address, a password reset link has been sent."

PROFILE_FIELDS: frozenset = frozenset(
    {
        "first_name",
        "last_name",
        "avatar",
        "bio",
        "date_of_birth",
        "phone_number",
        "address",
        "counseling_notes",
    }
)
PREFERENCE_FIELDS: frozenset = frozenset({"language", "timezone", "notifications"})

_COMMON_PASSWORDS = frozenset(
    {"password", "password1", "12345678", "123456789", "qwerty123", "admin123", "letmein1", "iloveyou"}
)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass
class AuthResult:
    user: User
    access_token: str
    refresh_token: str


def normalize_email(email: str) -> str:
    return email.strip().lower()


def check_password_policy(
    password: str,
    settings: Settings,
    username: str | None = None,
    email: str | None = None,
) -> list[str]:
    """Return the list of policy violations; empty means the password is acceptable."""
    reasons: list[str] = []
    if len(password) < settings.password_min_length:
        reasons.append(f"Password must be at least {settings.password_min_length} characters.")
    if len(password) > settings.password_max_length:
        reasons.append(f"Password must be at most {settings.password_max_length} characters.")
    if not re.search(r"[a-z]", password):
        reasons.append("Password must contain a lowercase letter.")
    if not re.search(r"[A-Z]", password):
        reasons.append("Password must contain an uppercase letter.")
    if not re.search(r"[0-9]", password):
        reasons.append("Password must contain a number.")
    if settings.password_require_special and not re.search(r"[^A-Za-z0-9]", password):
        reasons.append("Password must contain a special character.")
    if password.lower() in _COMMON_PASSWORDS:
        reasons.append("Password is too common.")
    lowered = password.lower()
    if username and lowered == username.lower():
        reasons.append("Password must not match the username.")
    if email and lowered == email.split("@", 1)[0].lower():
        reasons.append("Password must not match the email address.")
    return reasons


def _merge(base: dict, updates: dict) -> dict:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class AccountService:
    """Use cases over the Identity Record.

    Usage:
        service = AccountService(UserStore())
        result = service.register("a@x.com", "Abcd1234!", "alice")
        pair = service.refresh(result.refresh_token)
    """

    def __init__(
        self,
        store: UserStore,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        tokens: TokenFactory | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.notifier = notifier or build_notifier(self.settings)
        self._clock = clock
        self.tokens = tokens or TokenFactory(self.settings, clock)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        return user

    def _public_user(self, user_id: str) -> User | None:
        """Load a record for the caller: no password hash, profile decrypted."""
        user = self.store.get_by_id(user_id, include_secret=False)
        if user is not None:
            user.profile = decrypt_fields(user.profile, self.settings.encryption_key)
        return user

    def _enforce_policy(self, password: str, username: str | None, email: str | None) -> None:
        reasons = check_password_policy(password, self.settings, username=username, email=email)
        if reasons:
            raise WeakPasswordError(reasons)

    def _start_session(self, user_id: str) -> TokenPair:
        refresh_token = self.tokens.issue_refresh(user_id)
        self.store.add_refresh_token(user_id, refresh_token, self._clock())
        return TokenPair(access_token=self.tokens.issue_access(user_id), refresh_token=refresh_token)

    def _prune_refresh_tokens(self, user_id: str) -> None:
        removed = self.store.prune_refresh_tokens(user_id, self._clock() - self.tokens.refresh_ttl)
        if removed:
            logger.info("Pruned %d expired refresh tokens for %s", removed, user_id)

    def _notify(self, kind: NotificationKind, email: str, payload: dict) -> None:
        """Fire-and-observe: a delivery failure is logged, never propagated."""
        try:
            self.notifier.notify(kind, email, payload)
        except Exception:
            logger.exception("Failed to deliver %s notification", kind.value)

    def _issue_verification(self) -> OpaqueToken:
        return self.tokens.issue_opaque(timedelta(seconds=self.settings.email_verification_ttl_seconds))

    def _send_verification(self, email: str, verification: OpaqueToken) -> None:
        self._notify(
            NotificationKind.verification,
            email,
            {"token": verification.raw, "url": f"{self.settings.client_url}/verify-email?token={verification.raw}"},
        )

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        username: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> AuthResult:
        email = normalize_email(email)
        username = username.strip()
        self._enforce_policy(password, username, email)

        existing = self.store.get_by_email_or_username(email, username)
        if existing is not None:
            if existing.email == email:
                logger.info("Registration rejected: email already registered")
                raise DuplicateEmailError()
            logger.info("Registration rejected: username %s already taken", username)
            raise DuplicateUsernameError()

        profile = {k: v for k, v in (("first_name", first_name), ("last_name", last_name)) if v}
        verification = self._issue_verification()
        try:
            user_id = self.store.create_user(
                User(
                    email=email,
                    username=username,
                    password_hash=hash_password(password),
                    email_verification_token_hash=verification.hashed,
                    email_verification_expires_at=verification.expires_at,
                    profile=profile,
                )
            )
        except IntegrityError as exc:
            # A concurrent registration claimed one of the keys after the pre-check.
            if self.store.get_by_email(email) is not None:
                raise DuplicateEmailError() from exc
            raise DuplicateUsernameError() from exc

        self._send_verification(email, verification)
        pair = self._start_session(user_id)
        logger.info("Registered user %s", user_id)
        return AuthResult(
            user=self._public_user(user_id),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
        )

    def login(self, email: str, password: str) -> AuthResult:
        email = normalize_email(email)
        now = self._clock()
        user = self.store.get_by_email(email)
        if user is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            verify_password(password, DUMMY_HASH)
            logger.info("Failed login for unknown email")
            raise InvalidCredentialsError()

        if is_locked(user, now):
            logger.warning("Login attempt on locked account %s", user.id)
            raise AccountLockedError(until=user.lock_until)
        if not user.is_active:
            logger.info("Login attempt on inactive account %s", user.id)
            raise AccountInactiveError()

        if not verify_password(password, user.password_hash):
            record_failure(self.store, user.id, now, self.settings)
            raise InvalidCredentialsError()

        record_success(self.store, user.id, now)
        self._prune_refresh_tokens(user.id)
        pair = self._start_session(user.id)
        logger.info("User %s logged in", user.id)
        return AuthResult(
            user=self._public_user(user.id),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
        )

    def authenticate_access(self, token: str) -> User:
        """Resolve a bearer access token to an active user."""
        check = self.tokens.verify_access(token)
        if check.failure is TokenFailure.EXPIRED:
            raise ExpiredTokenError()
        if not check.ok:
            raise InvalidTokenError()
        user = self._public_user(check.user_id)
        if user is None:
            raise InvalidTokenError()
        if not user.is_active:
            raise AccountInactiveError()
        return user

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def logout(self, user_id: str, refresh_token: str) -> None:
        self._require_user(user_id)
        self.store.remove_refresh_token(user_id, refresh_token)
        logger.info("User %s logged out", user_id)

    def logout_all(self, user_id: str) -> None:
        self._require_user(user_id)
        removed = self.store.clear_refresh_tokens(user_id)
        logger.info("User %s logged out of %d sessions", user_id, removed)

    def refresh(self, refresh_token: str) -> TokenPair:
        """Redeem a refresh token exactly once for a new access/refresh pair.

        Not-in-set and bad-signature both surface as InvalidTokenError.
        """
        check = self.tokens.verify_refresh(refresh_token)
        if check.failure is TokenFailure.EXPIRED:
            raise ExpiredTokenError()
        if not check.ok:
            raise InvalidTokenError()

        user = self.store.get_by_id(check.user_id, include_secret=False)
        if user is None or not user.is_active:
            raise InvalidTokenError()

        self._prune_refresh_tokens(user.id)
        new_refresh = self.tokens.issue_refresh(user.id)
        if not self.store.rotate_refresh_token(user.id, refresh_token, new_refresh, self._clock()):
            logger.warning("Rejected refresh token not in the active set for %s", user.id)
            raise InvalidTokenError()
        return TokenPair(access_token=self.tokens.issue_access(user.id), refresh_token=new_refresh)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, raw_token: str) -> None:
        token_hash = hash_opaque(raw_token)
        user = self.store.get_by_verification_hash(token_hash)
        if user is None or not self.tokens.redeem_opaque(
            raw_token, user.email_verification_token_hash, user.email_verification_expires_at
        ):
            raise InvalidOrExpiredTokenError()
        if not self.store.consume_verification_token(user.id, token_hash):
            raise InvalidOrExpiredTokenError()
        logger.info("Email verified for %s", user.id)
        self._notify(NotificationKind.welcome, user.email, {"username": user.username})

    def resend_verification(self, user_id: str) -> None:
        user = self._require_user(user_id)
        if user.is_email_verified:
            raise AlreadyVerifiedError()
        verification = self._issue_verification()
        self.store.set_email_verification(user.id, verification.hashed, verification.expires_at)
        self._send_verification(user.email, verification)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str, defer: Callable[..., None] | None = None) -> str:
        """Issue a reset token if the account exists; same reply either way.

        defer, when given, receives the delivery call instead of running it
        inline (the route passes BackgroundTasks.add_task), so response time
        does not depend on whether a mail was sent.
        """
        user = self.store.get_by_email(normalize_email(email))
        if user is None:
            logger.info("Password reset requested for unknown email")
            return PASSWORD_RESET_REQUESTED

        reset = self.tokens.issue_opaque(timedelta(seconds=self.settings.password_reset_ttl_seconds))
        self.store.set_password_reset(user.id, reset.hashed, reset.expires_at)
        payload = {"token": reset.raw, "url": f"{self.settings.client_url}/reset-password?token={reset.raw}"}
        if defer is not None:
            defer(self._notify, NotificationKind.password_reset, user.email, payload)
        else:
            self._notify(NotificationKind.password_reset, user.email, payload)
        logger.info("Password reset issued for %s", user.id)
        return PASSWORD_RESET_REQUESTED

    def reset_password(self, raw_token: str, new_password: str) -> None:
        token_hash = hash_opaque(raw_token)
        user = self.store.get_by_reset_hash(token_hash)
        if user is None or not self.tokens.redeem_opaque(
            raw_token, user.password_reset_token_hash, user.password_reset_expires_at
        ):
            raise InvalidOrExpiredTokenError()
        self._enforce_policy(new_password, user.username, user.email)
        if not self.store.consume_reset_token(user.id, token_hash, hash_password(new_password)):
            raise InvalidOrExpiredTokenError()
        logger.info("Password reset completed for %s; all sessions revoked", user.id)
        self._notify(NotificationKind.password_changed, user.email, {})

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        user = self._require_user(user_id)
        if not verify_password(current_password, user.password_hash):
            raise InvalidCredentialsError("Current password is incorrect.")
        self._enforce_policy(new_password, user.username, user.email)
        if new_password == current_password:
            raise WeakPasswordError(["New password must differ from the current password."])
        self.store.replace_password(user_id, hash_password(new_password))
        logger.info("Password changed for %s; all sessions revoked", user_id)
        self._notify(NotificationKind.password_changed, user.email, {})

    # ------------------------------------------------------------------
    # Profile and account
    # ------------------------------------------------------------------

    def get_profile(self, user_id: str) -> User:
        user = self._public_user(user_id)
        if user is None:
            raise UserNotFoundError()
        return user

    def update_profile(self, user_id: str, updates: dict) -> User:
        """Merge profile, preferences and username. Other keys are ignored."""
        user = self._require_user(user_id)
        fields: dict = {}

        username = (updates.get("username") or "").strip()
        if username and username != user.username:
            if self.store.get_by_username(username) is not None:
                raise DuplicateUsernameError()
            fields["username"] = username

        if updates.get("profile"):
            profile = dict(user.profile)
            for key, value in updates["profile"].items():
                if key not in PROFILE_FIELDS:
                    continue
                profile[key] = value
                profile.pop(key + "_encrypted", None)
            fields["profile"] = encrypt_fields(profile, self.settings.encryption_key)

        if updates.get("preferences"):
            allowed = {k: v for k, v in updates["preferences"].items() if k in PREFERENCE_FIELDS}
            fields["preferences"] = _merge(user.preferences, allowed)

        if fields:
            try:
                self.store.update_user(user_id, **fields)
            except IntegrityError as exc:
                raise DuplicateUsernameError() from exc
        return self.get_profile(user_id)

    def delete_account(self, user_id: str, password: str) -> None:
        """Soft-delete. The record stays; erasure is a retention-policy job."""
        user = self._require_user(user_id)
        if not verify_password(password, user.password_hash):
            raise InvalidCredentialsError("Password is incorrect.")
        self.store.deactivate(user_id)
        logger.info("Account %s deactivated", user_id)
