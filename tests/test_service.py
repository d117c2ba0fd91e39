"""
tests/test_service.py -- Use-case tests for auth/service.py AccountService.

The service runs over a real in-memory UserStore with a FakeClock and a
RecordingNotifier (see conftest.py), so lockout windows and token expiry are
exercised by moving the clock rather than sleeping.

Coverage:
  - registration: success shape, duplicates, weak passwords, race on insert
  - login: enumeration resistance, lockout threshold and expiry, inactive accounts
  - refresh: single use, logout, logout-all, pruning of expired tokens
  - email verification and resend
  - password reset request/redeem, change password
  - profile read/update with field encryption, account deletion
  - notification failures never undo the state change
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from conftest import STRONG_PASSWORD

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
from auth.hashing import verify_password
from auth.notify import NotificationKind
from auth.service import PASSWORD_RESET_REQUESTED, AccountService, check_password_policy
from auth.tokens import hash_opaque


@pytest.fixture
def alice(service):
    return service.register("a@x.com", STRONG_PASSWORD, "alice")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_scenario_a(self, service, store, alice):
        """New record is unverified and holds exactly one refresh token."""
        record = store.get_by_id(alice.user.id)
        assert record.is_email_verified is False
        assert len(record.refresh_tokens) == 1
        assert record.refresh_tokens[0].token == alice.refresh_token
        assert record.password_hash != STRONG_PASSWORD
        assert verify_password(STRONG_PASSWORD, record.password_hash)
        assert alice.user.password_hash == ""
        assert service.tokens.verify_access(alice.access_token).user_id == alice.user.id

    def test_verification_token_sent_and_stored_hashed(self, store, notifier, alice):
        payload = notifier.last(NotificationKind.verification)
        record = store.get_by_id(alice.user.id)
        assert record.email_verification_token_hash == hash_opaque(payload["token"])
        assert payload["token"] in payload["url"]

    def test_email_is_normalized(self, service, alice):
        with pytest.raises(DuplicateEmailError):
            service.register("  A@X.COM ", STRONG_PASSWORD, "alice2")

    def test_duplicate_username(self, service, alice):
        with pytest.raises(DuplicateUsernameError):
            service.register("b@x.com", STRONG_PASSWORD, "alice")

    def test_duplicates_share_public_message(self):
        assert DuplicateEmailError().message == DuplicateUsernameError().message

    def test_weak_password_lists_reasons(self, service, store):
        with pytest.raises(WeakPasswordError) as excinfo:
            service.register("a@x.com", "abcdefgh", "alice")
        reasons = excinfo.value.reasons
        assert any("uppercase" in r for r in reasons)
        assert any("number" in r for r in reasons)
        assert store.get_by_email("a@x.com") is None

    def test_insert_race_maps_to_duplicate(self, service, store, monkeypatch):
        """A concurrent insert that wins after the pre-check still yields a duplicate error."""
        service.register("a@x.com", STRONG_PASSWORD, "alice")
        monkeypatch.setattr(store, "get_by_email_or_username", lambda email, username: None)
        with pytest.raises(DuplicateEmailError):
            service.register("a@x.com", STRONG_PASSWORD, "someone")
        with pytest.raises(DuplicateUsernameError):
            service.register("z@x.com", STRONG_PASSWORD, "alice")


def test_password_policy(settings):
    assert check_password_policy(STRONG_PASSWORD, settings) == []
    assert check_password_policy("Password1!"[:7], settings)
    assert check_password_policy("A" * 129 + "a1!", settings)
    assert check_password_policy("Alice123!", settings, username="alice123!")
    assert check_password_policy("Abcd12345", settings)  # no special character


# ---------------------------------------------------------------------------
# Login and lockout
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_stamps_last_login(self, service, store, clock, alice):
        result = service.login("a@x.com", STRONG_PASSWORD)
        assert result.user.id == alice.user.id
        assert store.get_by_id(alice.user.id).last_login == clock.now
        assert len(store.get_by_id(alice.user.id).refresh_tokens) == 2

    def test_no_enumeration(self, service, alice):
        with pytest.raises(InvalidCredentialsError) as unknown:
            service.login("ghost@x.com", STRONG_PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            service.login("a@x.com", "Wrong1234!")
        assert unknown.value.code == wrong.value.code
        assert unknown.value.message == wrong.value.message

    def test_lockout_threshold(self, service, store, clock, settings, alice):
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                service.login("a@x.com", "Wrong1234!")
        record = store.get_by_id(alice.user.id)
        assert record.login_attempts == 4
        assert record.lock_until is None

        with pytest.raises(InvalidCredentialsError):
            service.login("a@x.com", "Wrong1234!")
        record = store.get_by_id(alice.user.id)
        assert record.lock_until == clock.now + timedelta(hours=2)

        clock.advance(minutes=90)
        with pytest.raises(AccountLockedError):
            service.login("a@x.com", STRONG_PASSWORD)
        with pytest.raises(AccountLockedError):
            service.login("a@x.com", "Wrong1234!")
        assert store.get_by_id(alice.user.id).login_attempts == 5

        clock.advance(minutes=31)
        service.login("a@x.com", STRONG_PASSWORD)
        record = store.get_by_id(alice.user.id)
        assert record.login_attempts == 0
        assert record.lock_until is None

    def test_scenario_b(self, service, alice):
        """Four wrong passwords then a fifth lock the account; the right password is refused."""
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                service.login("a@x.com", "Wrong1234!")
        with pytest.raises(AccountLockedError):
            service.login("a@x.com", STRONG_PASSWORD)

    def test_inactive_account(self, service, alice):
        service.delete_account(alice.user.id, STRONG_PASSWORD)
        with pytest.raises(AccountInactiveError):
            service.login("a@x.com", STRONG_PASSWORD)

    def test_authenticate_access(self, service, alice):
        assert service.authenticate_access(alice.access_token).id == alice.user.id
        with pytest.raises(InvalidTokenError):
            service.authenticate_access(alice.refresh_token)

    def test_authenticate_expired_access(self, service, settings, clock, alice):
        clock.advance(seconds=settings.access_token_expire_seconds + 1)
        with pytest.raises(ExpiredTokenError):
            service.authenticate_access(alice.access_token)

    def test_authenticate_inactive(self, service, alice):
        service.delete_account(alice.user.id, STRONG_PASSWORD)
        with pytest.raises(AccountInactiveError):
            service.authenticate_access(alice.access_token)


# ---------------------------------------------------------------------------
# Refresh tokens and sessions
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_single_use(self, service, alice):
        first = service.refresh(alice.refresh_token)
        with pytest.raises(InvalidTokenError):
            service.refresh(alice.refresh_token)
        second = service.refresh(first.refresh_token)
        assert second.refresh_token != first.refresh_token

    def test_garbage_and_access_tokens_rejected(self, service, alice):
        with pytest.raises(InvalidTokenError):
            service.refresh("garbage")
        with pytest.raises(InvalidTokenError):
            service.refresh(alice.access_token)

    def test_expired_refresh(self, service, settings, clock, alice):
        clock.advance(seconds=settings.refresh_token_expire_seconds + 1)
        with pytest.raises(ExpiredTokenError):
            service.refresh(alice.refresh_token)

    def test_inactive_user_cannot_refresh(self, service, store, alice):
        store.update_user(alice.user.id, is_active=False)
        with pytest.raises(InvalidTokenError):
            service.refresh(alice.refresh_token)

    def test_logout_removes_one_token(self, service, alice):
        other = service.login("a@x.com", STRONG_PASSWORD)
        service.logout(alice.user.id, alice.refresh_token)
        with pytest.raises(InvalidTokenError):
            service.refresh(alice.refresh_token)
        service.refresh(other.refresh_token)

    def test_scenario_d(self, service, store, alice):
        """logout-all clears every session; none of them can be refreshed afterwards."""
        sessions = [service.login("a@x.com", STRONG_PASSWORD) for _ in range(3)]
        service.logout_all(alice.user.id)
        assert store.get_by_id(alice.user.id).refresh_tokens == []
        for session in sessions:
            with pytest.raises(InvalidTokenError):
                service.refresh(session.refresh_token)

    def test_login_prunes_expired_tokens(self, service, store, clock, alice):
        clock.advance(days=31)
        service.login("a@x.com", STRONG_PASSWORD)
        tokens = store.get_by_id(alice.user.id).refresh_tokens
        assert alice.refresh_token not in [t.token for t in tokens]
        assert len(tokens) == 1

    def test_unknown_user(self, service):
        with pytest.raises(UserNotFoundError):
            service.logout_all("missing")


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


class TestVerifyEmail:
    def test_verify_once(self, service, store, notifier, alice):
        raw = notifier.last(NotificationKind.verification)["token"]
        service.verify_email(raw)
        record = store.get_by_id(alice.user.id)
        assert record.is_email_verified is True
        assert record.email_verification_token_hash is None
        assert NotificationKind.welcome in notifier.kinds()
        with pytest.raises(InvalidOrExpiredTokenError):
            service.verify_email(raw)

    def test_expired(self, service, clock, notifier, alice):
        raw = notifier.last(NotificationKind.verification)["token"]
        clock.advance(hours=24, seconds=1)
        with pytest.raises(InvalidOrExpiredTokenError):
            service.verify_email(raw)

    def test_resend_replaces_token(self, service, notifier, alice):
        old = notifier.last(NotificationKind.verification)["token"]
        service.resend_verification(alice.user.id)
        new = notifier.last(NotificationKind.verification)["token"]
        assert new != old
        with pytest.raises(InvalidOrExpiredTokenError):
            service.verify_email(old)
        service.verify_email(new)

    def test_resend_after_verification(self, service, notifier, alice):
        service.verify_email(notifier.last(NotificationKind.verification)["token"])
        with pytest.raises(AlreadyVerifiedError):
            service.resend_verification(alice.user.id)


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_no_enumeration(self, service, notifier, alice):
        real = service.request_password_reset("a@x.com")
        ghost = service.request_password_reset("ghost@x.com")
        assert real == ghost == PASSWORD_RESET_REQUESTED
        assert notifier.kinds().count(NotificationKind.password_reset) == 1

    def test_delivery_can_be_deferred(self, service, notifier, alice):
        """With defer, nothing is sent until the caller runs the queued call."""
        deferred = []
        service.request_password_reset("a@x.com", defer=lambda fn, *args: deferred.append((fn, args)))
        service.request_password_reset("ghost@x.com", defer=lambda fn, *args: deferred.append((fn, args)))
        assert NotificationKind.password_reset not in notifier.kinds()
        assert len(deferred) == 1

        fn, args = deferred[0]
        fn(*args)
        assert notifier.last(NotificationKind.password_reset)["token"]

    def test_redeem_once(self, service, store, notifier, alice):
        service.request_password_reset("a@x.com")
        raw = notifier.last(NotificationKind.password_reset)["token"]
        service.reset_password(raw, "Newpass123!")

        record = store.get_by_id(alice.user.id)
        assert record.password_reset_token_hash is None
        assert record.password_reset_expires_at is None
        assert record.refresh_tokens == []
        service.login("a@x.com", "Newpass123!")

        with pytest.raises(InvalidOrExpiredTokenError):
            service.reset_password(raw, "Another123!")

    def test_scenario_c(self, service, clock, notifier, alice):
        """A reset token redeemed after its hour has passed is refused."""
        service.request_password_reset("a@x.com")
        raw = notifier.last(NotificationKind.password_reset)["token"]
        clock.advance(hours=1, seconds=1)
        with pytest.raises(InvalidOrExpiredTokenError):
            service.reset_password(raw, "Newpass123!")

    def test_weak_new_password_keeps_token(self, service, store, notifier, alice):
        service.request_password_reset("a@x.com")
        raw = notifier.last(NotificationKind.password_reset)["token"]
        with pytest.raises(WeakPasswordError):
            service.reset_password(raw, "weak")
        assert store.get_by_id(alice.user.id).password_reset_token_hash == hash_opaque(raw)

    def test_unknown_token(self, service):
        with pytest.raises(InvalidOrExpiredTokenError):
            service.reset_password("0" * 64, "Newpass123!")


class TestChangePassword:
    def test_change_revokes_sessions(self, service, store, notifier, alice):
        service.change_password(alice.user.id, STRONG_PASSWORD, "Changed123!")
        assert store.get_by_id(alice.user.id).refresh_tokens == []
        assert NotificationKind.password_changed in notifier.kinds()
        with pytest.raises(InvalidCredentialsError):
            service.login("a@x.com", STRONG_PASSWORD)
        service.login("a@x.com", "Changed123!")

    def test_wrong_current_password(self, service, alice):
        with pytest.raises(InvalidCredentialsError):
            service.change_password(alice.user.id, "Wrong1234!", "Changed123!")

    def test_same_password_rejected(self, service, alice):
        with pytest.raises(WeakPasswordError):
            service.change_password(alice.user.id, STRONG_PASSWORD, STRONG_PASSWORD)


# ---------------------------------------------------------------------------
# Profile and account
# ---------------------------------------------------------------------------


class TestProfile:
    def test_login_returns_decrypted_profile(self, service, alice):
        service.update_profile(alice.user.id, {"profile": {"phone_number": "555-0100"}})
        session = service.login("a@x.com", STRONG_PASSWORD)
        assert session.user.profile["phone_number"] == "555-0100"
        assert session.user.password_hash == ""
        assert service.authenticate_access(session.access_token).profile["phone_number"] == "555-0100"

    def test_register_names_land_in_profile(self, service):
        result = service.register("n@x.com", STRONG_PASSWORD, "named", first_name="Nao", last_name="Sato")
        assert service.get_profile(result.user.id).profile == {"first_name": "Nao", "last_name": "Sato"}

    def test_sensitive_fields_encrypted_at_rest(self, service, store, alice):
        service.update_profile(alice.user.id, {"profile": {"phone_number": "555-0100", "bio": "hello"}})
        stored = store.get_by_id(alice.user.id).profile
        assert stored["phone_number"] != "555-0100"
        assert stored["phone_number_encrypted"] is True
        assert stored["bio"] == "hello"

        profile = service.get_profile(alice.user.id).profile
        assert profile == {"phone_number": "555-0100", "bio": "hello"}

    def test_unknown_profile_keys_ignored(self, service, alice):
        user = service.update_profile(alice.user.id, {"profile": {"role": "admin", "bio": "x"}, "role": "admin"})
        assert user.profile == {"bio": "x"}
        assert user.role.value == "user"

    def test_preferences_deep_merge(self, service, alice):
        user = service.update_profile(alice.user.id, {"preferences": {"notifications": {"push": False}}})
        assert user.preferences["notifications"] == {"email": True, "push": False}
        assert user.preferences["language"] == "ja"

    def test_username_change_and_collision(self, service, alice):
        service.register("b@x.com", STRONG_PASSWORD, "bob")
        with pytest.raises(DuplicateUsernameError):
            service.update_profile(alice.user.id, {"username": "bob"})
        assert service.update_profile(alice.user.id, {"username": "alice2"}).username == "alice2"

    def test_delete_account(self, service, store, alice):
        with pytest.raises(InvalidCredentialsError):
            service.delete_account(alice.user.id, "Wrong1234!")
        service.delete_account(alice.user.id, STRONG_PASSWORD)
        record = store.get_by_id(alice.user.id)
        assert record.is_active is False
        assert record.refresh_tokens == []


# ---------------------------------------------------------------------------
# Notification failures
# ---------------------------------------------------------------------------


def test_notifier_failure_does_not_undo_registration(store, settings, clock):
    failing = MagicMock()
    failing.notify.side_effect = ConnectionError("smtp down")
    service = AccountService(store, notifier=failing, settings=settings, clock=clock)

    result = service.register("a@x.com", STRONG_PASSWORD, "alice")

    assert failing.notify.called
    assert store.get_by_id(result.user.id) is not None
    assert result.refresh_token
