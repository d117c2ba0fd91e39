"""
tests/conftest.py -- Shared test fixtures for AccountCore.

This module provides:
  - FakeClock / clock: a mutable clock injected into AccountService and
    TokenFactory so lockout and token expiry can be tested without sleeping
  - RecordingNotifier / notifier: captures outbound notifications so tests
    can read the raw verification and reset tokens
  - store / service: a fresh in-memory UserStore and the service over it
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the API client because TestClient runs sync route handlers in a thread
pool. Plain :memory: DBs are per-connection and would present a blank schema
to each worker thread.

DEBUG, BCRYPT_ROUNDS and AUTH_RATE_LIMIT must be set before any app import:
get_settings() is cached on first call, DUMMY_HASH is computed at import,
and the rate limit string is bound when the route decorators run.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("AUTH_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.notify import NotificationKind, Notifier
from auth.service import AccountService
from auth.store import UserStore
from core.config import get_settings

STRONG_PASSWORD = "Abcd1234!"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: list[tuple[NotificationKind, str, dict]] = []

    def notify(self, kind: NotificationKind, email: str, payload: dict) -> None:
        self.sent.append((kind, email, payload))

    def last(self, kind: NotificationKind) -> dict:
        """Return the payload of the most recent notification of this kind."""
        for sent_kind, _email, payload in reversed(self.sent):
            if sent_kind is kind:
                return payload
        raise AssertionError(f"No {kind.value} notification was sent")

    def kinds(self) -> list[NotificationKind]:
        return [kind for kind, _email, _payload in self.sent]


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def service(store: UserStore, notifier: RecordingNotifier, settings, clock: FakeClock) -> AccountService:
    return AccountService(store, notifier=notifier, settings=settings, clock=clock)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, notifier: Notifier):
    """Return an async context manager that replaces the real lifespan.

    Wires a pre-created test store into app.state so TestClient routes see
    an isolated test DB rather than the configured database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.account_service = AccountService(user_store, notifier=notifier, settings=get_settings())
        yield

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, RecordingNotifier], None, None]:
    """Yield (client, notifier) over a fresh named shared-memory database.

    Function-scoped: the client's cookie jar holds the refresh cookie, and
    the cookie takes precedence over a body token, so tests must not share it.
    """
    db_url = f"sqlite:///file:test_accounts_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    user_store = UserStore(db_url=db_url)
    recorder = RecordingNotifier()
    app.router.lifespan_context = _patch_lifespan(user_store, recorder)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, recorder

    user_store.close()


def register_user(
    client: TestClient,
    email: str = "alice@example.com",
    username: str = "alice",
    password: str = STRONG_PASSWORD,
) -> dict:
    """Register through the API and return the response JSON."""
    resp = client.post(
        "/api/v1/auth/register",
        json={"email": email, "username": username, "password": password},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
