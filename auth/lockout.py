"""
auth/lockout.py -- Lockout Tracker.

State lives entirely on the Identity Record (login_attempts, lock_until), so
it survives restarts and shares the record's atomicity. There is no
in-memory counter.

    Unlocked(n)       --failure-->  Unlocked(n+1)          if n+1 < max
    Unlocked(max-1)   --failure-->  Locked(now + lock)
    Locked(until)     --attempt before until--> rejected, state unchanged
    Locked(until)     --failure after until-->  Unlocked(1)
    any               --success-->  Unlocked(0)

The lock is fixed-duration from the failure that triggered it; attempts made
while locked neither count nor extend it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from auth.models import User
from auth.store import UserStore
from core.config import Settings

logger = logging.getLogger("accountcore.auth")


@dataclass(frozen=True)
class LockState:
    locked: bool
    attempts: int
    until: datetime | None = None


def is_locked(user: User, now: datetime) -> bool:
    return user.lock_until is not None and user.lock_until > now


def lock_state(user: User, now: datetime) -> LockState:
    if is_locked(user, now):
        return LockState(locked=True, attempts=user.login_attempts, until=user.lock_until)
    return LockState(locked=False, attempts=user.login_attempts)


def record_failure(store: UserStore, user_id: str, now: datetime, settings: Settings) -> LockState:
    """Count a failed password attempt and return the resulting state."""
    store.increment_login_attempts(
        user_id,
        now=now,
        max_attempts=settings.lockout_max_attempts,
        lock_seconds=settings.lockout_seconds,
    )
    user = store.get_by_id(user_id, include_secret=False)
    if user is None:
        return LockState(locked=False, attempts=0)
    state = lock_state(user, now)
    if state.locked:
        logger.warning("Account %s locked until %s after %d failed attempts", user_id, state.until, state.attempts)
    else:
        logger.info("Failed login for %s (attempt %d)", user_id, state.attempts)
    return state


def record_success(store: UserStore, user_id: str, now: datetime) -> None:
    store.reset_login_attempts(user_id, now)
