"""
auth/store.py -- SQLAlchemy Core persistence layer for Identity Records.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. The service never touches SQL directly.

Atomicity:
  Every operation that must not interleave with a concurrent call for the
  same account is one statement or one engine.begin() transaction:

  - rotate_refresh_token(): DELETE the presented token and INSERT its
    successor only if the DELETE hit exactly one row. Two concurrent
    redemptions of one token cannot both succeed.
  - consume_*_token(): UPDATE ... WHERE token_hash = :presented, so a
    single-use token is cleared by exactly one caller.
  - increment_login_attempts(): one UPDATE whose CASE expressions read the
    pre-update row, so the counter and the lock move together.

Timestamps are stored as UTC ISO 8601 strings with fixed microsecond
precision, which makes lexical comparison in SQL equal to time order.

Security:
  All queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    event,
    null,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import RefreshTokenEntry, Role, User, default_preferences
from core.config import get_settings

logger = logging.getLogger("accountcore.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(30), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default=Role.user.value),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("email_verification_token_hash", String(64), index=True),
    Column("email_verification_expires_at", String(32)),
    Column("password_reset_token_hash", String(64), index=True),
    Column("password_reset_expires_at", String(32)),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("lock_until", String(32)),
    Column("last_login", String(32)),
    Column("profile", Text),  # JSON blob
    Column("preferences", Text),  # JSON blob
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("token", Text, nullable=False, unique=True),
    Column("issued_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block on the token writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _iso_or_none(value: datetime | None) -> str | None:
    return _iso(value) if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_column(name: str, value):
    if isinstance(value, datetime):
        return _iso(value)
    if isinstance(value, Role):
        return value.value
    if name in ("profile", "preferences"):
        return json.dumps(value or {})
    if isinstance(value, bool):
        return 1 if value else 0
    return value


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for Identity Records and their refresh token sets.

    Usage:
        store = UserStore("sqlite:///:memory:")
        user_id = store.create_user(User(email="a@x.com", username="alice", password_hash=h))
        user = store.get_by_id(user_id)
        store.close()
    """

    # Columns update_user() accepts. The token pairs, lockout counters and
    # refresh tokens have dedicated methods that keep their invariants.
    _UPDATABLE: set = {
        "username",
        "email",
        "password_hash",
        "role",
        "is_active",
        "is_email_verified",
        "last_login",
        "profile",
        "preferences",
    }

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Record queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new record and return its generated id.

        Raises sqlalchemy.exc.IntegrityError if the email or username is
        already taken. The service pre-checks both, so this only fires when
        a concurrent registration won the race.
        """
        user_id = uuid.uuid4().hex
        now = _iso(_now())
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=user.email,
                    username=user.username,
                    password_hash=user.password_hash,
                    role=user.role.value,
                    is_active=1 if user.is_active else 0,
                    is_email_verified=1 if user.is_email_verified else 0,
                    email_verification_token_hash=user.email_verification_token_hash,
                    email_verification_expires_at=_iso_or_none(user.email_verification_expires_at),
                    login_attempts=0,
                    profile=json.dumps(user.profile or {}),
                    preferences=json.dumps(user.preferences or default_preferences()),
                    created_at=now,
                    updated_at=now,
                )
            )
        return user_id

    def get_by_id(self, user_id: str, include_secret: bool = True) -> User | None:
        """Look up a record by id. include_secret=False blanks password_hash."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            user = _row_to_user(conn, row) if row is not None else None
        if user is not None and not include_secret:
            user.password_hash = ""
        return user

    def get_by_email(self, email: str) -> User | None:
        return self._get_one(_users.c.email == email)

    def get_by_username(self, username: str) -> User | None:
        return self._get_one(_users.c.username == username)

    def get_by_email_or_username(self, email: str, username: str) -> User | None:
        """Return any record holding either identity key, or None."""
        return self._get_one(or_(_users.c.email == email, _users.c.username == username))

    def get_by_verification_hash(self, token_hash: str) -> User | None:
        return self._get_one(_users.c.email_verification_token_hash == token_hash)

    def get_by_reset_hash(self, token_hash: str) -> User | None:
        return self._get_one(_users.c.password_reset_token_hash == token_hash)

    def _get_one(self, clause) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(clause)).fetchone()
            return _row_to_user(conn, row) if row is not None else None

    def update_user(self, user_id: str, **fields) -> bool:
        """Update plain fields on a record. Returns False if user_id is unknown.

        Unknown field names raise ValueError rather than being ignored.
        """
        unknown = set(fields) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Unknown or protected user fields: {unknown!r}")
        values = {name: _to_column(name, value) for name, value in fields.items()}
        values["updated_at"] = _iso(_now())
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Single-use token pairs
    # ------------------------------------------------------------------

    def set_email_verification(self, user_id: str, token_hash: str, expires_at: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    email_verification_token_hash=token_hash,
                    email_verification_expires_at=_iso(expires_at),
                    updated_at=_iso(_now()),
                )
            )

    def set_password_reset(self, user_id: str, token_hash: str, expires_at: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    password_reset_token_hash=token_hash,
                    password_reset_expires_at=_iso(expires_at),
                    updated_at=_iso(_now()),
                )
            )

    def consume_verification_token(self, user_id: str, token_hash: str) -> bool:
        """Mark the email verified and clear the pair, if the hash still matches."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(and_(_users.c.id == user_id, _users.c.email_verification_token_hash == token_hash))
                .values(
                    is_email_verified=1,
                    email_verification_token_hash=None,
                    email_verification_expires_at=None,
                    updated_at=_iso(_now()),
                )
            )
        return result.rowcount == 1

    def consume_reset_token(self, user_id: str, token_hash: str, password_hash: str) -> bool:
        """Replace the password, clear the reset pair and every refresh token.

        All-or-nothing: if the presented hash is no longer stored (already
        redeemed, or replaced by a newer reset request) nothing changes.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(and_(_users.c.id == user_id, _users.c.password_reset_token_hash == token_hash))
                .values(
                    password_hash=password_hash,
                    password_reset_token_hash=None,
                    password_reset_expires_at=None,
                    updated_at=_iso(_now()),
                )
            )
            if result.rowcount != 1:
                return False
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
        return True

    def replace_password(self, user_id: str, password_hash: str) -> None:
        """Store a new password hash and revoke every refresh token, atomically."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(password_hash=password_hash, updated_at=_iso(_now()))
            )
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))

    def deactivate(self, user_id: str) -> None:
        """Soft-delete: is_active=0 and every refresh token revoked."""
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(is_active=0, updated_at=_iso(_now())))
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))

    # ------------------------------------------------------------------
    # Lockout counters
    # ------------------------------------------------------------------

    def increment_login_attempts(self, user_id: str, now: datetime, max_attempts: int, lock_seconds: int) -> None:
        """Count one failed login in a single UPDATE.

        - lock present but expired: attempts = 1, lock cleared
        - otherwise: attempts + 1, and if that reaches max_attempts with no
          lock set, lock_until = now + lock_seconds
        An active lock is never extended.
        """
        now_s = _iso(now)
        lock_expired = and_(_users.c.lock_until.is_not(None), _users.c.lock_until <= now_s)
        next_attempts = _users.c.login_attempts + 1
        stmt = (
            _users.update()
            .where(_users.c.id == user_id)
            .values(
                login_attempts=case((lock_expired, 1), else_=next_attempts),
                lock_until=case(
                    (lock_expired, null()),
                    (
                        and_(_users.c.lock_until.is_(None), next_attempts >= max_attempts),
                        _iso(now + timedelta(seconds=lock_seconds)),
                    ),
                    else_=_users.c.lock_until,
                ),
                updated_at=now_s,
            )
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def reset_login_attempts(self, user_id: str, now: datetime) -> None:
        """Clear the counter and the lock and stamp last_login."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(login_attempts=0, lock_until=None, last_login=_iso(now), updated_at=_iso(now))
            )

    # ------------------------------------------------------------------
    # Refresh token set
    # ------------------------------------------------------------------

    def add_refresh_token(self, user_id: str, token: str, issued_at: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(_refresh_tokens.insert().values(user_id=user_id, token=token, issued_at=_iso(issued_at)))

    def remove_refresh_token(self, user_id: str, token: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    and_(_refresh_tokens.c.user_id == user_id, _refresh_tokens.c.token == token)
                )
            )
        return result.rowcount > 0

    def clear_refresh_tokens(self, user_id: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
        return result.rowcount

    def prune_refresh_tokens(self, user_id: str, older_than: datetime) -> int:
        """Delete tokens issued at or before older_than. Returns the count removed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    and_(
                        _refresh_tokens.c.user_id == user_id,
                        _refresh_tokens.c.issued_at <= _iso(older_than),
                    )
                )
            )
        return result.rowcount

    def rotate_refresh_token(self, user_id: str, old_token: str, new_token: str, issued_at: datetime) -> bool:
        """Swap old_token for new_token in one transaction.

        Returns False, leaving the set untouched, if old_token was not in the
        user's set -- already rotated, logged out, or never issued to them.
        """
        with self.engine.begin() as conn:
            removed = conn.execute(
                _refresh_tokens.delete().where(
                    and_(_refresh_tokens.c.user_id == user_id, _refresh_tokens.c.token == old_token)
                )
            ).rowcount
            if removed != 1:
                return False
            conn.execute(
                _refresh_tokens.insert().values(user_id=user_id, token=new_token, issued_at=_iso(issued_at))
            )
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(conn: Connection, row) -> User:
    token_rows = conn.execute(
        select(_refresh_tokens.c.token, _refresh_tokens.c.issued_at)
        .where(_refresh_tokens.c.user_id == row.id)
        .order_by(_refresh_tokens.c.issued_at, _refresh_tokens.c.id)
    ).fetchall()
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        password_hash=row.password_hash,
        role=Role(row.role),
        is_active=bool(row.is_active),
        is_email_verified=bool(row.is_email_verified),
        email_verification_token_hash=row.email_verification_token_hash,
        email_verification_expires_at=_parse(row.email_verification_expires_at),
        password_reset_token_hash=row.password_reset_token_hash,
        password_reset_expires_at=_parse(row.password_reset_expires_at),
        refresh_tokens=[RefreshTokenEntry(token=t.token, issued_at=_parse(t.issued_at)) for t in token_rows],
        login_attempts=row.login_attempts,
        lock_until=_parse(row.lock_until),
        last_login=_parse(row.last_login),
        profile=json.loads(row.profile) if row.profile else {},
        preferences=json.loads(row.preferences) if row.preferences else default_preferences(),
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
    )
