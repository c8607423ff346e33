"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_user / _row_to_session / _row_to_reset are the mappers. Service code
never touches SQL directly.

Tables:
  users           -- one row per account.
  refresh_tokens  -- the embedded per-user session list, one row per record.
                     List order is row id order; rotation updates a row in
                     place so a rotated session keeps its slot.
  password_resets -- reset tokens, owned by the store, referencing users.id.

Time: every time-dependent predicate ("unexpired", "active") is evaluated
against the injected clock. Timestamps are ISO 8601 UTC strings with fixed
microsecond precision (core.clock.to_iso), so string comparison in SQL is
chronological comparison.

Errors: SQLAlchemy exceptions never leave this module. IntegrityError becomes
DuplicateRecordError(field) and everything else becomes StoreError.

Security:
  All queries use bound parameters. No f-strings in SQL.

DB path: auth/estatehub_auth.db unless DATABASE_URL says otherwise.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, delete, event, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import DuplicateRecordError, RecordNotFoundError, StoreError
from auth.models import PasswordResetToken, RefreshTokenRecord, Role, User
from core.clock import Clock, from_iso, to_iso, utcnow

logger = logging.getLogger("estatehub.auth.store")

# Used reset tokens are kept this long for audit before purge.
_USED_RESET_RETENTION = timedelta(hours=24)


class _AlreadyConsumed(Exception):
    """Raised inside a transaction to roll it back when the reset token is gone."""


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(30), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default=Role.basic.value),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("device", String(100), nullable=False, server_default=""),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
)

_password_resets = Table(
    "password_resets",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User, RefreshTokenRecord and PasswordResetToken.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        user_id = store.create_user(User(username="alice", email="alice@x.com", hashed_password=h))
        user = store.find_user_by_id(user_id)
        store.close()
    """

    def __init__(self, db_url: str, clock: Clock = utcnow) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        self._clock = clock
        _metadata.create_all(self.engine)

    def _now(self) -> str:
        return to_iso(self._clock())

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises DuplicateRecordError naming the colliding field if the username
        or email is taken -- including when a concurrent registration won the
        race after the service's existence check.
        """
        now = self._now()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _users.insert().values(
                        username=user.username,
                        email=user.email,
                        hashed_password=user.hashed_password,
                        role=Role(user.role).value,
                        created_at=now,
                        updated_at=now,
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise DuplicateRecordError(self._duplicate_user_field(user)) from exc
        except SQLAlchemyError as exc:
            raise StoreError("create_user failed") from exc

    def _duplicate_user_field(self, user: User) -> str:
        existing = self.find_user_by_email_or_username(user.email, user.username)
        if existing is not None and existing.email == user.email:
            return "email"
        return "username"

    def find_user_by_email_or_username(self, email: str, username: str) -> User | None:
        """Return the first user holding either identifier (email match wins)."""
        with self._reading() as conn:
            row = conn.execute(select(_users).where(_users.c.email == email)).fetchone()
            if row is None:
                row = conn.execute(select(_users).where(_users.c.username == username)).fetchone()
            return self._hydrate(conn, row)

    def find_user_by_email(self, email: str) -> User | None:
        with self._reading() as conn:
            row = conn.execute(select(_users).where(_users.c.email == email)).fetchone()
            return self._hydrate(conn, row)

    def find_user_by_id(self, user_id: int) -> User | None:
        with self._reading() as conn:
            row = conn.execute(select(_users).where(_users.c.id == user_id)).fetchone()
            return self._hydrate(conn, row)

    def find_user_by_refresh_token(self, token: str) -> User | None:
        """Return the owner of an unexpired session holding `token`, else None."""
        with self._reading() as conn:
            owner = conn.execute(
                select(_refresh_tokens.c.user_id).where(
                    (_refresh_tokens.c.token == token) & (_refresh_tokens.c.expires_at > self._now())
                )
            ).scalar()
            if owner is None:
                return None
            row = conn.execute(select(_users).where(_users.c.id == owner)).fetchone()
            return self._hydrate(conn, row)

    def save_user(self, user: User) -> None:
        """Persist the user's scalar fields and purge its expired sessions.

        The session list itself is changed only through the dedicated
        append/replace/remove/clear methods, each a single statement or
        transaction, so a save never overwrites a concurrent rotation.
        """
        if user.id is None:
            raise StoreError("save_user requires a persisted user")
        values = {
            "username": user.username,
            "email": user.email,
            "role": Role(user.role).value,
            "last_login_at": to_iso(user.last_login_at) if user.last_login_at else None,
            "updated_at": self._now(),
        }
        if user.hashed_password:
            values["hashed_password"] = user.hashed_password
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_users.update().where(_users.c.id == user.id).values(**values))
                if result.rowcount == 0:
                    raise RecordNotFoundError(f"user {user.id} does not exist")
                self._purge_user_sessions(conn, user.id)
        except IntegrityError as exc:
            raise DuplicateRecordError(self._duplicate_user_field(user)) from exc
        except SQLAlchemyError as exc:
            raise StoreError("save_user failed") from exc

    def count_users(self) -> int:
        with self._reading() as conn:
            return conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    # ------------------------------------------------------------------
    # Sessions (refresh tokens)
    # ------------------------------------------------------------------

    def append_refresh_token(self, user_id: int, record: RefreshTokenRecord, keep: int) -> None:
        """Add a session and keep only the newest `keep` unexpired ones.

        Insert, expiry purge and eviction run in one transaction.
        """
        try:
            with self.engine.begin() as conn:
                conn.execute(_refresh_tokens.insert().values(user_id=user_id, **_session_values(record)))
                self._purge_user_sessions(conn, user_id)
                survivors = (
                    select(_refresh_tokens.c.id)
                    .where(_refresh_tokens.c.user_id == user_id)
                    .order_by(_refresh_tokens.c.id.desc())
                    .limit(keep)
                )
                conn.execute(
                    delete(_refresh_tokens).where(
                        (_refresh_tokens.c.user_id == user_id) & _refresh_tokens.c.id.not_in(survivors)
                    )
                )
        except SQLAlchemyError as exc:
            raise StoreError("append_refresh_token failed") from exc

    def replace_refresh_token(self, user_id: int, old_token: str, record: RefreshTokenRecord) -> bool:
        """Swap an unexpired session's token in place, keeping device metadata.

        A single conditional UPDATE: it matches only while `old_token` is
        still present and unexpired, so of two concurrent rotations of the
        same token exactly one succeeds. Returns False when nothing matched.
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _refresh_tokens.update()
                    .where(
                        (_refresh_tokens.c.user_id == user_id)
                        & (_refresh_tokens.c.token == old_token)
                        & (_refresh_tokens.c.expires_at > self._now())
                    )
                    .values(
                        token=record.token,
                        expires_at=to_iso(record.expires_at),
                        created_at=to_iso(record.created_at),
                    )
                )
            return result.rowcount > 0
        except SQLAlchemyError as exc:
            raise StoreError("replace_refresh_token failed") from exc

    def remove_refresh_token(self, user_id: int, token: str) -> bool:
        """Single-device logout. Returns True if a session was removed."""
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    delete(_refresh_tokens).where(
                        (_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.token == token)
                    )
                )
            return result.rowcount > 0
        except SQLAlchemyError as exc:
            raise StoreError("remove_refresh_token failed") from exc

    def clear_refresh_tokens(self, user_id: int) -> int:
        """Logout everywhere. Returns the number of sessions removed."""
        try:
            with self.engine.begin() as conn:
                result = conn.execute(delete(_refresh_tokens).where(_refresh_tokens.c.user_id == user_id))
            return result.rowcount
        except SQLAlchemyError as exc:
            raise StoreError("clear_refresh_tokens failed") from exc

    def _purge_user_sessions(self, conn: Connection, user_id: int) -> None:
        conn.execute(
            delete(_refresh_tokens).where(
                (_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.expires_at <= self._now())
            )
        )

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def find_active_reset_token(self, user_id: int) -> PasswordResetToken | None:
        """Most recent unused, unexpired reset token for the user."""
        with self._reading() as conn:
            row = conn.execute(
                select(_password_resets)
                .where(
                    (_password_resets.c.user_id == user_id)
                    & (_password_resets.c.used == 0)
                    & (_password_resets.c.expires_at > self._now())
                )
                .order_by(_password_resets.c.id.desc())
            ).fetchone()
        return _row_to_reset(row) if row is not None else None

    def save_reset_token(self, reset: PasswordResetToken) -> int:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _password_resets.insert().values(
                        user_id=reset.user_id,
                        token=reset.token,
                        expires_at=to_iso(reset.expires_at),
                        used=1 if reset.used else 0,
                        created_at=to_iso(reset.created_at),
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise DuplicateRecordError("token") from exc
        except SQLAlchemyError as exc:
            raise StoreError("save_reset_token failed") from exc

    def mark_reset_token_used(self, reset_id: int) -> bool:
        """Flip used=1. Returns False if the token was already used or is gone."""
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _password_resets.update()
                    .where((_password_resets.c.id == reset_id) & (_password_resets.c.used == 0))
                    .values(used=1)
                )
            return result.rowcount > 0
        except SQLAlchemyError as exc:
            raise StoreError("mark_reset_token_used failed") from exc

    def find_reset_token_by_value(self, token: str) -> PasswordResetToken | None:
        with self._reading() as conn:
            row = conn.execute(select(_password_resets).where(_password_resets.c.token == token)).fetchone()
        return _row_to_reset(row) if row is not None else None

    def complete_password_reset(self, user_id: int, hashed_password: str, reset_id: int) -> bool:
        """Consume a reset token, set the new hash and drop every session -- atomically.

        The token update is conditional on used=0 and runs first; if it
        matches nothing (a concurrent consume won) the transaction is rolled
        back without touching the password. Returns True on success.
        """
        now = self._now()
        try:
            with self.engine.begin() as conn:
                consumed = conn.execute(
                    _password_resets.update()
                    .where(
                        (_password_resets.c.id == reset_id)
                        & (_password_resets.c.used == 0)
                        & (_password_resets.c.expires_at > now)
                    )
                    .values(used=1)
                )
                if consumed.rowcount == 0:
                    raise _AlreadyConsumed
                conn.execute(
                    _users.update().where(_users.c.id == user_id).values(hashed_password=hashed_password, updated_at=now)
                )
                conn.execute(delete(_refresh_tokens).where(_refresh_tokens.c.user_id == user_id))
            return True
        except _AlreadyConsumed:
            return False
        except SQLAlchemyError as exc:
            raise StoreError("complete_password_reset failed") from exc

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self) -> dict[str, int]:
        """Delete expired sessions, expired reset tokens, and used tokens older than 24h."""
        now_dt = self._clock()
        now = to_iso(now_dt)
        used_cutoff = to_iso(now_dt - _USED_RESET_RETENTION)
        try:
            with self.engine.begin() as conn:
                sessions = conn.execute(delete(_refresh_tokens).where(_refresh_tokens.c.expires_at <= now))
                resets = conn.execute(
                    delete(_password_resets).where(
                        (_password_resets.c.expires_at <= now)
                        | ((_password_resets.c.used == 1) & (_password_resets.c.created_at < used_cutoff))
                    )
                )
        except SQLAlchemyError as exc:
            raise StoreError("purge_expired failed") from exc
        return {"sessions": sessions.rowcount, "reset_tokens": resets.rowcount}

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            logger.exception("Credential store ping failed")
            return False

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _reading(self) -> Iterator[Connection]:
        try:
            with self.engine.connect() as conn:
                yield conn
        except SQLAlchemyError as exc:
            raise StoreError("credential store read failed") from exc

    def _hydrate(self, conn: Connection, row) -> User | None:
        """Map a users row plus its unexpired sessions (oldest first) to a User."""
        if row is None:
            return None
        sessions = conn.execute(
            select(_refresh_tokens)
            .where((_refresh_tokens.c.user_id == row.id) & (_refresh_tokens.c.expires_at > self._now()))
            .order_by(_refresh_tokens.c.id)
        ).fetchall()
        user = _row_to_user(row)
        user.refresh_tokens = [_row_to_session(s) for s in sessions]
        return user


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _session_values(record: RefreshTokenRecord) -> dict:
    return {
        "token": record.token,
        "expires_at": to_iso(record.expires_at),
        "device": record.device,
        "user_agent": record.user_agent,
        "created_at": to_iso(record.created_at),
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        last_login_at=from_iso(row.last_login_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )


def _row_to_session(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        token=row.token,
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
        device=row.device,
        user_agent=row.user_agent,
    )


def _row_to_reset(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
        used=bool(row.used),
    )
