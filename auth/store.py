"""
auth/store.py -- SQLAlchemy Core persistence layer for identity records.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. The orchestrator never touches SQL directly.

Result contract:
  Every public method returns a StoreResult tagged ok / conflict / not_found /
  timeout / unknown. Database exceptions are classified here, by exception
  TYPE, and never escape the store:

    IntegrityError                     -> conflict  (unique key already taken)
    OperationalError, pool TimeoutError -> timeout   (locked, unreachable, slow)
    any other SQLAlchemyError          -> unknown

  The orchestrator's race recovery branches on the conflict tag explicitly.

Email is the canonical key. Every method normalizes it (strip + lowercase)
before it reaches SQL, so "A@Test.com " and "a@test.com" are the same user.

Consumed refresh tokens:
  The consumed_refresh_tokens table is the strict-rotation ledger. A refresh
  token's jti is INSERTed when it is redeemed; the PRIMARY KEY turns a second
  redemption into an IntegrityError -> conflict, atomically, even across
  independent service instances.

Security:
  All queries use bound parameters. No f-strings in SQL. Exception text is
  never logged -- only the operation name and exception class.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import BigInteger, Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.models import StoreResult, StoreStatus, User
from core.config import get_settings

logger = logging.getLogger("identity.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(254), nullable=False, unique=True),  # normalized
    Column("password_hash", Text),  # NULL for OAuth-only users
    Column("role", String(30), nullable=False, server_default="customer"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("oauth_provider", String(30)),  # "github", "google", "oidc"
    Column("oauth_subject", Text),  # provider's stable user ID
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_consumed_refresh_tokens = Table(
    "consumed_refresh_tokens",
    _metadata,
    Column("jti", String(64), primary_key=True),
    Column("expires_at", BigInteger, nullable=False),  # epoch seconds; row is useless after this
    Column("consumed_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL lets readers proceed while a writer holds the lock. Set per-connection
    because SQLite PRAGMAs are not inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str, timeout_seconds: float) -> Engine:
    """Create an engine whose waits on the database are bounded by timeout_seconds.

    SQLite: the driver's busy timeout bounds how long a writer waits for the
    file lock before raising OperationalError. Server databases: the pool
    checkout timeout and the driver connect timeout bound the same thing.
    """
    connect_args: dict[str, Any] = {}
    engine_kwargs: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout_seconds
    else:
        engine_kwargs["pool_timeout"] = timeout_seconds
        engine_kwargs["pool_pre_ping"] = True
        if db_url.startswith("postgresql"):
            connect_args["connect_timeout"] = max(1, int(timeout_seconds))
    engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def classify_error(exc: SQLAlchemyError) -> StoreStatus:
    if isinstance(exc, IntegrityError):
        return StoreStatus.CONFLICT
    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return StoreStatus.TIMEOUT
    return StoreStatus.UNKNOWN


def _failure(operation: str, exc: SQLAlchemyError) -> StoreResult:
    status = classify_error(exc)
    if status is StoreStatus.CONFLICT:
        logger.debug("Store %s: unique constraint hit", operation)
    else:
        # Exception class only -- driver messages can echo bound values.
        logger.warning("Store %s failed: %s (%s)", operation, status.value, type(exc).__name__)
    return StoreResult(status)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records and the consumed refresh-token ledger.

    Usage:
        store = UserStore()
        result = store.create("a@test.com", hash_password("Secret1!"), "customer")
        if result.status is StoreStatus.CONFLICT: ...
        store.close()
    """

    def __init__(self, db_url: str | None = None, timeout_seconds: float | None = None) -> None:
        settings = get_settings()
        self.engine: Engine = make_engine(
            db_url or settings.database_url,
            timeout_seconds if timeout_seconds is not None else settings.store_timeout_seconds,
        )
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        email: str,
        password_hash: str | None,
        role: str,
        oauth_provider: str | None = None,
        oauth_subject: str | None = None,
    ) -> StoreResult:
        """Insert a new user. A taken email comes back as StoreStatus.CONFLICT.

        This is a conditional create: the UNIQUE(email) constraint decides the
        winner when two callers race, not any prior existence check.
        """
        now = _now_iso()
        user = User(
            email=normalize_email(email),
            role=role,
            status="active",
            password_hash=password_hash,
            oauth_provider=oauth_provider,
            oauth_subject=oauth_subject,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.insert().values(
                        email=user.email,
                        password_hash=user.password_hash,
                        role=user.role,
                        status=user.status,
                        oauth_provider=user.oauth_provider,
                        oauth_subject=user.oauth_subject,
                        created_at=now,
                        updated_at=now,
                    )
                )
                conn.commit()
        except SQLAlchemyError as exc:
            return _failure("create", exc)
        user.id = result.inserted_primary_key[0]
        return StoreResult(StoreStatus.OK, user)

    def update_password(self, email: str, new_hash: str) -> StoreResult:
        """Replace the stored hash (password change or legacy-hash migration)."""
        return self._update("update_password", email, password_hash=new_hash)

    def update_status(self, email: str, status: str) -> StoreResult:
        return self._update("update_status", email, status=status)

    def link_oauth(self, email: str, provider: str, subject: str) -> StoreResult:
        """Associate an OAuth identity with an existing account."""
        return self._update("link_oauth", email, oauth_provider=provider, oauth_subject=subject)

    def _update(self, operation: str, email: str, **fields) -> StoreResult:
        fields["updated_at"] = _now_iso()
        try:
            with self.engine.connect() as conn:
                result = conn.execute(_users.update().where(_users.c.email == normalize_email(email)).values(**fields))
                conn.commit()
        except SQLAlchemyError as exc:
            return _failure(operation, exc)
        if result.rowcount == 0:
            return StoreResult(StoreStatus.NOT_FOUND)
        return StoreResult(StoreStatus.OK)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_by_email(self, email: str) -> StoreResult:
        return self._find_one("find_by_email", _users.c.email == normalize_email(email))

    def find_by_oauth(self, provider: str, subject: str) -> StoreResult:
        """Look up a user by (oauth_provider, oauth_subject) pair."""
        return self._find_one(
            "find_by_oauth",
            (_users.c.oauth_provider == provider) & (_users.c.oauth_subject == subject),
        )

    def _find_one(self, operation: str, predicate) -> StoreResult:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(_users.select().where(predicate)).fetchone()
        except SQLAlchemyError as exc:
            return _failure(operation, exc)
        if row is None:
            return StoreResult(StoreStatus.NOT_FOUND)
        return StoreResult(StoreStatus.OK, _row_to_user(row))

    def list_users(self) -> list[User]:
        """Return all users ordered by email. Operator tooling only.

        Unlike the request-path methods this one lets SQLAlchemyError propagate:
        the CLI has no caller to sanitize for.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    # ------------------------------------------------------------------
    # Consumed refresh tokens (strict rotation ledger)
    # ------------------------------------------------------------------

    def consume_refresh_token(self, jti: str, expires_at: int) -> StoreResult:
        """Mark a refresh token as redeemed. CONFLICT means it was already redeemed."""
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _consumed_refresh_tokens.insert().values(jti=jti, expires_at=expires_at, consumed_at=_now_iso())
                )
                conn.commit()
        except SQLAlchemyError as exc:
            return _failure("consume_refresh_token", exc)
        return StoreResult(StoreStatus.OK)

    def purge_consumed_tokens(self, now: int) -> int:
        """Delete ledger rows for tokens that have expired anyway. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_consumed_refresh_tokens.delete().where(_consumed_refresh_tokens.c.expires_at < now))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        role=row.role,
        status=row.status,
        oauth_provider=row.oauth_provider,
        oauth_subject=row.oauth_subject,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
