"""
auth/ratelimit.py -- Fixed-window rate limiting backed by the shared record store.

Why not an in-process counter:
  A dict (or any in-memory limiter storage) only counts requests that land on
  the same process. The moment two instances serve traffic, each sees half the
  attempts and the limit silently doubles. Counters live in the database so
  every instance shares them.

Atomicity:
  increment_or_create() is ONE statement:

      INSERT INTO rate_limits (identifier, count, reset_at, created_at)
      VALUES (:id, 1, :now + :window, :now)
      ON CONFLICT (identifier) DO UPDATE SET
          count      = CASE WHEN reset_at <= :now THEN 1 ELSE count + 1 END,
          reset_at   = CASE WHEN reset_at <= :now THEN :now + :window ELSE reset_at END,
          created_at = CASE WHEN reset_at <= :now THEN :now ELSE created_at END
      RETURNING count, reset_at

  The database serializes concurrent upserts on the same key, so two racing
  callers can never both observe "count was 0". There is no caller-side
  read-modify-write anywhere in this module.

Window semantics:
  reset_at is an absolute epoch-millisecond timestamp, never a duration, so
  independent stateless invocations agree on when a window ends. An elapsed
  window is reset lazily by the next call; purge_expired() is only a physical
  cleanup safety net (the equivalent of a TTL index) and correctness never
  depends on it having run.

Supported dialects: SQLite >= 3.35 (RETURNING) and PostgreSQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from sqlalchemy import BigInteger, Column, Integer, MetaData, String, Table, case, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import RateLimitResult
from auth.store import classify_error, make_engine
from core.config import get_settings
from core.errors import RateLimited, ServiceUnavailable

logger = logging.getLogger("identity.auth.ratelimit")

_INSERTS = {"sqlite": sqlite_insert, "postgresql": pg_insert}

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_rate_limits = Table(
    "rate_limits",
    _metadata,
    Column("identifier", String(320), primary_key=True),  # "rate_limit:<action>:<subject>"
    Column("count", Integer, nullable=False),
    Column("reset_at", BigInteger, nullable=False, index=True),  # epoch ms, end of window
    Column("created_at", BigInteger, nullable=False, index=True),  # epoch ms, start of window
)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class RateLimitStore:
    """Counter rows with an atomic increment-or-create primitive and TTL eviction."""

    def __init__(
        self,
        db_url: str | None = None,
        timeout_seconds: float | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        settings = get_settings()
        self.engine: Engine = make_engine(
            db_url or settings.database_url,
            timeout_seconds if timeout_seconds is not None else settings.store_timeout_seconds,
        )
        dialect = self.engine.dialect.name
        if dialect not in _INSERTS:
            raise ValueError(f"Rate limiting needs an upsert-capable database, got {dialect!r}")
        self._insert = _INSERTS[dialect]
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.rate_limit_ttl_seconds
        _metadata.create_all(self.engine)

    def increment_or_create(self, identifier: str, window_ms: int, now_ms: int) -> tuple[int, int]:
        """Atomically count one hit and return (count, reset_at) for the current window.

        Raises SQLAlchemyError on backend failure; RateLimiter maps it.
        """
        count_col = _rate_limits.c["count"]
        elapsed = _rate_limits.c.reset_at <= now_ms
        stmt = self._insert(_rate_limits).values(
            identifier=identifier,
            count=1,
            reset_at=now_ms + window_ms,
            created_at=now_ms,
        )
        # Every right-hand side below reads the OLD row, so all three CASEs
        # agree on whether the window had elapsed.
        stmt = stmt.on_conflict_do_update(
            index_elements=[_rate_limits.c.identifier],
            set_={
                "count": case((elapsed, 1), else_=count_col + 1),
                "reset_at": case((elapsed, now_ms + window_ms), else_=_rate_limits.c.reset_at),
                "created_at": case((elapsed, now_ms), else_=_rate_limits.c.created_at),
            },
        ).returning(count_col, _rate_limits.c.reset_at)
        with self.engine.connect() as conn:
            row = conn.execute(stmt).one()
            conn.commit()
        return int(row[0]), int(row[1])

    def get(self, identifier: str) -> tuple[int, int] | None:
        """Return (count, reset_at) for an identifier, or None. Diagnostics and tests only."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _rate_limits.select().where(_rate_limits.c.identifier == identifier)
            ).fetchone()
        if row is None:
            return None
        # Row is tuple-like, so row.count would be tuple.count -- go through the mapping.
        return int(row._mapping["count"]), int(row._mapping["reset_at"])

    def purge_expired(self, now_ms: int) -> int:
        """Physically delete rows past the TTL horizon or past their window. Returns rows removed."""
        horizon = now_ms - self.ttl_seconds * 1000
        with self.engine.connect() as conn:
            result = conn.execute(
                _rate_limits.delete().where(
                    or_(_rate_limits.c.created_at < horizon, _rate_limits.c.reset_at <= now_ms)
                )
            )
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Per-identifier fixed-window counter.

    Usage:
        limiter = RateLimiter(RateLimitStore())
        limiter.enforce(RateLimiter.key("203.0.113.7", "login"), 900_000, 5)
    """

    def __init__(self, store: RateLimitStore, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self._clock = clock

    @staticmethod
    def key(subject: str, action: str) -> str:
        return f"rate_limit:{action}:{subject}"

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def increment(self, identifier: str, window_ms: int, max_count: int) -> RateLimitResult:
        """Count one attempt. allowed is False once the window's count exceeds max_count.

        Denied attempts still increment, so hammering inside a window never
        earns extra attempts; remaining is clamped at zero.
        Store failures raise ServiceUnavailable -- the limiter fails closed.
        """
        if window_ms <= 0 or max_count <= 0:
            raise ValueError("window_ms and max_count must be positive")
        try:
            count, reset_at = self.store.increment_or_create(identifier, window_ms, self.now_ms())
        except SQLAlchemyError as exc:
            logger.warning(
                "Rate limit store failed: %s (%s)", classify_error(exc).value, type(exc).__name__
            )
            raise ServiceUnavailable() from None
        return RateLimitResult(
            allowed=count <= max_count,
            remaining=max(0, max_count - count),
            reset_at=reset_at,
            count=count,
        )

    def enforce(self, identifier: str, window_ms: int, max_count: int) -> RateLimitResult:
        """increment() and raise RateLimited(retry_after_ms) when the attempt is denied."""
        result = self.increment(identifier, window_ms, max_count)
        if not result.allowed:
            retry_after_ms = max(0, result.reset_at - self.now_ms())
            logger.info("Rate limit hit for %s (retry in %d ms)", identifier, retry_after_ms)
            raise RateLimited(retry_after_ms)
        return result

    def purge_expired(self) -> int:
        return self.store.purge_expired(self.now_ms())
