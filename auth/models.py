"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, near-zero logic). Stores and the
orchestrator do the work; these types only own shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class StoreStatus(str, Enum):
    """Tagged outcome of every Credential Store call.

    The orchestrator branches on these tags; it never inspects error text.
    """

    OK = "ok"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenState(str, Enum):
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


@dataclass
class User:
    """A marketplace account, keyed by normalized email.

    password_hash is None for OAuth-only accounts. It must never be copied
    into any response -- use PublicUser.from_user() at every boundary.
    oauth_provider / oauth_subject are None until the account signs in
    through a provider for the first time.
    """

    email: str
    role: str  # "customer", "seller", "admin"
    status: str = "active"  # "active", "inactive"
    password_hash: str | None = None
    oauth_provider: str | None = None
    oauth_subject: str | None = None
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(frozen=True)
class PublicUser:
    """The sanitized view of a User. Has no password hash field at all."""

    email: str
    role: str
    status: str
    oauth_provider: str | None = None
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_user(cls, user: User) -> PublicUser:
        return cls(
            email=user.email,
            role=user.role,
            status=user.status,
            oauth_provider=user.oauth_provider,
            id=user.id,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


@dataclass(frozen=True)
class StoreResult:
    status: StoreStatus
    user: User | None = None

    @property
    def ok(self) -> bool:
        return self.status is StoreStatus.OK


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"  # noqa: S105 -- OAuth token type, not a password


@dataclass(frozen=True)
class TokenClaims:
    """Verified claim set of an access or refresh token."""

    subject: str
    role: str
    type: TokenType
    issued_at: int
    expires_at: int
    jti: str
    auth_time: int | None = None  # refresh tokens only


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int  # absolute epoch milliseconds
    count: int


@dataclass(frozen=True)
class ExternalIdentity:
    """An identity asserted by an OAuth/OIDC provider after code exchange."""

    provider: str  # "github", "google", "oidc"
    subject: str  # provider's stable user ID
    email: str
    email_verified: bool = False


@dataclass(frozen=True)
class AuthResult:
    user: PublicUser
    tokens: TokenPair
