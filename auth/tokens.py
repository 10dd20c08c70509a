"""
auth/tokens.py -- Signed access/refresh token pairs (python-jose, HS256).

Security design decisions:
  Claims: sub (normalized email), role, type ("access" | "refresh"), iat, exp,
       iss, aud, jti. Refresh tokens also carry auth_time -- the moment of the
       original login -- which survives every rotation.

  Type separation: every token names its purpose in the type claim, and
       verify() refuses a token whose type does not match what the caller
       expects. An access token can never be replayed as a refresh token.

  Verification order: parse -> signature + iss/aud -> required claims ->
       type -> expiry. Parse failures are "malformed", signature failures on a
       parseable token are "signature_invalid"; the distinction is made by
       which jose call fails, never by reading error text. Expiry is checked
       against this service's clock (not jose's) so lifetimes are testable and
       every instance applies the same rule.

  Rotation: refresh() issues a brand-new pair. With STRICT_REFRESH_ROTATION
       (the default) the presented refresh token's jti is written to the
       consumed-token ledger first; the ledger's primary key makes a second
       redemption fail atomically, on any instance. A rotated chain can never
       outlive auth_time + MAX_SESSION_SECONDS.

  Lifecycle: Valid -> ExpiringSoon (last REFRESH_BUFFER_SECONDS) -> Expired.
       Clients call needs_refresh() and refresh early, so a token does not
       expire between building a request and the server verifying it.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.models import StoreStatus, TokenClaims, TokenPair, TokenState, TokenType
from core.config import Settings, get_settings
from core.errors import ServiceUnavailable, TokenExpired, TokenInvalid, TokenWrongType

if TYPE_CHECKING:
    from auth.models import PublicUser, User
    from auth.store import UserStore

logger = logging.getLogger("identity.auth.tokens")

_REQUIRED_CLAIMS = ("sub", "role", "type", "iat", "exp", "jti")


class TokenService:
    """Issues, verifies and rotates token pairs.

    Usage:
        tokens = TokenService(store=user_store)
        pair = tokens.issue(user)
        claims = tokens.verify(pair.access_token, TokenType.ACCESS)
        new_pair = tokens.refresh(pair.refresh_token)
    """

    def __init__(
        self,
        store: UserStore | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        if self.settings.strict_refresh_rotation and store is None:
            raise ValueError("Strict refresh rotation needs a store for the consumed-token ledger")
        self.store = store
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, user: User | PublicUser, auth_time: int | None = None) -> TokenPair:
        """Sign a fresh access + refresh pair for user.

        auth_time defaults to now (a new login). refresh() passes the original
        login time through so rotation cannot extend a session forever.
        """
        now = self.now()
        auth_time = now if auth_time is None else auth_time
        refresh_exp = min(
            now + self.settings.refresh_token_expire_seconds,
            auth_time + self.settings.max_session_seconds,
        )
        access_exp = min(now + self.settings.access_token_expire_seconds, refresh_exp)
        access = self._sign(user.email, user.role, TokenType.ACCESS, now, access_exp)
        refresh = self._sign(user.email, user.role, TokenType.REFRESH, now, refresh_exp, auth_time=auth_time)
        return TokenPair(access_token=access, refresh_token=refresh)

    def _sign(
        self,
        subject: str,
        role: str,
        token_type: TokenType,
        now: int,
        expires_at: int,
        auth_time: int | None = None,
    ) -> str:
        payload: dict[str, Any] = {
            "sub": subject,
            "role": role,
            "type": token_type.value,
            "iat": now,
            "exp": expires_at,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            # Unique per token: two pairs minted in the same second still differ.
            "jti": secrets.token_urlsafe(16),
        }
        if auth_time is not None:
            payload["auth_time"] = auth_time
        return jwt.encode(payload, self.settings.secret_key, algorithm=self.settings.jwt_algorithm)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def decode(self, token: str) -> TokenClaims:
        """Verify signature, issuer, audience and claim shape. Does not check type or expiry."""
        if not isinstance(token, str) or not token:
            raise TokenInvalid("malformed")
        try:
            jwt.get_unverified_claims(token)
        except JWTError:
            raise TokenInvalid("malformed") from None
        try:
            payload = jwt.decode(
                token,
                self.settings.secret_key,
                algorithms=[self.settings.jwt_algorithm],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
                options={"verify_exp": False},
            )
        except JWTClaimsError:
            raise TokenInvalid("claims_invalid") from None
        except JWTError:
            raise TokenInvalid("signature_invalid") from None

        if any(name not in payload for name in _REQUIRED_CLAIMS):
            raise TokenInvalid("malformed")
        try:
            token_type = TokenType(payload["type"])
            claims = TokenClaims(
                subject=str(payload["sub"]),
                role=str(payload["role"]),
                type=token_type,
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
                jti=str(payload["jti"]),
                auth_time=int(payload["auth_time"]) if "auth_time" in payload else None,
            )
        except (TypeError, ValueError):
            raise TokenInvalid("malformed") from None
        return claims

    def verify(self, token: str, expected_type: TokenType | str) -> TokenClaims:
        """Return the claims of a valid, unexpired token of expected_type.

        Raises TokenInvalid, TokenWrongType or TokenExpired.
        """
        claims = self.decode(token)
        if claims.type is not TokenType(expected_type):
            raise TokenWrongType()
        if self.token_state(claims) is TokenState.EXPIRED:
            raise TokenExpired()
        return claims

    def token_state(self, claims: TokenClaims) -> TokenState:
        remaining = claims.expires_at - self.now()
        if remaining <= 0:
            return TokenState.EXPIRED
        if remaining <= self.settings.refresh_buffer_seconds:
            return TokenState.EXPIRING_SOON
        return TokenState.VALID

    def needs_refresh(self, access_token: str) -> bool:
        """True once an access token is inside the refresh buffer (or already unusable)."""
        try:
            claims = self.decode(access_token)
        except TokenInvalid:
            return True
        return self.token_state(claims) is not TokenState.VALID

    # ------------------------------------------------------------------
    # Rotate
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        """Redeem a refresh token for a new access + refresh pair.

        Raises TokenExpired / TokenInvalid / TokenWrongType for an unusable
        token, TokenInvalid(reason="revoked") when a strictly-rotated token is
        presented twice, and ServiceUnavailable if the ledger cannot be written.
        """
        claims = self.verify(refresh_token, TokenType.REFRESH)
        auth_time = claims.auth_time if claims.auth_time is not None else claims.issued_at
        if self.now() >= auth_time + self.settings.max_session_seconds:
            raise TokenExpired()

        if self.settings.strict_refresh_rotation:
            result = self.store.consume_refresh_token(claims.jti, claims.expires_at)
            if result.status is StoreStatus.CONFLICT:
                logger.warning("Refresh token reuse rejected for %s", claims.subject)
                raise TokenInvalid("revoked")
            if result.status is not StoreStatus.OK:
                raise ServiceUnavailable()

        return self.issue(_ClaimsSubject(claims.subject, claims.role), auth_time=auth_time)


class _ClaimsSubject:
    """Minimal user-shaped view of verified claims, for re-issuing on refresh."""

    __slots__ = ("email", "role")

    def __init__(self, email: str, role: str) -> None:
        self.email = email
        self.role = role
