"""
core/errors.py -- Error taxonomy for the identity core.

Every failure that leaves the Orchestrator is exactly one of these classes.
Each class carries a stable machine-readable code, the HTTP status an adapter
should use, and whether the caller may retry the same request. Messages are
deliberately terse and never contain backend error text, secrets, or any hint
about whether a given email is registered.

  retryable=True   -> RateLimited (after retry_after_ms), BackendInconsistency,
                      ServiceUnavailable
  retryable=False  -> ValidationError, InvalidCredentials, RegistrationConflict,
                      Token*, SessionExpired

TokenExpired vs TokenInvalid/TokenWrongType lets a caller tell "refresh and
retry" apart from "re-authenticate". SessionExpired means the refresh token
itself is unusable and a fresh login is required.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

from typing import Any


class AuthError(Exception):
    """Base class for classified identity failures."""

    code: str = "internal_error"
    status_code: int = 500
    retryable: bool = False
    message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class ValidationError(AuthError):
    """Malformed input. Not retried."""

    code = "validation_error"
    status_code = 400
    message = "Invalid request."


class RateLimited(AuthError):
    """Too many attempts for one identifier inside the current window."""

    code = "rate_limited"
    status_code = 429
    retryable = True
    message = "Too many requests."

    def __init__(self, retry_after_ms: int, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after_ms = max(0, int(retry_after_ms))

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["retry_after_ms"] = self.retry_after_ms
        return payload


class InvalidCredentials(AuthError):
    """Identical for unknown email, wrong password, and unusable accounts."""

    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password."


class RegistrationConflict(AuthError):
    """The email belongs to an account registered with different credentials."""

    code = "conflict"
    status_code = 409
    message = "Registration could not be completed."


class BackendInconsistency(AuthError):
    """The store reported a conflict but the record cannot be read back."""

    code = "backend_inconsistency"
    status_code = 503
    retryable = True
    message = "Temporary problem completing the request. Please retry."


class ServiceUnavailable(AuthError):
    """The backing store timed out or failed."""

    code = "service_unavailable"
    status_code = 503
    retryable = True
    message = "Service temporarily unavailable. Please retry."


class TokenError(AuthError):
    code = "token_invalid"
    status_code = 401
    message = "Invalid token."


class TokenExpired(TokenError):
    code = "token_expired"
    message = "Token has expired."


class TokenInvalid(TokenError):
    """Bad signature, malformed token, wrong issuer/audience, or a revoked refresh token.

    reason is for logs only -- it is not part of to_dict().
    """

    code = "token_invalid"
    message = "Invalid token."

    def __init__(self, reason: str = "malformed", message: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class TokenWrongType(TokenError):
    code = "token_wrong_type"
    message = "Token type not accepted here."


class SessionExpired(AuthError):
    """The refresh token is unusable. Requires a full login, not a retry."""

    code = "session_expired"
    status_code = 401
    message = "Session expired. Please log in again."


__all__ = [
    "AuthError",
    "ValidationError",
    "RateLimited",
    "InvalidCredentials",
    "RegistrationConflict",
    "BackendInconsistency",
    "ServiceUnavailable",
    "TokenError",
    "TokenExpired",
    "TokenInvalid",
    "TokenWrongType",
    "SessionExpired",
]
