"""
API request and response models for the identity REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Request models only bound sizes and types; the business rules (email shape,
password policy, allowed roles) live in auth/validation.py so the core applies
them no matter which transport calls it.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuthResult, PublicUser, TokenPair

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    # No str_strip_whitespace: it would strip passwords too. Emails are
    # normalized by the core.
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=255, json_schema_extra={"format": "password"})
    role: Optional[str] = Field(default=None, max_length=30)


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of an account. There is deliberately no password field."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    email: str
    role: str
    status: str
    oauth_provider: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]

    @classmethod
    def from_public(cls, user: PublicUser) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role,
            status=user.status,
            oauth_provider=user.oauth_provider,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair, expires_in: int) -> "TokenPairResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=expires_in,
        )


class AuthResponse(TokenPairResponse):
    user: UserResponse

    @classmethod
    def from_result(cls, result: AuthResult, expires_in: int) -> "AuthResponse":
        return cls(
            user=UserResponse.from_public(result.user),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            token_type=result.tokens.token_type,
            expires_in=expires_in,
        )


class MeResponse(BaseModel):
    email: str
    role: str
    expires_at: int
    expiring_soon: bool


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str


class ErrorDetail(BaseModel):
    code: str
    message: str
    retryable: bool = False
    retry_after_ms: Optional[int] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail
