"""
api/routes/v1/auth.py -- Identity REST endpoints.

Routes:
  POST /api/v1/auth/register              -- create account; 201 + user + token pair
  POST /api/v1/auth/login                 -- password login; user + token pair
  POST /api/v1/auth/refresh               -- rotate a refresh token into a new pair
  POST /api/v1/auth/password              -- change password (requires access token)
  GET  /api/v1/auth/me                    -- claims of the presented access token
  GET  /api/v1/auth/providers             -- list enabled OAuth providers (public)
  GET  /api/v1/auth/oauth/{provider}      -- redirect to the provider
  GET  /api/v1/auth/callback/{provider}   -- code exchange; user + token pair

Handlers stay thin: they pull the caller IP, call AuthService, and map the
result to a response model. Every AuthError raised by the service is rendered
by the exception handler in api/main.py.

Blocking handlers (bcrypt, database) are plain `def` so FastAPI runs them in
its threadpool instead of stalling the event loop. The OAuth callback has to be
`async` for authlib, so it hands its AuthService call to asyncio.to_thread.

Security:
  [C1] Login goes through AuthService.login(), which equalizes timing -- never
       inline store lookups + password checks here.
  [M5] Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

import asyncio
import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import (
    AuthResponse,
    LoginRequest,
    MeResponse,
    OAuthProviderInfo,
    PasswordChangeRequest,
    RefreshRequest,
    RegisterRequest,
    TokenPairResponse,
    UserResponse,
)
from auth.dependencies import get_current_claims
from auth.models import TokenClaims, TokenState
from auth.oauth import get_enabled_providers, get_external_identity
from auth.service import AuthService
from core.config import get_settings

logger = logging.getLogger("identity.api.auth")

# Auth policy:
# - POST /auth/register, /auth/login, /auth/refresh:  public (rate limited in AuthService)
# - GET  /auth/providers, /auth/oauth/*, /auth/callback/*: public
# - POST /auth/password, GET /auth/me:                  requires access token
router = APIRouter()


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, response: Response, body: RegisterRequest) -> AuthResponse:
    """Create an account and sign it in.

    A retried registration with the same credentials returns the existing
    account (201 again) rather than an error.
    """
    result = _service(request).register(body.email, body.password, body.role, caller_ip=_client_ip(request))
    _no_store(response)
    return AuthResponse.from_result(result, get_settings().access_token_expire_seconds)


@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, response: Response, body: LoginRequest) -> AuthResponse:
    """Authenticate with email and password.

    Unknown email and wrong password produce the same 401 invalid_credentials.
    """
    result = _service(request).login(body.email, body.password, caller_ip=_client_ip(request))
    _no_store(response)
    return AuthResponse.from_result(result, get_settings().access_token_expire_seconds)


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, response: Response, body: RefreshRequest) -> TokenPairResponse:
    """Exchange a refresh token for a new access + refresh pair.

    The presented refresh token is spent; store the returned one. Any failure
    is 401 session_expired and requires a fresh login.
    """
    pair = _service(request).refresh(body.refresh_token)
    _no_store(response)
    return TokenPairResponse.from_pair(pair, get_settings().access_token_expire_seconds)


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers (empty list if none are configured)."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list first so a spoofed
    name cannot be turned into a redirect anywhere else.
    """
    if provider not in {p["name"] for p in get_enabled_providers()}:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Unknown provider."})
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/callback/{provider}", response_model=AuthResponse, name="oauth_callback")
async def oauth_callback(request: Request, response: Response, provider: str) -> AuthResponse:
    """Exchange the authorization code, then sign in through AuthService.oauth_login()."""
    if provider not in {p["name"] for p in get_enabled_providers()}:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Unknown provider."})
    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
        identity = await get_external_identity(client, provider, token)
    except (OAuthError, ValueError):
        logger.warning("OAuth code exchange failed for provider %r", provider)
        raise HTTPException(
            status_code=400,
            detail={"code": "oauth_failed", "message": "OAuth authentication failed.", "retryable": False},
        ) from None

    result = await asyncio.to_thread(_service(request).oauth_login, identity, caller_ip=_client_ip(request))
    _no_store(response)
    return AuthResponse.from_result(result, get_settings().access_token_expire_seconds)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(request: Request, claims: TokenClaims = Depends(get_current_claims)) -> MeResponse:
    """Return the identity carried by the access token, and whether to refresh soon."""
    state = _service(request).tokens.token_state(claims)
    return MeResponse(
        email=claims.subject,
        role=claims.role,
        expires_at=claims.expires_at,
        expiring_soon=state is TokenState.EXPIRING_SOON,
    )


@router.post("/auth/password", response_model=UserResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    claims: TokenClaims = Depends(get_current_claims),
) -> UserResponse:
    """Change the caller's password. The current password is required."""
    user = _service(request).change_password(
        claims.subject,
        body.current_password,
        body.new_password,
        caller_ip=_client_ip(request),
    )
    return UserResponse.from_public(user)
