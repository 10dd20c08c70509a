"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer-token authentication.

Only the Authorization: Bearer <access token> header is accepted. Refresh
tokens are rejected here by the Token Service's type check, so a leaked
refresh token cannot be used to call the API directly.

get_current_claims() raises HTTP 401 with the classified token
error so clients can tell token_expired (refresh and retry) from
token_invalid / token_wrong_type (log in again).

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system. Nothing else in auth/ does.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import TokenClaims
from auth.service import AuthService
from core.errors import TokenError


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_current_claims(request: Request) -> TokenClaims:
    """Require a valid access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: TokenClaims = Depends(get_current_claims)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required.", "retryable": False},
            headers={"WWW-Authenticate": "Bearer"},
        )
    service: AuthService = request.app.state.auth_service
    try:
        return service.authenticate(token)
    except TokenError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail=exc.to_dict(),
            headers={"WWW-Authenticate": "Bearer"},
        ) from None
