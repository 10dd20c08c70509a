"""
api/main.py -- FastAPI application entry point for the identity service.

The identity core (auth/) is transport-agnostic; this module is the HTTP
adapter over it. Every AuthError the core raises is rendered here in one
envelope, so handlers never build error responses by hand.

Run with:  uvicorn api.main:app --reload

Middleware, in the order a request meets it:
  1. CORSMiddleware     -- CORS headers for the known front-end origins
  2. SessionMiddleware  -- cookie session where authlib parks the OAuth state

There is no in-process rate-limit middleware: limits are enforced inside
AuthService against the shared store so they hold across instances.

Lifespan handles startup (stores, AuthService, OAuth registry, purge task) and
shutdown (cancel purge task, close stores) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.oauth import build_oauth_registry
from auth.service import create_auth_service
from core.config import get_settings
from core.errors import AuthError, RateLimited

__version__ = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("identity.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Physically evict stale rate-limit rows and spent refresh-token ledger rows.

    The TTL-eviction safety net: nothing depends on it for correctness, so a
    failed pass is logged and the loop keeps going. Shutdown cancels the task
    while it sleeps.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            rate_rows, ledger_rows = await asyncio.to_thread(app.state.auth_service.purge_expired)
        except SQLAlchemyError as exc:
            logger.warning("Purge pass failed (%s)", type(exc).__name__)
            continue
        if rate_rows or ledger_rows:
            logger.info("Purged %d rate-limit rows, %d ledger rows", rate_rows, ledger_rows)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the stores and start the purge task; undo both on shutdown.

    Nothing per-request lives in process memory, only connection pools, so
    any number of instances can share one database.
    """
    settings = get_settings()
    logger.info("Identity API starting up")
    app.state.auth_service = create_auth_service(settings)
    app.state.oauth = build_oauth_registry(settings)
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))
    logger.info("Auth initialized")

    yield

    app.state.purge_task.cancel()
    app.state.auth_service.close()
    logger.info("Identity API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Marketplace Identity API",
    description="Account registration, credential verification, token issuance and rotation.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

# authlib checks the OAuth state on callback against the value it stored in
# this session at redirect time.
app.add_middleware(SessionMiddleware, secret_key=get_settings().secret_key)


# ---------------------------------------------------------------------------
# Access log
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every failure leaves as {"error": {...}} with a stable code, whatever the
# status.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render a classified identity failure.

    RateLimited also sets Retry-After (whole seconds, rounded up) so generic
    HTTP clients back off without parsing the body.
    """
    response = JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after_ms / 1000)))
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when the request body fails schema validation.

    Only field locations are echoed -- never the submitted values, which may be passwords.
    """
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message=f"Request validation failed: {', '.join(fields)}.",
            )
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Wrap framework HTTPExceptions in the error envelope.

    A dict detail is already an error body and passes through as is.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))
        ).model_dump(exclude_none=True),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Turn anything unclassified into a bare 500.

    The raw exception goes to the server log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(code="internal_error", message="An unexpected error occurred.")
        ).model_dump(exclude_none=True),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Lives on the app rather than a router and is never rate limited, so load
# balancer probes always get through.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Liveness probe; reports the running version."""
    return HealthResponse(version=__version__)
