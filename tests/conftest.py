"""
tests/conftest.py -- Shared fixtures for the identity service tests.

This module provides:
  - FakeClock / clock: injectable time source so expiry and window tests never sleep
  - settings / settings_factory: Settings with a fixed signing key, optionally overridden
  - user_store, rate_store, limiter, tokens, service: the identity core wired
    on isolated in-memory SQLite databases (one fresh set per test)
  - legacy_plaintext: flips LEGACY_PLAINTEXT_PASSWORDS on for one test
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
API client because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The core fixtures run on the test thread only, so plain
:memory: is enough for them.

DEBUG and BCRYPT_ROUNDS must be set before any auth/core import so
get_settings() auto-generates SECRET_KEY in dev mode rather than raising
ValueError, and bcrypt runs at its minimum cost.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: Set before any auth/core import -- get_settings() is cached on first call.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.ratelimit import RateLimiter, RateLimitStore
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenService
from core.config import Settings, get_settings

TEST_SECRET = "test-secret-key-0123456789abcdef-0123456789"
START = 1_700_000_000.0


class FakeClock:
    """Callable epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = START) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides) -> Settings:
    overrides.setdefault("secret_key", TEST_SECRET)
    return Settings(**overrides)


def build_service(
    settings: Settings,
    clock: FakeClock,
    user_url: str = "sqlite:///:memory:",
    rate_url: str = "sqlite:///:memory:",
) -> AuthService:
    user_store = UserStore(user_url, timeout_seconds=3.0)
    rate_store = RateLimitStore(rate_url, timeout_seconds=3.0, ttl_seconds=settings.rate_limit_ttl_seconds)
    tokens = TokenService(store=user_store, settings=settings, clock=clock)
    return AuthService(user_store, RateLimiter(rate_store, clock=clock), tokens, settings=settings)


# ---------------------------------------------------------------------------
# Core fixtures -- function scoped so rate-limit counters never leak between tests
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    """Build Settings with overrides; the signing key matches the settings fixture."""
    return make_settings


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore("sqlite:///:memory:", timeout_seconds=3.0)
    yield store
    store.close()


@pytest.fixture
def rate_store() -> Generator[RateLimitStore, None, None]:
    store = RateLimitStore("sqlite:///:memory:", timeout_seconds=3.0, ttl_seconds=3600)
    yield store
    store.close()


@pytest.fixture
def limiter(rate_store: RateLimitStore, clock: FakeClock) -> RateLimiter:
    return RateLimiter(rate_store, clock=clock)


@pytest.fixture
def tokens(user_store: UserStore, settings: Settings, clock: FakeClock) -> TokenService:
    return TokenService(store=user_store, settings=settings, clock=clock)


@pytest.fixture
def service(settings: Settings, clock: FakeClock) -> Generator[AuthService, None, None]:
    svc = build_service(settings, clock)
    yield svc
    svc.close()


@pytest.fixture
def service_factory(clock: FakeClock) -> Generator:
    """Build extra services (optionally on a shared db_url) from Settings overrides.

    Every service built shares the test clock and is closed at teardown.
    """
    built: list[AuthService] = []

    def _build(db_url: str = "sqlite:///:memory:", **overrides) -> AuthService:
        svc = build_service(make_settings(**overrides), clock, user_url=db_url, rate_url=db_url)
        built.append(svc)
        return svc

    yield _build
    for svc in built:
        svc.close()


@pytest.fixture
def legacy_plaintext(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Enable untagged plaintext hashes for one test, then restore the cached Settings."""
    monkeypatch.setenv("LEGACY_PLAINTEXT_PASSWORDS", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(auth_service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service into app.state so TestClient routes see
    isolated test DBs rather than the configured database. The OAuth registry
    is mocked to prevent real network calls.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_service = auth_service
        app.state.oauth = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request: pytest.FixtureRequest) -> Generator[tuple[TestClient, AuthService, FakeClock], None, None]:
    """Yield (client, service, clock) for API integration tests.

    One client per test module. The database name is derived from the module
    so modules never share state.
    """
    name = request.module.__name__.rsplit(".", 1)[-1]
    url = f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"
    clock = FakeClock()
    auth_service = build_service(make_settings(), clock, user_url=url, rate_url=url)

    app.router.lifespan_context = _patch_lifespan(auth_service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, auth_service, clock

    auth_service.close()
