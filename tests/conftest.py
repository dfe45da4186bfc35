"""
tests/conftest.py -- Shared test fixtures for the Coco Instruments auth core.

This module provides:
  - FakeClock / clock: a settable time source injected into every component
  - frozen_time: the same clock patched over time.time() for the rate limiter
  - engine / conn / tx: a temp-file SQLite database per test
  - settings / codec / service: AuthService wired on the test connection
  - api_client: TestClient over the real app with a patched lifespan

Design: temp-file SQLite databases (not :memory:) because TestClient runs
route handlers in a thread pool and the concurrency tests open one
connection per thread. Every connection must see the same database.

The DEBUG and API_RATE_LIMIT env vars must be set before any api/ or core/
import: get_settings() is cached on first use and the global slowapi limit
reads it per request.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any core/api import so get_settings() generates a dev
# SECRET_KEY and the global request limit never interferes with a test.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("API_RATE_LIMIT", "10000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.service import AuthService
from auth.throttle import RateLimitStore
from auth.tokens import TokenCodec
from core.config import Settings
from storage.database import create_db_engine
from storage.transactions import TransactionManager

TEST_SECRET = "test-secret-key-0123456789abcdef0123456789abcdef"
START_TIME = 1_700_000_000.0


class FakeClock:
    """Callable time source. Starts at START_TIME and only moves when told to."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def frozen_time(clock, monkeypatch) -> FakeClock:
    """Route time.time() through the fake clock.

    The rate-limit store reads wall time via the limits library rather than
    an injected clock.
    """
    monkeypatch.setattr(time, "time", clock)
    return clock


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'coco_test.db'}"


@pytest.fixture
def engine(db_url):
    eng = create_db_engine(db_url)
    yield eng
    eng.dispose()


@pytest.fixture
def conn(engine):
    with engine.connect() as connection:
        yield connection


@pytest.fixture
def tx(conn) -> TransactionManager:
    return TransactionManager(conn)


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(db_url) -> Settings:
    """Production defaults except a cheap bcrypt cost and a roomy login rate limit."""
    return Settings(
        debug=True,
        secret_key=TEST_SECRET,
        database_url=db_url,
        bcrypt_cost=4,
        login_rate_limit=100,
    )


@pytest.fixture
def codec(clock) -> TokenCodec:
    return TokenCodec(TEST_SECRET, clock=clock)


@pytest.fixture
def service(conn, settings, codec, clock) -> AuthService:
    return AuthService.for_connection(conn, settings, codec, RateLimitStore(), clock=clock)


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, engine):
    """Return an async context manager that replaces the real lifespan.

    Wires the test engine and settings into app.state so TestClient routes
    see an isolated database. The sweep task is a long-sleeping coroutine so
    shutdown has a real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.engine = engine
        app.state.token_codec = TokenCodec(settings.secret_key)
        app.state.rate_limits = RateLimitStore()
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture
def api_settings(db_url) -> Settings:
    """Small limits so lockout and throttling are reachable in a few requests."""
    return Settings(
        debug=True,
        secret_key=TEST_SECRET,
        database_url=db_url,
        bcrypt_cost=4,
        max_login_attempts=3,
        login_rate_limit=4,
    )


@pytest.fixture
def api_client(api_settings, engine) -> Generator[TestClient, None, None]:
    """TestClient over the real app and routes, backed by this test's database."""
    app.router.lifespan_context = _patch_lifespan(api_settings, engine)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
