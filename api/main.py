"""
api/main.py -- FastAPI application entry point for the Coco Instruments API.

Exposes the auth core over HTTP: registration, login, token refresh, logout
and profile. The module CRUD handlers authenticate through the same
get_current_user_id dependency.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware     -- adds CORS headers for ALLOWED_ORIGINS
  2. SlowAPIMiddleware  -- enforces API_RATE_LIMIT per client address

Lifespan handles startup (settings, engine + schema, token codec, rate-limit
store, sweep task) and shutdown (cancel sweep task, dispose engine)
symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import (
    AccountInactive,
    AccountLocked,
    AuthCoreError,
    DuplicateEmail,
    InvalidCredentials,
    RateLimited,
    StorageError,
    TokenError,
    TransactionStateError,
    ValidationError,
)
from auth.service import AuthService
from auth.throttle import RateLimitStore
from auth.tokens import TokenCodec
from core.config import get_settings
from storage.database import create_db_engine

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("coco.api")

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


def _sweep_once(app: FastAPI) -> int:
    state = app.state
    with state.engine.connect() as conn:
        service = AuthService.for_connection(conn, state.settings, state.token_codec, state.rate_limits)
        return service.sweep_expired_tokens()


async def _sweep_loop(app: FastAPI) -> None:
    """Delete expired refresh tokens every TOKEN_SWEEP_INTERVAL_SECONDS.

    The DELETE runs in a worker thread so the event loop never blocks on the
    database. A failed sweep is logged and retried on the next tick.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and ends the loop.
    """
    interval = app.state.settings.token_sweep_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(_sweep_once, app)
        except StorageError:
            logger.exception("Refresh token sweep failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Settings first -- a missing SECRET_KEY in production stops startup here.
      2. Engine second -- creates the schema if the database is new.
      3. Sweep task last -- it needs the engine and the settings.
    """
    logger.info("Coco Instruments API starting up")
    settings = get_settings()
    app.state.settings = settings
    app.state.engine = create_db_engine(settings.database_url)
    app.state.token_codec = TokenCodec(settings.secret_key)
    app.state.rate_limits = RateLimitStore()
    logger.info("Database ready (%s)", app.state.engine.url.render_as_string(hide_password=True))
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app))

    yield

    app.state.sweep_task.cancel()
    app.state.engine.dispose()
    logger.info("Coco Instruments API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Coco Instruments API",
    description="Authentication and session management for the Coco Instruments tools.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().origins,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# Most specific class first; the first isinstance match wins.
_STATUS_BY_ERROR: list[tuple[type[AuthCoreError], int]] = [
    (ValidationError, 422),
    (DuplicateEmail, 409),
    (AccountLocked, 423),
    (AccountInactive, 403),
    (InvalidCredentials, 401),
    (TokenError, 401),
    (RateLimited, 429),
]


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthCoreError)
async def auth_error_handler(request: Request, exc: AuthCoreError) -> JSONResponse:
    """Map auth core errors to status codes.

    StorageError and TransactionStateError fall through to a generic 500. The
    driver message chained on them is logged, never returned.
    """
    if isinstance(exc, (StorageError, TransactionStateError)):
        logger.error("Internal error on %s %s", request.method, request.url.path, exc_info=exc)
        return _error_response(500, "internal_error", "An unexpected error occurred.")

    status_code = next((status for cls, status in _STATUS_BY_ERROR if isinstance(exc, cls)), 400)
    response = _error_response(status_code, exc.code, exc.message)
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(max(1, exc.retry_after))
    elif status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when the global rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    response = _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))
    for name, value in (exc.headers or {}).items():
        response.headers[name] = value
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. Exempt from the global limit so
# load balancer probes are never throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
@limiter.exempt
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and a database round-trip check."""
    database = "ok"
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            conn.rollback()
    except SQLAlchemyError:
        logger.exception("Health check could not reach the database")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": database},
    )
