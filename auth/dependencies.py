"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Per-request wiring:
  get_connection()        checks a Connection out of app.state.engine and
                          returns it to the pool when the request ends. If the
                          request is aborted, closing the Connection rolls back
                          anything still open on it.
  get_auth_service()      builds an AuthService (and its TransactionManager)
                          on that Connection. Depth counters are therefore
                          never shared between concurrent requests.
  get_current_user_id()   requires "Authorization: Bearer <access token>".

Process-wide objects (engine, settings, TokenCodec, RateLimitStore) live on
app.state and are created by the lifespan in api/main.py.

Token failures propagate as auth.errors exceptions; the exception handlers in
api/main.py turn them into 401 responses.

Layer rule: no imports from api/. This module may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Iterator

from fastapi import Depends, HTTPException, Request
from sqlalchemy.engine import Connection

from auth.service import AuthService


def get_connection(request: Request) -> Iterator[Connection]:
    with request.app.state.engine.connect() as conn:
        yield conn


def get_auth_service(request: Request, conn: Connection = Depends(get_connection)) -> AuthService:
    state = request.app.state
    return AuthService.for_connection(conn, state.settings, state.token_codec, state.rate_limits)


def bearer_token(request: Request) -> str | None:
    """Extract the token from an "Authorization: Bearer <token>" header, if any."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user_id(request: Request, service: AuthService = Depends(get_auth_service)) -> int:
    """Require a valid access token. Raises HTTP 401 if the header is missing.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user_id: int = Depends(get_current_user_id)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authorization header missing."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return service.authenticate_request(token)
