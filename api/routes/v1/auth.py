"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register   -- create account; returns user + token pair (201)
  POST /api/v1/auth/login      -- password login; returns user + token pair
  POST /api/v1/auth/refresh    -- rotate a refresh token; returns a new pair
  POST /api/v1/auth/logout     -- revoke one refresh token, or all (requires auth)
  GET  /api/v1/auth/profile    -- current user info (requires auth)

Security:
  [C1] AuthService.login runs bcrypt for unknown emails -- never short-circuit
       in the handler.
  [M5] Cache-Control: no-store on every response that carries credentials.
  Errors are raised as auth.errors exceptions and mapped to status codes by
  the handlers in api/main.py; handlers here only deal with the happy path.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    AuthResponse,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    ProfileResponse,
    RefreshRequest,
    RegisterRequest,
)
from auth.dependencies import get_auth_service, get_current_user_id
from auth.models import AuthResult
from auth.service import AuthService

# Auth policy:
# - POST /api/v1/auth/register:  public
# - POST /api/v1/auth/login:     public, throttled per email in AuthService
# - POST /api/v1/auth/refresh:   public -- the refresh token is the credential
# - POST /api/v1/auth/logout:    requires auth (get_current_user_id)
# - GET  /api/v1/auth/profile:   requires auth (get_current_user_id)
router = APIRouter()


def _token_response(request: Request, response: Response, result: AuthResult) -> AuthResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AuthResponse.from_result(result, expires_in=request.app.state.settings.access_token_ttl_seconds)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(
    request: Request,
    response: Response,
    body: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Create an account, seed its module data and sign it in."""
    result = service.register(body.email, body.name, body.password)
    return _token_response(request, response, result)


@router.post("/auth/login", response_model=AuthResponse)
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Authenticate with email and password.

    Unknown email and wrong password produce the same 401 body so the
    endpoint cannot be used to discover which addresses are registered.
    """
    result = service.login(body.email, body.password)
    return _token_response(request, response, result)


@router.post("/auth/refresh", response_model=AuthResponse)
def refresh(
    request: Request,
    response: Response,
    body: RefreshRequest,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Exchange a refresh token for a new access/refresh pair.

    The presented token is consumed. Presenting it again returns 401.
    """
    result = service.refresh(body.refresh_token)
    return _token_response(request, response, result)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    response: Response,
    body: LogoutRequest,
    user_id: int = Depends(get_current_user_id),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    service.logout(body.refresh_token, body.revoke_all, user_id)
    response.headers["Cache-Control"] = "no-store"
    return MessageResponse(message="Logged out successfully.")


@router.get("/auth/profile", response_model=ProfileResponse)
def profile(
    response: Response,
    user_id: int = Depends(get_current_user_id),
    service: AuthService = Depends(get_auth_service),
) -> ProfileResponse:
    """Return the authenticated user's public details."""
    user = service.profile(user_id)
    response.headers["Cache-Control"] = "no-store"
    return ProfileResponse.from_profile(user, active_sessions=len(service.sessions.list_active(user_id)))
