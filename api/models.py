"""
API request and response models for the Coco Instruments auth endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Wire format is camelCase (accessToken, refreshToken, revokeAll) to match the
existing web client; Python attribute names stay snake_case via the alias
generator. FastAPI serializes response models by alias by default.

Field-level rules here are only transport sanity limits (lengths that keep
bcrypt and the DB columns happy). The business rules -- email shape, minimum
name and password length -- live in AuthService so the CLI gets them too.
"""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import AuthResult, User

# ---------------------------------------------------------------------------
# Base configs
# ---------------------------------------------------------------------------

_REQUEST_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)
_RESPONSE_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = _REQUEST_CONFIG

    email: str = Field(max_length=255)
    name: str = Field(max_length=255)
    password: str = Field(max_length=255)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = _REQUEST_CONFIG

    email: str = Field(max_length=255)
    password: str = Field(max_length=255)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh."""

    model_config = _REQUEST_CONFIG

    refresh_token: str = Field(min_length=1, max_length=255)


class LogoutRequest(BaseModel):
    """Request body for POST /api/v1/auth/logout.

    logoutAll is accepted as a synonym for revokeAll; older clients send it.
    """

    model_config = _REQUEST_CONFIG

    refresh_token: str | None = Field(default=None, max_length=255)
    revoke_all: bool = Field(
        default=False,
        validation_alias=AliasChoices("revokeAll", "logoutAll", "revoke_all"),
    )


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never includes the password hash or lockout state."""

    model_config = _RESPONSE_CONFIG

    id: int
    email: str
    name: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(id=user.id, email=user.email, name=user.name)


class ProfileResponse(UserResponse):
    """Response for GET /api/v1/auth/profile."""

    created_at: str | None = None
    last_login: str | None = None
    active_sessions: int = 0

    @classmethod
    def from_profile(cls, user: User, active_sessions: int) -> "ProfileResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            created_at=user.created_at,
            last_login=user.last_login,
            active_sessions=active_sessions,
        )


class AuthResponse(BaseModel):
    """Response for register, login and refresh."""

    model_config = _RESPONSE_CONFIG

    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int

    @classmethod
    def from_result(cls, result: AuthResult, expires_in: int) -> "AuthResponse":
        return cls(
            user=UserResponse.from_user(result.user),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=expires_in,
        )


class MessageResponse(BaseModel):
    model_config = _RESPONSE_CONFIG

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: str | None = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
