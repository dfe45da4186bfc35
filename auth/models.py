"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond trivial derived
properties). Stores and the service do the work; routes map these to the
pydantic transport models in api/models.py.

Timestamps are ISO 8601 UTC strings, matching how storage/database.py
persists them. RefreshToken.expires_at is additionally exposed as epoch
seconds because every expiry comparison in the core is done on epoch floats
from the injected clock.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class User:
    """Identity record for one account.

    failed_login_attempts and locked_until are owned by LoginThrottle; the
    rest is written once at registration. Users are never deleted by the auth
    core -- deactivation (is_active=False) is the only off switch.
    """

    email: str
    name: str
    id: int | None = None
    password_hash: str | None = field(default=None, repr=False)
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: str | None = None
    last_login: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def locked_until_ts(self) -> float | None:
        if not self.locked_until:
            return None
        return datetime.fromisoformat(self.locked_until).timestamp()


@dataclass
class RefreshToken:
    """One issued long-lived credential.

    token is the opaque value handed to the client. It is stored verbatim
    (UNIQUE index) because the client presents it verbatim; there is nothing
    to derive from it.
    """

    user_id: int
    token: str = field(repr=False)
    expires_at: str
    id: int | None = None
    created_at: str | None = None

    @property
    def expires_at_ts(self) -> float:
        return datetime.fromisoformat(self.expires_at).timestamp()


@dataclass
class AuthResult:
    """What register, login and refresh hand back to the caller."""

    user: User
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
