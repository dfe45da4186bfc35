"""
auth/service.py -- Registration, login, refresh, logout and request authentication.

AuthService holds no state of its own. It composes TokenCodec, SessionStore,
LoginThrottle and UserStore, all of which share the request's
TransactionManager, and wraps every multi-row mutation in one scope so a
caller never observes half of an operation.

One AuthService is built per request (see AuthService.for_connection); the
TokenCodec and RateLimitStore it receives are process-wide.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.engine import Connection

from auth.errors import (
    AccountInactive,
    AccountLocked,
    DuplicateEmail,
    InvalidCredentials,
    InvalidPayload,
    RateLimited,
    TokenNotFound,
    UserInactive,
    ValidationError,
)
from auth.models import AuthResult, User
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.throttle import LoginThrottle, RateLimitStore
from auth.tokens import TokenCodec, dummy_hash, hash_password, verify_password
from core.config import Settings
from storage.transactions import TransactionManager

logger = logging.getLogger("coco.auth")

# Deliberately loose: one "@", no whitespace, a dot in the domain. Deliverability
# is the mail server's problem, not ours.
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MIN_NAME_LENGTH = 2
MIN_PASSWORD_LENGTH = 8


@dataclass(frozen=True)
class AuthPolicy:
    access_token_ttl: int = 15 * 60
    bcrypt_cost: int = 12
    login_rate_limit: int = 5
    login_rate_window: int = 5 * 60

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuthPolicy":
        return cls(
            access_token_ttl=settings.access_token_ttl_seconds,
            bcrypt_cost=settings.bcrypt_cost,
            login_rate_limit=settings.login_rate_limit,
            login_rate_window=settings.login_rate_window_seconds,
        )


class AuthService:
    def __init__(
        self,
        tx: TransactionManager,
        codec: TokenCodec,
        users: UserStore,
        sessions: SessionStore,
        throttle: LoginThrottle,
        policy: AuthPolicy = AuthPolicy(),
    ) -> None:
        self._tx = tx
        self._codec = codec
        self.users = users
        self.sessions = sessions
        self.throttle = throttle
        self._policy = policy

    @classmethod
    def for_connection(
        cls,
        conn: Connection,
        settings: Settings,
        codec: TokenCodec,
        rate_limits: RateLimitStore,
        clock: Callable[[], float] = time.time,
    ) -> "AuthService":
        """Wire every component onto one Connection with the configured policy."""
        tx = TransactionManager(conn)
        users = UserStore(tx, clock=clock)
        sessions = SessionStore(
            tx,
            ttl_seconds=settings.refresh_token_ttl_seconds,
            max_per_user=settings.refresh_tokens_per_user,
            clock=clock,
        )
        throttle = LoginThrottle(
            rate_limits,
            users,
            max_attempts=settings.max_login_attempts,
            lockout_seconds=settings.lockout_seconds,
            clock=clock,
        )
        return cls(tx, codec, users, sessions, throttle, AuthPolicy.from_settings(settings))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def register(self, email: str, name: str, password: str) -> AuthResult:
        email, name, password_hash = self._prepare_account(email, name, password)
        with self._tx.scope():
            user = self._insert_account(email, name, password_hash)
            result = self._issue_tokens(user)
        logger.info("Registered user %s", user.id)
        return result

    def create_account(self, email: str, name: str, password: str) -> User:
        """Create and seed an account without signing it in. Used by the CLI."""
        email, name, password_hash = self._prepare_account(email, name, password)
        with self._tx.scope():
            user = self._insert_account(email, name, password_hash)
        logger.info("Created user %s", user.id)
        return user

    def login(self, email: str, password: str) -> AuthResult:
        email = _normalize_email(email)
        identifier = _login_identifier(email)
        limit, window = self._policy.login_rate_limit, self._policy.login_rate_window
        if not self.throttle.check_rate_limit(identifier, limit, window):
            raise RateLimited(retry_after=self.throttle.retry_after(identifier, limit, window))

        user = self.users.get_by_email(email)
        if user is None:
            # Equalize timing -- do NOT return before running bcrypt [C1].
            verify_password(password or "", dummy_hash(self._policy.bcrypt_cost))
            raise InvalidCredentials()
        if self.throttle.is_locked(user):
            raise AccountLocked()
        self.throttle.release_expired_lock(user)

        if not verify_password(password or "", user.password_hash or ""):
            self.throttle.record_failed_login(user.id)
            raise InvalidCredentials()
        if not user.is_active:
            raise AccountInactive()

        with self._tx.scope():
            self.throttle.record_successful_login(user.id)
            result = self._issue_tokens(user)
        logger.info("User %s logged in", user.id)
        return result

    def refresh(self, refresh_token: str) -> AuthResult:
        if not refresh_token:
            raise TokenNotFound()
        with self._tx.scope():
            user_id, new_refresh = self.sessions.rotate(refresh_token)
            user = self.users.get_by_id(user_id)
            if user is None:
                raise UserInactive()
            access = self._codec.issue({"uid": user.id}, self._policy.access_token_ttl)
        return AuthResult(user=user, access_token=access, refresh_token=new_refresh)

    def logout(self, refresh_token: str | None, revoke_all: bool, user_id: int) -> None:
        """Revoke refresh_token; with revoke_all, every token of user_id too. Idempotent."""
        with self._tx.scope():
            if refresh_token:
                self.sessions.revoke(refresh_token)
            if revoke_all:
                self.sessions.revoke_all(user_id)

    def authenticate_request(self, access_token: str) -> int:
        """Verify an access token and return the id of its active owner."""
        claims = self._codec.verify(access_token)
        uid = claims.get("uid")
        if not isinstance(uid, int) or isinstance(uid, bool) or uid <= 0:
            raise InvalidPayload()
        user = self.users.get_by_id(uid)
        if user is None or not user.is_active:
            raise UserInactive()
        return uid

    def profile(self, user_id: int) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise UserInactive()
        return user

    def sweep_expired_tokens(self) -> int:
        removed = self.sessions.sweep_expired()
        if removed:
            logger.info("Swept %d expired refresh token(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Administration (CLI)
    # ------------------------------------------------------------------

    def unlock_account(self, email: str) -> User | None:
        """Clear the failure counter and lockout. None if the email is unknown."""
        user = self.users.get_by_email(_normalize_email(email))
        if user is None:
            return None
        self.throttle.unlock(user.id)
        logger.info("Lockout cleared for user %s", user.id)
        return user

    def deactivate_account(self, email: str) -> User | None:
        """Deactivate an account and revoke all of its refresh tokens.

        Access tokens already issued stop working at the next
        authenticate_request, which checks is_active.
        """
        user = self.users.get_by_email(_normalize_email(email))
        if user is None:
            return None
        with self._tx.scope():
            self.users.set_active(user.id, False)
            revoked = self.sessions.revoke_all(user.id)
        logger.warning("Deactivated user %s (%d refresh token(s) revoked)", user.id, revoked)
        return user

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _prepare_account(self, email: str, name: str, password: str) -> tuple[str, str, str]:
        email = _normalize_email(email)
        name = (name or "").strip()
        if len(name) < MIN_NAME_LENGTH:
            raise ValidationError(f"Name must be at least {MIN_NAME_LENGTH} characters")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if self.users.get_by_email(email) is not None:
            raise DuplicateEmail()
        # Hashed before any transaction opens: bcrypt is slow and needs no locks.
        return email, name, hash_password(password, rounds=self._policy.bcrypt_cost)

    def _insert_account(self, email: str, name: str, password_hash: str) -> User:
        user = self.users.create_user(email, name, password_hash)
        self.users.initialize_module_data(user.id)
        return user

    def _issue_tokens(self, user: User) -> AuthResult:
        access = self._codec.issue({"uid": user.id}, self._policy.access_token_ttl)
        refresh = self.sessions.issue(user.id)
        return AuthResult(user=user, access_token=access, refresh_token=refresh)


def _normalize_email(email: str | None) -> str:
    email = (email or "").strip().lower()
    if len(email) > 255 or not _EMAIL_RE.match(email):
        raise ValidationError("Invalid email format")
    return email


def _login_identifier(email: str) -> str:
    # Hashed so the in-memory limiter and its log lines never hold raw addresses.
    return "login:" + hashlib.sha256(email.encode("utf-8")).hexdigest()[:32]
