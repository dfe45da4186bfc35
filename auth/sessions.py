"""
auth/sessions.py -- Refresh-token lifecycle.

A refresh token is an opaque random string stored server-side with an expiry.
Clients exchange it for a new access token; under rotation each refresh token
is single-use.

Retention: a user holds at most `max_per_user` live tokens (5 by default).
issue() deletes everything except the newest max_per_user - 1 rows before
inserting, so the new token plus the survivors never exceed the cap. "Newest"
is created_at, ties broken by id (insertion order).

Rotation is linearizable per token: rotate() deletes the presented row and
checks the affected-row count before issuing anything. Of two requests racing
with the same token, only the one whose DELETE removed the row goes on; the
other sees rowcount 0 and fails with TokenNotFound, exactly as if the token
had already been used. Replay attempts are logged at WARNING.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from auth.errors import StorageError, TokenExpired, TokenNotFound, UserInactive
from auth.models import RefreshToken
from auth.tokens import generate_refresh_token
from storage.database import refresh_tokens, to_iso, users
from storage.transactions import TransactionManager

logger = logging.getLogger("coco.auth")

DEFAULT_REFRESH_TTL = 30 * 24 * 60 * 60
DEFAULT_MAX_PER_USER = 5

# A 256-bit collision is not going to happen; the retry exists so a broken
# token_factory shows up as an error instead of an endless loop.
_MAX_INSERT_ATTEMPTS = 3


class _TokenCollision(Exception):
    pass


class SessionStore:
    """Issue, validate, rotate and revoke refresh tokens.

    Usage:
        sessions = SessionStore(tx)
        token = sessions.issue(user_id)
        user_id, token = sessions.rotate(token)
        sessions.revoke(token)
    """

    def __init__(
        self,
        tx: TransactionManager,
        *,
        ttl_seconds: int = DEFAULT_REFRESH_TTL,
        max_per_user: int = DEFAULT_MAX_PER_USER,
        clock: Callable[[], float] = time.time,
        token_factory: Callable[[], str] = generate_refresh_token,
    ) -> None:
        if max_per_user < 1:
            raise ValueError("max_per_user must be at least 1")
        self._tx = tx
        self._ttl = ttl_seconds
        self._max_per_user = max_per_user
        self._clock = clock
        self._token_factory = token_factory

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, user_id: int) -> str:
        now = self._clock()
        with self._tx.scope():
            self._prune(user_id)
            for _ in range(_MAX_INSERT_ATTEMPTS):
                token = self._token_factory()
                try:
                    with self._tx.scope():
                        self._insert(user_id, token, now)
                except _TokenCollision:
                    logger.warning("Refresh token collision for user %s; regenerating", user_id)
                    continue
                return token
            raise StorageError("could not allocate a unique refresh token")

    def _prune(self, user_id: int) -> None:
        conn = self._tx.connection
        keep = conn.execute(
            select(refresh_tokens.c.id)
            .where(refresh_tokens.c.user_id == user_id)
            .order_by(refresh_tokens.c.created_at.desc(), refresh_tokens.c.id.desc())
            .limit(self._max_per_user - 1)
        ).scalars().all()
        result = conn.execute(
            delete(refresh_tokens).where(
                (refresh_tokens.c.user_id == user_id) & (refresh_tokens.c.id.not_in(keep))
            )
        )
        if result.rowcount:
            logger.debug("Pruned %d refresh token(s) for user %s", result.rowcount, user_id)

    def _insert(self, user_id: int, token: str, now: float) -> None:
        try:
            self._tx.connection.execute(
                refresh_tokens.insert().values(
                    user_id=user_id,
                    token=token,
                    expires_at=to_iso(now + self._ttl),
                    created_at=to_iso(now),
                )
            )
        except IntegrityError as exc:
            raise _TokenCollision() from exc

    # ------------------------------------------------------------------
    # Validate / rotate
    # ------------------------------------------------------------------

    def validate(self, token: str) -> int:
        """Return the owning user id without consuming the token."""
        with self._tx.scope():
            return self._check(token)

    def rotate(self, old_token: str) -> tuple[int, str]:
        """Consume old_token and issue its replacement in one transaction."""
        with self._tx.scope():
            user_id = self._check(old_token)
            deleted = self._tx.connection.execute(delete(refresh_tokens).where(refresh_tokens.c.token == old_token))
            if deleted.rowcount != 1:
                logger.warning("Refresh token for user %s was already consumed (possible replay)", user_id)
                raise TokenNotFound()
            new_token = self.issue(user_id)
        return user_id, new_token

    def _check(self, token: str) -> int:
        row = self._tx.connection.execute(
            select(refresh_tokens.c.user_id, refresh_tokens.c.expires_at, users.c.is_active)
            .select_from(refresh_tokens.join(users, refresh_tokens.c.user_id == users.c.id))
            .where(refresh_tokens.c.token == token)
        ).fetchone()
        if row is None:
            raise TokenNotFound()
        if row.expires_at <= to_iso(self._clock()):
            raise TokenExpired()
        if not row.is_active:
            raise UserInactive()
        return row.user_id

    # ------------------------------------------------------------------
    # Revoke / sweep
    # ------------------------------------------------------------------

    def revoke(self, token: str) -> None:
        """Delete one token. Idempotent."""
        with self._tx.scope():
            self._tx.connection.execute(delete(refresh_tokens).where(refresh_tokens.c.token == token))

    def revoke_all(self, user_id: int) -> int:
        """Delete every token owned by user_id ("log out everywhere"). Returns the count."""
        with self._tx.scope():
            result = self._tx.connection.execute(delete(refresh_tokens).where(refresh_tokens.c.user_id == user_id))
        if result.rowcount:
            logger.info("Revoked %d refresh token(s) for user %s", result.rowcount, user_id)
        return result.rowcount

    def sweep_expired(self) -> int:
        """Delete all expired tokens. Returns the number removed."""
        with self._tx.scope():
            result = self._tx.connection.execute(
                delete(refresh_tokens).where(refresh_tokens.c.expires_at <= to_iso(self._clock()))
            )
        return result.rowcount

    def list_active(self, user_id: int) -> list[RefreshToken]:
        """Live tokens for user_id, newest first."""
        with self._tx.scope():
            rows = self._tx.connection.execute(
                select(refresh_tokens)
                .where((refresh_tokens.c.user_id == user_id) & (refresh_tokens.c.expires_at > to_iso(self._clock())))
                .order_by(refresh_tokens.c.created_at.desc(), refresh_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )
