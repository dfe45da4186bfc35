"""
auth/throttle.py -- Login rate limiting and progressive account lockout.

Two independent controls:

  RateLimitStore / check_rate_limit -- moving-window counter per identifier
      (e.g. "login:<email>"), kept by the `limits` library in process
      memory. Throttles request volume whether or not the identity exists.
      Process-wide: one instance is created in the app lifespan and shared
      by every request handler.

  record_failed_login / is_locked -- per-account lockout persisted on the
      users row, so it holds across client IPs and server restarts.

The window is measured back from "now" on every call -- there are no
clock-aligned buckets. limits checks and records an attempt under a
per-key lock, so two concurrent requests can never both observe
"limit - 1" and both pass. An attempt stays in the window up to and
including window_seconds after it was made.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable

from limits import RateLimitItem, RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from auth.models import User
from auth.store import UserStore

logger = logging.getLogger("coco.auth")


class RateLimitStore:
    """In-memory moving-window limiter keyed by identifier.

    limits' MemoryStorage drops attempts that have left their window on its
    own timer thread.
    """

    def __init__(self) -> None:
        self._storage = MemoryStorage()
        self._limiter = MovingWindowRateLimiter(self._storage)

    @staticmethod
    def _item(limit: int, window_seconds: int) -> RateLimitItem:
        return RateLimitItemPerSecond(limit, window_seconds)

    def hit(self, identifier: str, limit: int, window_seconds: int) -> bool:
        """Record an attempt if fewer than `limit` happened in the last window.

        Returns False, without recording, when the limit is already reached.
        """
        return self._limiter.hit(self._item(limit, window_seconds), identifier)

    def retry_after(self, identifier: str, limit: int, window_seconds: int) -> int:
        """Seconds until the oldest attempt leaves a full window (0 if not full)."""
        stats = self._limiter.get_window_stats(self._item(limit, window_seconds), identifier)
        if stats.remaining > 0:
            return 0
        return max(0, math.ceil(stats.reset_time - time.time()))

    def reset(self, identifier: str, limit: int, window_seconds: int) -> None:
        self._limiter.clear(self._item(limit, window_seconds), identifier)


class LoginThrottle:
    """Rate limiting plus lockout bookkeeping for one request.

    Usage:
        throttle = LoginThrottle(rate_limits, user_store, max_attempts=5, lockout_seconds=900)
        if not throttle.check_rate_limit("login:" + email, 5, 300): ...
        if throttle.is_locked(user): ...
        throttle.record_failed_login(user.id)
    """

    def __init__(
        self,
        rate_limits: RateLimitStore,
        users: UserStore,
        *,
        max_attempts: int = 5,
        lockout_seconds: int = 15 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._rate_limits = rate_limits
        self._users = users
        self._max_attempts = max_attempts
        self._lockout_seconds = lockout_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    def check_rate_limit(self, identifier: str, limit: int, window_seconds: int) -> bool:
        allowed = self._rate_limits.hit(identifier, limit, window_seconds)
        if not allowed:
            logger.warning("Rate limit reached for %s (%d per %ds)", identifier, limit, window_seconds)
        return allowed

    def retry_after(self, identifier: str, limit: int, window_seconds: int) -> int:
        return self._rate_limits.retry_after(identifier, limit, window_seconds)

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    def is_locked(self, user: User) -> bool:
        locked_until = user.locked_until_ts
        return locked_until is not None and locked_until > self._clock()

    def release_expired_lock(self, user: User) -> bool:
        """Clear a lockout whose window has passed so failures count afresh.

        Returns True if the row was changed. The conditional UPDATE only
        matches a lockout that is already over, so a lock set concurrently by
        another request is left alone.
        """
        if user.locked_until is None or self.is_locked(user):
            return False
        released = self._users.clear_expired_lockout(user.id)
        if released:
            logger.info("Lockout expired for user %s", user.id)
        return released

    def record_failed_login(self, user_id: int) -> None:
        locked = self._users.increment_failed_attempts(
            user_id,
            max_attempts=self._max_attempts,
            lock_until=self._clock() + self._lockout_seconds,
        )
        if locked:
            logger.warning("User %s locked for %ds after repeated failed logins", user_id, self._lockout_seconds)

    def record_successful_login(self, user_id: int) -> None:
        self._users.record_login_success(user_id)

    def unlock(self, user_id: int) -> bool:
        return self._users.clear_lockout(user_id)
