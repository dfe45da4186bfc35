"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware and exempt the health
check). Every route gets the default limit from API_RATE_LIMIT, keyed by
client address. The per-email login throttle is separate and lives in
auth/throttle.py.

A single shared instance keeps one in-memory counter store for all routes.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings


def _default_limit() -> str:
    # Resolved per request so tests can override API_RATE_LIMIT before startup.
    return get_settings().api_rate_limit


limiter = Limiter(key_func=get_remote_address, default_limits=[_default_limit], storage_uri="memory://")
