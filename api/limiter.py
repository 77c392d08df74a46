"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Counters live in process memory and are keyed by client address, so the
limit is per worker process. One instance per process; a second Limiter
would keep its own counters.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def credential_limit() -> str:
    """Limit for credential-accepting routes (login, register, password reset).

    slowapi evaluates this per request, so LOGIN_RATE_LIMIT takes effect
    without touching the decorators.
    """
    return get_settings().login_rate_limit
