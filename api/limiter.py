"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware) and api/routes/v1/auth.py
(per-route limits with @limiter.limit()). One shared instance means one
counter store; separate instances per module would never trigger.

The login limit is read from settings at request time through
login_rate_limit(), so LOGIN_RATE_LIMIT can differ per deployment without
touching the decorator.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    return get_settings().login_rate_limit
