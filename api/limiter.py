"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the session routes
(to apply the login limit with @limiter.limit()). A single shared instance
keeps every route on the same in-memory counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

LOGIN_LIMIT = get_settings().login_rate_limit
