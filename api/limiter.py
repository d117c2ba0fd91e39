"""
api/limiter.py -- Shared slowapi rate limiter instance.

The limiter is a pre-filter in front of the account routes. AccountService
knows nothing about request origin; brute-force protection inside the
service is the per-account lockout.

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

AUTH_RATE_LIMIT = get_settings().auth_rate_limit
