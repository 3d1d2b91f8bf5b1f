"""
api/limiter.py -- Rate limiting for the credential endpoints.

POST /login and POST /register are the only routes an attacker can use to
guess passwords or flood the user table, so they share one slowapi Limiter
keyed by client address. api/main.py attaches it to app.state (slowapi finds
it there) and registers the 429 handler.

Counters live in process memory. Behind several workers each worker counts
on its own; point storage_uri at Redis if that matters.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Limit string for credential endpoints, read from settings at request time."""
    return get_settings().login_rate_limit
