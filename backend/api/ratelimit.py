"""Rate limiting configuration for API endpoints"""
from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from typing import Optional

from api.config import settings


def write_limit(request: Optional[Request] = None) -> str:
    """
    Rate limit for state-changing endpoints.

    SlowAPI calls this with no arguments during decorator initialization,
    then with the actual Request during request handling.
    """
    return settings.WRITE_RATE_LIMIT


# Create slowAPI limiter
def get_rate_limit_key(request: Optional[Request] = None) -> str:
    """Authenticated callers are limited per user, anonymous ones per address"""
    if request is None:
        return "default"
    return getattr(request.state, "user_id", None) or get_remote_address(request)


limiter = Limiter(key_func=get_rate_limit_key, enabled=settings.RATE_LIMIT_ENABLED)
