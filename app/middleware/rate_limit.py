"""
Rate Limiting Middleware
Keeps manual sync triggers from hammering Slack, using slowapi

RATE LIMITS:
- Global: 100 requests/minute per client (default)
- Manual sync triggers: 30/hour (set on the routes)
"""
import logging
from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

logger = logging.getLogger(__name__)


def rate_limit_key_func(request: Request) -> str:
    """
    Rate limit key: user id when the request carries one, else the client IP.
    """
    if hasattr(request.state, "user_id"):
        user_id = request.state.user_id
        logger.debug(f"Rate limit key: user_id={user_id[:8]}...")
        return f"user:{user_id}"

    ip = get_remote_address(request)
    logger.debug(f"Rate limit key: ip={ip}")
    return f"ip:{ip}"


limiter = Limiter(
    key_func=rate_limit_key_func,
    default_limits=["100/minute"],
    storage_uri="memory://",  # single instance
)
