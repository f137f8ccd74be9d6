"""Redis client for session lookup and rate limiting

The auth service owns the session keys; this service only reads them.
The client is built once at startup and passed into every helper.
"""
import json
import logging
from typing import Optional, Dict

import redis
from fastapi import Request

from app.core.config import settings

logger = logging.getLogger(__name__)

# Rate limiting configuration
# In development, use more lenient limits
if settings.ENVIRONMENT == "development":
    RATE_LIMIT_WINDOW = 60  # seconds
    RATE_LIMIT_REQUESTS = 1000  # requests per window (very lenient for dev)
    RATE_LIMIT_STRICT_WINDOW = 60  # seconds
    RATE_LIMIT_STRICT_REQUESTS = 1000  # requests per window for state-changing operations (very lenient for dev)
else:
    RATE_LIMIT_WINDOW = 60  # seconds
    RATE_LIMIT_REQUESTS = 120  # requests per window
    RATE_LIMIT_STRICT_WINDOW = 60  # seconds
    RATE_LIMIT_STRICT_REQUESTS = 20  # checkout/portal creation per window


def create_redis_client(url: Optional[str] = None) -> redis.Redis:
    """Build a Redis client; no connection is opened until the first command"""
    return redis.from_url(url or settings.REDIS_URL, decode_responses=True)


def get_redis(request: Request) -> redis.Redis:
    """Dependency: the process-wide Redis client created in the app lifespan"""
    return request.app.state.redis


def get_session_identity(client: redis.Redis, session_id: str) -> Optional[Dict[str, str]]:
    """Return {"id", "email"} for a live session, or None.

    Session values are JSON objects written by the auth service under session:{id}.
    """
    raw = client.get(f"session:{session_id}")
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Malformed session payload for session {session_id[:8]}...")
        return None
    if not isinstance(data, dict) or not data.get("id"):
        return None
    return {"id": str(data["id"]), "email": data.get("email") or ""}


def increment_rate_limit(client: redis.Redis, identifier: str, window: int) -> int:
    """Increment rate limit counter and return current count (fixed window)"""
    key = f"ratelimit:{identifier}"
    count = client.incr(key)
    if count == 1:
        client.expire(key, window)
    return int(count)


def check_rate_limit(client: redis.Redis, identifier: str, strict: bool = False) -> bool:
    """Check if request is within rate limit using Redis. Returns True if allowed, False if rate limited."""
    window = RATE_LIMIT_STRICT_WINDOW if strict else RATE_LIMIT_WINDOW
    max_requests = RATE_LIMIT_STRICT_REQUESTS if strict else RATE_LIMIT_REQUESTS

    current_count = increment_rate_limit(client, identifier, window)
    return current_count <= max_requests
