"""Security dependencies, rate limiting and API access logging"""
import json
from datetime import datetime, timezone
from typing import Optional

import redis
from fastapi import Depends, HTTPException, Request

from app.db.redis import get_redis, check_rate_limit as redis_check_rate_limit
from app.core.errors import IdentityUnresolvedError
from app.core.logging import api_access_logger
from app.services.identity_service import (
    Identity, IdentityRequest, resolve_identity, session_strategy
)


SESSION_COOKIE = "session_id"


def require_session(request: Request, client: redis.Redis = Depends(get_redis)) -> Identity:
    """Dependency: Require a logged-in session, return the caller's identity"""
    try:
        return resolve_identity(
            IdentityRequest(app="", session_id=request.cookies.get(SESSION_COOKIE)),
            [session_strategy(client)]
        )
    except IdentityUnresolvedError:
        raise HTTPException(401, "Not authenticated. Please log in.")


def get_client_identifier(request: Request, session_id: Optional[str] = None) -> str:
    """Get a unique identifier for rate limiting"""
    if session_id:
        return f"session:{session_id}"

    # Fallback to IP address
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return f"ip:{client_ip}"


def check_rate_limit(client: redis.Redis, identifier: str, strict: bool = False) -> bool:
    """Check if request is within rate limit

    Args:
        client: Redis client
        identifier: Client identifier (session ID or IP)
        strict: If True, use stricter rate limits for state-changing operations

    Returns:
        True if within limit, False if exceeded
    """
    return redis_check_rate_limit(client, identifier, strict=strict)


def log_api_access(
    request: Request,
    session_id: Optional[str] = None,
    status_code: int = 200,
    error: Optional[str] = None
):
    """Log detailed API access information"""
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"

    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "session_id": session_id[:16] + "..." if session_id else None,
        "client_ip": client_ip,
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
