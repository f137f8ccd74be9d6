"""Middleware configuration for FastAPI application"""
import logging
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import security_logger
from app.core.security import (
    SESSION_COOKIE, get_client_identifier, check_rate_limit, log_api_access
)

logger = logging.getLogger(__name__)

# Called by Stripe and monitoring, never rate limited
UNLIMITED_PATHS = ("/api/webhooks/stripe", "/metrics", "/health")


def get_allowed_origins():
    """Get list of allowed CORS origins"""
    allowed_origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend([
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000"
        ])
    return allowed_origins


def setup_cors_middleware(app):
    """Setup CORS middleware for FastAPI app"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


async def security_middleware(request: Request, call_next):
    """Middleware for rate limiting and API access logging"""
    session_id = request.cookies.get(SESSION_COOKIE)
    status_code = 500
    error = None

    try:
        path = request.url.path
        if path not in UNLIMITED_PATHS and request.method != "OPTIONS":
            identifier = get_client_identifier(request, session_id)
            is_state_changing = request.method in ["POST", "PATCH", "DELETE", "PUT"]
            if not check_rate_limit(request.app.state.redis, identifier, strict=is_state_changing):
                error = "Rate limit exceeded"
                status_code = 429
                security_logger.warning(f"Rate limit exceeded - Identifier: {identifier}, Path: {path}")
                return JSONResponse(
                    status_code=429,
                    content={"error": "Rate limit exceeded. Please try again later."}
                )

        response = await call_next(request)
        status_code = response.status_code
        return response

    except Exception as e:
        error = str(e)
        security_logger.error(f"Security middleware error: {error}", exc_info=True)
        raise
    finally:
        log_api_access(request, session_id, status_code, error)


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
