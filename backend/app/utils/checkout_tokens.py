"""Checkout token utilities for app-initiated purchases

The OnSite apps hand the user to the checkout page with a short-lived signed
token asserting who is buying what. Tokens are HS256 JWTs carrying:
- app: the app being purchased
- userId: identity from the auth provider
- email: the buyer's email (prefilled on the Stripe page)
- exp: expiry, required
"""
import time
from dataclasses import dataclass
from typing import Optional, Union

import jwt

from app.core.config import settings
from app.core.metrics import token_validations_counter
from app.services.app_catalog import is_valid_app

REQUIRED_CLAIMS = ("app", "userId", "email")


@dataclass(frozen=True)
class ValidToken:
    app: str
    user_id: str
    email: str
    valid: bool = True


@dataclass(frozen=True)
class InvalidToken:
    error: str
    valid: bool = False


TokenValidation = Union[ValidToken, InvalidToken]


def issue_checkout_token(app: str, user_id: str, email: str,
                         expires_in: Optional[int] = None, secret: Optional[str] = None) -> str:
    """Generate a signed checkout token

    Args:
        app: App name from the catalog
        user_id: User ID from the auth provider
        email: User email
        expires_in: Validity in seconds (default CHECKOUT_TOKEN_TTL_SECONDS)
        secret: Signing secret (default CHECKOUT_TOKEN_SECRET)

    Returns:
        Encoded JWT

    Raises:
        ValueError: If the app is unknown or no secret is configured
    """
    if not is_valid_app(app):
        raise ValueError(f"Invalid app: {app}")
    secret = secret or settings.CHECKOUT_TOKEN_SECRET
    if not secret:
        raise ValueError("CHECKOUT_TOKEN_SECRET environment variable is required")

    now = int(time.time())
    ttl = settings.CHECKOUT_TOKEN_TTL_SECONDS if expires_in is None else expires_in
    payload = {
        "app": app,
        "userId": user_id,
        "email": email,
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(payload, secret, algorithm=settings.CHECKOUT_TOKEN_ALGORITHM)


def _validate(token: str, secret: Optional[str]) -> TokenValidation:
    secret = secret or settings.CHECKOUT_TOKEN_SECRET
    if not secret:
        return InvalidToken("Checkout token secret not configured")
    if not token or not isinstance(token, str):
        return InvalidToken("Missing token")

    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[settings.CHECKOUT_TOKEN_ALGORITHM],
            options={"require": ["exp"]},
        )
    except jwt.ExpiredSignatureError:
        return InvalidToken("Token expired")
    except jwt.InvalidSignatureError:
        return InvalidToken("Invalid token signature")
    except jwt.PyJWTError as e:
        return InvalidToken(f"Malformed token: {e}")

    for claim in REQUIRED_CLAIMS:
        value = claims.get(claim)
        if not isinstance(value, str) or not value:
            return InvalidToken(f"Missing claim: {claim}")

    return ValidToken(app=claims["app"], user_id=claims["userId"], email=claims["email"])


def validate_checkout_token(token: str, secret: Optional[str] = None) -> TokenValidation:
    """Verify a checkout token

    Never raises: every failure collapses into InvalidToken with a reason.

    Args:
        token: The encoded token from the URL
        secret: Verification secret (default CHECKOUT_TOKEN_SECRET)

    Returns:
        ValidToken with the embedded claims, or InvalidToken
    """
    result = _validate(token, secret)
    token_validations_counter.labels(result="valid" if result.valid else "invalid").inc()
    return result
