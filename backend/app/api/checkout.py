"""Checkout API routes"""
import logging
from typing import Optional

import redis
from fastapi import APIRouter, Depends, HTTPException, Request, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    AlreadySubscribedError, CheckoutSessionError, IdentityUnresolvedError, InvalidAppError
)
from app.core.security import SESSION_COOKIE, require_session
from app.db.redis import get_redis
from app.db.session import get_db
from app.schemas.subscriptions import (
    CheckoutRequest, CheckoutSessionResponse, CheckoutSuccessResponse, TokenValidationResponse
)
from app.services.app_catalog import get_app_config, is_mobile_deep_link
from app.services.identity_service import Identity, IdentityRequest, default_strategies, resolve_identity
from app.services.stripe_service import StripeGateway, get_stripe_gateway
from app.services.subscription_service import create_subscription_checkout
from app.utils.checkout_tokens import validate_checkout_token

router = APIRouter(prefix="/api/checkout", tags=["checkout"])
logger = logging.getLogger(__name__)


@router.post("", response_model=CheckoutSessionResponse)
def create_checkout(
    checkout_request: CheckoutRequest,
    request: Request,
    db: Session = Depends(get_db),
    client: redis.Redis = Depends(get_redis),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    """Create a Stripe checkout session for the caller and the requested app

    The caller is identified by a checkout token from the app, or else by the
    session cookie.
    """
    try:
        # Validate the app before anything else touches Redis or Stripe
        get_app_config(checkout_request.app)
    except InvalidAppError as e:
        raise HTTPException(400, e.message)

    identity_request = IdentityRequest(
        app=checkout_request.app,
        token=checkout_request.token,
        session_id=request.cookies.get(SESSION_COOKIE)
    )
    try:
        identity = resolve_identity(identity_request, default_strategies(client))
    except IdentityUnresolvedError:
        raise HTTPException(401, "Could not identify user. Please log in or reopen checkout from the app.")

    try:
        return create_subscription_checkout(
            db,
            gateway,
            identity,
            checkout_request.app,
            checkout_request.redirect_url
        )
    except AlreadySubscribedError as e:
        return JSONResponse(
            status_code=400,
            content={
                "error": e.message,
                "manage_url": f"{settings.FRONTEND_URL}/account/subscriptions?app={e.app}"
            }
        )
    except CheckoutSessionError as e:
        logger.error(f"Checkout failed for user {identity.user_id}, app {checkout_request.app}: {e}")
        raise HTTPException(502, "Failed to create checkout session")


@router.get("/token", response_model=TokenValidationResponse)
def check_checkout_token(token: str = Query(..., description="Checkout token from the app")):
    """Validate a checkout token and return the identity it carries"""
    result = validate_checkout_token(token)
    if not result.valid:
        return {"valid": False, "error": result.error}
    return {"valid": True, "app": result.app, "user_id": result.user_id, "email": result.email}


@router.get("/success", response_model=CheckoutSuccessResponse)
def checkout_success(
    app: str = Query(..., description="App that was purchased"),
    session_id: Optional[str] = Query(None, description="Stripe checkout session ID"),
    identity: Identity = Depends(require_session)
):
    """Where to send the logged-in buyer after Stripe redirects back"""
    try:
        app_config = get_app_config(app)
    except InvalidAppError as e:
        raise HTTPException(400, e.message)

    logger.info(f"Checkout completed page for user {identity.user_id}, app {app_config.name}")
    return {
        "app": app_config.name,
        "display_name": app_config.display_name,
        "session_id": session_id,
        "return_url": app_config.success_url,
        "is_mobile": is_mobile_deep_link(app_config.success_url),
    }
