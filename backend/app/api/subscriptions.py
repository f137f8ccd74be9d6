"""Subscriptions API routes"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import CheckoutSessionError, InvalidAppError
from app.core.security import require_session
from app.db.session import get_db
from app.schemas.subscriptions import PortalRequest, SubscriptionListResponse
from app.services.app_catalog import get_app_config
from app.services.identity_service import Identity
from app.services.stripe_service import StripeGateway, get_stripe_gateway, resolve_portal_return_url
from app.services.subscription_service import (
    get_customer_portal_url, list_user_subscriptions, summarize_subscriptions
)

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])
logger = logging.getLogger(__name__)


@router.get("", response_model=SubscriptionListResponse)
def get_subscriptions(
    app: Optional[str] = Query(None, description="Only this app's subscription"),
    identity: Identity = Depends(require_session),
    db: Session = Depends(get_db)
):
    """Get the caller's subscriptions"""
    if app:
        try:
            get_app_config(app)
        except InvalidAppError as e:
            raise HTTPException(400, e.message)

    return summarize_subscriptions(list_user_subscriptions(db, identity.user_id, app))


@router.post("/portal")
def open_customer_portal(
    portal_request: PortalRequest,
    identity: Identity = Depends(require_session),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    """Get a Stripe customer portal URL for one of the caller's customers"""
    return_url = resolve_portal_return_url(portal_request.return_url)

    try:
        portal_url = get_customer_portal_url(
            db, gateway, identity.user_id, portal_request.customer_id, return_url
        )
    except CheckoutSessionError:
        raise HTTPException(502, "Failed to create portal session")

    if not portal_url:
        raise HTTPException(403, "Customer does not belong to this user")

    return {"url": portal_url}


# ============================================================================
# STRIPE CONFIG ROUTE (separate router for /api/stripe)
# ============================================================================

stripe_router = APIRouter(prefix="/api/stripe", tags=["stripe"])


@stripe_router.get("/config")
def get_stripe_config():
    """Get Stripe publishable key for frontend"""
    publishable_key = settings.STRIPE_PUBLISHABLE_KEY
    if not publishable_key:
        raise HTTPException(500, "Stripe not configured")

    return {"publishable_key": publishable_key}
