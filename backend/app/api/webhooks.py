"""Stripe webhook route"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import WebhookProcessingError, WebhookSignatureError
from app.db.session import get_db
from app.services.stripe_service import StripeGateway, get_stripe_gateway
from app.services.webhook_service import process_stripe_webhook

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    """Handle Stripe webhook events

    Note: This route must be excluded from any global JSON parsing middleware
    to ensure the request body remains as raw bytes for signature verification.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        # Blocking DB and Stripe calls stay off the event loop
        return await run_in_threadpool(
            process_stripe_webhook, payload, sig_header, db, gateway, settings.STRIPE_WEBHOOK_SECRET
        )
    except WebhookSignatureError as e:
        return JSONResponse(status_code=400, content={"error": e.message})
    except WebhookProcessingError:
        # Non-2xx makes Stripe redeliver the event
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})
