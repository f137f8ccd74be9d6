"""Webhook service - Stripe event verification and subscription reconciliation

Every write here is keyed by (user_id, app) or by stripe_subscription_id, so a
redelivered event leaves the table as it was. A handler that cannot reconcile
an event (missing metadata, unknown subscription) drops it and the delivery is
still acknowledged; a datastore or Stripe failure fails the delivery so Stripe
retries it later.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import stripe
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import WebhookProcessingError, WebhookSignatureError
from app.core.logging import webhook_logger
from app.core.metrics import webhook_events_counter
from app.models.stripe_event import StripeEvent
from app.models.subscription import Subscription
from app.schemas.stripe_events import (
    CheckoutSessionCompleted, EventEnvelope, InvoicePaymentFailed, SubscriptionDeleted,
    SubscriptionObject, SubscriptionUpdated, UnhandledEvent, WebhookEvent, parse_event
)
from app.services.app_catalog import is_valid_app
from app.services.stripe_service import StripeGateway
from app.services.subscription_service import (
    apply_subscription_changes, find_by_stripe_subscription_id, find_subscription,
    upsert_subscription
)

logger = logging.getLogger(__name__)


# ============================================================================
# VERIFICATION
# ============================================================================

def verify_webhook(payload: bytes, sig_header: Optional[str], webhook_secret: str) -> EventEnvelope:
    """Authenticate a webhook delivery and parse its envelope

    Raises:
        WebhookSignatureError: Missing header or secret, bad signature, or a
            payload that is not a Stripe event
    """
    if not sig_header:
        raise WebhookSignatureError("Missing signature")
    if not webhook_secret:
        logger.error("Webhook secret not configured")
        raise WebhookSignatureError("Webhook secret not configured")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise WebhookSignatureError("Invalid payload")

    try:
        stripe.WebhookSignature.verify_header(
            body, sig_header, webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE
        )
    except stripe.SignatureVerificationError as e:
        webhook_logger.error(f"Webhook signature verification failed: {e}")
        raise WebhookSignatureError("Invalid signature")

    try:
        return EventEnvelope.model_validate(json.loads(body))
    except (ValueError, ValidationError) as e:
        webhook_logger.error(f"Invalid webhook payload: {e}")
        raise WebhookSignatureError("Invalid payload")


# ============================================================================
# EVENT LOG
# ============================================================================

def log_stripe_event(db: Session, event_id: str, event_type: str, payload: dict) -> StripeEvent:
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if stripe_event:
        return stripe_event

    stripe_event = StripeEvent(
        stripe_event_id=event_id,
        event_type=event_type,
        payload=payload,
        processed=False
    )
    db.add(stripe_event)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent delivery of the same event got there first
        db.rollback()
        return db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).one()
    db.refresh(stripe_event)
    return stripe_event


def mark_stripe_event_processed(db: Session, event_id: str, error_message: str = None):
    """Record the outcome of an event; failed events stay unprocessed for redelivery"""
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if stripe_event:
        stripe_event.processed = error_message is None
        stripe_event.processed_at = datetime.now(timezone.utc) if error_message is None else None
        stripe_event.error_message = error_message
        db.commit()


# ============================================================================
# HANDLERS
# ============================================================================

def handle_checkout_completed(event: CheckoutSessionCompleted, db: Session, gateway: StripeGateway) -> str:
    """Create or refresh the (user, app) row once a checkout is paid"""
    session = event.session
    app = session.metadata.get("app")
    user_id = session.metadata.get("user_id")

    if not app or not user_id:
        webhook_logger.error(f"Missing app or user_id in metadata of checkout session {session.id}")
        return "dropped"
    if not is_valid_app(app):
        webhook_logger.error(f"Unknown app '{app}' in metadata of checkout session {session.id}")
        return "dropped"
    if not session.subscription:
        webhook_logger.error(f"Checkout session {session.id} has no subscription")
        return "dropped"

    # Webhook payloads are thin; fetch the full subscription
    subscription = SubscriptionObject.model_validate(gateway.retrieve_subscription(session.subscription))

    fields = subscription.state_fields()
    fields["stripe_customer_id"] = session.customer or subscription.customer
    fields["stripe_subscription_id"] = session.subscription

    changed = upsert_subscription(db, user_id, app, fields, event.created)
    webhook_logger.info(
        f"Subscription {'created/updated' if changed else 'unchanged'} for user {user_id}, app {app}"
    )
    return "applied" if changed else "unchanged"


def _row_from_metadata(db: Session, subscription: SubscriptionObject) -> Optional[Subscription]:
    app = subscription.metadata.get("app")
    user_id = subscription.metadata.get("user_id")
    if not app or not user_id:
        return None
    return find_subscription(db, user_id, app)


def _row_from_subscription_id(db: Session, subscription: SubscriptionObject) -> Optional[Subscription]:
    return find_by_stripe_subscription_id(db, subscription.id)


# Tried in order; first row found wins
SUBSCRIPTION_ROW_LOOKUPS = (_row_from_metadata, _row_from_subscription_id)


def handle_subscription_updated(event: SubscriptionUpdated, db: Session, gateway: StripeGateway) -> str:
    subscription = event.subscription
    sub_record = None
    for lookup in SUBSCRIPTION_ROW_LOOKUPS:
        sub_record = lookup(db, subscription)
        if sub_record:
            break

    if not sub_record:
        webhook_logger.error(f"Could not find subscription record for: {subscription.id}")
        return "not_found"

    if sub_record.stripe_subscription_id and sub_record.stripe_subscription_id != subscription.id:
        # Row already points at a newer checkout's subscription
        webhook_logger.info(
            f"Ignoring update for superseded subscription {subscription.id} "
            f"(user {sub_record.user_id}, app {sub_record.app})"
        )
        return "superseded"

    changed = apply_subscription_changes(db, sub_record, subscription.state_fields(), event.created)
    webhook_logger.info(
        f"Subscription updated for user {sub_record.user_id}, app {sub_record.app}: {sub_record.status}"
    )
    return "applied" if changed else "unchanged"


def handle_subscription_deleted(event: SubscriptionDeleted, db: Session, gateway: StripeGateway) -> str:
    sub_record = find_by_stripe_subscription_id(db, event.subscription.id)
    if not sub_record:
        webhook_logger.info(f"Deleted subscription {event.subscription.id} has no local record")
        return "not_found"

    changed = apply_subscription_changes(db, sub_record, {"status": "canceled"}, event.created)
    webhook_logger.info(f"Subscription canceled: {event.subscription.id}")
    return "applied" if changed else "unchanged"


def handle_invoice_payment_failed(event: InvoicePaymentFailed, db: Session, gateway: StripeGateway) -> str:
    subscription_id = event.invoice.subscription_id
    if not subscription_id:
        return "ignored"

    sub_record = find_by_stripe_subscription_id(db, subscription_id)
    if not sub_record:
        webhook_logger.info(f"Payment failed for unknown subscription: {subscription_id}")
        return "not_found"

    changed = apply_subscription_changes(db, sub_record, {"status": "past_due"}, event.created)
    webhook_logger.warning(f"Payment failed for subscription: {subscription_id}")
    return "applied" if changed else "unchanged"


def handle_unhandled_event(event: UnhandledEvent, db: Session, gateway: StripeGateway) -> str:
    webhook_logger.info(f"Unhandled event type: {event.event_type}")
    return "ignored"


WEBHOOK_HANDLERS: Dict[type, Callable[[Any, Session, StripeGateway], str]] = {
    CheckoutSessionCompleted: handle_checkout_completed,
    SubscriptionUpdated: handle_subscription_updated,
    SubscriptionDeleted: handle_subscription_deleted,
    InvoicePaymentFailed: handle_invoice_payment_failed,
    UnhandledEvent: handle_unhandled_event,
}


def dispatch_event(event: WebhookEvent, db: Session, gateway: StripeGateway) -> str:
    handler = WEBHOOK_HANDLERS.get(type(event), handle_unhandled_event)
    return handler(event, db, gateway)


# ============================================================================
# WEBHOOK PROCESSING
# ============================================================================

def process_stripe_webhook(
    payload: bytes,
    sig_header: Optional[str],
    db: Session,
    gateway: StripeGateway,
    webhook_secret: str
) -> Dict[str, Any]:
    """Process Stripe webhook event

    Args:
        payload: Raw request body as bytes (must not be parsed by middleware)
        sig_header: Stripe signature header
        db: Database session
        gateway: Stripe gateway used to fetch full subscriptions
        webhook_secret: Endpoint signing secret

    Returns:
        {"received": True} once the event is applied or intentionally dropped

    Raises:
        WebhookSignatureError: For a delivery that cannot be authenticated
        WebhookProcessingError: For datastore or Stripe failures; Stripe retries
    """
    envelope = verify_webhook(payload, sig_header, webhook_secret)
    event_type = envelope.type

    try:
        stripe_event = log_stripe_event(db, envelope.id, event_type, envelope.model_dump())
    except SQLAlchemyError as e:
        db.rollback()
        webhook_events_counter.labels(event_type=event_type, outcome="failed").inc()
        webhook_logger.error(f"Could not log webhook event {envelope.id}: {e}")
        raise WebhookProcessingError("Webhook processing failed") from e

    if stripe_event.processed:
        webhook_events_counter.labels(event_type=event_type, outcome="duplicate").inc()
        webhook_logger.info(f"Webhook event {envelope.id} already processed")
        return {"received": True}

    try:
        event = parse_event(envelope)
    except ValidationError as e:
        # Redelivery will carry the same unusable object
        webhook_logger.error(f"Unreadable {event_type} object in event {envelope.id}: {e}")
        mark_stripe_event_processed(db, envelope.id)
        webhook_events_counter.labels(event_type=event_type, outcome="dropped").inc()
        return {"received": True}

    try:
        outcome = dispatch_event(event, db, gateway)
        mark_stripe_event_processed(db, envelope.id)
    except (SQLAlchemyError, stripe.StripeError, ValidationError) as e:
        # ValidationError here means Stripe returned an object we cannot read
        db.rollback()
        webhook_events_counter.labels(event_type=event_type, outcome="failed").inc()
        webhook_logger.error(f"Error processing webhook {envelope.id}: {e}", exc_info=True)
        _record_failure(db, envelope.id, str(e))
        raise WebhookProcessingError("Webhook processing failed") from e

    webhook_events_counter.labels(event_type=event_type, outcome=outcome).inc()
    webhook_logger.info(f"Processed webhook event {envelope.id} of type {event_type}: {outcome}")
    return {"received": True}


def _record_failure(db: Session, event_id: str, error_message: str):
    try:
        mark_stripe_event_processed(db, event_id, error_message=error_message)
    except SQLAlchemyError as e:
        db.rollback()
        webhook_logger.error(f"Could not record failure for webhook event {event_id}: {e}")
