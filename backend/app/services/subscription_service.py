"""Subscription service - subscription records and checkout orchestration"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.subscription import Subscription
from app.core.errors import AlreadySubscribedError
from app.services.app_catalog import get_app_config
from app.services.identity_service import Identity
from app.services.stripe_service import (
    StripeGateway, create_checkout_session, create_portal_session
)

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("active", "trialing")

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


# ============================================================================
# LOOKUPS
# ============================================================================

def find_subscription(db: Session, user_id: str, app: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.app == app
    ).first()


def find_by_stripe_subscription_id(db: Session, stripe_subscription_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(
        Subscription.stripe_subscription_id == stripe_subscription_id
    ).first()


def has_active_subscription(db: Session, user_id: str, app: str) -> bool:
    return db.query(Subscription.id).filter(
        Subscription.user_id == user_id,
        Subscription.app == app,
        Subscription.status.in_(ACTIVE_STATUSES)
    ).first() is not None


def list_user_subscriptions(db: Session, user_id: str, app: Optional[str] = None) -> List[Subscription]:
    query = db.query(Subscription).filter(Subscription.user_id == user_id)
    if app:
        query = query.filter(Subscription.app == app)
    return query.order_by(Subscription.app).all()


# ============================================================================
# WRITES
# ============================================================================

def upsert_subscription(
    db: Session,
    user_id: str,
    app: str,
    fields: Dict[str, Any],
    event_created: Optional[int] = None
) -> bool:
    """Insert or update the row for (user_id, app) in one statement.

    The update branch only fires when a field actually differs and the event is
    not older than the last one applied, so replaying an event changes nothing,
    updated_at included.

    Returns:
        True if a row was inserted or updated

    Raises:
        SQLAlchemyError: On datastore failure (session rolled back)
    """
    dialect = db.get_bind().dialect.name
    insert = _UPSERT_INSERTS.get(dialect)
    if insert is None:
        raise NotImplementedError(f"Upsert not supported for dialect {dialect}")

    now = datetime.now(timezone.utc)
    table = Subscription.__table__
    stmt = insert(table).values(
        user_id=user_id,
        app=app,
        last_event_created=event_created,
        created_at=now,
        updated_at=now,
        **fields
    )
    excluded = stmt.excluded

    changed = or_(*[table.c[name].is_distinct_from(excluded[name]) for name in fields])
    not_stale = or_(
        table.c.last_event_created.is_(None),
        excluded.last_event_created.is_(None),
        table.c.last_event_created <= excluded.last_event_created,
    )
    update_values = {name: excluded[name] for name in fields}
    update_values["updated_at"] = excluded.updated_at
    update_values["last_event_created"] = func.coalesce(excluded.last_event_created, table.c.last_event_created)

    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "app"],
        set_=update_values,
        where=and_(changed, not_stale),
    )

    try:
        result = db.execute(stmt)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error upserting subscription for user {user_id}, app {app}: {e}")
        raise

    return result.rowcount > 0


def _comparable(value: Any) -> Any:
    # Some backends hand datetimes back naive; compare everything as naive UTC
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def apply_subscription_changes(
    db: Session,
    sub_record: Subscription,
    changes: Dict[str, Any],
    event_created: Optional[int] = None
) -> bool:
    """Apply field changes to an existing row.

    Skips events older than the newest one already applied and writes nothing
    when every field already holds the incoming value.

    Returns:
        True if the row was modified

    Raises:
        SQLAlchemyError: On datastore failure (session rolled back)
    """
    if (event_created is not None and sub_record.last_event_created is not None
            and event_created < sub_record.last_event_created):
        logger.warning(
            f"Skipping stale event for subscription {sub_record.stripe_subscription_id}: "
            f"event created {event_created} < last applied {sub_record.last_event_created}"
        )
        return False

    diff = {
        name: value for name, value in changes.items()
        if _comparable(getattr(sub_record, name)) != _comparable(value)
    }
    if not diff:
        return False

    for name, value in diff.items():
        setattr(sub_record, name, value)
    sub_record.updated_at = datetime.now(timezone.utc)
    if event_created is not None:
        sub_record.last_event_created = max(event_created, sub_record.last_event_created or 0)

    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating subscription {sub_record.id}: {e}")
        raise

    return True


# ============================================================================
# CHECKOUT & PORTAL
# ============================================================================

def create_subscription_checkout(
    db: Session,
    gateway: StripeGateway,
    identity: Identity,
    app: str,
    return_redirect: Optional[str] = None
) -> Dict[str, str]:
    """Create a Stripe checkout session unless the user already subscribes to the app

    Raises:
        InvalidAppError: If the app is not in the catalog
        AlreadySubscribedError: If an active or trialing row exists for (user, app)
        CheckoutSessionError: If Stripe fails
    """
    app_config = get_app_config(app)

    if has_active_subscription(db, identity.user_id, app_config.name):
        logger.info(f"User {identity.user_id} already subscribed to {app_config.name}")
        raise AlreadySubscribedError(identity.user_id, app_config.name)

    return create_checkout_session(
        gateway,
        app_config.name,
        identity.user_id,
        identity.email,
        return_redirect
    )


def get_customer_portal_url(
    db: Session,
    gateway: StripeGateway,
    user_id: str,
    customer_id: str,
    return_url: str
) -> Optional[str]:
    """Open the Stripe portal for one of the user's own customers

    Returns:
        Portal URL, or None if the customer id does not belong to the user

    Raises:
        CheckoutSessionError: If Stripe fails
    """
    owned = db.query(Subscription.id).filter(
        Subscription.user_id == user_id,
        Subscription.stripe_customer_id == customer_id
    ).first()
    if not owned:
        logger.warning(f"User {user_id} requested portal for unrelated customer {customer_id}")
        return None
    return create_portal_session(gateway, customer_id, return_url)


def summarize_subscriptions(subscriptions: List[Subscription]) -> Dict[str, Any]:
    return {
        "subscriptions": [sub.to_dict() for sub in subscriptions],
        "active_count": sum(1 for sub in subscriptions if sub.status in ACTIVE_STATUSES),
    }
