"""Typed Stripe webhook events

Only the fields this service reconciles are modelled; everything else in the
Stripe payload is ignored. Each handled event type maps to one class, and any
other type becomes UnhandledEvent.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _expandable_id(value: Any) -> Any:
    """Stripe fields like `customer` arrive either as an id or as the expanded object"""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _to_datetime(ts: Optional[int]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Price(StripeModel):
    id: Optional[str] = None


class SubscriptionItem(StripeModel):
    price: Optional[Price] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class SubscriptionItemList(StripeModel):
    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(StripeModel):
    id: str
    customer: Optional[str] = None
    status: Optional[str] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    metadata: Dict[str, str] = Field(default_factory=dict)
    items: Optional[SubscriptionItemList] = None

    @field_validator("customer", mode="before")
    @classmethod
    def normalize_customer(cls, value):
        return _expandable_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def normalize_metadata(cls, value):
        return value or {}

    def _first_item(self) -> Optional[SubscriptionItem]:
        if self.items and self.items.data:
            return self.items.data[0]
        return None

    @property
    def period_start(self) -> Optional[int]:
        # Newer API versions only report periods on the subscription items
        if self.current_period_start is not None:
            return self.current_period_start
        item = self._first_item()
        return item.current_period_start if item else None

    @property
    def period_end(self) -> Optional[int]:
        if self.current_period_end is not None:
            return self.current_period_end
        item = self._first_item()
        return item.current_period_end if item else None

    @property
    def price_id(self) -> Optional[str]:
        item = self._first_item()
        return item.price.id if item and item.price else None

    def state_fields(self) -> Dict[str, Any]:
        """Status, periods, cancel flag and price as subscription row values"""
        fields: Dict[str, Any] = {"cancel_at_period_end": self.cancel_at_period_end}
        if self.status:
            fields["status"] = self.status
        if self.price_id:
            fields["stripe_price_id"] = self.price_id
        if self.period_start is not None:
            fields["current_period_start"] = _to_datetime(self.period_start)
        if self.period_end is not None:
            fields["current_period_end"] = _to_datetime(self.period_end)
        return fields


class CheckoutSessionObject(StripeModel):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def normalize_ids(cls, value):
        return _expandable_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def normalize_metadata(cls, value):
        return value or {}


class SubscriptionDetails(StripeModel):
    subscription: Optional[str] = None

    @field_validator("subscription", mode="before")
    @classmethod
    def normalize_subscription(cls, value):
        return _expandable_id(value)


class InvoiceParent(StripeModel):
    subscription_details: Optional[SubscriptionDetails] = None


class InvoiceObject(StripeModel):
    id: Optional[str] = None
    subscription: Optional[str] = None
    parent: Optional[InvoiceParent] = None

    @field_validator("subscription", mode="before")
    @classmethod
    def normalize_subscription(cls, value):
        return _expandable_id(value)

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None


class EventEnvelope(StripeModel):
    id: str
    type: str
    created: int = 0
    data: Dict[str, Any]


class CheckoutSessionCompleted(StripeModel):
    event_id: str
    created: int
    session: CheckoutSessionObject


class SubscriptionUpdated(StripeModel):
    event_id: str
    created: int
    subscription: SubscriptionObject


class SubscriptionDeleted(StripeModel):
    event_id: str
    created: int
    subscription: SubscriptionObject


class InvoicePaymentFailed(StripeModel):
    event_id: str
    created: int
    invoice: InvoiceObject


class UnhandledEvent(StripeModel):
    event_id: str
    created: int
    event_type: str


WebhookEvent = Union[
    CheckoutSessionCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    UnhandledEvent,
]

# event type -> (event class, name of the field holding data.object)
EVENT_TYPES = {
    "checkout.session.completed": (CheckoutSessionCompleted, "session"),
    "customer.subscription.updated": (SubscriptionUpdated, "subscription"),
    "customer.subscription.deleted": (SubscriptionDeleted, "subscription"),
    "invoice.payment_failed": (InvoicePaymentFailed, "invoice"),
}


def parse_event(envelope: EventEnvelope) -> WebhookEvent:
    """Build the typed event for an envelope

    Raises:
        pydantic.ValidationError: If data.object does not match the event type
    """
    known = EVENT_TYPES.get(envelope.type)
    if known is None:
        return UnhandledEvent(event_id=envelope.id, created=envelope.created, event_type=envelope.type)
    event_class, field = known
    return event_class.model_validate({
        "event_id": envelope.id,
        "created": envelope.created,
        field: envelope.data.get("object") or {},
    })
