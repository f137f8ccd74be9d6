"""Subscription model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, UniqueConstraint
from datetime import datetime, timezone
from app.models.base import Base


class Subscription(Base):
    """Stripe subscription mirrored per (user, app)"""
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("user_id", "app", name="uq_subscriptions_user_app"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False, index=True)  # Identity from the auth provider
    app = Column(String(50), nullable=False)  # 'calculator', 'timekeeper', 'dashboard'
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_price_id = Column(String(255), nullable=True)
    status = Column(String(50), nullable=False, default="inactive")  # 'active', 'trialing', 'past_due', 'canceled', ...
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    last_event_created = Column(Integer, nullable=True)  # Stripe event.created of the newest applied event
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "app": self.app,
            "status": self.status,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancel_at_period_end": self.cancel_at_period_end,
        }
