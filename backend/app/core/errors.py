"""
Billing-specific exceptions.

Exception Hierarchy:
    BillingError
    ├── InvalidAppError - app name outside the fixed catalog
    ├── IdentityUnresolvedError - no resolution strategy produced an identity
    ├── AlreadySubscribedError - user already holds an active subscription
    ├── CheckoutSessionError - Stripe refused or failed to create a session
    ├── WebhookSignatureError - webhook payload could not be authenticated
    └── WebhookProcessingError - a verified event could not be applied

Routers translate these into HTTP responses; services never build responses.
"""
from typing import Optional


class BillingError(Exception):
    """Base exception for the billing service."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidAppError(BillingError, ValueError):
    """Raised for an app name that is not part of the catalog."""

    def __init__(self, app: str):
        super().__init__(f"Invalid app: {app}", details={"app": app})
        self.app = app


class IdentityUnresolvedError(BillingError):
    """Raised when neither a checkout token nor a session identifies the caller."""

    def __init__(self, reasons: Optional[list] = None):
        super().__init__("Could not resolve user identity", details={"reasons": reasons or []})
        self.reasons = reasons or []


class AlreadySubscribedError(BillingError):
    """Raised when a checkout is requested for an app the user already subscribes to."""

    def __init__(self, user_id: str, app: str):
        super().__init__(
            "User already has an active subscription",
            details={"user_id": user_id, "app": app}
        )
        self.app = app


class CheckoutSessionError(BillingError):
    """Raised when Stripe fails to create a checkout or portal session."""


class WebhookSignatureError(BillingError):
    """Raised for a missing, malformed or forged webhook signature."""


class WebhookProcessingError(BillingError):
    """Raised when a verified webhook event fails to apply; Stripe will redeliver it."""
