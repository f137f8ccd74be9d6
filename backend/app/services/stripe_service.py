"""Stripe service - checkout sessions, customer portal and subscription lookups"""
import logging
from typing import Any, Dict, Optional
from urllib.parse import urljoin, urlparse

import stripe
from fastapi import Request

from app.core.config import Settings, settings
from app.core.errors import CheckoutSessionError
from app.core.logging import checkout_logger
from app.core.metrics import checkout_sessions_counter
from app.services.app_catalog import AppConfig, get_app_config, is_mobile_deep_link

logger = logging.getLogger(__name__)


class StripeGateway:
    """
    Explicit handle on the Stripe API.

    Built once at startup and passed to whatever needs Stripe; every request
    carries this gateway's API key instead of relying on the global stripe.api_key.
    """

    def __init__(self, api_key: str):
        self.api_key = api_key

    @classmethod
    def from_settings(cls, app_settings: Settings = settings) -> "StripeGateway":
        if not app_settings.STRIPE_SECRET_KEY:
            logger.error("Stripe secret key not configured.")
        return cls(app_settings.STRIPE_SECRET_KEY)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def create_checkout_session(self, **params) -> Any:
        return stripe.checkout.Session.create(api_key=self.api_key, **params)

    def create_portal_session(self, customer_id: str, return_url: str) -> Any:
        return stripe.billing_portal.Session.create(
            customer=customer_id, return_url=return_url, api_key=self.api_key
        )

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
        return _as_plain_dict(subscription)


def get_stripe_gateway(request: Request) -> StripeGateway:
    """Dependency: the process-wide gateway created in the app lifespan"""
    return request.app.state.stripe


def _as_plain_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    return obj.to_dict(for_json=True)


# ============================================================================
# REDIRECTS
# ============================================================================

def allowed_redirect(redirect: str, app_settings: Settings = settings) -> Optional[str]:
    """Return the absolute target for a caller-supplied redirect, or None if it is not allowed.

    Allowed: OnSite deep links, paths on the frontend, and absolute URLs on the
    frontend or on ALLOWED_REDIRECT_HOSTS.
    """
    if is_mobile_deep_link(redirect):
        return redirect

    if redirect.startswith("/") and not redirect.startswith("//"):
        return urljoin(app_settings.FRONTEND_URL, redirect)

    parsed = urlparse(redirect)
    frontend = urlparse(app_settings.FRONTEND_URL)
    if parsed.scheme in ("http", "https") and parsed.netloc:
        if parsed.netloc == frontend.netloc or parsed.hostname in app_settings.ALLOWED_REDIRECT_HOSTS:
            return redirect

    return None


def resolve_return_url(app_config: AppConfig, return_redirect: Optional[str],
                       app_settings: Settings = settings) -> str:
    """Pick the post-payment landing URL, falling back to the app's success URL"""
    if not return_redirect:
        return app_config.success_url

    target = allowed_redirect(return_redirect, app_settings)
    if target is None:
        checkout_logger.warning(f"Ignoring disallowed return redirect for app {app_config.name}: {return_redirect}")
        return app_config.success_url
    return target


def resolve_portal_return_url(return_url: Optional[str], app_settings: Settings = settings) -> str:
    """Pick where the customer portal sends the user back to"""
    default = f"{app_settings.FRONTEND_URL}/account/subscriptions"
    if not return_url:
        return default

    target = allowed_redirect(return_url, app_settings)
    if target is None:
        logger.warning(f"Ignoring disallowed portal return URL: {return_url}")
        return default
    return target


# ============================================================================
# CHECKOUT
# ============================================================================

def create_checkout_session(
    gateway: StripeGateway,
    app: str,
    user_id: str,
    user_email: Optional[str],
    return_redirect: Optional[str] = None,
    app_settings: Settings = settings
) -> Dict[str, str]:
    """Create a Stripe Checkout session for an app subscription

    The session and the subscription it creates both carry {app, user_id}
    metadata so webhooks can find the subscription row without another lookup.
    Not retried: a failed create may still have produced a session.

    Args:
        gateway: Stripe gateway
        app: App name from the catalog
        user_id: Buyer identity
        user_email: Prefilled on the Stripe page when present
        return_redirect: Optional post-payment landing target

    Returns:
        Dict with session id and hosted checkout url

    Raises:
        InvalidAppError: If the app is not in the catalog (before any Stripe call)
        CheckoutSessionError: If the app has no price or Stripe fails
    """
    app_config = get_app_config(app, app_settings)
    if not app_config.price_id:
        checkout_sessions_counter.labels(app=app_config.name, status="not_configured").inc()
        raise CheckoutSessionError(f"App {app_config.name} is not configured with a Stripe price")

    metadata = {"app": app_config.name, "user_id": user_id}
    params = {
        "mode": "subscription",
        "line_items": [{"price": app_config.price_id, "quantity": 1}],
        "success_url": resolve_return_url(app_config, return_redirect, app_settings),
        "cancel_url": f"{app_settings.FRONTEND_URL}/checkout/{app_config.name}?canceled=true",
        "client_reference_id": user_id,
        "metadata": metadata,
        "subscription_data": {"metadata": dict(metadata)},
    }
    if user_email:
        params["customer_email"] = user_email

    try:
        session = gateway.create_checkout_session(**params)
    except stripe.StripeError as e:
        checkout_sessions_counter.labels(app=app_config.name, status="failed").inc()
        checkout_logger.error(f"Error creating checkout session for user {user_id}, app {app_config.name}: {e}")
        raise CheckoutSessionError("Failed to create checkout session") from e

    checkout_sessions_counter.labels(app=app_config.name, status="created").inc()
    checkout_logger.info(f"Checkout session {session.id} created for user {user_id}, app {app_config.name}")
    return {"id": session.id, "url": session.url}


# ============================================================================
# CUSTOMER PORTAL
# ============================================================================

def create_portal_session(gateway: StripeGateway, customer_id: str, return_url: str) -> str:
    """Create a Stripe customer portal session and return its URL

    Raises:
        CheckoutSessionError: If Stripe fails
    """
    try:
        session = gateway.create_portal_session(customer_id, return_url)
    except stripe.StripeError as e:
        logger.error(f"Error creating portal session for customer {customer_id}: {e}")
        raise CheckoutSessionError("Failed to create portal session") from e
    return session.url
