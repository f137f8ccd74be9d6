"""API endpoint tests"""
import pytest
from unittest.mock import patch
from sqlalchemy.exc import OperationalError

import stripe

from app.api import webhooks as webhooks_api
from app.core.config import settings
from app.db import redis as redis_module
from app.models.subscription import Subscription
from app.utils.checkout_tokens import issue_checkout_token

from conftest import TEST_USER_ID, make_event, signed_webhook


def _checkout_event(event_id="evt_api_1"):
    return make_event(
        "checkout.session.completed",
        {
            "id": "cs_test123",
            "customer": "cus_test123",
            "subscription": "sub_test123",
            "metadata": {"app": "calculator", "user_id": TEST_USER_ID},
        },
        event_id=event_id,
    )


@pytest.mark.critical
class TestWebhookEndpoint:
    """POST /api/webhooks/stripe status codes"""

    def test_valid_event_returns_received(self, client, db_session):
        payload, sig_header = signed_webhook(_checkout_event())

        response = client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": sig_header, "content-type": "application/json"}
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert db_session.query(Subscription).filter_by(user_id=TEST_USER_ID, app="calculator").count() == 1

    def test_missing_signature_returns_400(self, client):
        payload, _ = signed_webhook(_checkout_event())

        response = client.post("/api/webhooks/stripe", content=payload)

        assert response.status_code == 400
        assert response.json() == {"error": "Missing signature"}

    def test_invalid_signature_returns_400(self, client, db_session):
        payload, _ = signed_webhook(_checkout_event())

        response = client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": "t=1,v1=deadbeef"}
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid signature"}
        assert db_session.query(Subscription).count() == 0

    def test_datastore_failure_returns_500(self, client):
        payload, sig_header = signed_webhook(_checkout_event())
        error = OperationalError("INSERT INTO subscriptions", {}, Exception("connection refused"))

        with patch("app.services.webhook_service.upsert_subscription", side_effect=error):
            response = client.post(
                "/api/webhooks/stripe",
                content=payload,
                headers={"stripe-signature": sig_header}
            )

        assert response.status_code == 500
        assert response.json() == {"error": "Webhook processing failed"}

    def test_unreadable_retrieved_subscription_returns_500(self, client, mock_gateway, db_session):
        mock_gateway.retrieve_subscription.return_value = {"object": "subscription", "status": "active"}
        payload, sig_header = signed_webhook(_checkout_event())

        response = client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": sig_header}
        )

        assert response.status_code == 500
        assert response.json() == {"error": "Webhook processing failed"}
        assert db_session.query(Subscription).count() == 0

    def test_processing_runs_in_threadpool(self, client):
        payload, sig_header = signed_webhook(_checkout_event())

        async def call_through(func, *args, **kwargs):
            return func(*args, **kwargs)

        with patch("app.api.webhooks.run_in_threadpool", side_effect=call_through) as threadpool:
            response = client.post(
                "/api/webhooks/stripe",
                content=payload,
                headers={"stripe-signature": sig_header}
            )

        assert response.status_code == 200
        assert threadpool.call_args.args[0] is webhooks_api.process_stripe_webhook

    def test_unhandled_event_returns_200(self, client):
        payload, sig_header = signed_webhook(make_event("product.created", {"id": "prod_1"}, event_id="evt_p"))

        response = client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": sig_header}
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}


@pytest.mark.critical
class TestCheckoutEndpoint:
    """POST /api/checkout"""

    def test_checkout_with_token(self, client, mock_gateway):
        token = issue_checkout_token("calculator", "u1", "u1@onsiteclub.test")

        response = client.post("/api/checkout", json={"app": "calculator", "token": token})

        assert response.status_code == 200
        assert response.json() == {"id": "cs_test123", "url": "https://checkout.stripe.com/c/pay/cs_test123"}
        params = mock_gateway.create_checkout_session.call_args.kwargs
        assert params["metadata"] == {"app": "calculator", "user_id": "u1"}
        assert params["customer_email"] == "u1@onsiteclub.test"

    def test_checkout_with_session_cookie(self, authenticated_client, mock_gateway):
        response = authenticated_client.post("/api/checkout", json={"app": "timekeeper"})

        assert response.status_code == 200
        params = mock_gateway.create_checkout_session.call_args.kwargs
        assert params["metadata"] == {"app": "timekeeper", "user_id": TEST_USER_ID}

    def test_invalid_app_returns_400(self, authenticated_client, mock_gateway):
        response = authenticated_client.post("/api/checkout", json={"app": "spreadsheet"})

        assert response.status_code == 400
        mock_gateway.create_checkout_session.assert_not_called()

    def test_unidentified_caller_returns_401(self, client, mock_gateway):
        response = client.post("/api/checkout", json={"app": "calculator"})

        assert response.status_code == 401
        mock_gateway.create_checkout_session.assert_not_called()

    def test_expired_token_without_session_returns_401(self, client):
        token = issue_checkout_token("calculator", "u1", "u1@onsiteclub.test", expires_in=-10)

        response = client.post("/api/checkout", json={"app": "calculator", "token": token})

        assert response.status_code == 401

    def test_already_subscribed_returns_400_with_manage_url(self, authenticated_client, active_subscription):
        response = authenticated_client.post("/api/checkout", json={"app": "calculator"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "User already has an active subscription"
        assert body["manage_url"].endswith("app=calculator")

    def test_stripe_failure_returns_502(self, authenticated_client, mock_gateway):
        mock_gateway.create_checkout_session.side_effect = stripe.APIConnectionError("network down")

        response = authenticated_client.post("/api/checkout", json={"app": "calculator"})

        assert response.status_code == 502
        assert "network down" not in response.text


@pytest.mark.high
class TestCheckoutHelpers:
    """Token check and success landing endpoints"""

    def test_token_endpoint_valid(self, client):
        token = issue_checkout_token("dashboard", "u1", "u1@onsiteclub.test")

        response = client.get("/api/checkout/token", params={"token": token})

        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is True
        assert body["app"] == "dashboard"
        assert body["user_id"] == "u1"
        assert body["email"] == "u1@onsiteclub.test"

    def test_token_endpoint_invalid(self, client):
        response = client.get("/api/checkout/token", params={"token": "nope"})

        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is False
        assert body["error"].startswith("Malformed token")

    def test_success_for_mobile_app(self, authenticated_client):
        response = authenticated_client.get("/api/checkout/success", params={"app": "calculator", "session_id": "cs_test123"})

        assert response.status_code == 200
        body = response.json()
        assert body["display_name"] == "OnSite Calculator Pro"
        assert body["return_url"].startswith("onsitecalculator://")
        assert body["is_mobile"] is True

    def test_success_for_unknown_app(self, authenticated_client):
        response = authenticated_client.get("/api/checkout/success", params={"app": "spreadsheet"})

        assert response.status_code == 400

    def test_success_requires_session(self, client):
        response = client.get("/api/checkout/success", params={"app": "calculator", "session_id": "cs_test123"})

        assert response.status_code == 401


@pytest.mark.high
class TestSubscriptionEndpoints:
    """GET /api/subscriptions and the customer portal"""

    def test_requires_session(self, client):
        response = client.get("/api/subscriptions")

        assert response.status_code == 401

    def test_lists_own_subscriptions(self, authenticated_client, db_session, active_subscription):
        db_session.add(Subscription(user_id="someone_else", app="calculator", status="active"))
        db_session.commit()

        response = authenticated_client.get("/api/subscriptions")

        assert response.status_code == 200
        body = response.json()
        assert body["active_count"] == 1
        assert [sub["app"] for sub in body["subscriptions"]] == ["calculator"]
        assert body["subscriptions"][0]["stripe_customer_id"] == "cus_test123"

    def test_filter_by_app(self, authenticated_client, active_subscription):
        response = authenticated_client.get("/api/subscriptions", params={"app": "timekeeper"})

        assert response.status_code == 200
        assert response.json() == {"subscriptions": [], "active_count": 0}

    def test_portal_for_own_customer(self, authenticated_client, mock_gateway, active_subscription):
        response = authenticated_client.post("/api/subscriptions/portal", json={"customer_id": "cus_test123"})

        assert response.status_code == 200
        assert response.json() == {"url": "https://billing.stripe.com/p/session/test"}

    def test_portal_for_foreign_customer_returns_403(self, authenticated_client, mock_gateway):
        response = authenticated_client.post("/api/subscriptions/portal", json={"customer_id": "cus_other"})

        assert response.status_code == 403
        mock_gateway.create_portal_session.assert_not_called()

    def test_portal_foreign_return_url_is_replaced(self, authenticated_client, mock_gateway, active_subscription):
        response = authenticated_client.post(
            "/api/subscriptions/portal",
            json={"customer_id": "cus_test123", "return_url": "https://evil.example.com/phish"}
        )

        assert response.status_code == 200
        mock_gateway.create_portal_session.assert_called_once_with(
            "cus_test123", f"{settings.FRONTEND_URL}/account/subscriptions"
        )

    def test_portal_frontend_return_url_is_kept(self, authenticated_client, mock_gateway, active_subscription):
        response = authenticated_client.post(
            "/api/subscriptions/portal",
            json={"customer_id": "cus_test123", "return_url": "/account/billing"}
        )

        assert response.status_code == 200
        mock_gateway.create_portal_session.assert_called_once_with(
            "cus_test123", f"{settings.FRONTEND_URL}/account/billing"
        )

    def test_stripe_config(self, client):
        response = client.get("/api/stripe/config")

        assert response.status_code == 200
        assert response.json() == {"publishable_key": "pk_test_dummy"}


@pytest.mark.high
class TestOperationalEndpoints:
    """Health, metrics and rate limiting"""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_metrics_exposes_billing_counters(self, client):
        token = issue_checkout_token("calculator", "u1", "u1@onsiteclub.test")
        client.get("/api/checkout/token", params={"token": token})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "onsite_billing_token_validations_total" in response.text

    def test_rate_limit_returns_429(self, client, mock_redis):
        with patch.object(redis_module, "RATE_LIMIT_REQUESTS", 2):
            statuses = [client.get("/api/stripe/config").status_code for _ in range(3)]

        assert statuses == [200, 200, 429]

    def test_webhook_is_not_rate_limited(self, client):
        payload, sig_header = signed_webhook(make_event("product.created", {"id": "prod_1"}, event_id="evt_rl"))

        with patch.object(redis_module, "RATE_LIMIT_STRICT_REQUESTS", 0):
            response = client.post(
                "/api/webhooks/stripe",
                content=payload,
                headers={"stripe-signature": sig_header}
            )

        assert response.status_code == 200
