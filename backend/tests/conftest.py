"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import sys
import time
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
import fakeredis

# Settings are read at import time; configure the environment first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("FRONTEND_URL", "https://onsiteclub.test")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_PRICE_CALCULATOR", "price_calculator")
os.environ.setdefault("STRIPE_PRICE_TIMEKEEPER", "price_timekeeper")
os.environ.setdefault("STRIPE_PRICE_DASHBOARD", "price_dashboard")
os.environ.setdefault("CHECKOUT_TOKEN_SECRET", "test-checkout-token-secret-0123456789abcdef")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from app.main import app
from app.core.config import settings
from app.db.session import get_db
from app.models import Base
from app.models.subscription import Subscription
from app.services.stripe_service import StripeGateway, get_stripe_gateway


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

TEST_USER_ID = "user_123"
TEST_USER_EMAIL = "worker@onsiteclub.test"
TEST_SESSION_ID = "sess_test_123"


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Session store and rate limiter backed by fakeredis"""
    return fakeredis.FakeStrictRedis(decode_responses=True)


@pytest.fixture(scope="function")
def mock_gateway():
    """Stripe gateway double; no request ever leaves the test process"""
    gateway = Mock(spec=StripeGateway)
    gateway.api_key = "sk_test_dummy"
    gateway.create_checkout_session.return_value = Mock(
        id="cs_test123",
        url="https://checkout.stripe.com/c/pay/cs_test123"
    )
    gateway.create_portal_session.return_value = Mock(
        url="https://billing.stripe.com/p/session/test"
    )
    gateway.retrieve_subscription.return_value = make_subscription_object()
    return gateway


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, mock_gateway) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, fakeredis and a mocked Stripe gateway"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: mock_gateway

    try:
        # Disable OpenTelemetry and real connections in tests
        with patch('app.main.initialize_otel', return_value=False), \
                patch('app.main.init_db'), \
                patch('app.main.instrument_sqlalchemy'), \
                patch('app.main.create_redis_client', return_value=mock_redis):
            with TestClient(app) as test_client:
                yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def logged_in_session(mock_redis) -> str:
    """Write a session for TEST_USER_ID the way the auth service does"""
    mock_redis.setex(
        f"session:{TEST_SESSION_ID}",
        2592000,
        json.dumps({"id": TEST_USER_ID, "email": TEST_USER_EMAIL})
    )
    return TEST_SESSION_ID


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, logged_in_session: str) -> TestClient:
    """Client carrying the session cookie of TEST_USER_ID"""
    client.cookies.set("session_id", logged_in_session)
    return client


@pytest.fixture(scope="function")
def active_subscription(db_session: Session) -> Subscription:
    """An active calculator subscription for TEST_USER_ID"""
    subscription = Subscription(
        user_id=TEST_USER_ID,
        app="calculator",
        stripe_customer_id="cus_test123",
        stripe_subscription_id="sub_test123",
        stripe_price_id="price_calculator",
        status="active",
        cancel_at_period_end=False,
    )
    db_session.add(subscription)
    db_session.commit()
    db_session.refresh(subscription)
    return subscription


# ============================================================================
# STRIPE PAYLOAD HELPERS
# ============================================================================

def make_subscription_object(
    subscription_id: str = "sub_test123",
    status: str = "active",
    customer: str = "cus_test123",
    metadata: dict = None,
    period_start: int = 1700000000,
    period_end: int = 1702592000,
    price_id: str = "price_calculator",
    cancel_at_period_end: bool = False,
) -> dict:
    """Stripe subscription object as a plain dict"""
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": metadata if metadata is not None else {},
        "items": {
            "object": "list",
            "data": [{"id": "si_test123", "price": {"id": price_id}}],
        },
    }


def make_event(event_type: str, data_object: dict, event_id: str = "evt_test123",
               created: int = 1700000100) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": data_object},
    }


def sign_payload(payload: str, secret: str = None, timestamp: int = None) -> str:
    """Build a stripe-signature header the way Stripe signs deliveries"""
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def signed_webhook(event: dict, secret: str = None):
    """Return (payload bytes, signature header) for an event"""
    payload = json.dumps(event)
    return payload.encode("utf-8"), sign_payload(payload, secret)
