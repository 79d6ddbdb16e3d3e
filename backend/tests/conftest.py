"""Shared pytest fixtures for test suite"""
import json
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace
from typing import Generator
from unittest.mock import Mock, patch

import pytest

# Settings are read at import time; point them at test doubles first
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("RESEND_API_KEY", "re_test_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

import fakeredis
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ipnledger.main import app
from ipnledger.db.session import get_db
from ipnledger.db import redis as redis_module
from ipnledger.models import (
    Base, IpnRawLog, Product, ProductPricing, ProductSetting, ProductDelivery
)
from ipnledger.services.ipn_handler import handle_ipn


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

# Resend test email addresses
# See: https://resend.com/docs/dashboard/emails/send-test-emails
RESEND_TEST_DELIVERED = "delivered@resend.dev"
RESEND_TEST_OWNER = "delivered+owner@resend.dev"


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function", autouse=True)
def mock_redis():
    """Mock Redis client using fakeredis (every test; nothing may reach a real Redis)"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)

    with patch.object(redis_module, '_client', fake_redis):
        yield fake_redis


@pytest.fixture(scope="function", autouse=True)
def mock_email_service():
    """Mock email service (Resend) to avoid sending actual emails"""
    with patch('ipnledger.services.email_service.resend') as mock_resend:
        mock_resend.Emails.send = Mock(return_value={"id": "email_test123"})
        yield mock_resend


@pytest.fixture(scope="function", autouse=True)
def mock_post_notification():
    """Mock outbound post notifications"""
    response = Mock(status_code=200)
    response.raise_for_status = Mock(return_value=None)
    with patch('ipnledger.services.delivery.httpx.post', return_value=response) as mock_post:
        yield mock_post


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        with patch('ipnledger.main.init_db'):
            with TestClient(app) as test_client:
                yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def catalog(db_session: Session) -> SimpleNamespace:
    """Product with a one-time pricing and two subscription plans, all delivered by email"""
    product = Product(
        user_id=42,
        owner_email=RESEND_TEST_OWNER,
        name="Growth Course",
        product_type=Product.TYPE_DIGITAL,
        owner_sale_notification=False,
    )
    db_session.add(product)
    db_session.flush()

    one_time = ProductPricing(product_id=product.id, price=Decimal("49.00"), price_currency="USD")
    monthly = ProductPricing(product_id=product.id, price=Decimal("19.00"), price_currency="USD",
                             is_subscription=True)
    yearly = ProductPricing(product_id=product.id, price=Decimal("190.00"), price_currency="USD",
                            is_subscription=True)
    db_session.add_all([one_time, monthly, yearly])
    db_session.flush()

    for pricing in (one_time, monthly, yearly):
        db_session.add(ProductDelivery(
            product_pricing_id=pricing.id,
            delivery_method=ProductDelivery.METHOD_EMAIL,
            email_subject="Your {product_name}",
            email_body="<p>Hi {first_name}, here is {product_name}.</p>",
        ))

    db_session.add_all([
        ProductSetting(product_id=product.id, product_pricing_id=monthly.id,
                       key="paypal_plan_id", value="P-MONTHLY"),
        ProductSetting(product_id=product.id, product_pricing_id=yearly.id,
                       key="paypal_plan_id", value="P-YEARLY"),
        ProductSetting(product_id=product.id, product_pricing_id=monthly.id,
                       key="stripe_price_id", value="price_monthly"),
        ProductSetting(product_id=product.id, product_pricing_id=yearly.id,
                       key="stripe_price_id", value="price_yearly"),
    ])
    db_session.commit()

    return SimpleNamespace(product=product, one_time=one_time, monthly=monthly, yearly=yearly)


def _now_ts() -> int:
    return int(datetime.now(timezone.utc).timestamp())


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@pytest.fixture(scope="function")
def stripe_payment_intent():
    """Builder for payment_intent.succeeded events"""
    def _build(amount=4900, currency="usd", charge_id="ch_test123", email=RESEND_TEST_DELIVERED,
               name="jane doe", livemode=True, created=None, event_id="evt_pi_1"):
        return {
            "id": event_id,
            "type": "payment_intent.succeeded",
            "livemode": livemode,
            "created": created or _now_ts(),
            "data": {"object": {
                "id": "pi_test123",
                "object": "payment_intent",
                "amount": amount,
                "amount_received": amount,
                "currency": currency,
                "customer": "cus_test123",
                "receipt_email": email,
                "latest_charge": {
                    "id": charge_id,
                    "billing_details": {
                        "name": name,
                        "email": email,
                        "address": {"line1": "1 Main St", "city": "Springfield",
                                    "country": "US", "postal_code": "12345"},
                    },
                },
                "metadata": {},
            }},
        }
    return _build


@pytest.fixture(scope="function")
def stripe_invoice():
    """Builder for invoice.payment_succeeded events"""
    def _build(billing_reason="subscription_create", subscription_id="sub_test123", charge_id="ch_inv_1",
               amount_paid=1900, price_id="price_monthly", email=RESEND_TEST_DELIVERED, paid_at=None,
               event_id="evt_inv_1", livemode=True):
        return {
            "id": event_id,
            "type": "invoice.payment_succeeded",
            "livemode": livemode,
            "created": paid_at or _now_ts(),
            "data": {"object": {
                "id": f"in_{charge_id}",
                "object": "invoice",
                "billing_reason": billing_reason,
                "subscription": subscription_id,
                "charge": charge_id,
                "customer": "cus_test123",
                "customer_email": email,
                "customer_name": "jane doe",
                "customer_address": {"line1": "1 Main St", "city": "Springfield",
                                     "country": "US", "postal_code": "12345"},
                "amount_paid": amount_paid,
                "currency": "usd",
                "status_transitions": {"paid_at": paid_at or _now_ts()},
                "lines": {"data": [{"amount": amount_paid, "price": {"id": price_id}, "metadata": {}}]},
            }},
        }
    return _build


@pytest.fixture(scope="function")
def stripe_charge_refunded():
    """Builder for charge.refunded events"""
    def _build(charge_id="ch_test123", amount=4900, amount_refunded=4900, event_id="evt_refund_1"):
        return {
            "id": event_id,
            "type": "charge.refunded",
            "livemode": True,
            "created": _now_ts(),
            "data": {"object": {
                "id": charge_id,
                "object": "charge",
                "amount": amount,
                "amount_refunded": amount_refunded,
                "currency": "usd",
                "refunded": amount_refunded >= amount,
            }},
        }
    return _build


@pytest.fixture(scope="function")
def paypal_event():
    """Builder for PayPal webhook events"""
    def _build(event_type, resource, event_id="WH-TEST-1", create_time=None):
        return {
            "id": event_id,
            "event_type": event_type,
            "create_time": create_time or _now_iso(),
            "resource": resource,
        }
    return _build


@pytest.fixture(scope="function")
def paypal_subscriber():
    return {
        "email_address": RESEND_TEST_DELIVERED,
        "payer_id": "PAYER123",
        "name": {"given_name": "JANE", "surname": "doe"},
        "shipping_address": {
            "name": {"full_name": "Jane Doe"},
            "address": {"address_line_1": "1 Main St", "admin_area_2": "Springfield",
                        "country_code": "US", "postal_code": "12345"},
        },
    }


@pytest.fixture(scope="function")
def run_ipn(db_session: Session):
    """Store a raw IPN log and run the handler on it"""
    def _run(processor, event, params=None):
        raw_log = IpnRawLog(
            processor=processor,
            transaction_type=event.get("type") or event.get("event_type") or "unknown",
            ipn_data=json.dumps(event),
            params=params or {},
        )
        db_session.add(raw_log)
        db_session.commit()
        return handle_ipn(raw_log, db_session)
    return _run
