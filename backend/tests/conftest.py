"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch

import pytest

# Settings are read at import time; point them at test values first
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from studiofinder.core.config import settings
from studiofinder.db.session import get_db
from studiofinder.main import app
from studiofinder.models import Base
from studiofinder.models.payment import Payment, PaymentStatus
from studiofinder.models.studio_profile import StudioProfile, StudioStatus
from studiofinder.models.subscription import MembershipStatus, Subscription
from studiofinder.models.user import User, UserRole, UserStatus
from studiofinder.schemas.events import IncomingEvent
from studiofinder.services.webhook_context import WebhookContext

TEST_WEBHOOK_SECRET = "whsec_test_secret"

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
def webhook_secret():
    """Pin the webhook secret so signed test payloads verify"""
    with patch.object(settings, "STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET):
        yield TEST_WEBHOOK_SECRET


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Session closed by the db_session fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Keep startup away from the real database and OTLP collector
        with patch("studiofinder.main.init_db"):
            with patch("studiofinder.main.initialize_otel", return_value=False):
                with TestClient(app) as test_client:
                    yield test_client
    finally:
        app.dependency_overrides.clear()


# ============================================================================
# STRIPE / RESEND DOUBLES
# ============================================================================

@pytest.fixture(scope="function", autouse=True)
def auto_mock_stripe():
    """Patch every outbound Stripe API call so no test reaches the network

    Yields a Mock whose attributes are the individual patched calls; tests set
    `return_value`/`side_effect` on them as needed.
    """
    with patch("stripe.checkout.Session.retrieve") as session_retrieve, \
            patch("stripe.Coupon.retrieve") as coupon_retrieve, \
            patch("stripe.Customer.retrieve") as customer_retrieve, \
            patch("stripe.Refund.list") as refund_list:
        session_retrieve.return_value = {
            "id": "cs_test123",
            "payment_intent": {"id": "pi_test123", "latest_charge": {"id": "ch_test123"}},
            "total_details": {"amount_discount": 0, "breakdown": {"discounts": []}},
        }
        coupon_retrieve.return_value = {"id": "coupon_test", "metadata": {}}
        customer_retrieve.return_value = {"id": "cus_test123", "email": "delivered@resend.dev"}
        refund_list.return_value = {"data": []}
        yield Mock(
            session_retrieve=session_retrieve,
            coupon_retrieve=coupon_retrieve,
            customer_retrieve=customer_retrieve,
            refund_list=refund_list,
        )


@pytest.fixture(scope="function")
def mock_notify():
    """Replace the notification dispatcher; returns True (sent) by default"""
    with patch("studiofinder.services.email_service.send_templated_email", return_value=True) as notify:
        yield notify


@pytest.fixture(scope="function")
def mock_resend():
    """Mock the Resend SDK used by the email service"""
    with patch("studiofinder.services.email_service.resend") as resend_module:
        resend_module.Emails.send = Mock(return_value={"id": "email_test123"})
        with patch.object(settings, "RESEND_API_KEY", "re_test_key"):
            yield resend_module


# ============================================================================
# DOMAIN FACTORIES
# ============================================================================

@pytest.fixture(scope="function")
def make_user(db_session: Session):
    """Factory for users; verified, PENDING members unless told otherwise"""
    counter = {"n": 0}

    def _make(email=None, email_verified=True, role=UserRole.USER, status=UserStatus.PENDING,
              display_name="Test Studio Owner"):
        counter["n"] += 1
        user = User(
            email=email or f"delivered+user{counter['n']}@resend.dev",
            display_name=display_name,
            role=role,
            status=status,
            email_verified=email_verified,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture(scope="function")
def test_user(make_user) -> User:
    """Verified user with no membership yet"""
    return make_user(email=RESEND_TEST_DELIVERED)


@pytest.fixture(scope="function")
def admin_user(make_user) -> User:
    return make_user(email="delivered+admin@resend.dev", role=UserRole.ADMIN, status=UserStatus.ACTIVE)


@pytest.fixture(scope="function")
def test_studio(db_session: Session, test_user: User) -> StudioProfile:
    studio = StudioProfile(user_id=test_user.id, name="Booth One", status=StudioStatus.INACTIVE)
    db_session.add(studio)
    db_session.commit()
    db_session.refresh(studio)
    return studio


@pytest.fixture(scope="function")
def make_membership(db_session: Session):
    def _make(user, period_end, status=MembershipStatus.ACTIVE, period_start=None, created_at=None):
        membership = Subscription(
            user_id=user.id,
            status=status,
            payment_method="STRIPE",
            current_period_start=period_start or datetime(2025, 1, 1, tzinfo=timezone.utc),
            current_period_end=period_end,
            created_at=created_at or datetime.now(timezone.utc),
        )
        db_session.add(membership)
        db_session.commit()
        db_session.refresh(membership)
        return membership

    return _make


@pytest.fixture(scope="function")
def make_payment(db_session: Session):
    def _make(user, amount=5000, payment_intent_id="pi_test123", checkout_session_id=None,
              status=PaymentStatus.SUCCEEDED, refunded_amount=0, metadata=None):
        payment = Payment(
            user_id=user.id,
            stripe_checkout_session_id=checkout_session_id,
            stripe_payment_intent_id=payment_intent_id,
            amount=amount,
            currency="gbp",
            status=status,
            refunded_amount=refunded_amount,
            payment_metadata=metadata if metadata is not None else {"purpose": "membership"},
        )
        db_session.add(payment)
        db_session.commit()
        db_session.refresh(payment)
        return payment

    return _make


# ============================================================================
# EVENT HELPERS
# ============================================================================

def build_event(event_type: str, obj: dict, event_id: str = "evt_test123") -> dict:
    """Stripe-shaped event envelope around a data object"""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


def sign_payload(payload: str, secret: str = TEST_WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Stripe-format signature header: t=<ts>,v1=<hex hmac-sha256 of "<ts>.<payload>">"""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def signed_request(event: dict, secret: str = TEST_WEBHOOK_SECRET):
    """(payload_bytes, signature_header) for an event"""
    payload = json.dumps(event)
    return payload.encode("utf-8"), sign_payload(payload, secret)


def checkout_session(user_id, session_id="cs_test123", amount=5000, purpose="membership",
                     payment_intent="pi_test123", mode="payment", **metadata) -> dict:
    """Minimal checkout.session.completed data object"""
    return {
        "id": session_id,
        "object": "checkout.session",
        "mode": mode,
        "amount_total": amount,
        "currency": "gbp",
        "payment_intent": payment_intent,
        "customer": "cus_test123",
        "customer_details": {"email": None},
        "total_details": {"amount_discount": 0},
        "metadata": {"user_id": str(user_id) if user_id is not None else None, "purpose": purpose, **metadata},
    }


@pytest.fixture(scope="function")
def make_context(db_session: Session):
    """WebhookContext around an in-memory event, bypassing signature verification"""
    def _make(event_type: str, obj: dict, event_id: str = "evt_test123", now=None):
        event = IncomingEvent(
            provider_event_id=event_id,
            type=event_type,
            purpose=(obj.get("metadata") or {}).get("purpose"),
            payload=obj,
            raw=build_event(event_type, obj, event_id),
        )
        return WebhookContext.for_event(event, db_session, now=now)

    return _make


# Resend test email addresses - use these in ALL tests to avoid fake addresses
# See: https://resend.com/docs/dashboard/emails/send-test-emails
RESEND_TEST_DELIVERED = "delivered@resend.dev"
