"""Shared test fixtures for the subsync test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, fake Stripe keys)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- gateway: MagicMock StripeGateway installed on the app
- seed_data: two users, one linked to a Stripe customer
- post_event: sign and POST an event envelope to /stripe/webhooks
"""

import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock

import pytest

from subsync import create_app
from subsync.extensions import db as _db
from subsync.models.subscription import FamilyMember, Subscription
from subsync.models.user import User
from subsync.services.stripe_gateway import StripeGateway

WEBHOOK_SECRET = "whsec_test_fake"


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header for a raw payload string."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type, obj, event_id="evt_test_001", previous_attributes=None,
               created=None):
    """Build a Stripe event envelope dict."""
    data = {"object": obj}
    if previous_attributes is not None:
        data["previous_attributes"] = previous_attributes
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "livemode": False,
        "data": data,
    }


def stripe_subscription(sub_id="sub_test_123", status="active", user_id=None,
                        customer="cus_test_123", plan="individual", tier="premium",
                        **overrides):
    """A Stripe subscription object as retrieve() returns it."""
    now = int(time.time())
    sub = {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": customer,
        "cancel_at_period_end": False,
        "cancel_at": None,
        "canceled_at": None,
        "trial_end": None,
        "current_period_start": now - 86400,
        "current_period_end": now + 29 * 86400,
        "metadata": {"userId": user_id, "plan": plan, "tier": tier},
        "items": {"data": [{"price": {"id": "price_test", "recurring": {"interval": "month"}}}]},
    }
    sub.update(overrides)
    return sub


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def gateway(app):
    """Replace the app's StripeGateway with a mock for the duration of a test."""
    original = app.extensions["stripe_gateway"]
    mock = MagicMock(spec=StripeGateway)
    mock.is_configured = True
    mock.retrieve_customer.return_value = {"id": "cus_test_123", "email": "alice@example.com"}
    app.extensions["stripe_gateway"] = mock
    yield mock
    app.extensions["stripe_gateway"] = original


@pytest.fixture
def seed_data(db_session):
    """Seed two users. Alice is linked to cus_test_123; Bob has no customer."""
    alice = User(
        email="alice@example.com",
        full_name="Alice Owner",
        stripe_customer_id="cus_test_123",
    )
    bob = User(email="bob@example.com", full_name="Bob Member")
    _db.session.add_all([alice, bob])
    _db.session.commit()

    # Store plain IDs so tests don't depend on instance state after commits.
    return {
        "alice": alice,
        "alice_id": alice.id,
        "bob": bob,
        "bob_id": bob.id,
    }


@pytest.fixture
def make_subscription(seed_data):
    """Factory that inserts a local Subscription row owned by Alice."""

    def _make(sub_id="sub_test_123", status="active", plan="individual",
              members=(), **fields):
        sub = Subscription(
            id=sub_id,
            user_id=seed_data["alice_id"],
            user_email="alice@example.com",
            stripe_customer_id="cus_test_123",
            plan=plan,
            tier="premium",
            status=status,
            **fields,
        )
        for position, user_id in enumerate(members):
            sub.family_members.append(FamilyMember(
                user_id=user_id, position=position, status=FamilyMember.ACTIVE,
            ))
        _db.session.add(sub)
        _db.session.commit()
        return sub

    return _make


@pytest.fixture
def post_event(client):
    """Sign and POST an event envelope to the webhook endpoint."""

    def _post(envelope, secret=WEBHOOK_SECRET, timestamp=None):
        payload = json.dumps(envelope)
        return client.post(
            "/stripe/webhooks",
            data=payload,
            content_type="application/json",
            headers={"Stripe-Signature": sign_payload(payload, secret, timestamp)},
        )

    return _post
