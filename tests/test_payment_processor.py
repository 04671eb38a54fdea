"""Tests for the payment processor (invoice.* events) and payment recovery.

Covers:
- payment_succeeded: payment record, past_due recovery, grace period cleared
- payment_failed: retry escalation, grace period start, notification copy
- payment_action_required and upcoming notifications
- invoice.finalized snapshots (stored once, never mutated)
- One-time invoices without a subscription
"""

import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_event
from subsync.extensions import db
from subsync.models.notification import Notification
from subsync.models.payment import InvoiceSnapshot, PaymentRecord
from subsync.models.subscription import Subscription
from subsync.services.events import WebhookEvent
from subsync.services.payment_processor import PaymentProcessor, invoice_subscription_id
from subsync.services.payment_recovery import (
    clear_grace_period,
    determine_grace_period_type,
    start_grace_period,
)


def _status(resp):
    return json.loads(resp.data)["status"]


def _invoice(**overrides):
    invoice = {
        "id": "in_test_001",
        "object": "invoice",
        "subscription": "sub_test_123",
        "customer": "cus_test_123",
        "amount_paid": 1999,
        "amount_due": 1999,
        "currency": "usd",
        "attempt_count": 1,
        "status": "open",
        "hosted_invoice_url": "https://invoice.stripe.com/i/test",
        "invoice_pdf": "https://pay.stripe.com/invoice/test/pdf",
        "next_payment_attempt": None,
        "period_start": 1767225600,
        "period_end": 1769904000,
    }
    invoice.update(overrides)
    return invoice


class TestInvoiceSubscriptionId:

    def test_plain_id(self):
        assert invoice_subscription_id({"subscription": "sub_1"}) == "sub_1"

    def test_expanded_object(self):
        assert invoice_subscription_id({"subscription": {"id": "sub_2"}}) == "sub_2"

    def test_parent_subscription_details(self):
        invoice = {
            "subscription": None,
            "parent": {"subscription_details": {"subscription": "sub_3"}},
        }
        assert invoice_subscription_id(invoice) == "sub_3"

    def test_no_subscription(self):
        assert invoice_subscription_id({"id": "in_1"}) is None


class TestPaymentSucceeded:

    def test_past_due_recovers_to_active(self, post_event, make_subscription, seed_data):
        make_subscription(
            status="past_due",
            grace_period_type="payment_failed",
            grace_period_ends_at=datetime.now(timezone.utc) + timedelta(days=5),
        )

        resp = post_event(make_event(
            "invoice.payment_succeeded",
            _invoice(status="paid", status_transitions={"paid_at": 1767225700}),
        ))

        assert _status(resp) == "Payment processed successfully"
        sub = db.session.get(Subscription, "sub_test_123")
        assert sub.status == "active"
        assert sub.grace_period_type is None
        assert sub.grace_period_ends_at is None

        record = PaymentRecord.query.one()
        assert record.status == PaymentRecord.SUCCEEDED
        assert record.amount == 1999
        assert record.invoice_id == "in_test_001"
        assert record.paid_at is not None

        note = Notification.query.filter_by(type="payment_succeeded").one()
        assert note.user_id == seed_data["alice_id"]
        assert "$19.99" in note.message

    def test_other_statuses_are_left_alone(self, post_event, make_subscription):
        make_subscription(status="unpaid")
        post_event(make_event("invoice.payment_succeeded", _invoice()))
        assert db.session.get(Subscription, "sub_test_123").status == "unpaid"

    def test_unknown_subscription_still_records_payment(self, post_event, seed_data):
        resp = post_event(make_event("invoice.payment_succeeded", _invoice()))

        assert _status(resp) == "Payment processed successfully"
        assert PaymentRecord.query.count() == 1
        assert Notification.query.count() == 0

    def test_one_time_payment(self, post_event, seed_data):
        resp = post_event(make_event(
            "invoice.payment_succeeded", _invoice(subscription=None)
        ))
        assert _status(resp) == "One-time payment processed"
        assert PaymentRecord.query.count() == 0


class TestPaymentFailed:

    @pytest.mark.parametrize("attempt,expected", [
        (1, "past_due"),
        (2, "past_due"),
        (3, "unpaid"),
        (4, "unpaid"),
    ])
    def test_retry_escalation(self, post_event, make_subscription, attempt, expected):
        make_subscription(status="active")
        resp = post_event(make_event(
            "invoice.payment_failed", _invoice(attempt_count=attempt)
        ))

        assert _status(resp) == "Payment failure handled"
        assert db.session.get(Subscription, "sub_test_123").status == expected

    def test_failure_records_attempt(self, post_event, make_subscription):
        make_subscription(status="active")
        post_event(make_event("invoice.payment_failed", _invoice(
            attempt_count=2,
            last_finalization_error={"message": "Your card was declined."},
        )))

        record = PaymentRecord.query.one()
        assert record.status == PaymentRecord.FAILED
        assert record.attempt_count == 2
        assert record.failure_reason == "Your card was declined."

    def test_notification_names_retry_timeframe(self, post_event, make_subscription):
        make_subscription(status="active")
        post_event(make_event("invoice.payment_failed", _invoice(
            attempt_count=2, next_payment_attempt=1798761600,
        )))

        note = Notification.query.filter_by(type="payment_failed").one()
        assert note.priority == "high"
        assert "We'll retry in 5 days" in note.message
        assert note.data["attemptCount"] == 2
        assert note.data["nextRetry"].startswith("2027-01-01")

    def test_terminal_attempt_notification(self, post_event, make_subscription):
        make_subscription(status="past_due")
        post_event(make_event("invoice.payment_failed", _invoice(attempt_count=3)))

        note = Notification.query.filter_by(type="payment_failed").one()
        assert "suspended" in note.message

    def test_starts_grace_period(self, post_event, make_subscription):
        make_subscription(status="active")
        post_event(make_event("invoice.payment_failed", _invoice(attempt_count=1)))

        sub = db.session.get(Subscription, "sub_test_123")
        assert sub.grace_period_type == "payment_failed"
        assert sub.grace_period_ends_at is not None

    def test_missing_subscription_is_a_failure(self, post_event, seed_data):
        resp = post_event(make_event("invoice.payment_failed", _invoice()))

        assert resp.status_code == 200
        assert _status(resp) == "failed"
        assert PaymentRecord.query.count() == 0

    def test_one_time_payment_failure(self, post_event, seed_data):
        resp = post_event(make_event("invoice.payment_failed", _invoice(subscription=None)))
        assert _status(resp) == "One-time payment failure handled"

    def test_threshold_is_configurable(self, app, make_subscription):
        make_subscription(status="active")
        processor = PaymentProcessor(unpaid_threshold=2)
        event = WebhookEvent.from_envelope(
            make_event("invoice.payment_failed", _invoice(attempt_count=2))
        )

        result = processor.process_event(event)

        assert result.success is True
        assert db.session.get(Subscription, "sub_test_123").status == "unpaid"


class TestPaymentNotifications:

    def test_action_required(self, post_event, make_subscription):
        make_subscription(status="active")
        resp = post_event(make_event("invoice.payment_action_required", _invoice()))

        assert _status(resp) == "Payment action notification sent"
        note = Notification.query.filter_by(type="payment_action_required").one()
        assert note.priority == "high"
        assert note.data["hostedInvoiceUrl"] == "https://invoice.stripe.com/i/test"
        assert db.session.get(Subscription, "sub_test_123").status == "active"

    def test_action_required_missing_subscription(self, post_event, seed_data):
        resp = post_event(make_event("invoice.payment_action_required", _invoice()))
        assert _status(resp) == "failed"

    def test_upcoming_days_until_payment(self, app, make_subscription):
        make_subscription(status="active")
        now = 1767225600
        processor = PaymentProcessor(clock=lambda: now)
        # 2.5 days out rounds up to 3.
        invoice = _invoice(next_payment_attempt=now + int(2.5 * 86400), amount_due=4999)
        event = WebhookEvent.from_envelope(make_event("invoice.upcoming", invoice))

        result = processor.process_event(event)

        assert result.message == "Upcoming invoice notification sent"
        note = Notification.query.filter_by(type="upcoming_payment").one()
        assert note.data["daysUntilPayment"] == 3
        assert note.message == (
            "Your next payment of $49.99 will be processed in 3 days."
        )

    def test_upcoming_over_http(self, post_event, make_subscription):
        make_subscription(status="active")
        invoice = _invoice(next_payment_attempt=int(time.time()) + 7 * 86400)
        resp = post_event(make_event("invoice.upcoming", invoice))
        assert _status(resp) == "Upcoming invoice notification sent"

    def test_upcoming_falls_back_to_period_end(self, app, make_subscription):
        """send_invoice collection leaves next_payment_attempt empty."""
        make_subscription(status="active")
        now = 1767225600
        processor = PaymentProcessor(clock=lambda: now)
        invoice = _invoice(next_payment_attempt=None, period_end=now + 10 * 86400)
        event = WebhookEvent.from_envelope(make_event("invoice.upcoming", invoice))

        result = processor.process_event(event)

        assert result.message == "Upcoming invoice notification sent"
        note = Notification.query.filter_by(type="upcoming_payment").one()
        assert note.data["daysUntilPayment"] == 10
        assert "processed in 10 days" in note.message

    def test_upcoming_without_any_date_skips_notification(self, post_event, make_subscription):
        make_subscription(status="active")
        resp = post_event(make_event(
            "invoice.upcoming", _invoice(next_payment_attempt=None, period_end=None)
        ))

        assert _status(resp) == "Upcoming invoice handled"
        assert Notification.query.count() == 0


class TestInvoiceFinalized:

    def test_snapshot_stored(self, post_event, make_subscription):
        make_subscription(status="active")
        resp = post_event(make_event("invoice.finalized", _invoice()))

        assert _status(resp) == "Invoice finalized and stored"
        snap = db.session.get(InvoiceSnapshot, "in_test_001")
        assert snap.subscription_id == "sub_test_123"
        assert snap.amount == 1999
        assert snap.status == "open"
        assert snap.invoice_pdf == "https://pay.stripe.com/invoice/test/pdf"
        assert snap.period_start is not None

    def test_existing_snapshot_is_not_mutated(self, post_event, make_subscription):
        make_subscription(status="active")
        post_event(make_event("invoice.finalized", _invoice(), event_id="evt_fin_1"))
        resp = post_event(make_event(
            "invoice.finalized", _invoice(amount_due=5000, status="paid"),
            event_id="evt_fin_2",
        ))

        assert _status(resp) == "Invoice already stored"
        snap = db.session.get(InvoiceSnapshot, "in_test_001")
        assert snap.amount == 1999
        assert snap.status == "open"
        assert InvoiceSnapshot.query.count() == 1

    def test_one_time_invoice_not_stored(self, post_event, seed_data):
        resp = post_event(make_event("invoice.finalized", _invoice(subscription=None)))
        assert _status(resp) == "Invoice finalized"
        assert InvoiceSnapshot.query.count() == 0


class TestGracePeriod:

    def test_grace_period_type_from_error(self):
        assert determine_grace_period_type({}) == "payment_failed"
        assert determine_grace_period_type(
            {"last_finalization_error": {"code": "expired_card"}}
        ) == "payment_method_expired"
        assert determine_grace_period_type(
            {"last_finalization_error": {"code": "subscription_expired"}}
        ) == "subscription_expired"

    def test_window_lengths(self, app, make_subscription):
        sub = make_subscription(status="past_due")
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)

        ends = start_grace_period(
            sub, {"last_finalization_error": {"code": "expired_card"}}, now=now
        )

        assert ends == now + timedelta(days=14)
        assert sub.grace_period_type == "payment_method_expired"

    def test_running_grace_period_is_not_restarted(self, app, make_subscription):
        sub = make_subscription(status="past_due")
        first = datetime(2026, 1, 1, tzinfo=timezone.utc)
        start_grace_period(sub, {}, now=first)

        ends = start_grace_period(sub, {}, now=first + timedelta(days=3))

        assert ends == first + timedelta(days=7)

    def test_clear(self, app, make_subscription):
        sub = make_subscription(status="past_due")
        start_grace_period(sub, {})

        assert clear_grace_period(sub) is True
        assert sub.grace_period_ends_at is None
        assert clear_grace_period(sub) is False
