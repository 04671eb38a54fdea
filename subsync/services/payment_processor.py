"""Payment processor — invoice.* events.

Records payment attempts, applies the retry-escalation rule on failures,
recovers past_due subscriptions on success and keeps an immutable snapshot
of finalized invoices. Invoices without a subscription are one-time
payments and are only logged.
"""

import logging
import time

from subsync.errors import SubscriptionNotFoundError
from subsync.extensions import db
from subsync.models.payment import InvoiceSnapshot, PaymentRecord
from subsync.services import payment_recovery, subscription_service
from subsync.services.events import ProcessorResult, run_handler
from subsync.services.notification_service import apply_effects
from subsync.services.subscription_service import customer_id_of, from_unix
from subsync.services.transitions import (
    plan_payment_action_required,
    plan_payment_failed,
    plan_payment_succeeded,
    plan_upcoming_invoice,
)

logger = logging.getLogger(__name__)


def invoice_subscription_id(invoice):
    """Extract the subscription ID from an invoice.

    Older API versions put it at invoice.subscription (an ID or an expanded
    object); newer ones nest it under parent.subscription_details.
    """
    sub = invoice.get("subscription")
    if isinstance(sub, dict):
        sub = sub.get("id")
    if sub:
        return sub
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    sub = details.get("subscription")
    if isinstance(sub, dict):
        sub = sub.get("id")
    return sub


def create_payment_record(invoice, subscription_id, status, amount,
                          paid_at=None, failure_reason=None, attempt_count=None):
    """Append a PaymentRecord row. Rows are never updated afterwards."""
    record = PaymentRecord(
        invoice_id=invoice.get("id"),
        subscription_id=subscription_id,
        customer_id=customer_id_of(invoice) or "",
        amount=amount or 0,
        currency=invoice.get("currency"),
        status=status,
        failure_reason=failure_reason,
        attempt_count=attempt_count,
        paid_at=paid_at,
    )
    db.session.add(record)
    db.session.flush()
    return record


class PaymentProcessor:
    """Handles invoice lifecycle events."""

    def __init__(self, unpaid_threshold=3, clock=time.time):
        self.unpaid_threshold = unpaid_threshold
        self._clock = clock
        self._handlers = {
            "invoice.payment_succeeded": self._handle_payment_succeeded,
            "invoice.payment_failed": self._handle_payment_failed,
            "invoice.payment_action_required": self._handle_payment_action_required,
            "invoice.upcoming": self._handle_upcoming,
            "invoice.finalized": self._handle_finalized,
        }

    def process_event(self, event):
        return run_handler(self._handlers, event, "payment")

    def _require_subscription(self, subscription_id):
        sub = subscription_service.get_subscription(subscription_id)
        if sub is None:
            logger.error(f"Subscription not found for invoice event: {subscription_id}")
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        return sub

    def _handle_payment_succeeded(self, event):
        invoice = event.payload
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info(f"One-time payment {invoice.get('id')} succeeded, nothing to sync")
            return ProcessorResult.ok("One-time payment processed")

        paid_at = from_unix((invoice.get("status_transitions") or {}).get("paid_at"))
        create_payment_record(
            invoice,
            subscription_id,
            status=PaymentRecord.SUCCEEDED,
            amount=invoice.get("amount_paid"),
            paid_at=paid_at or subscription_service._utcnow(),
        )

        sub = subscription_service.get_subscription(subscription_id)
        if sub:
            transition = plan_payment_succeeded(sub.status, sub.user_id, invoice)
            if transition.status is not None:
                subscription_service.update_subscription(sub.id, status=transition.status)
            if transition.clear_grace_period:
                payment_recovery.clear_grace_period(sub)
            apply_effects(transition.effects)
        else:
            logger.warning(f"Payment succeeded for unknown subscription {subscription_id}")

        logger.info(
            f"Payment succeeded: invoice={invoice.get('id')} "
            f"sub={subscription_id} amount={invoice.get('amount_paid')}"
        )
        return ProcessorResult.ok("Payment processed successfully")

    def _handle_payment_failed(self, event):
        invoice = event.payload
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info(f"One-time payment {invoice.get('id')} failed, nothing to sync")
            return ProcessorResult.ok("One-time payment failure handled")

        attempt_count = invoice.get("attempt_count") or 0
        create_payment_record(
            invoice,
            subscription_id,
            status=PaymentRecord.FAILED,
            amount=invoice.get("amount_due"),
            failure_reason=(invoice.get("last_finalization_error") or {}).get("message"),
            attempt_count=attempt_count,
        )

        sub = self._require_subscription(subscription_id)
        transition = plan_payment_failed(sub.user_id, invoice, self.unpaid_threshold)
        subscription_service.update_subscription(sub.id, status=transition.status)
        payment_recovery.start_grace_period(sub, invoice)
        apply_effects(transition.effects)

        logger.warning(
            f"Payment failed: invoice={invoice.get('id')} sub={subscription_id} "
            f"attempt={attempt_count} -> {transition.status.value}"
        )
        return ProcessorResult.ok("Payment failure handled")

    def _handle_payment_action_required(self, event):
        invoice = event.payload
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return ProcessorResult.ok("Payment action required handled")

        sub = self._require_subscription(subscription_id)
        apply_effects(plan_payment_action_required(sub.user_id, invoice).effects)
        logger.info(f"Payment action required: invoice={invoice.get('id')} sub={subscription_id}")
        return ProcessorResult.ok("Payment action notification sent")

    def _handle_upcoming(self, event):
        invoice = event.payload
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return ProcessorResult.ok("Upcoming invoice handled")

        sub = self._require_subscription(subscription_id)
        now_ms = self._clock() * 1000
        transition = plan_upcoming_invoice(sub.user_id, invoice, now_ms)
        if not transition.effects:
            logger.info(f"Upcoming invoice {invoice.get('id')} has no payment date, skipping")
            return ProcessorResult.ok("Upcoming invoice handled")
        apply_effects(transition.effects)
        logger.info(f"Upcoming invoice notification sent for {subscription_id}")
        return ProcessorResult.ok("Upcoming invoice notification sent")

    def _handle_finalized(self, event):
        """Store an immutable snapshot of the invoice for history."""
        invoice = event.payload
        invoice_id = invoice.get("id")
        subscription_id = invoice_subscription_id(invoice)
        logger.info(f"Invoice finalized: {invoice_id} sub={subscription_id}")

        if not subscription_id:
            return ProcessorResult.ok("Invoice finalized")

        if db.session.get(InvoiceSnapshot, invoice_id):
            return ProcessorResult.ok("Invoice already stored")

        db.session.add(InvoiceSnapshot(
            invoice_id=invoice_id,
            subscription_id=subscription_id,
            customer_id=customer_id_of(invoice),
            amount=invoice.get("amount_due") or 0,
            currency=invoice.get("currency"),
            status=invoice.get("status"),
            hosted_invoice_url=invoice.get("hosted_invoice_url"),
            invoice_pdf=invoice.get("invoice_pdf"),
            period_start=from_unix(invoice.get("period_start")),
            period_end=from_unix(invoice.get("period_end")),
        ))
        db.session.flush()
        return ProcessorResult.ok("Invoice finalized and stored")
