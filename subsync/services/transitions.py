"""Subscription state transitions as pure functions.

Nothing in this module reads or writes the database. Each planner takes the
facts a handler has gathered and returns a Transition: the status to write
(or None to leave it alone) plus the notifications that should follow.
Processors apply the status through subscription_service and hand the
effects to notification_service.apply_effects().
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from subsync.models.subscription import SubscriptionStatus

MS_PER_DAY = 86_400_000

# Stripe subscription.status -> internal status. Every documented Stripe
# status has exactly one entry.
STRIPE_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.INCOMPLETE_EXPIRED,
    "paused": SubscriptionStatus.PAUSED,
}

# New status -> (title, message) for subscription.updated status changes.
STATUS_CHANGE_NOTIFICATIONS = {
    SubscriptionStatus.PAST_DUE: (
        "Payment failed",
        "We couldn't process your payment. Please update your payment method to continue.",
    ),
    SubscriptionStatus.UNPAID: (
        "Subscription suspended",
        "Your subscription has been suspended due to payment issues. "
        "Please update your payment method.",
    ),
    SubscriptionStatus.ACTIVE: (
        "Subscription reactivated",
        "Your subscription is now active again. Welcome back!",
    ),
}

RETRY_TIMEFRAMES = {1: "3 days", 2: "5 days", 3: "7 days"}

CURRENCY_SYMBOLS = {"usd": "$", "eur": "€", "gbp": "£", "cad": "CA$", "aud": "A$"}


@dataclass(frozen=True)
class NotificationEffect:
    user_id: str
    type: str
    title: str
    message: str
    data: dict = field(default_factory=dict)
    priority: str = "normal"


@dataclass
class Transition:
    status: Optional[SubscriptionStatus] = None
    effects: List[NotificationEffect] = field(default_factory=list)
    clear_grace_period: bool = False


def map_subscription_status(stripe_status):
    """Map a Stripe subscription status string to SubscriptionStatus.

    Raises ValueError for a status Stripe has not documented, so an unknown
    value is never silently written as some other status.
    """
    try:
        return STRIPE_STATUS_MAP[stripe_status]
    except KeyError:
        raise ValueError(f"Unknown Stripe subscription status: {stripe_status!r}")


def format_amount(amount_in_cents, currency):
    """Format minor units for display, e.g. (1999, "usd") -> "$19.99"."""
    amount = (amount_in_cents or 0) / 100
    currency = (currency or "usd").lower()
    symbol = CURRENCY_SYMBOLS.get(currency)
    if symbol:
        return f"{symbol}{amount:,.2f}"
    return f"{amount:,.2f} {currency.upper()}"


def retry_timeframe(attempt_count):
    return RETRY_TIMEFRAMES.get(attempt_count, "a few days")


def escalated_status(attempt_count, unpaid_threshold=3):
    """Retry escalation: the threshold-th failed attempt makes a sub unpaid."""
    if (attempt_count or 0) >= unpaid_threshold:
        return SubscriptionStatus.UNPAID
    return SubscriptionStatus.PAST_DUE


def days_until(next_attempt_unix, now_ms):
    """Whole days until a unix timestamp, rounded up."""
    return math.ceil(((next_attempt_unix or 0) * 1000 - now_ms) / MS_PER_DAY)


def _iso_from_unix(ts):
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


# ──────────────────────────────────────────────
# Subscription lifecycle
# ──────────────────────────────────────────────

def plan_status_change(user_id, subscription_id, old_status, new_status):
    """Notification for a provider-side status change, if it matters to the user."""
    try:
        new = SubscriptionStatus(new_status)
    except ValueError:
        return Transition()
    copy = STATUS_CHANGE_NOTIFICATIONS.get(new)
    if not copy:
        return Transition()
    title, message = copy
    return Transition(effects=[NotificationEffect(
        user_id=user_id,
        type="subscription_status_change",
        title=title,
        message=message,
        data={
            "subscriptionId": subscription_id,
            "oldStatus": old_status,
            "newStatus": new.value,
        },
    )])


def plan_cancellation_change(user_id, subscription_id, cancel_at_period_end,
                             current_period_end=None):
    """Notification for cancel_at_period_end being toggled."""
    if cancel_at_period_end:
        if current_period_end:
            when = f"on {current_period_end.strftime('%B %d, %Y')}"
            cancel_date = current_period_end.isoformat()
        else:
            when = "soon"
            cancel_date = None
        effect = NotificationEffect(
            user_id=user_id,
            type="subscription_cancellation_scheduled",
            title="Subscription cancellation scheduled",
            message=(
                "Your subscription will be canceled at the end of the current "
                f"billing period {when}."
            ),
            data={"subscriptionId": subscription_id, "cancelDate": cancel_date},
        )
    else:
        effect = NotificationEffect(
            user_id=user_id,
            type="subscription_cancellation_reversed",
            title="Subscription reactivated",
            message=(
                "Your subscription cancellation has been reversed. "
                "Your subscription will continue as normal."
            ),
            data={"subscriptionId": subscription_id},
        )
    return Transition(effects=[effect])


def plan_trial_ending(user_id, subscription_id, trial_end_unix):
    return Transition(effects=[NotificationEffect(
        user_id=user_id,
        type="trial_ending",
        title="Your trial is ending soon",
        message=(
            "Your free trial will end in 3 days. Add a payment method to "
            "continue enjoying premium features."
        ),
        data={"subscriptionId": subscription_id, "trialEndDate": trial_end_unix},
    )])


def plan_deletion():
    """subscription.deleted is always a local override to canceled."""
    return Transition(status=SubscriptionStatus.CANCELED)


def plan_pause():
    return Transition(status=SubscriptionStatus.PAUSED)


def plan_resume(stripe_status):
    return Transition(status=map_subscription_status(stripe_status))


# ──────────────────────────────────────────────
# Invoice lifecycle
# ──────────────────────────────────────────────

def plan_payment_succeeded(current_status, user_id, invoice):
    """past_due recovers to active; the grace period ends either way."""
    status = None
    if current_status == SubscriptionStatus.PAST_DUE.value:
        status = SubscriptionStatus.ACTIVE
    amount = invoice.get("amount_paid") or 0
    currency = invoice.get("currency")
    return Transition(
        status=status,
        clear_grace_period=True,
        effects=[NotificationEffect(
            user_id=user_id,
            type="payment_succeeded",
            title="Payment successful",
            message=(
                f"Your payment of {format_amount(amount, currency)} has been "
                "processed successfully."
            ),
            data={
                "invoiceId": invoice.get("id"),
                "amount": amount,
                "currency": currency,
            },
        )],
    )


def plan_payment_failed(user_id, invoice, unpaid_threshold=3):
    attempt_count = invoice.get("attempt_count") or 0
    status = escalated_status(attempt_count, unpaid_threshold)
    if status == SubscriptionStatus.UNPAID:
        message = (
            "Your subscription has been suspended due to payment failures. "
            "Please update your payment method."
        )
    else:
        message = (
            f"Payment failed. We'll retry in {retry_timeframe(attempt_count)}. "
            "Please ensure your payment method is valid."
        )
    return Transition(
        status=status,
        effects=[NotificationEffect(
            user_id=user_id,
            type="payment_failed",
            title="Payment failed",
            message=message,
            data={
                "invoiceId": invoice.get("id"),
                "amount": invoice.get("amount_due"),
                "currency": invoice.get("currency"),
                "attemptCount": attempt_count,
                "nextRetry": _iso_from_unix(invoice.get("next_payment_attempt")),
            },
            priority="high",
        )],
    )


def plan_payment_action_required(user_id, invoice):
    return Transition(effects=[NotificationEffect(
        user_id=user_id,
        type="payment_action_required",
        title="Action required for payment",
        message=(
            "Your payment requires additional verification. Please complete "
            "the payment process to continue your subscription."
        ),
        data={
            "invoiceId": invoice.get("id"),
            "hostedInvoiceUrl": invoice.get("hosted_invoice_url"),
        },
        priority="high",
    )])


def plan_upcoming_invoice(user_id, invoice, now_ms):
    """Upcoming charge notice.

    send_invoice collection has no next_payment_attempt; the period end is
    used instead. With neither there is no date to announce.
    """
    next_attempt = invoice.get("next_payment_attempt") or invoice.get("period_end")
    if not next_attempt:
        return Transition()
    days = days_until(next_attempt, now_ms)
    amount = invoice.get("amount_due") or 0
    currency = invoice.get("currency")
    return Transition(effects=[NotificationEffect(
        user_id=user_id,
        type="upcoming_payment",
        title="Upcoming payment",
        message=(
            f"Your next payment of {format_amount(amount, currency)} will be "
            f"processed in {days} days."
        ),
        data={
            "invoiceId": invoice.get("id"),
            "amount": amount,
            "currency": currency,
            "paymentDate": _iso_from_unix(next_attempt),
            "daysUntilPayment": days,
        },
    )])


# ──────────────────────────────────────────────
# Payment methods
# ──────────────────────────────────────────────

def plan_payment_method_added(user_id, payment_method):
    card = payment_method.get("card") or {}
    pm_type = payment_method.get("type") or "payment method"
    last4 = card.get("last4")
    return Transition(effects=[NotificationEffect(
        user_id=user_id,
        type="payment_method_added",
        title="Payment method added",
        message=f"A new {pm_type} ending in {last4} has been added to your account.",
        data={
            "paymentMethodId": payment_method.get("id"),
            "type": payment_method.get("type"),
            "last4": last4,
        },
    )])
