"""Payment recovery — grace-period bookkeeping after a failed payment.

A failed invoice opens a grace period on the subscription (if one is not
already running). The window length depends on why the payment failed.
Stripe's Smart Retries own the actual retry schedule; a successful payment
clears the grace period.
"""

import logging
from datetime import datetime, timedelta, timezone

from subsync.extensions import db

logger = logging.getLogger(__name__)

GRACE_PERIOD_CONFIG = {
    "payment_failed": {"duration_days": 7, "max_retries": 3},
    "subscription_expired": {"duration_days": 3, "max_retries": 1},
    "payment_method_expired": {"duration_days": 14, "max_retries": 5},
}


def determine_grace_period_type(invoice):
    """Pick the grace period flavour from the invoice's last error."""
    error = invoice.get("last_finalization_error") or {}
    code = error.get("code")
    if code == "expired_card" or error.get("decline_code") == "expired_card":
        return "payment_method_expired"
    if code == "subscription_expired":
        return "subscription_expired"
    return "payment_failed"


def start_grace_period(subscription, invoice, now=None):
    """Open a grace period on the subscription unless one is already running.

    Returns the grace period end datetime.
    """
    if subscription.grace_period_ends_at is not None:
        return subscription.grace_period_ends_at

    now = now or datetime.now(timezone.utc)
    period_type = determine_grace_period_type(invoice)
    config = GRACE_PERIOD_CONFIG[period_type]
    ends_at = now + timedelta(days=config["duration_days"])

    subscription.grace_period_type = period_type
    subscription.grace_period_ends_at = ends_at
    db.session.flush()

    logger.info(
        f"Grace period {period_type} started for {subscription.id}, "
        f"{config['duration_days']} days"
    )
    return ends_at


def clear_grace_period(subscription):
    """Clear any running grace period. Returns True if one was cleared."""
    if subscription.grace_period_ends_at is None and subscription.grace_period_type is None:
        return False
    subscription.grace_period_type = None
    subscription.grace_period_ends_at = None
    db.session.flush()
    logger.info(f"Grace period cleared for {subscription.id}")
    return True
