"""Subscription service — DB sync helpers and the reconciliation step.

Responsible for:
- Creating and updating Subscription rows (the single write path for status)
- sync_from_stripe: re-fetching authoritative state from Stripe and merging
  it into the local record (used by webhook handlers instead of trusting the
  pushed payload)
- Family member removal and invitation staging
- Subscription audit entries

Nothing here commits. Callers own the transaction boundary; the webhook
handler commits once per event.
"""

import logging
from datetime import datetime, timezone

import stripe
from sqlalchemy.exc import IntegrityError

from subsync.errors import (
    FamilyMemberNotFoundError,
    MissingMetadataError,
    ReconciliationError,
    SubscriptionNotFoundError,
)
from subsync.extensions import db
from subsync.models.audit import SubscriptionAuditEvent
from subsync.models.subscription import (
    FamilyMember,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    UpdateSource,
)
from subsync.models.user import User
from subsync.services.transitions import map_subscription_status

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


def from_unix(ts):
    """Convert a unix timestamp to an aware datetime (None stays None)."""
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def extract_period_bounds(sub_data):
    """Extract (current_period_start, current_period_end) from a Stripe subscription.

    In newer Stripe API versions the period bounds moved from the
    subscription top level to items.data[0]. This helper checks both.
    """
    start = sub_data.get("current_period_start")
    end = sub_data.get("current_period_end")

    if not start or not end:
        items = sub_data.get("items") or {}
        data = items.get("data") or []
        if data:
            start = start or data[0].get("current_period_start")
            end = end or data[0].get("current_period_end")

    return from_unix(start), from_unix(end)


def extract_interval(sub_data):
    """Billing interval (month | year) from the first subscription item."""
    items = (sub_data.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    recurring = price.get("recurring") or {}
    interval = recurring.get("interval")
    return interval if interval in ("month", "year") else None


def customer_id_of(obj):
    """Stripe customer fields are either an ID or an expanded object."""
    customer = obj.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer


def log_subscription_audit(subscription_id, action, metadata=None, performed_by="system"):
    """Log a subscription audit event."""
    event = SubscriptionAuditEvent(
        subscription_id=subscription_id,
        action=action,
        performed_by=performed_by,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()


def _valid_plan(plan):
    if plan in (SubscriptionPlan.INDIVIDUAL.value, SubscriptionPlan.FAMILY.value):
        return plan
    return None


def get_subscription(subscription_id):
    """Return the local Subscription or None."""
    if not subscription_id:
        return None
    return db.session.get(Subscription, subscription_id)


def get_user_id_for_customer(stripe_customer_id):
    """Look up the internal user linked to a Stripe customer ID.

    Returns user_id string or None.
    """
    if not stripe_customer_id:
        return None
    user = User.query.filter_by(stripe_customer_id=stripe_customer_id).first()
    if user:
        return user.id
    sub = Subscription.query.filter_by(stripe_customer_id=stripe_customer_id).first()
    if sub:
        return sub.user_id
    return None


def create_subscription(user_id, stripe_subscription_id, stripe_customer_id,
                        status, plan=None, tier=None, interval=None,
                        current_period_start=None, current_period_end=None,
                        trial_end=None, user_email=None,
                        cancel_at_period_end=False,
                        source=UpdateSource.WEBHOOK):
    """Create a Subscription row.

    Creation is idempotent: if a row with this ID already exists (including
    one inserted by a concurrent request between our check and our insert)
    the existing row is returned unchanged.

    Returns (subscription, created).
    """
    existing = get_subscription(stripe_subscription_id)
    if existing:
        return existing, False

    if db.session.get(User, user_id) is None:
        raise LookupError(f"User {user_id} not found")

    status = SubscriptionStatus(status)
    if isinstance(plan, SubscriptionPlan):
        plan = plan.value
    if _valid_plan(plan) is None:
        if plan:
            logger.warning(f"Unknown plan {plan!r} on {stripe_subscription_id}, using individual")
        plan = SubscriptionPlan.INDIVIDUAL.value

    sub = Subscription(
        id=stripe_subscription_id,
        user_id=user_id,
        user_email=user_email,
        stripe_customer_id=stripe_customer_id,
        plan=plan,
        tier=tier,
        interval=interval,
        status=status.value,
        current_period_start=current_period_start,
        current_period_end=current_period_end,
        trial_end=trial_end,
        cancel_at_period_end=bool(cancel_at_period_end),
        last_update_source=UpdateSource(source).value,
    )

    db.session.add(sub)
    try:
        db.session.flush()
    except IntegrityError:
        # Nothing else has been written for this event yet.
        db.session.rollback()
        logger.info(f"Subscription {stripe_subscription_id} created concurrently, skipping")
        return get_subscription(stripe_subscription_id), False

    log_subscription_audit(stripe_subscription_id, "subscription.created", {
        "plan": sub.plan,
        "tier": tier,
        "status": status.value,
    })
    logger.info(
        f"Created subscription {stripe_subscription_id} for user {user_id} "
        f"({sub.plan}/{tier}, {status.value})"
    )
    return sub, True


_UNSET = object()


def update_subscription(subscription_id, status=None, cancel_at_period_end=None,
                        canceled_at=None, cancel_reason=None,
                        current_period_start=None, current_period_end=None,
                        trial_end=_UNSET, plan=None, tier=None, interval=None,
                        source=UpdateSource.WEBHOOK, performed_by="system"):
    """Apply a partial update to a Subscription.

    Only arguments that are not None are written. A status change is
    audited; moving to canceled stamps canceled_at (now, unless given).

    Raises SubscriptionNotFoundError if the row does not exist.
    Returns the updated Subscription.
    """
    sub = get_subscription(subscription_id)
    if not sub:
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")

    changes = {}

    if status is not None:
        status = SubscriptionStatus(status)
        if status.value != sub.status:
            changes["status"] = {"from": sub.status, "to": status.value}
            sub.status = status.value
            if status == SubscriptionStatus.CANCELED:
                sub.canceled_at = canceled_at or _utcnow()
                sub.cancel_reason = cancel_reason

    if canceled_at is not None and sub.canceled_at is None:
        sub.canceled_at = canceled_at
    if cancel_at_period_end is not None:
        sub.cancel_at_period_end = bool(cancel_at_period_end)
    if current_period_start is not None:
        sub.current_period_start = current_period_start
    if current_period_end is not None:
        sub.current_period_end = current_period_end
    if trial_end is not _UNSET:
        sub.trial_end = trial_end
    if plan is not None and plan != sub.plan:
        changes["plan"] = {"from": sub.plan, "to": plan}
        sub.plan = plan
    if tier is not None and tier != sub.tier:
        changes["tier"] = {"from": sub.tier, "to": tier}
        sub.tier = tier
    if interval is not None:
        sub.interval = interval

    sub.last_update_source = UpdateSource(source).value
    db.session.flush()

    if changes:
        log_subscription_audit(sub.id, "subscription.updated", {
            "changes": changes,
            "source": sub.last_update_source,
        }, performed_by=performed_by)

    return sub


def sync_from_stripe(subscription_id, gateway):
    """Reconcile: re-fetch the subscription from Stripe and merge it locally.

    Handlers for updated/deleted events call this instead of applying the
    pushed payload, so the stored status reflects what Stripe says now
    rather than what a possibly stale event said.

    Creates the local row if it does not exist yet (the created event may
    simply not have arrived). Raises ReconciliationError if Stripe cannot be
    reached; the local record is left untouched in that case.
    """
    try:
        stripe_sub = gateway.retrieve_subscription(subscription_id)
    except stripe.StripeError as e:
        logger.error(f"Failed to sync subscription {subscription_id} from Stripe: {e}")
        raise ReconciliationError(subscription_id, e) from e

    status = map_subscription_status(stripe_sub.get("status"))
    period_start, period_end = extract_period_bounds(stripe_sub)
    metadata = stripe_sub.get("metadata") or {}

    local = get_subscription(subscription_id)
    if local is None:
        user_id = metadata.get("userId")
        if not user_id:
            raise MissingMetadataError(
                f"Missing userId in Stripe metadata for {subscription_id}"
            )
        stripe_customer_id = customer_id_of(stripe_sub)
        customer = gateway.retrieve_customer(stripe_customer_id) if stripe_customer_id else {}
        local, _ = create_subscription(
            user_id=user_id,
            stripe_subscription_id=subscription_id,
            stripe_customer_id=stripe_customer_id,
            status=status,
            plan=metadata.get("plan") or SubscriptionPlan.INDIVIDUAL.value,
            tier=metadata.get("tier"),
            interval=extract_interval(stripe_sub),
            current_period_start=period_start,
            current_period_end=period_end,
            trial_end=from_unix(stripe_sub.get("trial_end")),
            user_email=(customer or {}).get("email"),
            cancel_at_period_end=stripe_sub.get("cancel_at_period_end", False),
            source=UpdateSource.RECONCILIATION,
        )
        return local

    local = update_subscription(
        subscription_id,
        status=status,
        cancel_at_period_end=(
            stripe_sub.get("cancel_at_period_end", False)
            or stripe_sub.get("cancel_at") is not None
        ),
        canceled_at=from_unix(stripe_sub.get("canceled_at")),
        current_period_start=period_start,
        current_period_end=period_end,
        trial_end=from_unix(stripe_sub.get("trial_end")),
        plan=_valid_plan(metadata.get("plan")),
        tier=metadata.get("tier"),
        interval=extract_interval(stripe_sub),
        source=UpdateSource.RECONCILIATION,
    )
    local.needs_reconciliation = False
    db.session.flush()
    logger.info(f"Synced subscription {subscription_id} from Stripe ({status.value})")
    return local


def remove_family_member(subscription_id, member_id, removed_by, reason):
    """Mark an active family member as removed.

    Raises SubscriptionNotFoundError / FamilyMemberNotFoundError.
    """
    sub = get_subscription(subscription_id)
    if not sub:
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")

    member = FamilyMember.query.filter_by(
        subscription_id=subscription_id,
        user_id=member_id,
        status=FamilyMember.ACTIVE,
    ).first()
    if not member:
        raise FamilyMemberNotFoundError(
            f"Family member {member_id} not found on {subscription_id}"
        )

    now = _utcnow()
    member.status = FamilyMember.REMOVED
    member.removed_at = now
    member.removed_by = removed_by
    member.removal_reason = reason

    user = db.session.get(User, member_id)
    if user:
        user.family_plan_owner_id = None
        user.family_plan_removed_at = now

    db.session.flush()

    log_subscription_audit(subscription_id, "family_member.removed", {
        "member_id": member_id,
        "reason": reason,
    }, performed_by=removed_by)
    logger.info(f"Removed family member {member_id} from {subscription_id}")


def stage_family_invitations(subscription_id, member_ids):
    """Record invited family members on an existing family subscription.

    Members already on the subscription are left alone. Returns the number
    of new invitation rows.
    """
    sub = get_subscription(subscription_id)
    if not sub or not sub.is_family:
        return 0

    known = {m.user_id for m in sub.family_members}
    position = max((m.position for m in sub.family_members), default=-1)
    staged = 0
    for member_id in member_ids:
        if not member_id or member_id in known:
            continue
        position += 1
        sub.family_members.append(FamilyMember(
            user_id=member_id,
            position=position,
            status=FamilyMember.INVITED,
        ))
        known.add(member_id)
        staged += 1

    db.session.flush()
    return staged
