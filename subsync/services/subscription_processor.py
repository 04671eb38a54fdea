"""Subscription processor — customer.subscription.* and checkout.session.*

Owns the subscription lifecycle. Every handler except `created` starts with
sync_from_stripe(): the pushed payload only tells us *that* something
changed, the re-fetched subscription tells us *what* it is now.
"""

import json
import logging
from datetime import datetime, timezone

from subsync.errors import MissingMetadataError
from subsync.extensions import db
from subsync.models.subscription import SubscriptionPlan, UpdateSource
from subsync.services import subscription_service
from subsync.services.events import ProcessorResult, run_handler
from subsync.services.notification_service import apply_effects
from subsync.services.subscription_service import (
    customer_id_of,
    extract_interval,
    extract_period_bounds,
    from_unix,
)
from subsync.services.transitions import (
    map_subscription_status,
    plan_cancellation_change,
    plan_deletion,
    plan_pause,
    plan_resume,
    plan_status_change,
    plan_trial_ending,
)

logger = logging.getLogger(__name__)


def _family_member_ids(metadata):
    """Parse metadata.familyMemberIds (a JSON list of user IDs)."""
    raw = (metadata or {}).get("familyMemberIds")
    if not raw:
        return []
    try:
        ids = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError:
        logger.warning(f"Ignoring malformed familyMemberIds metadata: {raw!r}")
        return []
    if not isinstance(ids, list):
        return []
    return [str(i) for i in ids if i]


class SubscriptionProcessor:
    """Handles subscription lifecycle and checkout session events."""

    def __init__(self, gateway):
        self.gateway = gateway
        self._handlers = {
            "customer.subscription.created": self._handle_created,
            "customer.subscription.updated": self._handle_updated,
            "customer.subscription.deleted": self._handle_deleted,
            "customer.subscription.trial_will_end": self._handle_trial_will_end,
            "customer.subscription.paused": self._handle_paused,
            "customer.subscription.resumed": self._handle_resumed,
        }
        self._checkout_handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "checkout.session.expired": self._handle_checkout_expired,
        }

    def process_event(self, event):
        return run_handler(self._handlers, event, "subscription")

    def process_checkout_event(self, event):
        return run_handler(self._checkout_handlers, event, "checkout")

    # ──────────────────────────────────────────────
    # Subscription lifecycle
    # ──────────────────────────────────────────────

    def _handle_created(self, event):
        """Create the local subscription unless it already exists."""
        sub_data = event.payload
        subscription_id = sub_data.get("id")
        metadata = sub_data.get("metadata") or {}

        user_id = metadata.get("userId")
        if not user_id:
            raise MissingMetadataError("Missing userId in subscription metadata")

        if subscription_service.get_subscription(subscription_id):
            logger.info(f"Subscription {subscription_id} already exists, skipping creation")
            return ProcessorResult.ok("Subscription already exists")

        stripe_customer_id = customer_id_of(sub_data)
        customer = self.gateway.retrieve_customer(stripe_customer_id)
        period_start, period_end = extract_period_bounds(sub_data)
        plan = metadata.get("plan") or SubscriptionPlan.INDIVIDUAL.value

        sub, created = subscription_service.create_subscription(
            user_id=user_id,
            stripe_subscription_id=subscription_id,
            stripe_customer_id=stripe_customer_id,
            status=map_subscription_status(sub_data.get("status")),
            plan=plan,
            tier=metadata.get("tier"),
            interval=extract_interval(sub_data),
            current_period_start=period_start,
            current_period_end=period_end,
            trial_end=from_unix(sub_data.get("trial_end")),
            user_email=(customer or {}).get("email"),
            cancel_at_period_end=sub_data.get("cancel_at_period_end", False),
            source=UpdateSource.WEBHOOK,
        )
        if not created:
            return ProcessorResult.ok("Subscription already exists")

        if sub.is_family:
            staged = subscription_service.stage_family_invitations(
                sub.id, _family_member_ids(metadata)
            )
            if staged:
                logger.info(f"Staged {staged} family invitations on {sub.id}")

        return ProcessorResult.ok(
            "Subscription created successfully", subscription_id=sub.id
        )

    def _handle_updated(self, event):
        """Reconcile, then fire side effects from the previous_attributes diff."""
        subscription_id = event.payload.get("id")
        sub = subscription_service.sync_from_stripe(subscription_id, self.gateway)
        previous = event.previous_attributes or {}

        effects = []
        if "status" in previous and previous["status"] != sub.status:
            logger.info(
                f"Subscription {sub.id} status changed "
                f"{previous['status']} -> {sub.status}"
            )
            effects += plan_status_change(
                sub.user_id, sub.id, previous["status"], sub.status
            ).effects

        if "items" in previous:
            self._on_plan_change(sub)

        # Only notify when the reconciled value still differs from the previous one.
        if (
            "cancel_at_period_end" in previous
            and bool(previous["cancel_at_period_end"]) != bool(sub.cancel_at_period_end)
        ):
            effects += plan_cancellation_change(
                sub.user_id, sub.id, sub.cancel_at_period_end, sub.current_period_end
            ).effects

        apply_effects(effects)
        logger.info(f"Subscription {sub.id} updated from webhook, changes: {sorted(previous)}")
        return ProcessorResult.ok("Subscription updated successfully", subscription_id=sub.id)

    def _on_plan_change(self, sub):
        # Reconciliation already stored the new plan/tier; this is the hook point.
        subscription_service.log_subscription_audit(sub.id, "subscription.plan_changed", {
            "plan": sub.plan,
            "tier": sub.tier,
            "interval": sub.interval,
        })
        logger.info(f"Subscription {sub.id} plan changed to {sub.plan}/{sub.tier}")

    def _handle_deleted(self, event):
        """Reconcile, force canceled, then cascade to family members.

        Status and member removals share one transaction. If the cascade
        fails, everything is rolled back and the subscription is flagged
        needs_reconciliation so the inconsistency is visible.
        """
        subscription_id = event.payload.get("id")
        sub = subscription_service.sync_from_stripe(subscription_id, self.gateway)

        transition = plan_deletion()
        subscription_service.update_subscription(
            sub.id,
            status=transition.status,
            canceled_at=datetime.now(timezone.utc),
            cancel_at_period_end=False,
            source=UpdateSource.WEBHOOK,
        )

        if sub.is_family:
            try:
                for member in sub.active_family_members:
                    subscription_service.remove_family_member(
                        subscription_id=sub.id,
                        member_id=member.user_id,
                        removed_by="system",
                        reason="Subscription canceled",
                    )
            except Exception:
                db.session.rollback()
                self._mark_needs_reconciliation(subscription_id)
                raise

        logger.info(f"Subscription {sub.id} deleted from webhook")
        return ProcessorResult.ok("Subscription deleted successfully", subscription_id=sub.id)

    @staticmethod
    def _mark_needs_reconciliation(subscription_id):
        sub = subscription_service.get_subscription(subscription_id)
        if sub is None:
            return
        sub.needs_reconciliation = True
        db.session.commit()
        logger.error(f"Subscription {subscription_id} flagged for reconciliation")

    def _handle_trial_will_end(self, event):
        subscription_id = event.payload.get("id")
        sub = subscription_service.sync_from_stripe(subscription_id, self.gateway)
        apply_effects(plan_trial_ending(
            sub.user_id, sub.id, event.payload.get("trial_end")
        ).effects)
        logger.info(f"Trial ending notification created for {sub.id}")
        return ProcessorResult.ok("Trial ending notification sent")

    def _handle_paused(self, event):
        subscription_id = event.payload.get("id")
        sub = subscription_service.sync_from_stripe(subscription_id, self.gateway)
        subscription_service.update_subscription(sub.id, status=plan_pause().status)
        logger.info(f"Subscription {sub.id} paused from webhook")
        return ProcessorResult.ok("Subscription paused successfully")

    def _handle_resumed(self, event):
        subscription_id = event.payload.get("id")
        sub = subscription_service.sync_from_stripe(subscription_id, self.gateway)
        # sub.status is the freshly reconciled Stripe status.
        subscription_service.update_subscription(
            sub.id, status=plan_resume(sub.status).status
        )
        logger.info(f"Subscription {sub.id} resumed from webhook ({sub.status})")
        return ProcessorResult.ok("Subscription resumed successfully")

    # ──────────────────────────────────────────────
    # Checkout sessions
    # ──────────────────────────────────────────────

    def _handle_checkout_completed(self, event):
        """Acknowledge checkout; the subscription itself comes from subscription.created."""
        session = event.payload
        subscription_id = session.get("subscription")
        if isinstance(subscription_id, dict):
            subscription_id = subscription_id.get("id")

        if not subscription_id:
            logger.warning(f"No subscription ID in checkout session {session.get('id')}")
            return ProcessorResult.ok("No subscription to process")

        logger.info(
            f"Checkout session {session.get('id')} completed for {subscription_id}"
        )

        member_ids = _family_member_ids(session.get("metadata"))
        if member_ids:
            staged = subscription_service.stage_family_invitations(subscription_id, member_ids)
            if staged:
                logger.info(f"Staged {staged} family invitations on {subscription_id}")
            else:
                logger.info(
                    f"{len(member_ids)} family invitations for {subscription_id} "
                    "will be processed when the subscription is created"
                )

        return ProcessorResult.ok("Checkout completed successfully")

    def _handle_checkout_expired(self, event):
        session = event.payload
        logger.info(
            f"Checkout session {session.get('id')} expired "
            f"(customer_email={session.get('customer_email')})"
        )
        return ProcessorResult.ok("Checkout expiration handled")
