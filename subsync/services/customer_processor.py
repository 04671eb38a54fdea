"""Customer processor — customer.* and payment_method.* events.

Links Stripe customers to local users and keeps the payment-method side
table in step with Stripe.
"""

import logging
from datetime import datetime, timezone

from subsync.extensions import db
from subsync.models.payment import PaymentMethod
from subsync.models.user import User
from subsync.services.events import ProcessorResult, run_handler
from subsync.services.notification_service import apply_effects
from subsync.services.subscription_service import customer_id_of
from subsync.services.transitions import plan_payment_method_added

logger = logging.getLogger(__name__)


def _metadata_user_id(customer):
    metadata = customer.get("metadata") or {}
    # "uid" is the key older checkout flows wrote.
    return metadata.get("userId") or metadata.get("uid")


def _default_payment_method(customer):
    pm = (customer.get("invoice_settings") or {}).get("default_payment_method")
    if isinstance(pm, dict):
        pm = pm.get("id")
    return pm


class CustomerProcessor:
    """Handles customer link/unlink and payment-method metadata."""

    def __init__(self):
        self._handlers = {
            "customer.created": self._handle_customer_created,
            "customer.updated": self._handle_customer_updated,
            "customer.deleted": self._handle_customer_deleted,
        }
        self._payment_method_handlers = {
            "payment_method.attached": self._handle_payment_method_attached,
            "payment_method.detached": self._handle_payment_method_detached,
            "payment_method.updated": self._handle_payment_method_updated,
        }

    def process_event(self, event):
        return run_handler(self._handlers, event, "customer")

    def process_payment_method_event(self, event):
        return run_handler(self._payment_method_handlers, event, "payment method")

    @staticmethod
    def _get_user(user_id):
        user = db.session.get(User, user_id)
        if user is None:
            raise LookupError(f"User {user_id} not found")
        return user

    # ──────────────────────────────────────────────
    # Customers
    # ──────────────────────────────────────────────

    def _handle_customer_created(self, event):
        customer = event.payload
        user_id = _metadata_user_id(customer)
        if not user_id:
            logger.warning(f"No userId in customer metadata: {customer.get('id')}")
            return ProcessorResult.ok("Customer created but no userId to link")

        user = self._get_user(user_id)
        user.stripe_customer_id = customer.get("id")
        default_pm = _default_payment_method(customer)
        if default_pm:
            user.default_payment_method = default_pm
        db.session.flush()

        logger.info(f"Linked Stripe customer {customer.get('id')} to user {user_id}")
        return ProcessorResult.ok("Customer created successfully")

    def _handle_customer_updated(self, event):
        customer = event.payload
        user_id = _metadata_user_id(customer)
        if not user_id:
            logger.warning(f"No userId in customer metadata: {customer.get('id')}")
            return ProcessorResult.ok("Customer updated but no userId to update")

        user = self._get_user(user_id)
        user.stripe_customer_id = customer.get("id")
        user.default_payment_method = _default_payment_method(customer)

        email = customer.get("email")
        if email and email != user.email:
            logger.warning(
                f"Customer {customer.get('id')} email differs from user {user_id}: "
                f"stripe={email} local={user.email} (not applied)"
            )

        db.session.flush()
        logger.info(f"Customer {customer.get('id')} updated for user {user_id}")
        return ProcessorResult.ok("Customer updated successfully")

    def _handle_customer_deleted(self, event):
        customer = event.payload
        user_id = _metadata_user_id(customer)
        if not user_id:
            logger.warning(f"No userId in customer metadata: {customer.get('id')}")
            return ProcessorResult.ok("Customer deleted but no userId to update")

        user = self._get_user(user_id)
        user.stripe_customer_id = None
        user.default_payment_method = None
        db.session.flush()

        logger.info(f"Unlinked Stripe customer {customer.get('id')} from user {user_id}")
        return ProcessorResult.ok("Customer deleted successfully")

    # ──────────────────────────────────────────────
    # Payment methods
    # ──────────────────────────────────────────────

    @staticmethod
    def _apply_card(record, pm):
        card = pm.get("card") or {}
        record.type = pm.get("type")
        record.brand = card.get("brand")
        record.last4 = card.get("last4")
        record.exp_month = card.get("exp_month")
        record.exp_year = card.get("exp_year")

    def _handle_payment_method_attached(self, event):
        pm = event.payload
        customer_id = customer_id_of(pm)
        if not customer_id:
            logger.warning(f"Payment method {pm.get('id')} attached without a customer")
            return ProcessorResult.ok("Payment method not attached to customer")

        record = db.session.get(PaymentMethod, pm.get("id"))
        if record is None:
            record = PaymentMethod(id=pm.get("id"))
            db.session.add(record)
        record.customer_id = customer_id
        record.status = PaymentMethod.ATTACHED
        record.detached_at = None
        self._apply_card(record, pm)
        db.session.flush()

        user = User.query.filter_by(stripe_customer_id=customer_id).first()
        if user:
            apply_effects(plan_payment_method_added(user.id, pm).effects)
        else:
            logger.info(f"No user linked to customer {customer_id}, skipping notification")

        logger.info(f"Payment method {pm.get('id')} attached to {customer_id}")
        return ProcessorResult.ok("Payment method attached successfully")

    def _handle_payment_method_detached(self, event):
        pm = event.payload
        record = db.session.get(PaymentMethod, pm.get("id"))
        if record is None:
            record = PaymentMethod(id=pm.get("id"))
            self._apply_card(record, pm)
            db.session.add(record)
        record.status = PaymentMethod.DETACHED
        record.detached_at = datetime.now(timezone.utc)
        db.session.flush()

        logger.info(f"Payment method {pm.get('id')} detached")
        return ProcessorResult.ok("Payment method detached successfully")

    def _handle_payment_method_updated(self, event):
        pm = event.payload
        record = db.session.get(PaymentMethod, pm.get("id"))
        if record is None:
            logger.info(f"Payment method {pm.get('id')} not tracked, nothing to update")
        else:
            self._apply_card(record, pm)
            db.session.flush()
            logger.info(f"Payment method {pm.get('id')} updated")
        return ProcessorResult.ok("Payment method updated successfully")
