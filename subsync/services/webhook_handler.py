"""Webhook ingress handler.

Takes a raw request (body bytes + Stripe-Signature header) through
received -> signature-verified -> parsed -> routed -> completed | rejected
and turns the outcome into an HTTP status and JSON body. Each event runs in
a single database transaction: committed together with its ledger entry on
success, rolled back on failure.
"""

import logging
from collections import namedtuple

from subsync.errors import EventNotFoundError, WebhookError
from subsync.extensions import db
from subsync.services import event_ledger
from subsync.services.customer_processor import CustomerProcessor
from subsync.services.events import WebhookEvent
from subsync.services.payment_processor import PaymentProcessor
from subsync.services.router import Processors, route_event
from subsync.services.subscription_processor import SubscriptionProcessor
from subsync.services.webhook_security import check_event_age, verify_webhook_signature

logger = logging.getLogger(__name__)

WebhookOutcome = namedtuple("WebhookOutcome", ["status_code", "body"])


class WebhookHandler:
    def __init__(self, gateway, config, processors=None):
        self.gateway = gateway
        self.config = config
        self.processors = processors or Processors(
            subscription=SubscriptionProcessor(gateway),
            payment=PaymentProcessor(
                unpaid_threshold=config.get("PAYMENT_FAILURE_UNPAID_THRESHOLD", 3)
            ),
            customer=CustomerProcessor(),
        )

    def handle(self, payload, sig_header):
        """Verify, parse and route one delivery. Returns a WebhookOutcome."""
        try:
            envelope = verify_webhook_signature(
                payload,
                sig_header,
                self.config.get("STRIPE_WEBHOOK_SECRET"),
                tolerance=self.config.get("WEBHOOK_TOLERANCE_SECONDS", 300),
            )
            event = WebhookEvent.from_envelope(envelope)
        except WebhookError as e:
            return WebhookOutcome(e.status_code, e.to_dict())

        check_event_age(event, self.config.get("WEBHOOK_MAX_EVENT_AGE_SECONDS", 600))
        logger.info(f"Received Stripe webhook: {event.type} ({event.id})")

        if event_ledger.is_processed(event.id):
            logger.info(f"Webhook event {event.id} already processed, skipping")
            return WebhookOutcome(200, {"status": "already_processed"})

        return self._process(event)

    def replay(self, event_id):
        """Re-fetch an event from Stripe and run it again, ignoring the ledger."""
        envelope = self.gateway.retrieve_event(event_id)
        if not envelope:
            raise EventNotFoundError(f"Webhook event {event_id} not found")

        event = WebhookEvent.from_envelope(envelope)
        logger.info(f"Replaying webhook event {event.id} ({event.type})")
        return self._process(event)

    def verify_configuration(self):
        webhook_secret = bool(self.config.get("STRIPE_WEBHOOK_SECRET"))
        api_key = bool(self.gateway.is_configured)
        return {
            "webhook_secret_configured": webhook_secret,
            "api_key_configured": api_key,
            "ok": webhook_secret and api_key,
        }

    def _process(self, event):
        result = route_event(event, self.processors)

        if not result.success:
            db.session.rollback()
            logger.error(
                f"Webhook processing failed for {event.id} ({event.type}): "
                f"{result.message}"
            )
            body = {"status": "failed", "error": result.message}
            return WebhookOutcome(500 if result.retry else 200, body)

        # A replayed event may already be in the ledger.
        event_ledger.record_processed(event)
        db.session.commit()
        logger.info(f"Webhook event {event.id} processed: {result.message}")
        return WebhookOutcome(200, {"status": result.message})
