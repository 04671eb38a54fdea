"""Stripe gateway — the only place that talks to the Stripe API.

One instance is built in create_app() and stored on
app.extensions["stripe_gateway"]; processors receive it explicitly so tests
can swap in a mock without patching module globals.

All responses are returned as plain dicts so handlers can treat webhook
payloads and re-fetched objects the same way.
"""

import logging

import stripe
from flask import current_app

logger = logging.getLogger(__name__)


def _to_dict(obj):
    """Convert a StripeObject (or None) to a plain dict."""
    if obj is None or isinstance(obj, dict):
        return obj
    return obj.to_dict()


class StripeGateway:
    """Thin wrapper around stripe.StripeClient."""

    def __init__(self, api_key, timeout=20):
        self.api_key = api_key
        self._client = None
        self._timeout = timeout

    @property
    def client(self):
        if self._client is None:
            if not self.api_key:
                raise RuntimeError("STRIPE_SECRET_KEY is not configured")
            self._client = stripe.StripeClient(
                self.api_key,
                http_client=stripe.RequestsClient(timeout=self._timeout),
            )
        return self._client

    @property
    def is_configured(self):
        return bool(self.api_key)

    def retrieve_subscription(self, subscription_id):
        """Fetch the authoritative subscription object."""
        return _to_dict(self.client.subscriptions.retrieve(subscription_id))

    def retrieve_customer(self, customer_id):
        return _to_dict(self.client.customers.retrieve(customer_id))

    def retrieve_event(self, event_id):
        """Fetch an event by ID for replay.

        Returns None if Stripe does not know the event.
        """
        try:
            return _to_dict(self.client.events.retrieve(event_id))
        except stripe.InvalidRequestError as e:
            logger.error(f"Failed to retrieve webhook event {event_id}: {e}")
            return None


def init_stripe_gateway(app):
    """Build the gateway from app config and register it on the app."""
    gateway = StripeGateway(
        api_key=app.config.get("STRIPE_SECRET_KEY"),
        timeout=app.config.get("STRIPE_API_TIMEOUT_SECONDS", 20),
    )
    app.extensions["stripe_gateway"] = gateway
    return gateway


def get_stripe_gateway():
    """Return the gateway bound to the current app."""
    return current_app.extensions["stripe_gateway"]
