"""Webhooks blueprint — /stripe/webhooks

Receives Stripe webhook events. The raw body is passed through untouched;
signature verification needs the exact bytes Stripe signed.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from subsync.services.stripe_gateway import get_stripe_gateway
from subsync.services.webhook_handler import WebhookHandler

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


@webhooks_bp.route("/webhooks", methods=["POST"])
def stripe_webhook():
    """Receive and process a Stripe webhook event.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET
    3. Skip events already in the processed_events ledger
    4. Route to the subscription / payment / customer processor
    5. 200 on success or permanent failure, 500 when Stripe should redeliver
    """
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")

    handler = WebhookHandler(get_stripe_gateway(), current_app.config)
    outcome = handler.handle(payload, sig_header)
    return jsonify(outcome.body), outcome.status_code
