"""Admin blueprint — /admin/*

Operator endpoints for webhook maintenance. All routes protected by
@admin_token_required and rate limited.

Route Map:
  POST /admin/webhooks/<event_id>/replay  — Re-fetch an event from Stripe and process it
  GET  /admin/webhooks/config             — Report webhook secret / API key presence
"""

import logging

from flask import Blueprint, current_app, jsonify

from subsync.decorators import admin_token_required
from subsync.errors import WebhookError
from subsync.extensions import limiter
from subsync.services.stripe_gateway import get_stripe_gateway
from subsync.services.webhook_handler import WebhookHandler

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _handler():
    return WebhookHandler(get_stripe_gateway(), current_app.config)


@admin_bp.route("/webhooks/<event_id>/replay", methods=["POST"])
@limiter.limit("10 per minute")
@admin_token_required
def replay_webhook(event_id):
    """Replay a Stripe event by ID, bypassing the processed-event ledger."""
    logger.info(f"Admin replay requested for webhook event {event_id}")
    try:
        outcome = _handler().replay(event_id)
    except WebhookError as e:
        return jsonify(e.to_dict()), e.status_code
    return jsonify(outcome.body), outcome.status_code


@admin_bp.route("/webhooks/config", methods=["GET"])
@limiter.limit("30 per minute")
@admin_token_required
def webhook_config():
    """Report whether the webhook secret and Stripe API key are configured."""
    return jsonify(_handler().verify_configuration()), 200
