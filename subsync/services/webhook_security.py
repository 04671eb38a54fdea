"""Webhook signature verification.

Pure validation gate: given the raw body exactly as received, the
Stripe-Signature header and the shared secret, either returns the decoded
event envelope or raises. Nothing here touches the database.

The header looks like ``t=1700000000,v1=<hex hmac>,v1=<hex hmac>``. The
signature is HMAC-SHA256 over ``"{t}.{raw_body}"``; the Stripe SDK checks
every v1 entry and rejects timestamps outside the tolerance window.
"""

import json
import logging
import time

import stripe

from subsync.errors import (
    MalformedPayloadError,
    SignatureInvalidError,
    SignatureMissingError,
)

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300
DEFAULT_MAX_EVENT_AGE_SECONDS = 600


def _fragment(sig_header):
    return sig_header[:20] + "..." if len(sig_header) > 20 else sig_header


def verify_webhook_signature(payload, sig_header, secret,
                             tolerance=DEFAULT_TOLERANCE_SECONDS):
    """Verify a webhook request and decode its JSON envelope.

    Args:
        payload:    Raw request body (bytes or the exact decoded text).
                    Never a re-serialized object.
        sig_header: Value of the Stripe-Signature header.
        secret:     The endpoint's signing secret (whsec_...).
        tolerance:  Maximum age in seconds of the signed timestamp.

    Returns the decoded envelope dict.
    Raises SignatureMissingError, SignatureInvalidError or
    MalformedPayloadError.
    """
    if not sig_header or not sig_header.strip():
        logger.warning("Webhook received without Stripe-Signature header")
        raise SignatureMissingError()

    if not payload:
        raise MalformedPayloadError("Missing request body")

    if not secret:
        # Misconfiguration; unverified events are never processed.
        logger.error("STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook")
        raise SignatureInvalidError()

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedPayloadError(f"Webhook body is not UTF-8: {e}") from e

    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning(
            f"Webhook signature verification failed: {e} "
            f"(signature: {_fragment(sig_header)})"
        )
        raise SignatureInvalidError() from e

    try:
        envelope = json.loads(payload)
    except ValueError as e:
        raise MalformedPayloadError(f"Webhook body is not valid JSON: {e}") from e

    if not isinstance(envelope, dict):
        raise MalformedPayloadError("Webhook body is not a JSON object")

    return envelope


def check_event_age(event, max_age=DEFAULT_MAX_EVENT_AGE_SECONDS, now=None):
    """Log (never reject) events whose own created timestamp is too old.

    Returns the event age in seconds, or None when created is missing.
    """
    if not event.created:
        return None
    now = time.time() if now is None else now
    age = int(now - event.created)
    if age > max_age:
        logger.warning(
            f"Webhook event {event.id} ({event.type}) is {age}s old "
            f"(max expected {max_age}s)"
        )
    return age
