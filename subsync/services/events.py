"""Typed webhook events and processor results.

- WebhookEvent: the parsed envelope {id, type, created, livemode, payload}.
- EventCategory: which processor family an event type belongs to.
- ProcessorResult: what every processor returns to the router.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import stripe

from subsync.errors import MalformedPayloadError, ReconciliationError

logger = logging.getLogger(__name__)


class EventCategory(enum.Enum):
    SUBSCRIPTION = "subscription"
    INVOICE = "invoice"
    CUSTOMER = "customer"
    CHECKOUT = "checkout"
    PAYMENT_METHOD = "payment_method"
    CATALOG = "catalog"
    UNKNOWN = "unknown"


SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "customer.subscription.trial_will_end",
    "customer.subscription.paused",
    "customer.subscription.resumed",
)

INVOICE_EVENTS = (
    "invoice.payment_succeeded",
    "invoice.payment_failed",
    "invoice.payment_action_required",
    "invoice.upcoming",
    "invoice.finalized",
)

CUSTOMER_EVENTS = (
    "customer.created",
    "customer.updated",
    "customer.deleted",
)

CHECKOUT_EVENTS = (
    "checkout.session.completed",
    "checkout.session.expired",
)

PAYMENT_METHOD_EVENTS = (
    "payment_method.attached",
    "payment_method.detached",
    "payment_method.updated",
)

# Product/price sync events are acknowledged but not acted on.
CATALOG_EVENTS = (
    "product.created",
    "product.updated",
    "price.created",
    "price.updated",
)

EVENT_CATEGORIES = {
    **{t: EventCategory.SUBSCRIPTION for t in SUBSCRIPTION_EVENTS},
    **{t: EventCategory.INVOICE for t in INVOICE_EVENTS},
    **{t: EventCategory.CUSTOMER for t in CUSTOMER_EVENTS},
    **{t: EventCategory.CHECKOUT for t in CHECKOUT_EVENTS},
    **{t: EventCategory.PAYMENT_METHOD for t in PAYMENT_METHOD_EVENTS},
    **{t: EventCategory.CATALOG for t in CATALOG_EVENTS},
}


def event_category(event_type):
    return EVENT_CATEGORIES.get(event_type, EventCategory.UNKNOWN)


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    created: Optional[int]
    livemode: bool
    payload: dict
    previous_attributes: dict = field(default_factory=dict)

    @property
    def category(self):
        return event_category(self.type)

    @classmethod
    def from_envelope(cls, envelope):
        """Build a WebhookEvent from a decoded Stripe event envelope.

        Raises MalformedPayloadError when id, type or data.object is missing.
        """
        if not isinstance(envelope, dict):
            raise MalformedPayloadError("Event envelope must be an object")

        event_id = envelope.get("id")
        event_type = envelope.get("type")
        data = envelope.get("data") or {}
        payload = data.get("object") if isinstance(data, dict) else None

        if not event_id or not event_type:
            raise MalformedPayloadError("Event envelope missing id or type")
        if not isinstance(payload, dict):
            raise MalformedPayloadError(f"Event {event_id} has no data.object")

        return cls(
            id=event_id,
            type=event_type,
            created=envelope.get("created"),
            livemode=bool(envelope.get("livemode", False)),
            payload=payload,
            previous_attributes=data.get("previous_attributes") or {},
        )


@dataclass
class ProcessorResult:
    success: bool
    message: str = ""
    error: Optional[BaseException] = None
    # Ask the ingress handler to answer non-2xx so Stripe redelivers.
    retry: bool = False
    data: dict = field(default_factory=dict)

    @classmethod
    def ok(cls, message, **data: Any):
        return cls(success=True, message=message, data=data)

    @classmethod
    def failed(cls, error, message=None, retry=False):
        return cls(
            success=False,
            message=message or str(error),
            error=error,
            retry=retry,
        )


def is_transient_error(error):
    """True for provider errors worth a Stripe redelivery."""
    if isinstance(error, ReconciliationError):
        error = error.cause
    return isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError))


def run_handler(handlers, event, label):
    """Dispatch an event to its handler and capture any failure as a result."""
    handler = handlers.get(event.type)
    if handler is None:
        return ProcessorResult.ok(f"Unhandled {label} event: {event.type}")
    try:
        return handler(event)
    except Exception as e:
        logger.error(
            f"{label.capitalize()} webhook processing error for {event.type} "
            f"({event.id}): {e}",
            exc_info=True,
        )
        return ProcessorResult.failed(e, retry=is_transient_error(e))
