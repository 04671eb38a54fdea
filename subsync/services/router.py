"""Event router — dispatch a verified WebhookEvent to exactly one processor."""

import logging
from collections import namedtuple

from subsync.services.events import (
    EventCategory,
    ProcessorResult,
    is_transient_error,
)

logger = logging.getLogger(__name__)

Processors = namedtuple("Processors", ["subscription", "payment", "customer"])


def _acknowledge_catalog(event):
    logger.info(f"Product/price event acknowledged: {event.type} ({event.id})")
    return ProcessorResult.ok("Product/Price event acknowledged")


def _dispatch_table(processors):
    return {
        EventCategory.SUBSCRIPTION: processors.subscription.process_event,
        EventCategory.CHECKOUT: processors.subscription.process_checkout_event,
        EventCategory.INVOICE: processors.payment.process_event,
        EventCategory.CUSTOMER: processors.customer.process_event,
        EventCategory.PAYMENT_METHOD: processors.customer.process_payment_method_event,
        EventCategory.CATALOG: _acknowledge_catalog,
    }


def route_event(event, processors):
    """Route an event and return the processor's result unchanged.

    Unknown event types are acknowledged so Stripe stops redelivering them.
    """
    handler = _dispatch_table(processors).get(event.category)
    if handler is None:
        logger.info(f"Unhandled webhook event type: {event.type} ({event.id})")
        return ProcessorResult.ok("Event type not handled")

    try:
        return handler(event)
    except Exception as e:
        logger.error(f"Error routing webhook event {event.id} ({event.type}): {e}", exc_info=True)
        return ProcessorResult.failed(e, retry=is_transient_error(e))
