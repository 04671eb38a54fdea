"""Exception taxonomy for webhook ingestion and reconciliation.

WebhookError subclasses reject a request before any processor runs; each
carries a machine-readable ``kind`` and the HTTP status the ingress handler
responds with. Everything raised inside a processor is captured by the
router as a failed ProcessorResult instead.
"""


class WebhookError(Exception):
    """Base class for errors that make a request not a legitimate event."""

    kind = "webhook_error"
    status_code = 400

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__

    def to_dict(self):
        return {"error": self.message, "kind": self.kind}


class SignatureMissingError(WebhookError):
    """Missing signature"""

    kind = "signature_missing"


class SignatureInvalidError(WebhookError):
    """Invalid signature"""

    kind = "signature_invalid"


class MalformedPayloadError(WebhookError):
    """Malformed webhook body"""

    kind = "malformed_body"


class EventNotFoundError(WebhookError):
    """Webhook event not found"""

    kind = "event_not_found"
    status_code = 404


class ReconciliationError(Exception):
    """Authoritative re-fetch from Stripe failed.

    The local record is left in its last known state.
    """

    def __init__(self, subscription_id, cause):
        super().__init__(f"Failed to sync subscription {subscription_id} from Stripe: {cause}")
        self.subscription_id = subscription_id
        self.cause = cause


class SubscriptionNotFoundError(LookupError):
    """No local subscription with the given ID."""


class FamilyMemberNotFoundError(LookupError):
    """No active family member with the given user ID on the subscription."""


class MissingMetadataError(ValueError):
    """A Stripe object lacks metadata required to link it to a user."""
