# Models package: import all models here so Alembic can discover them.

from subsync.models.user import User  # noqa: F401
from subsync.models.subscription import (  # noqa: F401
    FamilyMember,
    Subscription,
)
from subsync.models.payment import (  # noqa: F401
    InvoiceSnapshot,
    PaymentMethod,
    PaymentRecord,
)
from subsync.models.notification import Notification  # noqa: F401
from subsync.models.stripe_event import ProcessedEvent  # noqa: F401
from subsync.models.audit import SubscriptionAuditEvent  # noqa: F401
