"""Subscription audit log.

One row per significant change to a subscription: creation, status
changes, local overrides and family member removals. Webhook-driven
entries use performed_by="system".
"""

import uuid

from subsync.extensions import db


class SubscriptionAuditEvent(db.Model):
    __tablename__ = "subscription_audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    subscription_id = db.Column(
        db.String(255), db.ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    action = db.Column(db.String(255), nullable=False)  # e.g. "status.changed"
    performed_by = db.Column(db.String(255), nullable=False, default="system")
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid SQLAlchemy's reserved attribute
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    subscription = db.relationship("Subscription", back_populates="audit_events")

    def __repr__(self):
        return f"<SubscriptionAuditEvent {self.action}>"
