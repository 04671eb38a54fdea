"""Notification model.

Fire-and-forget records describing user-facing billing events
(payment_failed, trial_ending, ...). Delivery is handled elsewhere; this
service only writes rows.
"""

import uuid

from subsync.extensions import db


class Notification(db.Model):
    __tablename__ = "notifications"

    PRIORITIES = ["normal", "high"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    type = db.Column(db.String(100), nullable=False)  # e.g. "payment_failed"
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    data = db.Column(db.JSON, default=dict)
    priority = db.Column(db.String(20), nullable=False, default="normal")
    read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="notifications")

    def __repr__(self):
        return f"<Notification {self.type} -> {self.user_id}>"
