"""User model.

Minimal view of the application's user record. Only the billing-facing
fields live here: the linked Stripe customer, the cached default payment
method and family-plan membership markers.
"""

import uuid

from subsync.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    full_name = db.Column(db.String(255))
    stripe_customer_id = db.Column(db.String(255), unique=True, nullable=True)
    default_payment_method = db.Column(db.String(255), nullable=True)
    family_plan_owner_id = db.Column(db.String(36), nullable=True)
    family_plan_removed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    subscriptions = db.relationship(
        "Subscription", back_populates="user", lazy="dynamic"
    )
    notifications = db.relationship(
        "Notification", back_populates="user", lazy="dynamic"
    )

    def __repr__(self):
        return f"<User {self.email}>"
