"""Subscription models.

- Subscription: the canonical internal record of a user's billing
  relationship. The primary key is the Stripe subscription ID.
  subscriptions.status is the source of truth for entitlement gating and is
  only ever written through subscription_service.
- FamilyMember: ordered membership rows for family-plan subscriptions.
"""

import enum

from subsync.extensions import db


class SubscriptionStatus(str, enum.Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


class SubscriptionPlan(str, enum.Enum):
    INDIVIDUAL = "individual"
    FAMILY = "family"


class UpdateSource(str, enum.Enum):
    WEBHOOK = "webhook"
    RECONCILIATION = "reconciliation"
    MANUAL = "manual"


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    STATUSES = [s.value for s in SubscriptionStatus]

    id = db.Column(db.String(255), primary_key=True)  # "sub_..."
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    user_email = db.Column(db.String(255), nullable=True)
    stripe_customer_id = db.Column(db.String(255), nullable=False, index=True)
    plan = db.Column(
        db.String(50), nullable=False, default=SubscriptionPlan.INDIVIDUAL.value
    )  # individual | family
    tier = db.Column(db.String(50), nullable=True)
    interval = db.Column(db.String(10), nullable=True)  # month | year
    status = db.Column(db.String(50), nullable=False)
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_end = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, default=False, nullable=False)
    cancel_reason = db.Column(db.String(255), nullable=True)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # --- Payment recovery ---
    grace_period_type = db.Column(db.String(50), nullable=True)
    grace_period_ends_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Set when a multi-step update (e.g. the family cascade on cancellation)
    # could not complete; cleared by the next successful reconciliation.
    needs_reconciliation = db.Column(db.Boolean, default=False, nullable=False)
    last_update_source = db.Column(
        db.String(20), nullable=False, default=UpdateSource.WEBHOOK.value
    )

    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="subscriptions")
    family_members = db.relationship(
        "FamilyMember",
        back_populates="subscription",
        order_by="FamilyMember.position",
        cascade="all, delete-orphan",
    )
    payments = db.relationship(
        "PaymentRecord",
        primaryjoin="foreign(PaymentRecord.subscription_id) == Subscription.id",
        lazy="dynamic",
        viewonly=True,
    )
    audit_events = db.relationship(
        "SubscriptionAuditEvent", back_populates="subscription", lazy="dynamic"
    )

    @property
    def is_family(self):
        return self.plan == SubscriptionPlan.FAMILY.value

    @property
    def active_family_members(self):
        return [m for m in self.family_members if m.status == FamilyMember.ACTIVE]

    def __repr__(self):
        return f"<Subscription {self.id} {self.plan} ({self.status})>"


class FamilyMember(db.Model):
    __tablename__ = "family_members"
    __table_args__ = (
        db.UniqueConstraint("subscription_id", "user_id", name="uq_family_member"),
    )

    ACTIVE = "active"
    INVITED = "invited"
    REMOVED = "removed"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    subscription_id = db.Column(
        db.String(255), db.ForeignKey("subscriptions.id"), nullable=False
    )
    user_id = db.Column(db.String(36), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=ACTIVE)
    joined_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    removed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    removed_by = db.Column(db.String(255), nullable=True)
    removal_reason = db.Column(db.String(255), nullable=True)

    # --- Relationships ---
    subscription = db.relationship("Subscription", back_populates="family_members")

    def __repr__(self):
        return f"<FamilyMember {self.user_id} ({self.status})>"
