"""Payment models.

- PaymentRecord: one row per invoice payment attempt. Append-only.
- InvoiceSnapshot: immutable copy of a finalized invoice, for history.
- PaymentMethod: cached card metadata keyed by Stripe payment method ID.
"""

import uuid

from subsync.extensions import db


class PaymentRecord(db.Model):
    __tablename__ = "payment_records"

    SUCCEEDED = "succeeded"
    FAILED = "failed"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    invoice_id = db.Column(db.String(255), nullable=False, index=True)
    # Not a foreign key: a payment can arrive before its subscription is synced.
    subscription_id = db.Column(db.String(255), nullable=True, index=True)
    customer_id = db.Column(db.String(255), nullable=True)
    amount = db.Column(db.Integer, nullable=False, default=0)  # minor units
    currency = db.Column(db.String(10), nullable=True)
    status = db.Column(db.String(20), nullable=False)  # succeeded | failed
    failure_reason = db.Column(db.Text, nullable=True)
    attempt_count = db.Column(db.Integer, nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<PaymentRecord {self.invoice_id} ({self.status})>"


class InvoiceSnapshot(db.Model):
    __tablename__ = "invoice_snapshots"

    invoice_id = db.Column(db.String(255), primary_key=True)  # "in_..."
    subscription_id = db.Column(db.String(255), nullable=False, index=True)
    customer_id = db.Column(db.String(255), nullable=True)
    amount = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(10), nullable=True)
    status = db.Column(db.String(50), nullable=True)
    hosted_invoice_url = db.Column(db.Text, nullable=True)
    invoice_pdf = db.Column(db.Text, nullable=True)
    period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<InvoiceSnapshot {self.invoice_id} ({self.status})>"


class PaymentMethod(db.Model):
    __tablename__ = "payment_methods"

    ATTACHED = "attached"
    DETACHED = "detached"

    id = db.Column(db.String(255), primary_key=True)  # "pm_..."
    customer_id = db.Column(db.String(255), nullable=True, index=True)
    type = db.Column(db.String(50), nullable=True)  # card | sepa_debit | ...
    brand = db.Column(db.String(50), nullable=True)
    last4 = db.Column(db.String(4), nullable=True)
    exp_month = db.Column(db.Integer, nullable=True)
    exp_year = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=ATTACHED)
    detached_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self):
        return f"<PaymentMethod {self.brand} ****{self.last4} ({self.status})>"
