"""Ledger of Stripe events whose effects have been committed.

A row is written in the same transaction as the event's effects, so an
event that failed and rolled back is never marked processed and Stripe's
redelivery runs it again. Operator replays bypass the lookup but still
leave a single row per event.

processed_at is indexed for `flask prune-processed-events`, which deletes
rows older than PROCESSED_EVENT_RETENTION_DAYS. Stripe stops redelivering
after three days, so a pruned event can only come back through a replay.
"""

import uuid

from subsync.extensions import db


class ProcessedEvent(db.Model):
    __tablename__ = "processed_events"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # Unique: two concurrent deliveries of one event cannot both commit.
    stripe_event_id = db.Column(db.String(255), unique=True, nullable=False)
    event_type = db.Column(db.String(255), nullable=False)
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now(), index=True
    )

    def __repr__(self):
        return f"<ProcessedEvent {self.stripe_event_id} {self.event_type} @ {self.processed_at}>"
