"""Processed-event ledger helpers (idempotency via processed_events table)."""

import logging
from datetime import datetime, timedelta, timezone

from subsync.extensions import db
from subsync.models.stripe_event import ProcessedEvent

logger = logging.getLogger(__name__)


def is_processed(event_id):
    return (
        ProcessedEvent.query.filter_by(stripe_event_id=event_id).first()
        is not None
    )


def record_processed(event):
    """Add the event to the ledger in the current transaction.

    Returns False if another request recorded it first.
    """
    if is_processed(event.id):
        return False
    db.session.add(ProcessedEvent(
        stripe_event_id=event.id,
        event_type=event.type,
    ))
    return True


def prune_processed_events(retention_days, now=None):
    """Delete ledger rows older than the retention window. Returns the count."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=retention_days)
    deleted = (
        ProcessedEvent.query
        .filter(ProcessedEvent.processed_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.session.commit()
    logger.info(f"Pruned {deleted} processed events older than {retention_days} days")
    return deleted
