"""Notification service — the write-only "create notification" call.

Processors never wait on delivery; a row in `notifications` is the whole
contract. Rows join the caller's transaction (flush, not commit) so a
failed webhook leaves no orphaned notification behind.
"""

import logging

from subsync.extensions import db
from subsync.models.notification import Notification

logger = logging.getLogger(__name__)


def create_notification(user_id, type, title, message, data=None, priority="normal"):
    """Queue a user-facing notification. Returns the Notification."""
    if priority not in Notification.PRIORITIES:
        priority = "normal"
    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        data=data or {},
        priority=priority,
    )
    db.session.add(notification)
    db.session.flush()
    logger.info(f"Notification {type} queued for user {user_id}")
    return notification


def apply_effects(effects):
    """Execute the side effects planned by a transition."""
    created = []
    for effect in effects:
        if not effect.user_id:
            logger.warning(f"Dropping {effect.type} notification with no user")
            continue
        created.append(create_notification(
            user_id=effect.user_id,
            type=effect.type,
            title=effect.title,
            message=effect.message,
            data=effect.data,
            priority=effect.priority,
        ))
    return created
