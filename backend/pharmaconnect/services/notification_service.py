# Overview: Service-layer notification dispatch and inbox reads.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Notification, User
from ..errors import NotFound
from pharmaconnect.time_utils import utcnow


TYPE_NEW_ORDER = "new_order"
TYPE_ORDER_UPDATE = "order_update"
TYPE_RETURN_REQUEST = "return_request"
TYPE_RETURN_UPDATE = "return_update"
TYPE_SMS_QUEUED = "sms_queued"

ORDER_STATUS_MESSAGES = {
    "processing": "Your order is being prepared",
    "shipped": "Your order has been shipped",
    "delivered": "Your order has been delivered",
    "cancelled": "Your order has been cancelled",
}


class NotificationDispatcher:
    """
    Notification trigger used by the lifecycle services.

    Called from post-commit hooks only, so the triggering command has already
    committed. Each call writes an inbox row in its own transaction; delivery
    (push, SMS gateway) consumes those rows elsewhere. Return values are never
    inspected by callers.
    """

    def notify(self, user_id: int, type: str, message: str, related_id: int | None = None, metadata: dict | None = None) -> Notification:
        notification = Notification(
            user_id=user_id,
            type=type,
            message=message,
            related_id=related_id,
            meta=metadata,
            created_at=utcnow(),
        )
        db.session.add(notification)
        db.session.commit()
        current_app.logger.info("Notification %s queued for user %s (related_id=%s)", type, user_id, related_id)
        return notification

    def queue_sms(self, user_id: int, message: str, related_id: int | None = None, metadata: dict | None = None) -> Notification | None:
        """Queue an SMS copy, only for users with a phone number on file."""
        user = db.session.get(User, user_id)
        if user is None or not user.phone:
            return None
        return self.notify(user_id, TYPE_SMS_QUEUED, f"[SMS Queue] {message}", related_id, metadata)


# =============================================================================
# INBOX
# =============================================================================

def list_notifications(user_id: int, *, unread_only: bool = False, limit: int = 50) -> list[Notification]:
    query = db.session.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()


def unread_count(user_id: int) -> int:
    return (
        db.session.query(Notification)
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .count()
    )


def mark_read(user_id: int, notification_id: int) -> Notification:
    notification = db.session.get(Notification, notification_id)
    if notification is None or notification.user_id != user_id:
        raise NotFound("Notification not found", notification_id=notification_id)
    notification.is_read = True
    db.session.commit()
    return notification


def mark_all_read(user_id: int) -> int:
    updated = (
        db.session.query(Notification)
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .update({Notification.is_read: True}, synchronize_session=False)
    )
    db.session.commit()
    return updated
