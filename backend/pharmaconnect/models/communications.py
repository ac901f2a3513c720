from __future__ import annotations

from ..extensions import db
from pharmaconnect.time_utils import to_utc_z


class Notification(db.Model):
    """
    In-app notification inbox row.

    Written by the notification dispatcher after the triggering command has
    committed. Push/SMS delivery consumes these rows elsewhere; `sms_queued`
    rows mark messages waiting for the SMS gateway.
    """
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_user_read_created", "user_id", "is_read", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    type = db.Column(db.String(32), nullable=False, index=True)  # new_order, order_update, return_request, ...
    message = db.Column(db.Text, nullable=False)
    related_id = db.Column(db.Integer, nullable=True)
    meta = db.Column(db.JSON, nullable=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "message": self.message,
            "related_id": self.related_id,
            "metadata": self.meta,
            "is_read": self.is_read,
            "created_at": to_utc_z(self.created_at),
        }
