# Overview: Flask API routes for the notification inbox.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth
from ..errors import MarketplaceError, error_response, internal_error_response
from ..services import notification_service


notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.get("/")
@require_auth
def list_notifications_route():
    """Own notifications, newest first. ?unread=1 limits to unread ones."""
    try:
        unread_only = request.args.get("unread", "").lower() in ("1", "true", "yes")
        notifications = notification_service.list_notifications(g.actor.user_id, unread_only=unread_only)
        return jsonify({
            "notifications": [n.to_dict() for n in notifications],
            "unread_count": notification_service.unread_count(g.actor.user_id),
        }), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list notifications")
        return internal_error_response()


@notifications_bp.post("/<int:notification_id>/read")
@require_auth
def mark_notification_read_route(notification_id: int):
    try:
        notification = notification_service.mark_read(g.actor.user_id, notification_id)
        return jsonify({"notification": notification.to_dict()}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to mark notification read")
        return internal_error_response()


@notifications_bp.post("/read-all")
@require_auth
def mark_all_notifications_read_route():
    try:
        updated = notification_service.mark_all_read(g.actor.user_id)
        return jsonify({"updated": updated}), 200

    except MarketplaceError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to mark notifications read")
        return internal_error_response()
