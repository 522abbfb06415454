"""Notification polling + read state.

Routes:
- GET  /api/notifications                    unread, role-scoped
- POST /api/notifications/mark-as-read       {"notification_id": ...}
- POST /api/notifications/mark-all-as-read
"""

from flask import Blueprint, g, jsonify

from errors import ValidationError, request_json
from extensions import services
from identity import require_auth


notifications_api = Blueprint("notifications_api", __name__)


@notifications_api.get("/api/notifications")
@require_auth
def list_unread():
    return jsonify({"success": True, "data": services()["dispatcher"].list_unread(g.identity)})


@notifications_api.post("/api/notifications/mark-as-read")
@require_auth
def mark_as_read():
    data = request_json()
    raw = data.get("notification_id", data.get("notificationId"))
    try:
        notification_id = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("notification_id is required")
    return services()["dispatcher"].mark_read(g.identity, notification_id).to_response()


@notifications_api.post("/api/notifications/mark-all-as-read")
@require_auth
def mark_all_as_read():
    return services()["dispatcher"].mark_all_read(g.identity).to_response()
