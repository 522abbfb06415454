"""Admin overview pages.

Routes:
- GET /api/admin/users             (cached)
- GET /api/admin/dashboard-stats   (cached)
- GET /api/admin/analytics         (cached)
- GET /api/admin/settings
- PUT /api/admin/settings          {"notification_preferences": {...}, "admin_notification_preferences": {...}}
"""

import logging

from flask import Blueprint, g, jsonify

from errors import NotFoundError, request_json
from extensions import db, services
from identity import require_admin
from models_users import (
    DEFAULT_ADMIN_NOTIFICATION_PREFERENCES,
    DEFAULT_NOTIFICATION_PREFERENCES,
    User,
    clean_preferences,
    merged_preferences,
)


logger = logging.getLogger(__name__)

admin_dashboard = Blueprint("admin_dashboard", __name__)


def _settings(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "notification_preferences": merged_preferences(user.notification_preferences, DEFAULT_NOTIFICATION_PREFERENCES),
        "admin_notification_preferences": merged_preferences(
            user.admin_notification_preferences, DEFAULT_ADMIN_NOTIFICATION_PREFERENCES
        ),
    }


@admin_dashboard.get("/api/admin/users")
@require_admin
def api_admin_users():
    return jsonify({"success": True, "data": services()["stats"].admin_users()})


@admin_dashboard.get("/api/admin/dashboard-stats")
@require_admin
def api_admin_dashboard_stats():
    return jsonify({"success": True, "data": services()["stats"].admin_dashboard_stats()})


@admin_dashboard.get("/api/admin/analytics")
@require_admin
def api_admin_analytics():
    return jsonify({"success": True, "data": services()["stats"].admin_analytics()})


@admin_dashboard.get("/api/admin/settings")
@require_admin
def api_admin_get_settings():
    user = db.session.get(User, g.identity.user_id)
    if user is None:
        raise NotFoundError("User")
    return jsonify({"success": True, "data": _settings(user)})


@admin_dashboard.put("/api/admin/settings")
@require_admin
def api_admin_update_settings():
    data = request_json()
    user = db.session.get(User, g.identity.user_id)
    if user is None:
        raise NotFoundError("User")

    if "notification_preferences" in data:
        prefs = clean_preferences(data["notification_preferences"], DEFAULT_NOTIFICATION_PREFERENCES, "notification_preferences")
        user.notification_preferences = merged_preferences({**(user.notification_preferences or {}), **prefs}, DEFAULT_NOTIFICATION_PREFERENCES)
    if "admin_notification_preferences" in data:
        prefs = clean_preferences(
            data["admin_notification_preferences"], DEFAULT_ADMIN_NOTIFICATION_PREFERENCES, "admin_notification_preferences"
        )
        user.admin_notification_preferences = merged_preferences(
            {**(user.admin_notification_preferences or {}), **prefs}, DEFAULT_ADMIN_NOTIFICATION_PREFERENCES
        )
    db.session.commit()
    logger.info("Admin %s updated notification settings", user.id)
    return jsonify({"success": True, "data": _settings(user)})
