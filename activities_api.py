"""User-facing activity + dashboard APIs.

Routes:
- GET  /api/activities                   active activities (cached)
- GET  /api/activities/user              this user's board (cached)
- GET  /api/activities/<id>
- POST /api/activities/complete          {"activity_id": ...}
- GET  /api/users/me
- GET  /api/users/settings
- PUT  /api/users/settings               {"name": ..., "notification_preferences": {...}}
- GET  /api/users/stats                  (cached)
- GET  /api/users/recent-activities      (cached)
- GET  /api/users/activity-stats         this month, per day
- GET  /api/users/verification-step      (cached)

All routes require a bearer token.
"""

import logging

from flask import Blueprint, g, jsonify

from cache import ADMIN_AGGREGATE_KEYS, invalidate
from errors import NotFoundError, ValidationError, request_json
from extensions import db, services
from identity import require_auth
from models_activities import Activity
from models_users import DEFAULT_NOTIFICATION_PREFERENCES, User, clean_preferences, merged_preferences


logger = logging.getLogger(__name__)

activities_api = Blueprint("activities_api", __name__)

MAX_NAME_LENGTH = 200


def _int_field(data: dict, *names) -> int:
    for name in names:
        value = data.get(name)
        if value is None or isinstance(value, bool):
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            break
    raise ValidationError(f"{names[0]} is required")


@activities_api.get("/api/activities")
@require_auth
def list_active_activities():
    return jsonify({"success": True, "data": services()["stats"].active_activities()})


@activities_api.get("/api/activities/user")
@require_auth
def list_user_activities():
    return jsonify({"success": True, "data": services()["stats"].user_activities(g.identity.user_id)})


@activities_api.get("/api/activities/<int:activity_id>")
@require_auth
def get_activity(activity_id: int):
    activity = db.session.get(Activity, activity_id)
    if activity is None or (
        not activity.is_template and activity.user_id != g.identity.user_id and not g.identity.is_admin
    ):
        raise NotFoundError("Activity")
    return jsonify({"success": True, "data": activity.to_dict()})


@activities_api.post("/api/activities/complete")
@require_auth
def complete_activity():
    data = request_json()
    activity_id = _int_field(data, "activity_id", "activityId")
    result = services()["ledger"].complete_activity(g.identity.user_id, activity_id)
    return result.to_response()


@activities_api.get("/api/users/me")
@require_auth
def get_me():
    return jsonify({"success": True, "data": _current_user().to_dict()})


@activities_api.get("/api/users/stats")
@require_auth
def get_user_stats():
    return jsonify({"success": True, "data": services()["stats"].user_stats(g.identity.user_id)})


@activities_api.get("/api/users/recent-activities")
@require_auth
def get_recent_activities():
    return jsonify({"success": True, "data": services()["stats"].recent_activities(g.identity.user_id)})


@activities_api.get("/api/users/activity-stats")
@require_auth
def get_activity_stats():
    return jsonify({"success": True, "data": services()["stats"].monthly_activity_stats(g.identity.user_id)})


@activities_api.get("/api/users/verification-step")
@require_auth
def get_verification_step():
    step = services()["stats"].verification_step(g.identity.external_id)
    return jsonify({"success": True, "data": {"verification_step": int(step or 0)}})


def _current_user() -> User:
    user = db.session.get(User, g.identity.user_id)
    if user is None:
        raise NotFoundError("User")
    return user


def _user_settings(user: User) -> dict:
    return {
        "name": user.name,
        "email": user.email,
        "notification_preferences": merged_preferences(user.notification_preferences, DEFAULT_NOTIFICATION_PREFERENCES),
    }


@activities_api.get("/api/users/settings")
@require_auth
def get_user_settings():
    return jsonify({"success": True, "data": _user_settings(_current_user())})


@activities_api.put("/api/users/settings")
@require_auth
def update_user_settings():
    data = request_json()
    user = _current_user()

    if "name" in data:
        name = data["name"]
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Name is required")
        name = name.strip()
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Name cannot exceed {MAX_NAME_LENGTH} characters")
        user.name = name
    if "notification_preferences" in data:
        prefs = clean_preferences(data["notification_preferences"], DEFAULT_NOTIFICATION_PREFERENCES, "notification_preferences")
        user.notification_preferences = merged_preferences(
            {**(user.notification_preferences or {}), **prefs}, DEFAULT_NOTIFICATION_PREFERENCES
        )
    db.session.commit()
    invalidate(services()["cache"], *ADMIN_AGGREGATE_KEYS)
    logger.info("User %s updated settings", user.id)
    return jsonify({"success": True, "data": _user_settings(user)})
