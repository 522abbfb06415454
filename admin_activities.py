"""Admin activity management.

Routes:
- GET    /api/admin/activities
- POST   /api/admin/activities                 create a template activity
- PUT    /api/admin/activities/<id>
- POST   /api/admin/activities/<id>            (same as PUT, for proxies that mishandle PUT)
- POST   /api/admin/activities/<id>/status     {"status": "active"}
- DELETE /api/admin/activities/<id>

Every write drops the cached active-activities list. An activity somebody has
already completed is never physically deleted: archive it via status instead.
"""

import logging

from flask import Blueprint, g, jsonify
from sqlalchemy import func

from cache import ACTIVE_ACTIVITIES_KEY, ADMIN_AGGREGATE_KEYS, invalidate
from errors import ConflictError, NotFoundError, ValidationError, domain_operation, request_json
from extensions import db, services
from identity import require_admin
from ledger import MAX_POINTS
from models_activities import (
    ACTIVITY_STATUS_DRAFT,
    ACTIVITY_STATUSES,
    ACTIVITY_TYPES,
    Activity,
    ActivityCompletion,
    ActivityLog,
)


logger = logging.getLogger(__name__)

admin_activities = Blueprint("admin_activities", __name__)


def _clean_activity_fields(data: dict, partial: bool) -> dict:
    out = {}

    if "title" in data or not partial:
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("title is required")
        if len(title) > 200:
            raise ValidationError("title must be at most 200 characters")
        out["title"] = title

    if "description" in data:
        out["description"] = (data.get("description") or "").strip() or None

    if "type" in data or not partial:
        type_ = (data.get("type") or "").strip()
        if type_ not in ACTIVITY_TYPES:
            raise ValidationError(f"type must be one of: {', '.join(ACTIVITY_TYPES)}")
        out["type"] = type_

    if "points" in data or not partial:
        points = data.get("points")
        if isinstance(points, bool):
            raise ValidationError("points must be an integer")
        try:
            points = int(points)
        except (TypeError, ValueError, OverflowError):
            raise ValidationError("points must be an integer")
        if points < 0:
            raise ValidationError("points must be >= 0")
        if points > MAX_POINTS:
            raise ValidationError(f"points cannot exceed {MAX_POINTS}")
        out["points"] = points

    if "status" in data:
        out["status"] = _clean_status(data.get("status"))

    if "external_id" in data:
        out["external_id"] = (str(data.get("external_id") or "")).strip() or None

    if "metadata" in data:
        meta = data.get("metadata")
        if meta is not None and not isinstance(meta, dict):
            raise ValidationError("metadata must be an object")
        out["metadata_json"] = meta or {}

    return out


def _clean_status(raw) -> str:
    status = (raw or "").strip() if isinstance(raw, str) else ""
    if status not in ACTIVITY_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(ACTIVITY_STATUSES)}")
    return status


def _after_write(event: str, activity: dict) -> None:
    invalidate(services()["cache"], ACTIVE_ACTIVITIES_KEY, *ADMIN_AGGREGATE_KEYS)
    services()["dispatcher"].publish_row("activities", event, activity)


@domain_operation
def create_template_activity(admin_user_id: int, data: dict):
    fields = _clean_activity_fields(data, partial=False)
    fields.setdefault("status", ACTIVITY_STATUS_DRAFT)
    activity = Activity(user_id=admin_user_id, is_template=True, **fields)
    db.session.add(activity)
    db.session.commit()

    record = activity.to_dict()
    _after_write("INSERT", record)
    logger.info("Admin %s created activity %s (%s)", admin_user_id, activity.id, activity.type)
    return record


@domain_operation
def update_activity(activity_id: int, data: dict):
    activity = db.session.get(Activity, activity_id)
    if activity is None:
        raise NotFoundError("Activity")
    for k, v in _clean_activity_fields(data, partial=True).items():
        setattr(activity, k, v)
    db.session.commit()

    record = activity.to_dict()
    _after_write("UPDATE", record)
    return record


@domain_operation
def update_activity_status(activity_id: int, status):
    activity = db.session.get(Activity, activity_id)
    if activity is None:
        raise NotFoundError("Activity")
    activity.status = _clean_status(status)
    db.session.commit()

    record = activity.to_dict()
    _after_write("UPDATE", record)
    return record


@domain_operation
def delete_activity(activity_id: int):
    activity = db.session.get(Activity, activity_id)
    if activity is None:
        raise NotFoundError("Activity")

    has_completions = db.session.execute(
        db.select(ActivityCompletion.id).filter_by(activity_id=activity.id).limit(1)
    ).first()
    has_logs = db.session.execute(db.select(ActivityLog.id).filter_by(activity_id=activity.id).limit(1)).first()
    if has_completions or has_logs:
        raise ConflictError("Activity has completions and cannot be deleted; archive it instead")

    record = activity.to_dict()
    db.session.delete(activity)
    db.session.commit()

    _after_write("DELETE", record)
    logger.info("Activity %s deleted", activity_id)
    return None


@admin_activities.get("/api/admin/activities")
@require_admin
def api_admin_list_activities():
    counts = dict(
        db.session.execute(
            db.select(ActivityCompletion.activity_id, func.count(ActivityCompletion.id)).group_by(
                ActivityCompletion.activity_id
            )
        ).all()
    )
    rows = db.session.execute(
        db.select(Activity).order_by(Activity.created_at.desc(), Activity.id.desc())
    ).scalars()
    out = []
    for a in rows:
        d = a.to_dict()
        d["completions"] = int(counts.get(a.id, 0))
        out.append(d)
    return jsonify({"success": True, "data": out})


@admin_activities.post("/api/admin/activities")
@require_admin
def api_admin_create_activity():
    data = request_json()
    return create_template_activity(g.identity.user_id, data).to_response(201)


@admin_activities.put("/api/admin/activities/<int:activity_id>")
@require_admin
def api_admin_update_activity(activity_id: int):
    return update_activity(activity_id, request_json()).to_response()


@admin_activities.post("/api/admin/activities/<int:activity_id>")
@require_admin
def api_admin_update_activity_post(activity_id: int):
    return update_activity(activity_id, request_json()).to_response()


@admin_activities.post("/api/admin/activities/<int:activity_id>/status")
@require_admin
def api_admin_update_activity_status(activity_id: int):
    data = request_json()
    return update_activity_status(activity_id, data.get("status")).to_response()


@admin_activities.delete("/api/admin/activities/<int:activity_id>")
@require_admin
def api_admin_delete_activity(activity_id: int):
    res = delete_activity(activity_id)
    if not res.success:
        return res.to_response()
    return jsonify({"success": True})
