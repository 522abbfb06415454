"""Verification request APIs (user side).

Routes:
- GET  /api/verification-requests
- POST /api/verification-requests                 {"activity_id": ...}
- POST /api/verification-requests/<id>/complete
"""

from flask import Blueprint, g, jsonify

from errors import ValidationError, request_json
from extensions import limiter, services
from identity import require_auth


verification_api = Blueprint("verification_api", __name__)


@verification_api.get("/api/verification-requests")
@require_auth
def list_my_requests():
    return jsonify({"success": True, "data": services()["workflow"].list_for_user(g.identity.user_id)})


@verification_api.post("/api/verification-requests")
@limiter.limit("10 per hour")
@require_auth
def create_request():
    data = request_json()
    try:
        activity_id = int(data.get("activity_id", data.get("activityId")))
    except (TypeError, ValueError):
        raise ValidationError("Activity ID is required")
    return services()["workflow"].create(g.identity.user_id, activity_id).to_response(201)


@verification_api.post("/api/verification-requests/<int:request_id>/complete")
@require_auth
def complete_request(request_id: int):
    return services()["workflow"].complete(request_id, g.identity).to_response()
