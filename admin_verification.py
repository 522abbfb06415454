"""Admin verification queue.

Routes:
- GET  /api/admin/verification-requests              ?status=waiting|ready|completed
- POST /api/admin/verification-requests/<id>/approve  {"verification_url": "https://..."}
- POST /api/admin/verification-requests/<id>/complete
"""

from flask import Blueprint, g, jsonify, request

from errors import ValidationError, request_json
from extensions import services
from identity import require_admin
from models_verification import (
    VERIFICATION_STATUS_COMPLETED,
    VERIFICATION_STATUS_READY,
    VERIFICATION_STATUS_WAITING,
)


admin_verification = Blueprint("admin_verification", __name__)

_STATUSES = {VERIFICATION_STATUS_WAITING, VERIFICATION_STATUS_READY, VERIFICATION_STATUS_COMPLETED}


@admin_verification.get("/api/admin/verification-requests")
@require_admin
def api_admin_list_requests():
    status = (request.args.get("status") or "").strip().lower() or None
    if status and status not in _STATUSES:
        raise ValidationError("Invalid status filter")
    return jsonify({"success": True, "data": services()["workflow"].list_all(status)})


@admin_verification.post("/api/admin/verification-requests/<int:request_id>/approve")
@require_admin
def api_admin_approve_request(request_id: int):
    data = request_json()
    url = data.get("verification_url", data.get("verificationUrl"))
    return services()["workflow"].approve(request_id, url, g.identity).to_response()


@admin_verification.post("/api/admin/verification-requests/<int:request_id>/complete")
@require_admin
def api_admin_complete_request(request_id: int):
    return services()["workflow"].complete(request_id, g.identity).to_response()
