"""User payout APIs.

Routes:
- GET  /api/payouts           payout history (cached)
- GET  /api/payouts/stats     available balance / pending / total earned (cached)
- POST /api/payouts/request   {"amount": "12.50"}
"""

from flask import Blueprint, g, jsonify

from errors import request_json
from extensions import limiter, services
from identity import require_auth


payouts_api = Blueprint("payouts_api", __name__)


@payouts_api.get("/api/payouts")
@require_auth
def payout_history():
    return jsonify({"success": True, "data": services()["stats"].payout_history(g.identity.user_id)})


@payouts_api.get("/api/payouts/stats")
@require_auth
def payout_stats():
    return jsonify({"success": True, "data": services()["stats"].payout_stats(g.identity.user_id)})


@payouts_api.post("/api/payouts/request")
@limiter.limit("10 per hour")
@require_auth
def request_payout():
    data = request_json()
    result = services()["ledger"].request_payout(g.identity.user_id, data.get("amount"))
    return result.to_response(201)
