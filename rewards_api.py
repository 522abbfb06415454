"""Reward redemption.

Routes:
- GET  /api/rewards          redemption history
- POST /api/rewards/redeem   {"points": 700, "title": "Gift card"}

The redeeming account is always the caller's; a client-supplied email is ignored.
"""

from flask import Blueprint, g, jsonify

from errors import NotFoundError, request_json
from extensions import db, limiter, services
from identity import require_auth
from models_payouts import Reward
from models_users import User


rewards_api = Blueprint("rewards_api", __name__)


@rewards_api.get("/api/rewards")
@require_auth
def list_rewards():
    rows = db.session.execute(
        db.select(Reward)
        .filter_by(user_id=g.identity.user_id)
        .order_by(Reward.created_at.desc(), Reward.id.desc())
    ).scalars()
    return jsonify({"success": True, "data": [r.to_dict() for r in rows]})


@rewards_api.post("/api/rewards/redeem")
@limiter.limit("30 per hour")
@require_auth
def redeem_reward():
    data = request_json()
    user = db.session.get(User, g.identity.user_id)
    if user is None:
        raise NotFoundError("User")
    points = data.get("points", data.get("reward_points"))
    title = data.get("title", data.get("reward_title"))
    return services()["ledger"].redeem_reward(user.email, points, title).to_response()
