"""Admin payout queue.

Routes:
- GET  /api/admin/payouts                  ?status=pending|on_the_way|completed|rejected|open (default open)
- POST /api/admin/payouts/<id>/process     {"action": "process"|"complete"|"reject", "notes": "..."}
- GET  /api/admin/payouts/export.csv
"""

import csv
import io

from flask import Blueprint, Response, g, jsonify, request

from errors import ValidationError, request_json
from extensions import db, services
from identity import require_admin
from models_payouts import PAYOUT_OPEN_STATUSES, Payout
from models_users import BankAccount, User


admin_payouts = Blueprint("admin_payouts", __name__)

_STATUS_FILTERS = {
    "open": PAYOUT_OPEN_STATUSES,
    "pending": ("pending",),
    "on_the_way": ("on_the_way",),
    "completed": ("completed",),
    "rejected": ("rejected",),
    "all": None,
}


def _payout_rows(statuses, limit: int):
    q = (
        db.select(Payout, User, BankAccount)
        .join(User, User.id == Payout.user_id)
        .outerjoin(BankAccount, BankAccount.user_id == Payout.user_id)
    )
    if statuses:
        q = q.where(Payout.status.in_(statuses))
    return db.session.execute(q.order_by(Payout.created_at.desc(), Payout.id.desc()).limit(limit)).all()


@admin_payouts.get("/api/admin/payouts")
@require_admin
def api_admin_list_payouts():
    status = (request.args.get("status") or "open").strip().lower()
    if status not in _STATUS_FILTERS:
        raise ValidationError("Invalid status filter")

    out = []
    for payout, user, bank in _payout_rows(_STATUS_FILTERS[status], 500):
        d = payout.to_dict()
        d["user"] = {
            "email": user.email or "No email",
            "name": user.name or "Anonymous",
            "bank_account": bank.to_dict() if bank else None,
        }
        out.append(d)
    return jsonify({"success": True, "data": out})


@admin_payouts.post("/api/admin/payouts/<int:payout_id>/process")
@require_admin
def api_admin_process_payout(payout_id: int):
    data = request_json()
    action = (data.get("action") or "").strip().lower()
    result = services()["ledger"].process_payout(payout_id, action, g.identity, data.get("notes"))
    return result.to_response()


@admin_payouts.get("/api/admin/payouts/export.csv")
@require_admin
def api_admin_export_csv():
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(
        ["id", "user_email", "amount", "points", "status", "bank_name", "bsb", "account_number",
         "account_holder_name", "notes", "created_at", "processed_at"]
    )
    for payout, user, bank in _payout_rows(None, 5000):
        writer.writerow(
            [
                payout.id,
                user.email,
                f"{payout.amount:.2f}",
                payout.points,
                payout.status,
                bank.bank_name if bank else "",
                bank.bsb if bank else "",
                bank.account_number if bank else "",
                bank.account_holder_name if bank else "",
                payout.notes or "",
                payout.created_at.isoformat() if payout.created_at else "",
                payout.processed_at.isoformat() if payout.processed_at else "",
            ]
        )
    return Response(
        buf.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=payouts.csv"},
    )
