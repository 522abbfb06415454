import csv
import io

import pytest

from conftest import balance_of
from extensions import db
from models_activities import Activity


def test_health(client):
    res = client.get("/api/health")
    body = res.get_json()
    assert res.status_code == 200
    assert body["status"] == "healthy"
    assert body["database"] == "connected"
    assert body["cache"] == "connected"
    assert body["version"] == "1.0.0"


def test_unknown_route_is_json_404(client):
    res = client.get("/api/does-not-exist")
    assert res.status_code == 404
    assert res.get_json()["success"] is False


@pytest.mark.parametrize(
    "method,path",
    [
        ("get", "/api/activities"),
        ("get", "/api/users/stats"),
        ("get", "/api/payouts"),
        ("post", "/api/payouts/request"),
        ("get", "/api/notifications"),
        ("get", "/api/bank-account"),
        ("get", "/api/admin/payouts"),
    ],
)
def test_requires_token(client, method, path):
    res = getattr(client, method)(path)
    assert res.status_code == 401
    assert res.get_json()["error"]["code"] == "UNAUTHORIZED"


def test_garbage_token_is_rejected(client):
    res = client.get("/api/users/me", headers={"Authorization": "Bearer not-a-token"})
    assert res.status_code == 401


def test_token_for_unknown_user_is_rejected(client, services):
    token = services["identity"].issue_token("ghost")
    res = client.get("/api/users/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401


@pytest.mark.parametrize(
    "path",
    ["/api/admin/payouts", "/api/admin/users", "/api/admin/dashboard-stats", "/api/admin/analytics", "/api/admin/activities"],
)
def test_admin_routes_forbid_regular_users(client, make_user, auth_headers, path):
    user = make_user()
    res = client.get(path, headers=auth_headers(user))
    assert res.status_code == 403
    assert res.get_json()["error"]["code"] == "FORBIDDEN"


def test_me_and_role_read_from_database(client, make_user, auth_headers):
    user = make_user(points=42)
    headers = auth_headers(user)

    me = client.get("/api/users/me", headers=headers).get_json()["data"]
    assert me["points_balance"] == 42
    assert client.get("/api/admin/users", headers=headers).status_code == 403

    user.role = "admin"
    db.session.commit()
    assert client.get("/api/admin/users", headers=headers).status_code == 200


def test_complete_activity_over_http(client, make_user, make_activity, auth_headers):
    user = make_user(points=500)
    activity = make_activity(user, points=200)
    headers = auth_headers(user)

    res = client.post("/api/activities/complete", json={"activity_id": activity.id}, headers=headers)
    assert res.status_code == 200
    assert res.get_json()["data"]["points_balance"] == 700

    again = client.post("/api/activities/complete", json={"activityId": activity.id}, headers=headers)
    assert again.status_code == 409

    stats = client.get("/api/users/stats", headers=headers).get_json()["data"]
    assert stats == {"points": 700, "completed_activities": 1, "earnings": 0.0}

    recent = client.get("/api/users/recent-activities", headers=headers).get_json()["data"]
    assert recent[0]["activity_title"] == "Watch intro"
    assert recent[0]["points"] == 200

    daily = client.get("/api/users/activity-stats", headers=headers).get_json()["data"]
    assert daily[0]["count"] == 1
    assert daily[0]["points"] == 200


def test_complete_activity_requires_id(client, make_user, auth_headers):
    user = make_user()
    res = client.post("/api/activities/complete", json={}, headers=auth_headers(user))
    assert res.status_code == 400


def test_activity_detail_hides_other_users_activities(client, make_user, make_activity, auth_headers, admin):
    owner = make_user()
    other = make_user()
    private = make_activity(owner)
    template = make_activity(admin, is_template=True)

    assert client.get(f"/api/activities/{private.id}", headers=auth_headers(owner)).status_code == 200
    assert client.get(f"/api/activities/{private.id}", headers=auth_headers(other)).status_code == 404
    assert client.get(f"/api/activities/{template.id}", headers=auth_headers(other)).status_code == 200


def test_user_board_flags_completed_templates(client, make_user, make_activity, auth_headers, admin):
    user = make_user()
    template = make_activity(admin, points=10, is_template=True, title="Template")
    headers = auth_headers(user)

    client.post("/api/activities/complete", json={"activity_id": template.id}, headers=headers)
    board = client.get("/api/activities/user", headers=headers).get_json()["data"]

    assert [(a["id"], a["completed"]) for a in board] == [(template.id, True)]


def test_redeem_uses_callers_account(client, make_user, auth_headers):
    user = make_user(points=700)
    victim = make_user(points=700)

    res = client.post(
        "/api/rewards/redeem",
        json={"points": 700, "title": "Gift card", "user_email": victim.email},
        headers=auth_headers(user),
    )

    assert res.status_code == 200
    assert res.get_json()["data"]["new_balance"] == 0
    assert balance_of(victim.id) == 700
    rewards = client.get("/api/rewards", headers=auth_headers(user)).get_json()["data"]
    assert [r["points"] for r in rewards] == [700]

    broke = client.post("/api/rewards/redeem", json={"points": 1, "title": "Sticker"}, headers=auth_headers(user))
    assert broke.status_code == 409
    assert broke.get_json()["error"]["message"] == "Insufficient points balance"


def test_payout_flow_with_admin_reject(client, make_user, admin, auth_headers):
    user = make_user(points=5000, bank=True)

    created = client.post("/api/payouts/request", json={"amount": "25.00"}, headers=auth_headers(user))
    assert created.status_code == 201
    payout_id = created.get_json()["data"]["id"]
    assert balance_of(user.id) == 2500

    stats = client.get("/api/payouts/stats", headers=auth_headers(user)).get_json()["data"]
    assert stats == {"available_balance": 25.0, "pending_payout": 25.0, "total_earned": 0.0}

    queue = client.get("/api/admin/payouts", headers=auth_headers(admin)).get_json()["data"]
    assert [p["id"] for p in queue] == [payout_id]
    assert queue[0]["user"]["bank_account"]["bsb"] == "062000"

    rejected = client.post(
        f"/api/admin/payouts/{payout_id}/process",
        json={"action": "reject", "notes": "Name mismatch"},
        headers=auth_headers(admin),
    )
    assert rejected.status_code == 200
    assert rejected.get_json()["data"]["status"] == "rejected"
    assert balance_of(user.id) == 5000

    again = client.post(
        f"/api/admin/payouts/{payout_id}/process", json={"action": "complete"}, headers=auth_headers(admin)
    )
    assert again.status_code == 409
    assert again.get_json()["error"]["message"] == "Payout is already rejected"

    assert client.get("/api/admin/payouts", headers=auth_headers(admin)).get_json()["data"] == []
    history = client.get("/api/payouts", headers=auth_headers(user)).get_json()["data"]
    assert history[0]["status"] == "rejected"


def test_payout_request_validation_over_http(client, make_user, auth_headers):
    user = make_user(points=5000, bank=True)
    res = client.post("/api/payouts/request", json={"amount": "1.234"}, headers=auth_headers(user))
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "VALIDATION_ERROR"


def test_admin_payout_filter_validation(client, admin, auth_headers):
    res = client.get("/api/admin/payouts?status=bogus", headers=auth_headers(admin))
    assert res.status_code == 400


def test_payout_csv_export(client, ledger, make_user, admin, auth_headers):
    user = make_user(points=1500, bank=True)
    ledger.request_payout(user.id, "12.34")

    res = client.get("/api/admin/payouts/export.csv", headers=auth_headers(admin))

    assert res.status_code == 200
    assert res.mimetype == "text/csv"
    rows = list(csv.reader(io.StringIO(res.get_data(as_text=True))))
    assert rows[0][:5] == ["id", "user_email", "amount", "points", "status"]
    assert rows[1][1:5] == [user.email, "12.34", "1234", "pending"]
    assert rows[1][6] == "062000"


def test_bank_account_endpoints(client, make_user, auth_headers):
    user = make_user()
    headers = auth_headers(user)

    bad = client.post("/api/bank-account", json={"bankName": "X", "bsb": "12"}, headers=headers)
    assert bad.status_code == 400
    details = bad.get_json()["error"]["details"]
    assert set(details) == {"bank_name", "account_number", "bsb", "account_type", "account_holder_name"}

    payload = {
        "bankName": "Westpac",
        "accountNumber": "12345678",
        "bsb": "032000",
        "accountType": "savings",
        "accountHolderName": "Jo Bloggs",
    }
    assert client.post("/api/bank-account", json=payload, headers=headers).status_code == 201
    assert client.post("/api/bank-account", json=payload, headers=headers).status_code == 409
    assert client.get("/api/bank-account", headers=headers).get_json()["data"]["bank_name"] == "Westpac"
    assert client.put("/api/bank-account", json={**payload, "bankName": "NAB"}, headers=headers).status_code == 200
    assert client.delete("/api/bank-account", headers=headers).get_json() == {"success": True}
    assert client.delete("/api/bank-account", headers=headers).status_code == 404


def test_notifications_endpoints(client, ledger, make_user, make_activity, auth_headers):
    user = make_user()
    other = make_user()
    activity = make_activity(user, points=5)
    ledger.complete_activity(user.id, activity.id)

    listed = client.get("/api/notifications", headers=auth_headers(user)).get_json()["data"]
    assert len(listed) == 1
    note_id = listed[0]["id"]

    forbidden = client.post(
        "/api/notifications/mark-as-read", json={"notification_id": note_id}, headers=auth_headers(other)
    )
    assert forbidden.status_code == 403

    ok = client.post("/api/notifications/mark-as-read", json={"notificationId": note_id}, headers=auth_headers(user))
    assert ok.status_code == 200
    assert client.get("/api/notifications", headers=auth_headers(user)).get_json()["data"] == []

    res = client.post("/api/notifications/mark-all-as-read", headers=auth_headers(user))
    assert res.get_json()["data"] == {"updated": 0}


def test_verification_flow_over_http(client, mailer, make_user, make_activity, admin, auth_headers):
    user = make_user()
    task = make_activity(admin, type="verification", is_template=True, title="Verify")

    created = client.post("/api/verification-requests", json={"activity_id": task.id}, headers=auth_headers(user))
    assert created.status_code == 201
    req_id = created.get_json()["data"]["id"]
    assert client.post("/api/verification-requests", json={"activity_id": task.id}, headers=auth_headers(user)).status_code == 409

    waiting = client.get("/api/admin/verification-requests?status=waiting", headers=auth_headers(admin)).get_json()
    assert [r["id"] for r in waiting["data"]] == [req_id]

    approved = client.post(
        f"/api/admin/verification-requests/{req_id}/approve",
        json={"verification_url": "https://verify.example.com/s/1"},
        headers=auth_headers(admin),
    )
    assert approved.status_code == 200

    done = client.post(f"/api/verification-requests/{req_id}/complete", headers=auth_headers(user))
    assert done.get_json()["data"]["status"] == "completed"
    step = client.get("/api/users/verification-step", headers=auth_headers(user)).get_json()["data"]
    assert step == {"verification_step": 1}
    assert [m[0] for m in mailer.sent] == ["verification_requested", "verification_ready"]


def test_admin_activity_management(client, ledger, make_user, admin, auth_headers):
    headers = auth_headers(admin)

    created = client.post(
        "/api/admin/activities", json={"title": "New survey", "type": "survey", "points": 25}, headers=headers
    )
    assert created.status_code == 201
    activity = created.get_json()["data"]
    assert activity["status"] == "draft"
    assert activity["is_template"] is True

    assert client.post("/api/admin/activities", json={"title": "x", "type": "dance", "points": 1}, headers=headers).status_code == 400
    too_big = {"title": "x", "type": "survey", "points": 2**31}
    assert client.post("/api/admin/activities", json=too_big, headers=headers).status_code == 400

    activated = client.post(f"/api/admin/activities/{activity['id']}/status", json={"status": "active"}, headers=headers)
    assert activated.get_json()["data"]["status"] == "active"

    updated = client.put(f"/api/admin/activities/{activity['id']}", json={"points": 30}, headers=headers)
    assert updated.get_json()["data"]["points"] == 30

    user = make_user()
    ledger.complete_activity(user.id, activity["id"])
    listed = client.get("/api/admin/activities", headers=headers).get_json()["data"]
    assert listed[0]["completions"] == 1

    assert client.delete(f"/api/admin/activities/{activity['id']}", headers=headers).status_code == 409

    spare = client.post(
        "/api/admin/activities", json={"title": "Spare", "type": "video", "points": 0}, headers=headers
    ).get_json()["data"]
    assert client.delete(f"/api/admin/activities/{spare['id']}", headers=headers).get_json() == {"success": True}
    db.session.expire_all()
    assert db.session.get(Activity, spare["id"]) is None


def test_admin_dashboard_and_settings(client, ledger, make_user, admin, auth_headers):
    headers = auth_headers(admin)
    user = make_user(points=1000, bank=True)

    before = client.get("/api/admin/dashboard-stats", headers=headers).get_json()["data"]
    assert before["pending_payouts"] == 0
    ledger.request_payout(user.id, 5)
    after = client.get("/api/admin/dashboard-stats", headers=headers).get_json()["data"]
    assert after["pending_payouts"] == 1
    assert after["total_users"] == 2

    analytics = client.get("/api/admin/analytics", headers=headers).get_json()["data"]
    assert analytics["payouts"] == [{"status": "pending", "count": 1, "amount": 5.0}]

    settings = client.get("/api/admin/settings", headers=headers).get_json()["data"]
    assert settings["admin_notification_preferences"]["new_users"] is True

    res = client.put(
        "/api/admin/settings", json={"admin_notification_preferences": {"new_users": False}}, headers=headers
    )
    assert res.get_json()["data"]["admin_notification_preferences"] == {
        "new_payout_requests": True,
        "new_verification_requests": True,
        "new_users": False,
    }
    bad = client.put("/api/admin/settings", json={"notification_preferences": {"sms": True}}, headers=headers)
    assert bad.status_code == 400


def test_user_settings_read_and_update(client, make_user, admin, auth_headers):
    user = make_user(name="Jo Smith")
    headers = auth_headers(user)

    settings = client.get("/api/users/settings", headers=headers).get_json()["data"]
    assert settings["name"] == "Jo Smith"
    assert settings["notification_preferences"] == {
        "email_notifications": True,
        "payout_updates": True,
        "new_activities": True,
    }

    res = client.put(
        "/api/users/settings",
        json={"name": "  Jo Citizen ", "notification_preferences": {"payout_updates": False}},
        headers=headers,
    )
    assert res.status_code == 200
    data = res.get_json()["data"]
    assert data["name"] == "Jo Citizen"
    assert data["notification_preferences"]["payout_updates"] is False
    assert data["notification_preferences"]["new_activities"] is True

    again = client.get("/api/users/settings", headers=headers).get_json()["data"]
    assert again["notification_preferences"]["payout_updates"] is False


def test_user_settings_update_refreshes_admin_users_list(client, make_user, admin, auth_headers):
    user = make_user(name="Old Name")
    listed = client.get("/api/admin/users", headers=auth_headers(admin)).get_json()["data"]
    assert "Old Name" in [u["name"] for u in listed]

    client.put("/api/users/settings", json={"name": "New Name"}, headers=auth_headers(user))

    listed = client.get("/api/admin/users", headers=auth_headers(admin)).get_json()["data"]
    names = [u["name"] for u in listed]
    assert "New Name" in names
    assert "Old Name" not in names


@pytest.mark.parametrize(
    "body",
    [
        {"name": ""},
        {"name": "   "},
        {"name": 42},
        {"name": "x" * 201},
        {"notification_preferences": {"sms": True}},
        {"notification_preferences": {"payout_updates": "no"}},
        {"notification_preferences": ["payout_updates"]},
    ],
)
def test_user_settings_rejects_bad_input(client, make_user, auth_headers, body):
    user = make_user(name="Unchanged")
    res = client.put("/api/users/settings", json=body, headers=auth_headers(user))
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "VALIDATION_ERROR"
    assert client.get("/api/users/settings", headers=auth_headers(user)).get_json()["data"]["name"] == "Unchanged"


@pytest.mark.parametrize(
    "method,path,body",
    [
        ("post", "/api/payouts/request", [1]),
        ("post", "/api/activities/complete", "5"),
        ("post", "/api/rewards/redeem", 100),
        ("put", "/api/users/settings", ["name"]),
        ("post", "/api/bank-account", [{"bank_name": "x"}]),
    ],
)
def test_non_object_json_body_is_a_validation_error(client, make_user, auth_headers, method, path, body):
    user = make_user(points=5000, bank=True)
    res = getattr(client, method)(path, json=body, headers=auth_headers(user))
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "VALIDATION_ERROR"
