from decimal import Decimal

import pytest

from cache import user_stats_key
from conftest import balance_of, identity_for
from extensions import db
from models_activities import (
    ACTIVITY_STATUS_COMPLETED,
    ACTIVITY_STATUS_DRAFT,
    Activity,
    ActivityCompletion,
    ActivityLog,
)
from models_notifications import Notification
from models_payouts import Payout, Reward


def _count(model, **filters):
    return db.session.execute(db.select(db.func.count(model.id)).filter_by(**filters)).scalar_one()


def test_example_scenario(ledger, make_user, make_activity):
    user = make_user(points=500)
    activity = make_activity(user, points=200)

    res = ledger.complete_activity(user.id, activity.id)
    assert res.success
    assert res.data["points_balance"] == 700
    assert balance_of(user.id) == 700
    assert _count(ActivityLog, user_id=user.id) == 1
    assert _count(Notification, user_id=user.id) == 1

    res = ledger.redeem_reward(user.email, 700, "Gift card")
    assert res.success
    assert res.data["new_balance"] == 0
    assert _count(Reward, user_id=user.id) == 1

    res = ledger.redeem_reward(user.email, 1, "Sticker")
    assert not res.success
    assert res.message == "Insufficient points balance"
    assert balance_of(user.id) == 0
    assert _count(Reward, user_id=user.id) == 1


def test_completion_marks_activity_and_logs_metadata(ledger, make_user, make_activity):
    user = make_user()
    activity = make_activity(user, points=150, type="survey", title="Quick survey")

    assert ledger.complete_activity(user.id, activity.id).success

    db.session.expire_all()
    activity = db.session.get(Activity, activity.id)
    assert activity.status == ACTIVITY_STATUS_COMPLETED
    assert activity.completed_at is not None
    log = db.session.execute(db.select(ActivityLog).filter_by(user_id=user.id)).scalar_one()
    assert log.action == "completed"
    assert log.metadata_json == {"points": 150, "type": "survey"}
    note = db.session.execute(db.select(Notification).filter_by(user_id=user.id)).scalar_one()
    assert note.title == "Activity Completed"
    assert note.message == "You earned 150 points for completing Quick survey!"
    assert note.type == "success"


def test_completing_twice_is_a_conflict(ledger, make_user, make_activity):
    user = make_user(points=10)
    activity = make_activity(user, points=200)

    assert ledger.complete_activity(user.id, activity.id).success
    second = ledger.complete_activity(user.id, activity.id)

    assert not second.success
    assert second.error["code"] == "ALREADY_COMPLETED"
    assert second.status_code == 409
    assert balance_of(user.id) == 210
    assert _count(ActivityLog, user_id=user.id) == 1


def test_template_completed_once_per_user(ledger, make_user, make_activity, admin):
    template = make_activity(admin, points=50, is_template=True)
    alice = make_user()
    bob = make_user()

    assert ledger.complete_activity(alice.id, template.id).success
    assert ledger.complete_activity(bob.id, template.id).success
    again = ledger.complete_activity(alice.id, template.id)

    assert not again.success
    assert again.status_code == 409
    assert balance_of(alice.id) == 50
    assert balance_of(bob.id) == 50
    assert _count(ActivityCompletion, activity_id=template.id) == 2
    db.session.expire_all()
    assert db.session.get(Activity, template.id).status == "active"


def test_cannot_complete_someone_elses_activity(ledger, make_user, make_activity):
    owner = make_user()
    other = make_user()
    activity = make_activity(owner)

    res = ledger.complete_activity(other.id, activity.id)

    assert not res.success
    assert res.status_code == 404
    assert balance_of(other.id) == 0


def test_draft_activity_is_not_completable(ledger, make_user, make_activity):
    user = make_user()
    activity = make_activity(user, status=ACTIVITY_STATUS_DRAFT)

    res = ledger.complete_activity(user.id, activity.id)

    assert not res.success
    assert res.status_code == 409
    assert res.error["code"] == "CONFLICT"
    assert balance_of(user.id) == 0


def test_missing_activity_and_user(ledger, make_user):
    user = make_user()
    assert ledger.complete_activity(user.id, 9999).error == {"code": "NOT_FOUND", "message": "Activity not found"}
    assert ledger.complete_activity(9999, 1).error["message"] == "User not found"


@pytest.mark.parametrize("points", [0, -5, "abc", True, None, 1.5])
def test_redeem_rejects_bad_points(ledger, make_user, points):
    user = make_user(points=100)
    res = ledger.redeem_reward(user.email, points, "Gift card")
    assert not res.success
    assert res.status_code == 400
    assert balance_of(user.id) == 100


def test_redeem_unknown_user(ledger):
    res = ledger.redeem_reward("nobody@example.com", 10, "Gift card")
    assert not res.success
    assert res.message == "User not found"


def test_redeem_notification_and_reward_row(ledger, make_user):
    user = make_user(points=300)
    assert ledger.redeem_reward(user.email, 250, "Movie ticket").success

    reward = db.session.execute(db.select(Reward).filter_by(user_id=user.id)).scalar_one()
    assert reward.points == 250
    assert reward.description == "Redeemed Movie ticket"
    note = db.session.execute(db.select(Notification).filter_by(user_id=user.id)).scalar_one()
    assert note.title == "Reward Redeemed"


# ---- payouts ----

def test_payout_requires_bank_account(ledger, make_user):
    user = make_user(points=5000)
    res = ledger.request_payout(user.id, 10)
    assert not res.success
    assert res.message == "Bank account required"
    assert balance_of(user.id) == 5000


def test_payout_insufficient_balance(ledger, make_user):
    user = make_user(points=999, bank=True)
    res = ledger.request_payout(user.id, 10)
    assert not res.success
    assert res.message == "Insufficient points balance"
    assert balance_of(user.id) == 999
    assert _count(Payout, user_id=user.id) == 0


@pytest.mark.parametrize("amount", [0, -1, "ten", "10.005", None, float("nan")])
def test_payout_rejects_bad_amounts(ledger, make_user, amount):
    user = make_user(points=5000, bank=True)
    res = ledger.request_payout(user.id, amount)
    assert not res.success
    assert res.status_code == 400
    assert balance_of(user.id) == 5000


@pytest.mark.parametrize("amount", ["1e17", "1e27", 10**20, "10000000000"])
def test_payout_rejects_amounts_beyond_column_range(ledger, make_user, amount):
    user = make_user(points=5000, bank=True)
    res = ledger.request_payout(user.id, amount)
    assert not res.success
    assert res.status_code == 400
    assert res.error["code"] == "VALIDATION_ERROR"
    assert balance_of(user.id) == 5000
    assert _count(Payout, user_id=user.id) == 0


@pytest.mark.parametrize("points", [2**31, 10**20, str(10**20)])
def test_redeem_rejects_points_beyond_column_range(ledger, make_user, points):
    user = make_user(points=100)
    res = ledger.redeem_reward(user.email, points, "Gift card")
    assert not res.success
    assert res.status_code == 400
    assert res.error["code"] == "VALIDATION_ERROR"
    assert balance_of(user.id) == 100


def test_payout_request_debits_and_notifies(ledger, make_user, admin):
    user = make_user(points=2500, bank=True)

    res = ledger.request_payout(user.id, "12.50")

    assert res.success
    assert res.data["status"] == "pending"
    assert res.data["amount"] == "12.50"
    assert balance_of(user.id) == 1250
    notes = db.session.execute(db.select(Notification).filter_by(user_id=user.id)).scalars().all()
    by_type = {n.type: n for n in notes}
    assert by_type["info"].message == "Your payout request for $12.50 has been submitted and is being reviewed."
    assert by_type["admin_payout_request"].user_role == "admin"


def test_payout_refund_symmetry(ledger, make_user, admin):
    user = make_user(points=1500, bank=True)
    payout = ledger.request_payout(user.id, 10).data
    assert balance_of(user.id) == 500

    res = ledger.process_payout(payout["id"], "reject", identity_for(admin), "Wrong BSB")

    assert res.success
    assert res.data["status"] == "rejected"
    assert res.data["processed_by"] == admin.id
    assert balance_of(user.id) == 1500
    note = db.session.execute(
        db.select(Notification).filter_by(user_id=user.id, type="error")
    ).scalar_one()
    assert note.message == "Your payout was rejected: Wrong BSB"


def _payout_in_state(ledger, user, admin, state):
    payout_id = ledger.request_payout(user.id, 10).data["id"]
    steps = {
        "pending": [],
        "on_the_way": ["process"],
        "completed": ["complete"],
        "rejected": ["reject"],
    }[state]
    for action in steps:
        assert ledger.process_payout(payout_id, action, identity_for(admin)).success
    return payout_id


@pytest.mark.parametrize(
    "start,action,expected,refund",
    [
        ("pending", "process", "on_the_way", False),
        ("pending", "complete", "completed", False),
        ("on_the_way", "complete", "completed", False),
        ("pending", "reject", "rejected", True),
        ("on_the_way", "reject", "rejected", True),
    ],
)
def test_payout_transitions(ledger, make_user, admin, start, action, expected, refund):
    user = make_user(points=1000, bank=True)
    payout_id = _payout_in_state(ledger, user, admin, start)
    assert balance_of(user.id) == 0

    res = ledger.process_payout(payout_id, action, identity_for(admin))

    assert res.success
    assert res.data["status"] == expected
    assert balance_of(user.id) == (1000 if refund else 0)


@pytest.mark.parametrize(
    "start,action",
    [
        ("on_the_way", "process"),
        ("completed", "process"),
        ("completed", "complete"),
        ("completed", "reject"),
        ("rejected", "process"),
        ("rejected", "complete"),
        ("rejected", "reject"),
    ],
)
def test_payout_invalid_transitions_are_conflicts(ledger, make_user, admin, start, action):
    user = make_user(points=1000, bank=True)
    payout_id = _payout_in_state(ledger, user, admin, start)
    before = balance_of(user.id)

    res = ledger.process_payout(payout_id, action, identity_for(admin))

    assert not res.success
    assert res.status_code == 409
    assert balance_of(user.id) == before
    db.session.expire_all()
    assert db.session.get(Payout, payout_id).status == start


def test_process_payout_requires_admin(ledger, make_user):
    user = make_user(points=1000, bank=True)
    payout_id = ledger.request_payout(user.id, 10).data["id"]

    res = ledger.process_payout(payout_id, "reject", identity_for(user))

    assert not res.success
    assert res.status_code == 403
    assert balance_of(user.id) == 0


def test_process_payout_unknown_action_and_payout(ledger, admin):
    assert ledger.process_payout(1, "approve", identity_for(admin)).status_code == 400
    assert ledger.process_payout(12345, "process", identity_for(admin)).message == "Payout not found"


def test_completed_payout_notification(ledger, make_user, admin):
    user = make_user(points=2000, bank=True)
    payout_id = ledger.request_payout(user.id, Decimal("20")).data["id"]
    ledger.process_payout(payout_id, "complete", identity_for(admin))

    note = db.session.execute(
        db.select(Notification).filter_by(user_id=user.id, title="Payout completed")
    ).scalar_one()
    assert note.message == "Your payout of $20.00 has been sent"
    assert note.type == "success"


def test_balance_never_negative_across_mixed_operations(ledger, make_user, make_activity, admin):
    user = make_user(points=0, bank=True)
    activity = make_activity(user, points=300)

    ops = [
        lambda: ledger.redeem_reward(user.email, 1, "x"),
        lambda: ledger.request_payout(user.id, 1),
        lambda: ledger.complete_activity(user.id, activity.id),
        lambda: ledger.request_payout(user.id, 2),
        lambda: ledger.redeem_reward(user.email, 150, "y"),
        lambda: ledger.redeem_reward(user.email, 51, "z"),
        lambda: ledger.request_payout(user.id, "0.49"),
    ]
    for op in ops:
        op()
        assert balance_of(user.id) >= 0
    assert balance_of(user.id) == 0


# ---- cache consistency ----

def test_stats_reflect_completion_immediately(ledger, stats, cache, make_user, make_activity):
    user = make_user(points=500)
    activity = make_activity(user, points=200)

    assert stats.user_stats(user.id)["points"] == 500
    assert user_stats_key(user.id) in cache

    ledger.complete_activity(user.id, activity.id)

    assert user_stats_key(user.id) not in cache
    assert stats.user_stats(user.id)["points"] == 700
    assert stats.user_stats(user.id)["completed_activities"] == 1


def test_active_list_drops_completed_activity(ledger, stats, make_user, make_activity):
    user = make_user()
    activity = make_activity(user, points=20)

    assert [a["id"] for a in stats.active_activities()] == [activity.id]
    ledger.complete_activity(user.id, activity.id)
    assert stats.active_activities() == []


def test_payout_stats_and_history_refresh(ledger, stats, make_user, admin):
    user = make_user(points=3000, bank=True)
    assert stats.payout_stats(user.id) == {"available_balance": 30.0, "pending_payout": 0.0, "total_earned": 0.0}
    assert stats.payout_history(user.id) == []

    payout_id = ledger.request_payout(user.id, 10).data["id"]
    assert stats.payout_stats(user.id) == {"available_balance": 20.0, "pending_payout": 10.0, "total_earned": 0.0}
    assert len(stats.payout_history(user.id)) == 1

    ledger.process_payout(payout_id, "complete", identity_for(admin))
    assert stats.payout_stats(user.id)["total_earned"] == 10.0
    assert stats.user_stats(user.id)["earnings"] == 10.0


def test_payout_stats_refresh_after_completion_and_redeem(ledger, stats, make_user, make_activity):
    user = make_user(points=1000, bank=True)
    assert stats.payout_stats(user.id)["available_balance"] == 10.0

    activity = make_activity(user, points=500)
    assert ledger.complete_activity(user.id, activity.id).success
    assert stats.payout_stats(user.id)["available_balance"] == 15.0

    assert ledger.redeem_reward(user.email, 300, "Gift card").success
    assert stats.payout_stats(user.id)["available_balance"] == 12.0


def test_realtime_events_published_after_commit(ledger, publisher, make_user, make_activity):
    user = make_user()
    activity = make_activity(user, points=5)

    ledger.complete_activity(user.id, activity.id)

    assert f"realtime:notifications:{user.id}" in publisher.channels()
    assert "realtime:activity_logs" in publisher.channels()


def test_failed_operation_publishes_nothing(ledger, publisher, make_user):
    user = make_user(points=0)
    ledger.redeem_reward(user.email, 10, "Gift card")
    assert publisher.events == []
