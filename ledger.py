"""Points ledger + payout lifecycle.

Every balance mutation is a single conditional UPDATE in the same transaction
as its corroborating row (ActivityLog / Reward / Payout / refund notification):

- CompleteActivity:  points_balance += activity.points
- RedeemReward:      points_balance -= reward_points   (WHERE points_balance >= :n)
- RequestPayout:     points_balance -= amount * 100    (WHERE points_balance >= :n)
- ProcessPayout:     points_balance += amount * 100    (reject only)

Debits guarded by `points_balance >= :n` cannot double-spend under concurrent
requests: the loser sees rowcount == 0 and the whole operation rolls back.
Cache keys are deleted and realtime events published only after commit.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from cache import (
    ACTIVE_ACTIVITIES_KEY,
    ADMIN_AGGREGATE_KEYS,
    invalidate,
    payout_history_key,
    payout_stats_key,
    recent_activities_key,
    user_activities_key,
    user_stats_key,
)
from errors import (
    AlreadyCompletedError,
    ConflictError,
    ForbiddenError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
    domain_operation,
)
from extensions import db
from models_activities import (
    ACTIVITY_STATUS_COMPLETED,
    COMPLETABLE_STATUSES,
    LOG_ACTION_COMPLETED,
    Activity,
    ActivityCompletion,
    ActivityLog,
)
from models_notifications import (
    NOTIFICATION_TYPE_ADMIN_PAYOUT_REQUEST,
    NOTIFICATION_TYPE_ERROR,
    NOTIFICATION_TYPE_INFO,
    NOTIFICATION_TYPE_SUCCESS,
)
from models_payouts import (
    PAYOUT_STATUS_COMPLETED,
    PAYOUT_STATUS_ON_THE_WAY,
    PAYOUT_STATUS_PENDING,
    PAYOUT_STATUS_REJECTED,
    PAYOUT_TERMINAL_STATUSES,
    Payout,
    Reward,
    dollars_to_points,
)
from models_users import BankAccount, User


logger = logging.getLogger(__name__)

PAYOUT_ACTIONS = ("process", "complete", "reject")

# (current status, action) -> next status. Anything else is a conflict.
PAYOUT_TRANSITIONS = {
    (PAYOUT_STATUS_PENDING, "process"): PAYOUT_STATUS_ON_THE_WAY,
    (PAYOUT_STATUS_PENDING, "complete"): PAYOUT_STATUS_COMPLETED,
    (PAYOUT_STATUS_ON_THE_WAY, "complete"): PAYOUT_STATUS_COMPLETED,
    (PAYOUT_STATUS_PENDING, "reject"): PAYOUT_STATUS_REJECTED,
    (PAYOUT_STATUS_ON_THE_WAY, "reject"): PAYOUT_STATUS_REJECTED,
}

_CENT = Decimal("0.01")

# Payout.amount is Numeric(12, 2); points columns are 32-bit integers.
MAX_PAYOUT_AMOUNT = Decimal("9999999999.99")
MAX_POINTS = 2**31 - 1


def parse_amount(raw) -> Decimal:
    """Dollar amount: positive, finite, at most two decimal places."""
    if raw is None or isinstance(raw, bool):
        raise ValidationError("Amount is required")
    try:
        amount = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    if amount > MAX_PAYOUT_AMOUNT:
        raise ValidationError(f"Amount cannot exceed ${MAX_PAYOUT_AMOUNT}")
    try:
        quantized = amount.quantize(_CENT)
    except InvalidOperation:
        raise ValidationError("Amount must be a number")
    if amount != quantized:
        raise ValidationError("Amount cannot have more than two decimal places")
    return quantized


def parse_points(raw) -> int:
    if isinstance(raw, bool):
        raise ValidationError("Reward points must be a positive integer")
    if isinstance(raw, str) and raw.strip().isdigit():
        raw = int(raw.strip())
    if not isinstance(raw, int) or raw <= 0:
        raise ValidationError("Reward points must be a positive integer")
    if raw > MAX_POINTS:
        raise ValidationError(f"Reward points cannot exceed {MAX_POINTS}")
    return raw


def _balance(user_id: int) -> int:
    row = db.session.execute(
        text("SELECT points_balance FROM users WHERE id = :uid"), {"uid": user_id}
    ).first()
    return int(row[0] or 0) if row else 0


class PointsLedger:
    def __init__(self, cache, dispatcher):
        self.cache = cache
        self.dispatcher = dispatcher

    # ---- credits ----
    @domain_operation
    def complete_activity(self, user_id: int, activity_id: int, action: str = LOG_ACTION_COMPLETED, extra: dict | None = None):
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User")
        activity = db.session.get(Activity, activity_id)
        if activity is None:
            raise NotFoundError("Activity")

        now = datetime.utcnow()
        points = int(activity.points or 0)

        if activity.is_template:
            if activity.status not in COMPLETABLE_STATUSES:
                raise ConflictError("Activity is not available")
            existing = db.session.execute(
                db.select(ActivityCompletion.id).filter_by(user_id=user.id, activity_id=activity.id)
            ).first()
            if existing:
                raise AlreadyCompletedError()
            try:
                db.session.add(ActivityCompletion(user_id=user.id, activity_id=activity.id, completed_at=now))
                db.session.flush()
            except IntegrityError:
                db.session.rollback()
                raise AlreadyCompletedError()
        else:
            # A user-owned activity is only visible to its owner.
            if activity.user_id != user.id:
                raise NotFoundError("Activity")
            if activity.status == ACTIVITY_STATUS_COMPLETED:
                raise AlreadyCompletedError()
            if activity.status not in COMPLETABLE_STATUSES:
                raise ConflictError("Activity is not available")
            res = db.session.execute(
                text(
                    "UPDATE activities SET status = :done, completed_at = :now, updated_at = :now "
                    "WHERE id = :aid AND status IN (:active, :pending)"
                ),
                {
                    "done": ACTIVITY_STATUS_COMPLETED,
                    "now": now,
                    "aid": activity.id,
                    "active": COMPLETABLE_STATUSES[0],
                    "pending": COMPLETABLE_STATUSES[1],
                },
            )
            if (res.rowcount or 0) == 0:
                raise AlreadyCompletedError()

        db.session.execute(
            text("UPDATE users SET points_balance = points_balance + :pts, updated_at = :now WHERE id = :uid"),
            {"pts": points, "now": now, "uid": user.id},
        )

        meta = {"points": points, "type": activity.type}
        if extra:
            meta.update(extra)
        db.session.add(
            ActivityLog(user_id=user.id, activity_id=activity.id, action=action, metadata_json=meta, created_at=now)
        )
        note = self.dispatcher.create(
            user.id,
            "Activity Completed",
            f"You earned {points} points for completing {activity.title}!",
            NOTIFICATION_TYPE_SUCCESS,
        )
        db.session.commit()

        invalidate(
            self.cache,
            ACTIVE_ACTIVITIES_KEY,
            user_stats_key(user.id),
            payout_stats_key(user.id),
            recent_activities_key(user.id),
            user_activities_key(user.id),
            *ADMIN_AGGREGATE_KEYS,
        )
        self.dispatcher.announce([note])
        self.dispatcher.publish_row("activity_logs", "INSERT", {"user_id": user.id, "activity_id": activity.id})
        logger.info("User %s completed activity %s (+%s points)", user.id, activity.id, points)

        return {"activity_id": activity.id, "points_awarded": points, "points_balance": _balance(user.id)}

    # ---- debits ----
    @domain_operation
    def redeem_reward(self, user_email: str, reward_points, reward_title: str):
        points = parse_points(reward_points)
        title = (reward_title or "").strip()
        if not title:
            raise ValidationError("Reward title is required")

        user = db.session.execute(
            db.select(User).filter_by(email=(user_email or "").strip().lower())
        ).scalar_one_or_none()
        if user is None:
            raise NotFoundError("User")

        now = datetime.utcnow()
        res = db.session.execute(
            text(
                "UPDATE users SET points_balance = points_balance - :pts, updated_at = :now "
                "WHERE id = :uid AND points_balance >= :pts"
            ),
            {"pts": points, "now": now, "uid": user.id},
        )
        if (res.rowcount or 0) == 0:
            raise InsufficientBalanceError()

        reward = Reward(user_id=user.id, points=points, description=f"Redeemed {title}", created_at=now)
        db.session.add(reward)
        note = self.dispatcher.create(
            user.id,
            "Reward Redeemed",
            f"You have successfully redeemed {title} for {points} points",
            NOTIFICATION_TYPE_SUCCESS,
        )
        db.session.commit()

        invalidate(self.cache, user_stats_key(user.id), payout_stats_key(user.id), *ADMIN_AGGREGATE_KEYS)
        self.dispatcher.announce([note])
        logger.info("User %s redeemed %s points for %r", user.id, points, title)

        return {"reward": reward.to_dict(), "new_balance": _balance(user.id)}

    @domain_operation
    def request_payout(self, user_id: int, amount_dollars):
        amount = parse_amount(amount_dollars)
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User")

        has_bank = db.session.execute(db.select(BankAccount.id).filter_by(user_id=user.id)).first()
        if not has_bank:
            raise ValidationError("Bank account required")

        points = dollars_to_points(amount)
        now = datetime.utcnow()
        res = db.session.execute(
            text(
                "UPDATE users SET points_balance = points_balance - :pts, updated_at = :now "
                "WHERE id = :uid AND points_balance >= :pts"
            ),
            {"pts": points, "now": now, "uid": user.id},
        )
        if (res.rowcount or 0) == 0:
            raise InsufficientBalanceError()

        payout = Payout(user_id=user.id, amount=amount, status=PAYOUT_STATUS_PENDING, created_at=now, updated_at=now)
        db.session.add(payout)
        notes = [
            self.dispatcher.create(
                user.id,
                "Payout Requested",
                f"Your payout request for ${amount} has been submitted and is being reviewed.",
                NOTIFICATION_TYPE_INFO,
            ),
            self.dispatcher.create_admin(
                user.id,
                "New Payout Request",
                f"{user.name or user.email} requested a payout of ${amount}.",
                NOTIFICATION_TYPE_ADMIN_PAYOUT_REQUEST,
            ),
        ]
        db.session.commit()

        invalidate(
            self.cache,
            payout_stats_key(user.id),
            payout_history_key(user.id),
            user_stats_key(user.id),
            *ADMIN_AGGREGATE_KEYS,
        )
        self.dispatcher.announce(notes)
        self.dispatcher.publish_row("payouts", "INSERT", payout.to_dict())
        logger.info("User %s requested payout %s of $%s (-%s points)", user.id, payout.id, amount, points)

        return payout.to_dict()

    # ---- admin ----
    @domain_operation
    def process_payout(self, payout_id: int, action: str, admin_identity, notes: str | None = None):
        if admin_identity is None or not admin_identity.is_admin:
            raise ForbiddenError("Admin access required")
        if action not in PAYOUT_ACTIONS:
            raise ValidationError(f"Invalid action: {action}")

        payout = db.session.get(Payout, payout_id)
        if payout is None:
            raise NotFoundError("Payout")

        current = payout.status
        next_status = PAYOUT_TRANSITIONS.get((current, action))
        if next_status is None:
            if current in PAYOUT_TERMINAL_STATUSES:
                raise ConflictError(f"Payout is already {current}")
            raise ConflictError(f"Cannot {action} a payout that is {current}")

        notes = (notes or "").strip() or None
        now = datetime.utcnow()
        res = db.session.execute(
            text(
                "UPDATE payouts SET status = :next, notes = COALESCE(:notes, notes), processed_by = :admin, "
                "processed_at = :now, updated_at = :now WHERE id = :pid AND status = :current"
            ),
            {
                "next": next_status,
                "notes": notes,
                "admin": admin_identity.user_id,
                "now": now,
                "pid": payout.id,
                "current": current,
            },
        )
        if (res.rowcount or 0) == 0:
            raise ConflictError("Payout was updated by someone else; reload and try again")

        amount = Decimal(payout.amount)
        if next_status == PAYOUT_STATUS_REJECTED:
            db.session.execute(
                text("UPDATE users SET points_balance = points_balance + :pts, updated_at = :now WHERE id = :uid"),
                {"pts": dollars_to_points(amount), "now": now, "uid": payout.user_id},
            )

        if next_status == PAYOUT_STATUS_ON_THE_WAY:
            title, message = "Payout Processing", "Your payout is being processed and will be sent shortly"
        elif next_status == PAYOUT_STATUS_COMPLETED:
            title, message = "Payout completed", f"Your payout of ${amount:.2f} has been sent"
        else:
            title, message = "Payout rejected", f"Your payout was rejected: {notes or 'No reason provided'}"
        note = self.dispatcher.create(
            payout.user_id,
            title,
            message,
            NOTIFICATION_TYPE_ERROR if next_status == PAYOUT_STATUS_REJECTED else NOTIFICATION_TYPE_SUCCESS,
        )
        user_id = payout.user_id
        db.session.commit()

        invalidate(
            self.cache,
            payout_stats_key(user_id),
            payout_history_key(user_id),
            user_stats_key(user_id),
            *ADMIN_AGGREGATE_KEYS,
        )
        self.dispatcher.announce([note])
        record = payout.to_dict()
        self.dispatcher.publish_row("payouts", "UPDATE", record)
        logger.info(
            "Admin %s moved payout %s %s -> %s", admin_identity.user_id, payout_id, current, next_status
        )
        return record
