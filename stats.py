"""Read-side queries behind the dashboards.

Everything except the monthly activity breakdown goes through cache_aside().
Values are plain JSON-able dicts/lists so either cache backend can hold them.
Writers (ledger.py, verification.py, admin blueprints) delete the keys.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, or_

from cache import (
    ACTIVE_ACTIVITIES_KEY,
    ADMIN_ANALYTICS_KEY,
    ADMIN_DASHBOARD_STATS_KEY,
    ADMIN_USERS_KEY,
    cache_aside,
    payout_history_key,
    payout_stats_key,
    recent_activities_key,
    user_activities_key,
    user_stats_key,
    verification_step_key,
)
from extensions import db
from models_activities import (
    ACTIVITY_STATUS_ACTIVE,
    ACTIVITY_STATUS_COMPLETED,
    ACTIVITY_STATUS_ERROR,
    Activity,
    ActivityCompletion,
    ActivityLog,
)
from models_payouts import (
    PAYOUT_STATUS_COMPLETED,
    PAYOUT_STATUS_PENDING,
    PAYOUT_STATUS_REJECTED,
    POINTS_PER_DOLLAR,
    Payout,
)
from models_users import User


logger = logging.getLogger(__name__)

RECENT_ACTIVITIES_LIMIT = 5
RECENT_USERS_LIMIT = 5


def _money(value) -> float:
    return float(Decimal(value or 0).quantize(Decimal("0.01")))


def _growth(current, previous) -> float:
    """Percent change, 0 when there is no previous period to compare to."""
    if not previous:
        return 0.0
    return round((float(current) / float(previous) - 1) * 100, 1)


class StatsQueries:
    def __init__(self, cache, ttl_short: int = 300, ttl_long: int = 600):
        self.cache = cache
        self.ttl_short = ttl_short
        self.ttl_long = ttl_long

    # ---- activities ----
    def active_activities(self) -> list[dict]:
        def load():
            rows = db.session.execute(
                db.select(Activity)
                .where(Activity.status == ACTIVITY_STATUS_ACTIVE)
                .order_by(Activity.created_at.desc(), Activity.id.desc())
            ).scalars()
            return [a.to_dict() for a in rows]

        return cache_aside(self.cache, ACTIVE_ACTIVITIES_KEY, self.ttl_short, load)

    def user_activities(self, user_id: int) -> list[dict]:
        """Active templates (flagged when this user completed them) plus the user's own activities."""

        def load():
            done_ids = set(
                db.session.execute(
                    db.select(ActivityCompletion.activity_id).filter_by(user_id=user_id)
                ).scalars()
            )
            rows = db.session.execute(
                db.select(Activity)
                .where(
                    or_(
                        (Activity.is_template.is_(True)) & (Activity.status == ACTIVITY_STATUS_ACTIVE),
                        (Activity.is_template.is_(False)) & (Activity.user_id == user_id),
                    )
                )
                .order_by(Activity.created_at.desc(), Activity.id.desc())
            ).scalars()
            out = []
            for a in rows:
                d = a.to_dict()
                if a.is_template:
                    d["completed"] = a.id in done_ids
                else:
                    d["completed"] = a.status == ACTIVITY_STATUS_COMPLETED
                out.append(d)
            return out

        return cache_aside(self.cache, user_activities_key(user_id), self.ttl_short, load)

    def recent_activities(self, user_id: int) -> list[dict]:
        def load():
            rows = db.session.execute(
                db.select(ActivityLog, Activity.title)
                .outerjoin(Activity, Activity.id == ActivityLog.activity_id)
                .where(ActivityLog.user_id == user_id)
                .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
                .limit(RECENT_ACTIVITIES_LIMIT)
            ).all()
            out = []
            for log, title in rows:
                d = log.to_dict()
                d["activity_title"] = title
                out.append(d)
            return out

        return cache_aside(self.cache, recent_activities_key(user_id), self.ttl_short, load)

    def monthly_activity_stats(self, user_id: int, now: datetime | None = None) -> list[dict]:
        """Per-day completion count and points since the start of the month. Not cached."""
        now = now or datetime.utcnow()
        start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        rows = db.session.execute(
            db.select(ActivityLog)
            .where(ActivityLog.user_id == user_id, ActivityLog.created_at >= start)
            .order_by(ActivityLog.created_at.asc())
        ).scalars()

        by_day: dict[str, dict] = {}
        for log in rows:
            day = log.created_at.date().isoformat()
            bucket = by_day.setdefault(day, {"date": day, "count": 0, "points": 0})
            bucket["count"] += 1
            bucket["points"] += int((log.metadata_json or {}).get("points") or 0)
        return list(by_day.values())

    # ---- user ----
    def user_stats(self, user_id: int) -> dict:
        def load():
            balance = db.session.execute(
                db.select(User.points_balance).where(User.id == user_id)
            ).scalar_one_or_none()
            completed = db.session.execute(
                db.select(func.count(ActivityLog.id)).where(ActivityLog.user_id == user_id)
            ).scalar_one()
            earned = db.session.execute(
                db.select(func.coalesce(func.sum(Payout.amount), 0)).where(
                    Payout.user_id == user_id, Payout.status == PAYOUT_STATUS_COMPLETED
                )
            ).scalar_one()
            return {
                "points": int(balance or 0),
                "completed_activities": int(completed or 0),
                "earnings": _money(earned),
            }

        return cache_aside(self.cache, user_stats_key(user_id), self.ttl_short, load)

    def verification_step(self, external_id: str) -> int | None:
        def load():
            return db.session.execute(
                db.select(User.verification_step).where(User.external_id == external_id)
            ).scalar_one_or_none()

        return cache_aside(self.cache, verification_step_key(external_id), self.ttl_long, load)

    # ---- payouts ----
    def payout_stats(self, user_id: int) -> dict:
        def load():
            balance = db.session.execute(
                db.select(User.points_balance).where(User.id == user_id)
            ).scalar_one_or_none()
            pending = db.session.execute(
                db.select(func.coalesce(func.sum(Payout.amount), 0)).where(
                    Payout.user_id == user_id, Payout.status == PAYOUT_STATUS_PENDING
                )
            ).scalar_one()
            earned = db.session.execute(
                db.select(func.coalesce(func.sum(Payout.amount), 0)).where(
                    Payout.user_id == user_id, Payout.status == PAYOUT_STATUS_COMPLETED
                )
            ).scalar_one()
            return {
                "available_balance": _money(Decimal(int(balance or 0)) / POINTS_PER_DOLLAR),
                "pending_payout": _money(pending),
                "total_earned": _money(earned),
            }

        return cache_aside(self.cache, payout_stats_key(user_id), self.ttl_short, load)

    def payout_history(self, user_id: int) -> list[dict]:
        def load():
            rows = db.session.execute(
                db.select(Payout)
                .where(Payout.user_id == user_id)
                .order_by(Payout.created_at.desc(), Payout.id.desc())
            ).scalars()
            return [p.to_dict() for p in rows]

        return cache_aside(self.cache, payout_history_key(user_id), self.ttl_short, load)

    # ---- admin ----
    def admin_users(self) -> list[dict]:
        def load():
            rows = db.session.execute(db.select(User).order_by(User.created_at.desc(), User.id.desc())).scalars()
            return [u.to_dict() for u in rows]

        return cache_aside(self.cache, ADMIN_USERS_KEY, self.ttl_short, load)

    def admin_dashboard_stats(self) -> dict:
        def load():
            now = datetime.utcnow()
            month_ago = now - timedelta(days=30)
            two_months_ago = now - timedelta(days=60)

            def count(stmt):
                return int(db.session.execute(stmt).scalar_one() or 0)

            total_users = count(db.select(func.count(User.id)))
            active_activities = count(
                db.select(func.count(Activity.id)).where(Activity.status == ACTIVITY_STATUS_ACTIVE)
            )
            pending_payouts = count(
                db.select(func.count(Payout.id)).where(Payout.status == PAYOUT_STATUS_PENDING)
            )
            total_issues = count(
                db.select(func.count(Activity.id)).where(Activity.status == ACTIVITY_STATUS_ERROR)
            ) + count(db.select(func.count(Payout.id)).where(Payout.status == PAYOUT_STATUS_REJECTED))

            all_activities = count(db.select(func.count(Activity.id)))
            completed_activities = count(
                db.select(func.count(Activity.id)).where(Activity.status == ACTIVITY_STATUS_COMPLETED)
            )
            completion_rate = round(completed_activities / all_activities * 100, 1) if all_activities else 0.0

            users_this_period = count(db.select(func.count(User.id)).where(User.created_at >= month_ago))
            users_last_period = count(
                db.select(func.count(User.id)).where(User.created_at >= two_months_ago, User.created_at < month_ago)
            )

            def paid_between(start, end):
                return db.session.execute(
                    db.select(func.coalesce(func.sum(Payout.amount), 0)).where(
                        Payout.status == PAYOUT_STATUS_COMPLETED,
                        Payout.created_at >= start,
                        Payout.created_at < end,
                    )
                ).scalar_one()

            recent = db.session.execute(
                db.select(User).order_by(User.created_at.desc(), User.id.desc()).limit(RECENT_USERS_LIMIT)
            ).scalars()

            return {
                "total_users": total_users,
                "active_activities": active_activities,
                "pending_payouts": pending_payouts,
                "total_issues": total_issues,
                "recent_users": [u.to_dict() for u in recent],
                "user_growth": _growth(users_this_period, users_last_period),
                "activity_completion_rate": completion_rate,
                "revenue_growth": _growth(paid_between(month_ago, now), paid_between(two_months_ago, month_ago)),
            }

        return cache_aside(self.cache, ADMIN_DASHBOARD_STATS_KEY, self.ttl_short, load)

    def admin_analytics(self) -> dict:
        def load():
            users = db.session.execute(
                db.select(User.verification_step, func.count(User.id)).group_by(User.verification_step)
            ).all()
            activities = db.session.execute(
                db.select(Activity.status, Activity.type, func.count(Activity.id), func.coalesce(func.sum(Activity.points), 0))
                .group_by(Activity.status, Activity.type)
            ).all()
            payouts = db.session.execute(
                db.select(Payout.status, func.count(Payout.id), func.coalesce(func.sum(Payout.amount), 0))
                .group_by(Payout.status)
            ).all()
            return {
                "users": [{"verification_step": int(step or 0), "count": int(n)} for step, n in users],
                "activities": [
                    {"status": status, "type": type_, "count": int(n), "points": int(pts or 0)}
                    for status, type_, n, pts in activities
                ],
                "payouts": [{"status": status, "count": int(n), "amount": _money(amt)} for status, n, amt in payouts],
            }

        return cache_aside(self.cache, ADMIN_ANALYTICS_KEY, self.ttl_long, load)
