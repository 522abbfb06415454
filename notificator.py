"""Notification rows + realtime fan-out.

Notification rows are written inside the caller's transaction (`create`,
`create_admin`). Realtime events go out only after the caller commits
(`announce`, `publish_row`) and are best-effort: a failed publish is logged and
dropped, clients fall back to polling GET /api/notifications.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Iterable

import redis

from errors import ForbiddenError, NotFoundError, domain_operation
from extensions import db
from models_notifications import (
    ADMIN_TYPE_PREFIX,
    NOTIFICATION_TYPE_INFO,
    Notification,
    is_admin_type,
)


logger = logging.getLogger(__name__)

ADMIN_CHANNEL = "realtime:notifications:admin"


def user_channel(user_id: int) -> str:
    return f"realtime:notifications:{user_id}"


def table_channel(table: str) -> str:
    return f"realtime:{table}"


def _admin_scoped():
    return Notification.type.startswith(ADMIN_TYPE_PREFIX, autoescape=True)


class RealtimePublisher:
    """Publishes JSON events on redis pub/sub. Without a client it only logs."""

    def __init__(self, client: "redis.Redis | None" = None):
        self.client = client

    @classmethod
    def from_url(cls, url: str | None) -> "RealtimePublisher":
        if not url:
            return cls(None)
        return cls(redis.from_url(url, decode_responses=True))

    def publish(self, channel: str, event: dict) -> bool:
        payload = json.dumps(event, default=str)
        if self.client is None:
            logger.debug("realtime (no broker) %s: %s", channel, payload)
            return False
        try:
            self.client.publish(channel, payload)
            return True
        except redis.RedisError as e:
            logger.error("Realtime publish to %s failed: %s", channel, e)
            return False


class NotificationDispatcher:
    def __init__(self, publisher: RealtimePublisher):
        self.publisher = publisher

    # ---- writes (inside the caller's transaction) ----
    def create(self, user_id: int, title: str, message: str, type: str = NOTIFICATION_TYPE_INFO) -> Notification:
        n = Notification(user_id=user_id, title=title, message=message, type=type, user_role="user", read=False)
        db.session.add(n)
        return n

    def create_admin(self, about_user_id: int, title: str, message: str, type: str) -> Notification:
        if not is_admin_type(type):
            raise ValueError(f"admin notification type must start with {ADMIN_TYPE_PREFIX!r}: {type}")
        n = Notification(user_id=about_user_id, title=title, message=message, type=type, user_role="admin", read=False)
        db.session.add(n)
        return n

    # ---- after commit ----
    def announce(self, notifications: Iterable[Notification]) -> None:
        for n in notifications:
            channel = ADMIN_CHANNEL if is_admin_type(n.type) else user_channel(n.user_id)
            self.publisher.publish(channel, {"event": "INSERT", "table": "notifications", "record": n.to_dict()})

    def publish_row(self, table: str, event: str, record: dict) -> None:
        self.publisher.publish(table_channel(table), {"event": event, "table": table, "record": record})

    # ---- reads / read-state ----
    def list_unread(self, identity) -> list[dict]:
        q = db.select(Notification).where(Notification.read.is_(False))
        if identity.is_admin:
            q = q.where(_admin_scoped())
        else:
            q = q.where(
                Notification.user_id == identity.user_id,
                ~_admin_scoped(),
            )
        rows = db.session.execute(q.order_by(Notification.created_at.desc(), Notification.id.desc())).scalars()
        return [n.to_dict() for n in rows]

    @domain_operation
    def mark_read(self, identity, notification_id: int):
        n = db.session.get(Notification, notification_id)
        if n is None:
            raise NotFoundError("Notification")

        if identity.is_admin:
            allowed = is_admin_type(n.type)
        else:
            allowed = n.user_id == identity.user_id and not is_admin_type(n.type)
        if not allowed:
            raise ForbiddenError("Unauthorized")

        n.read = True
        n.updated_at = datetime.utcnow()
        db.session.commit()
        return n.to_dict()

    @domain_operation
    def mark_all_read(self, identity):
        stmt = db.update(Notification).where(Notification.read.is_(False))
        if identity.is_admin:
            stmt = stmt.where(_admin_scoped())
        else:
            stmt = stmt.where(Notification.user_id == identity.user_id, ~_admin_scoped())
        res = db.session.execute(
            stmt.values(read=True, updated_at=datetime.utcnow()).execution_options(synchronize_session=False)
        )
        db.session.commit()
        return {"updated": int(res.rowcount or 0)}
