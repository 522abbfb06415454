"""Verification request workflow.

    waiting --approve--> ready --complete--> completed

Any (status, action) pair missing from TRANSITIONS is rejected. Each
transition is a conditional UPDATE on the expected current status, so two
racing calls cannot both succeed and nothing ever moves backwards.
"""

from __future__ import annotations

import logging
from datetime import datetime
from urllib.parse import urlparse

from sqlalchemy import text

from cache import ADMIN_AGGREGATE_KEYS, invalidate, user_stats_key, verification_step_key
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError, domain_operation
from extensions import db
from models_activities import ACTIVITY_TYPE_VERIFICATION, Activity
from models_notifications import NOTIFICATION_TYPE_ADMIN_VERIFICATION_REQUEST, NOTIFICATION_TYPE_SUCCESS
from models_users import VERIFICATION_STEP_VERIFIED, User
from models_verification import (
    VERIFICATION_STATUS_COMPLETED,
    VERIFICATION_STATUS_READY,
    VERIFICATION_STATUS_WAITING,
    VerificationRequest,
)


logger = logging.getLogger(__name__)

TRANSITIONS = {
    (VERIFICATION_STATUS_WAITING, "approve"): VERIFICATION_STATUS_READY,
    (VERIFICATION_STATUS_READY, "complete"): VERIFICATION_STATUS_COMPLETED,
}

REALTIME_TABLE = "verification_requests"


def next_status(current: str, action: str) -> str:
    nxt = TRANSITIONS.get((current, action))
    if nxt is None:
        raise ConflictError(f"Cannot {action} a verification request that is {current}")
    return nxt


def validate_verification_url(raw) -> str:
    url = (raw or "").strip() if isinstance(raw, str) else ""
    if not url:
        raise ValidationError("Verification URL is required")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("Verification URL must be an http(s) URL")
    return url


class VerificationWorkflow:
    def __init__(self, cache, dispatcher, mailer):
        self.cache = cache
        self.dispatcher = dispatcher
        self.mailer = mailer

    def _transition(self, req: VerificationRequest, action: str, **fields) -> str:
        current = req.status
        nxt = next_status(current, action)
        sets = ", ".join(f"{k} = :{k}" for k in fields)
        params = dict(fields, nxt=nxt, rid=req.id, current=current, now=datetime.utcnow())
        res = db.session.execute(
            text(
                "UPDATE verification_requests SET status = :nxt, updated_at = :now"
                + (f", {sets}" if sets else "")
                + " WHERE id = :rid AND status = :current"
            ),
            params,
        )
        if (res.rowcount or 0) == 0:
            raise ConflictError("Verification request was updated by someone else; reload and try again")
        return nxt

    @domain_operation
    def create(self, user_id: int, activity_id: int):
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User")
        activity = db.session.get(Activity, activity_id)
        if activity is None:
            raise NotFoundError("Activity")
        if activity.type != ACTIVITY_TYPE_VERIFICATION:
            raise ValidationError("Invalid verification task")

        open_requests = db.session.execute(
            db.select(VerificationRequest).where(
                VerificationRequest.user_id == user.id,
                VerificationRequest.status.in_([VERIFICATION_STATUS_WAITING, VERIFICATION_STATUS_READY]),
            )
        ).scalars().all()
        for r in open_requests:
            if r.status == VERIFICATION_STATUS_WAITING:
                raise ConflictError("You already have a verification request waiting for review")
            if r.activity_id == activity.id:
                raise ConflictError("You've already submitted a verification request for this task")

        req = VerificationRequest(user_id=user.id, activity_id=activity.id, status=VERIFICATION_STATUS_WAITING)
        db.session.add(req)
        note = self.dispatcher.create_admin(
            user.id,
            "New Verification Request",
            f"{user.name or user.email} requested verification for {activity.title}.",
            NOTIFICATION_TYPE_ADMIN_VERIFICATION_REQUEST,
        )
        db.session.commit()

        record = req.to_dict()
        invalidate(self.cache, *ADMIN_AGGREGATE_KEYS)
        self.dispatcher.announce([note])
        self.dispatcher.publish_row(REALTIME_TABLE, "INSERT", record)
        self.mailer.send_verification_requested(user.name, user.email, activity.title)
        logger.info("User %s opened verification request %s for activity %s", user.id, req.id, activity.id)
        return record

    @domain_operation
    def approve(self, request_id: int, verification_url, admin_identity):
        if admin_identity is None or not admin_identity.is_admin:
            raise ForbiddenError("Admin access required")
        url = validate_verification_url(verification_url)

        req = db.session.get(VerificationRequest, request_id)
        if req is None:
            raise NotFoundError("Verification request")
        self._transition(req, "approve", verification_url=url)

        user = db.session.get(User, req.user_id)
        note = self.dispatcher.create(
            req.user_id,
            "Verification Task Ready",
            "Your verification task has been approved. Check your email to start.",
            NOTIFICATION_TYPE_SUCCESS,
        )
        db.session.commit()

        record = req.to_dict()
        self.dispatcher.announce([note])
        self.dispatcher.publish_row(REALTIME_TABLE, "UPDATE", record)
        if user is not None:
            self.mailer.send_verification_ready(user.email, user.name, url)
        logger.info("Admin %s approved verification request %s", admin_identity.user_id, request_id)
        return record

    @domain_operation
    def complete(self, request_id: int, identity):
        req = db.session.get(VerificationRequest, request_id)
        if req is None:
            raise NotFoundError("Verification request")
        if not identity.is_admin and req.user_id != identity.user_id:
            # Other users' requests are invisible.
            raise NotFoundError("Verification request")

        self._transition(req, "complete")
        db.session.execute(
            text("UPDATE users SET verification_step = :step, updated_at = :now WHERE id = :uid"),
            {"step": VERIFICATION_STEP_VERIFIED, "now": datetime.utcnow(), "uid": req.user_id},
        )
        user = db.session.get(User, req.user_id)
        external_id = user.external_id if user is not None else None
        db.session.commit()

        record = req.to_dict()
        keys = [user_stats_key(req.user_id), *ADMIN_AGGREGATE_KEYS]
        if external_id:
            keys.append(verification_step_key(external_id))
        invalidate(self.cache, *keys)
        self.dispatcher.publish_row(REALTIME_TABLE, "UPDATE", record)
        logger.info("Verification request %s completed by user %s", request_id, identity.user_id)
        return record

    def list_for_user(self, user_id: int) -> list[dict]:
        rows = db.session.execute(
            db.select(VerificationRequest)
            .where(VerificationRequest.user_id == user_id)
            .order_by(VerificationRequest.created_at.desc(), VerificationRequest.id.desc())
        ).scalars()
        return [r.to_dict() for r in rows]

    def list_all(self, status: str | None = None) -> list[dict]:
        q = (
            db.select(VerificationRequest, User.email, User.name, Activity.title)
            .join(User, User.id == VerificationRequest.user_id)
            .join(Activity, Activity.id == VerificationRequest.activity_id)
        )
        if status:
            q = q.where(VerificationRequest.status == status)
        rows = db.session.execute(
            q.order_by(VerificationRequest.created_at.desc(), VerificationRequest.id.desc())
        ).all()
        out = []
        for req, email, name, title in rows:
            d = req.to_dict()
            d.update({"user_email": email, "user_name": name, "activity_title": title})
            out.append(d)
        return out
