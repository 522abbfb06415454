"""Inbound webhook receivers.

Routes:
- POST /api/webhooks/mux        video asset lifecycle
- POST /api/webhooks/typeform   survey submissions -> CompleteActivity
- POST /api/webhooks/identity   identity provider user lifecycle

Signatures are checked against the raw body before the payload is parsed.
A bad or missing signature is a 401 and nothing is touched.
"""

import json
import logging

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import IntegrityError

from cache import ADMIN_AGGREGATE_KEYS, ACTIVE_ACTIVITIES_KEY, invalidate, prime, verification_step_key
from errors import AlreadyCompletedError, AuthorizationError, ConflictError, NotFoundError, ValidationError, domain_operation
from extensions import db, services
from models_activities import (
    ACTIVITY_STATUS_ACTIVE,
    ACTIVITY_STATUS_ERROR,
    ACTIVITY_TYPE_SURVEY,
    ACTIVITY_TYPE_VIDEO,
    LOG_ACTION_SURVEY_COMPLETED,
    Activity,
    ActivityLog,
)
from models_notifications import NOTIFICATION_TYPE_ADMIN_NEW_USER, Notification
from models_payouts import Payout, Reward
from models_users import ROLE_ADMIN, ROLE_USER, BankAccount, User
from models_verification import VerificationRequest
from webhook_signatures import verify_identity_signature, verify_mux_signature, verify_typeform_signature


logger = logging.getLogger(__name__)

webhooks_api = Blueprint("webhooks_api", __name__)


def _json_body(raw: bytes) -> dict:
    try:
        data = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("Malformed JSON body")
    if not isinstance(data, dict):
        raise ValidationError("Malformed JSON body")
    return data


# ---- video ----
def _activity_by_external_id(external_id, activity_type=None):
    if not external_id:
        return None
    q = db.select(Activity).where(Activity.external_id == str(external_id))
    if activity_type:
        q = q.where(Activity.type == activity_type)
    return db.session.execute(q.order_by(Activity.id.asc())).scalars().first()


@domain_operation
def handle_mux_event(event: dict):
    event_type = event.get("type")
    data = event.get("data") or {}
    if event_type not in ("video.asset.ready", "video.asset.errored"):
        logger.info("Ignoring mux event %s", event_type)
        return {"handled": False}

    activity = _activity_by_external_id(data.get("id"), ACTIVITY_TYPE_VIDEO)
    if activity is None:
        raise NotFoundError("Activity")

    meta = dict(activity.metadata_json or {})
    if event_type == "video.asset.ready":
        playback_ids = data.get("playback_ids") or []
        meta.update(
            {
                "playback_id": (playback_ids[0] or {}).get("id") if playback_ids else None,
                "duration": data.get("duration"),
                "aspect_ratio": data.get("aspect_ratio"),
            }
        )
        activity.status = ACTIVITY_STATUS_ACTIVE
    else:
        errors = data.get("errors") or {}
        meta["error"] = "; ".join(errors.get("messages") or []) or errors.get("type") or "Asset processing failed"
        activity.status = ACTIVITY_STATUS_ERROR
    activity.metadata_json = meta
    db.session.commit()

    invalidate(services()["cache"], ACTIVE_ACTIVITIES_KEY, *ADMIN_AGGREGATE_KEYS)
    services()["dispatcher"].publish_row("activities", "UPDATE", activity.to_dict())
    logger.info("Mux %s -> activity %s is %s", event_type, activity.id, activity.status)
    return {"handled": True, "activity_id": activity.id, "status": activity.status}


@webhooks_api.post("/api/webhooks/mux")
def mux_webhook():
    raw = request.get_data(cache=True)
    cfg = current_app.config
    if not verify_mux_signature(
        cfg.get("MUX_WEBHOOK_SECRET") or "",
        raw,
        request.headers.get("Mux-Signature"),
        int(cfg.get("WEBHOOK_TOLERANCE_SECONDS") or 300),
    ):
        logger.warning("Rejected mux webhook with invalid signature")
        raise AuthorizationError("Invalid signature")
    return handle_mux_event(_json_body(raw)).to_response()


# ---- survey ----
def handle_typeform_event(event: dict):
    form_response = event.get("form_response") or {}
    form_id = form_response.get("form_id")
    if not form_id:
        raise ValidationError("form_response.form_id is required")

    activity = _activity_by_external_id(form_id, ACTIVITY_TYPE_SURVEY)
    if activity is None:
        raise NotFoundError("Activity")

    hidden = form_response.get("hidden") or {}
    user = None
    if hidden.get("user_id"):
        user = db.session.execute(
            db.select(User).filter_by(external_id=str(hidden["user_id"]))
        ).scalar_one_or_none()
        if user is None:
            raise NotFoundError("User")
    user_id = user.id if user is not None else activity.user_id

    return services()["ledger"].complete_activity(
        user_id,
        activity.id,
        action=LOG_ACTION_SURVEY_COMPLETED,
        extra={
            "form_id": form_id,
            "response_id": form_response.get("token"),
            "submitted_at": form_response.get("submitted_at"),
        },
    )


@webhooks_api.post("/api/webhooks/typeform")
def typeform_webhook():
    raw = request.get_data(cache=True)
    if not verify_typeform_signature(
        current_app.config.get("TYPEFORM_WEBHOOK_SECRET") or "",
        raw,
        request.headers.get("Typeform-Signature"),
    ):
        logger.warning("Rejected typeform webhook with invalid signature")
        raise AuthorizationError("Invalid signature")

    result = handle_typeform_event(_json_body(raw))
    if not result.success and result.error["code"] == AlreadyCompletedError.code:
        # Redelivery of a submission we already credited.
        logger.info("Duplicate survey submission ignored: %s", result.message)
        return jsonify({"success": True, "data": {"duplicate": True}})
    return result.to_response()


# ---- identity provider lifecycle ----
def _primary_email(data: dict) -> str:
    addresses = data.get("email_addresses") or []
    primary_id = data.get("primary_email_address_id")
    for a in addresses:
        if primary_id and a.get("id") == primary_id and a.get("email_address"):
            return a["email_address"].strip().lower()
    for a in addresses:
        if a.get("email_address"):
            return a["email_address"].strip().lower()
    return ""


def _full_name(data: dict):
    name = " ".join(p.strip() for p in (data.get("first_name"), data.get("last_name")) if p and p.strip())
    return name or None


def _role(data: dict):
    role = (data.get("public_metadata") or {}).get("role")
    return role if role in (ROLE_USER, ROLE_ADMIN) else None


@domain_operation
def sync_user_created(data: dict):
    external_id = data.get("id")
    email = _primary_email(data)
    if not external_id or not email:
        raise ValidationError("User id and email address are required")

    existing = db.session.execute(db.select(User).filter_by(external_id=external_id)).scalar_one_or_none()
    if existing is not None:
        return existing.to_dict()

    user = User(external_id=external_id, email=email, name=_full_name(data), role=_role(data) or ROLE_USER)
    db.session.add(user)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("A user with this email already exists")
    note = services()["dispatcher"].create_admin(
        user.id, "New User", f"{user.name or user.email} signed up.", NOTIFICATION_TYPE_ADMIN_NEW_USER
    )
    db.session.commit()

    cache = services()["cache"]
    invalidate(cache, *ADMIN_AGGREGATE_KEYS)
    prime(cache, verification_step_key(external_id), 0, current_app.config.get("CACHE_TTL_LONG"))
    services()["dispatcher"].announce([note])
    logger.info("User created from identity webhook: %s", external_id)
    return user.to_dict()


@domain_operation
def sync_user_updated(data: dict):
    external_id = data.get("id")
    user = db.session.execute(db.select(User).filter_by(external_id=external_id)).scalar_one_or_none()
    if user is None:
        raise NotFoundError("User")

    email = _primary_email(data)
    if email:
        user.email = email
    user.name = _full_name(data) or user.name
    role = _role(data)
    if role:
        user.role = role
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("A user with this email already exists")

    invalidate(services()["cache"], *ADMIN_AGGREGATE_KEYS)
    logger.info("User updated from identity webhook: %s", external_id)
    return user.to_dict()


def _has_ledger_history(user_id: int) -> bool:
    for model, column in (
        (ActivityLog, ActivityLog.user_id),
        (Payout, Payout.user_id),
        (Reward, Reward.user_id),
        (Activity, Activity.user_id),
        (VerificationRequest, VerificationRequest.user_id),
    ):
        if db.session.execute(db.select(model.id).where(column == user_id).limit(1)).first():
            return True
    return False


@domain_operation
def sync_user_deleted(data: dict):
    external_id = data.get("id")
    user = db.session.execute(db.select(User).filter_by(external_id=external_id)).scalar_one_or_none()
    if user is None:
        return {"deleted": False}

    db.session.execute(db.delete(BankAccount).where(BankAccount.user_id == user.id))
    db.session.execute(db.delete(Notification).where(Notification.user_id == user.id))
    if _has_ledger_history(user.id):
        # Completed work and payouts stay on record; the account is detached
        # from the identity provider so its tokens stop resolving.
        user.external_id = f"deleted:{external_id}"
        user.email = f"deleted+{user.id}@deleted.invalid"
        user.name = None
        mode = "anonymized"
    else:
        db.session.delete(user)
        mode = "deleted"
    db.session.commit()

    invalidate(services()["cache"], verification_step_key(external_id), *ADMIN_AGGREGATE_KEYS)
    logger.info("User %s from identity webhook: %s", mode, external_id)
    return {"deleted": True, "mode": mode}


_IDENTITY_HANDLERS = {
    "user.created": sync_user_created,
    "user.updated": sync_user_updated,
    "user.deleted": sync_user_deleted,
}


@webhooks_api.post("/api/webhooks/identity")
def identity_webhook():
    raw = request.get_data(cache=True)
    cfg = current_app.config
    if not verify_identity_signature(
        cfg.get("IDENTITY_WEBHOOK_SECRET") or "",
        raw,
        request.headers.get("svix-id"),
        request.headers.get("svix-timestamp"),
        request.headers.get("svix-signature"),
        int(cfg.get("WEBHOOK_TOLERANCE_SECONDS") or 300),
    ):
        logger.warning("Rejected identity webhook with invalid signature")
        raise AuthorizationError("Invalid signature")

    event = _json_body(raw)
    handler = _IDENTITY_HANDLERS.get(event.get("type"))
    if handler is None:
        logger.info("Ignoring identity event %s", event.get("type"))
        return jsonify({"success": True, "data": {"handled": False}})
    return handler(event.get("data") or {}).to_response()
