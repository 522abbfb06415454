"""Identity & role resolution.

Requests carry `Authorization: Bearer <token>` where the token is a signed,
timestamped blob holding the identity provider's user id. The role is not in
the token: it is read from the users table on every call, so a demotion takes
effect immediately.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass

from flask import g, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from errors import AuthorizationError, ForbiddenError
from extensions import db, services
from models_users import ROLE_ADMIN, User


logger = logging.getLogger(__name__)

_TOKEN_SALT = "employnet-identity"


@dataclass(frozen=True)
class Identity:
    user_id: int
    external_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class IdentityProvider:
    def __init__(self, secret_key: str, max_age_seconds: int):
        self._serializer = URLSafeTimedSerializer(secret_key, salt=_TOKEN_SALT)
        self.max_age_seconds = max_age_seconds

    def issue_token(self, external_id: str) -> str:
        return self._serializer.dumps({"sub": external_id})

    def external_id_from_token(self, token: str) -> str:
        try:
            payload = self._serializer.loads(token, max_age=self.max_age_seconds)
        except SignatureExpired:
            raise AuthorizationError("Session expired")
        except BadSignature:
            raise AuthorizationError("Invalid token")
        sub = payload.get("sub") if isinstance(payload, dict) else None
        if not sub:
            raise AuthorizationError("Invalid token")
        return str(sub)

    def resolve(self, token: str | None) -> Identity:
        if not token:
            raise AuthorizationError("Authentication required")
        external_id = self.external_id_from_token(token)
        user = db.session.execute(
            db.select(User).filter_by(external_id=external_id)
        ).scalar_one_or_none()
        if user is None:
            raise AuthorizationError("User not found")
        return Identity(user_id=user.id, external_id=user.external_id, role=user.role or "user")


def _bearer_token() -> str | None:
    header = request.headers.get("Authorization") or ""
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def current_provider() -> IdentityProvider:
    return services()["identity"]


def require_auth(view):
    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        g.identity = current_provider().resolve(_bearer_token())
        return view(*args, **kwargs)

    return wrapper


def require_admin(view):
    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        identity = current_provider().resolve(_bearer_token())
        if not identity.is_admin:
            logger.warning("Non-admin user %s hit %s", identity.user_id, request.path)
            raise ForbiddenError("Admin access required")
        g.identity = identity
        return view(*args, **kwargs)

    return wrapper
