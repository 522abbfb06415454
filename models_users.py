"""User and payout-destination models.

`points_balance` is the only shared mutable counter in the system: 100 points
equal $1. It never goes negative (CHECK constraint plus conditional updates in
ledger.py).
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import relationship

from errors import ValidationError
from extensions import db


ROLE_USER = "user"
ROLE_ADMIN = "admin"

VERIFICATION_STEP_UNVERIFIED = 0
VERIFICATION_STEP_VERIFIED = 1

ACCOUNT_TYPES = ("checking", "savings")

DEFAULT_NOTIFICATION_PREFERENCES = {
    "email_notifications": True,
    "payout_updates": True,
    "new_activities": True,
}

DEFAULT_ADMIN_NOTIFICATION_PREFERENCES = {
    "new_payout_requests": True,
    "new_verification_requests": True,
    "new_users": True,
}


def merged_preferences(stored, defaults: dict) -> dict:
    """Stored preferences over the defaults; unknown keys are dropped."""
    out = dict(defaults)
    if isinstance(stored, dict):
        out.update({k: bool(v) for k, v in stored.items() if k in defaults})
    return out


def clean_preferences(raw, defaults: dict, field: str) -> dict:
    if not isinstance(raw, dict):
        raise ValidationError(f"{field} must be an object")
    unknown = sorted(set(raw) - set(defaults))
    if unknown:
        raise ValidationError(f"Unknown {field}: {', '.join(unknown)}")
    if any(not isinstance(v, bool) for v in raw.values()):
        raise ValidationError(f"{field} values must be true or false")
    return raw


class User(db.Model):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    external_id = Column(String(128), unique=True, nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(200), nullable=True)
    role = Column(String(20), nullable=False, default=ROLE_USER)
    points_balance = Column(Integer, nullable=False, default=0)
    verification_step = Column(Integer, nullable=False, default=VERIFICATION_STEP_UNVERIFIED)

    notification_preferences = Column(JSON, nullable=True)
    admin_notification_preferences = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    bank_account = relationship("BankAccount", back_populates="user", uselist=False)

    __table_args__ = (
        CheckConstraint("points_balance >= 0", name="ck_users_points_balance_nonneg"),
        Index("idx_users_role", "role"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "external_id": self.external_id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "points_balance": int(self.points_balance or 0),
            "verification_step": int(self.verification_step or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class BankAccount(db.Model):
    __tablename__ = "bank_accounts"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    bank_name = Column(String(100), nullable=False)
    account_number = Column(String(20), nullable=False)
    bsb = Column(String(6), nullable=False)
    account_type = Column(String(20), nullable=False)
    account_holder_name = Column(String(100), nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="bank_account")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "bank_name": self.bank_name,
            "account_number": self.account_number,
            "bsb": self.bsb,
            "account_type": self.account_type,
            "account_holder_name": self.account_holder_name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
