"""Payout + reward models.

Payout.amount is in dollars; the points debited at request time are
amount * POINTS_PER_DOLLAR. Rewards are write-once redemption records.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text

from extensions import db


POINTS_PER_DOLLAR = 100

PAYOUT_STATUS_PENDING = "pending"
PAYOUT_STATUS_ON_THE_WAY = "on_the_way"
PAYOUT_STATUS_COMPLETED = "completed"
PAYOUT_STATUS_REJECTED = "rejected"

PAYOUT_OPEN_STATUSES = (PAYOUT_STATUS_PENDING, PAYOUT_STATUS_ON_THE_WAY)
PAYOUT_TERMINAL_STATUSES = (PAYOUT_STATUS_COMPLETED, PAYOUT_STATUS_REJECTED)


def dollars_to_points(amount) -> int:
    return int((Decimal(str(amount)) * POINTS_PER_DOLLAR).to_integral_value())


class Payout(db.Model):
    __tablename__ = "payouts"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default=PAYOUT_STATUS_PENDING)
    notes = Column(Text, nullable=True)

    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_payouts_status_created", "status", "created_at"),
    )

    @property
    def points(self) -> int:
        return dollars_to_points(self.amount or 0)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount": f"{Decimal(self.amount or 0):.2f}",
            "points": self.points,
            "status": self.status,
            "notes": self.notes,
            "processed_by": self.processed_by,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class Reward(db.Model):
    __tablename__ = "rewards"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    points = Column(Integer, nullable=False)
    description = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "points": int(self.points or 0),
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
