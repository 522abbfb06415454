from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text

from extensions import db


ADMIN_TYPE_PREFIX = "admin_"

NOTIFICATION_TYPE_SUCCESS = "success"
NOTIFICATION_TYPE_INFO = "info"
NOTIFICATION_TYPE_ERROR = "error"
NOTIFICATION_TYPE_ADMIN_PAYOUT_REQUEST = "admin_payout_request"
NOTIFICATION_TYPE_ADMIN_VERIFICATION_REQUEST = "admin_verification_request"
NOTIFICATION_TYPE_ADMIN_NEW_USER = "admin_new_user"


def is_admin_type(notification_type: str | None) -> bool:
    return bool(notification_type) and notification_type.startswith(ADMIN_TYPE_PREFIX)


class Notification(db.Model):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    # For admin_* notifications this is the user the event is about.
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(50), nullable=False, default=NOTIFICATION_TYPE_INFO)
    user_role = Column(String(20), nullable=False, default="user")
    read = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_notifications_user_read", "user_id", "read"),
        Index("idx_notifications_role_read", "user_role", "read"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "user_role": self.user_role,
            "read": bool(self.read),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
