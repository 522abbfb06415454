"""Activity models.

- Activity: a completable unit (video / survey / verification / ...). Admin
  templates (`is_template=True`) are completed per user through an
  ActivityCompletion row; a user-owned activity is completed by flipping its
  own status.
- ActivityLog: append-only completion events. Never updated or deleted.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from extensions import db


ACTIVITY_TYPE_VIDEO = "video"
ACTIVITY_TYPE_SURVEY = "survey"
ACTIVITY_TYPE_VERIFICATION = "verification"
ACTIVITY_TYPE_UX_UI_TEST = "ux_ui_test"
ACTIVITY_TYPE_AI_IMAGE_TASK = "ai_image_task"

ACTIVITY_TYPES = (
    ACTIVITY_TYPE_VIDEO,
    ACTIVITY_TYPE_SURVEY,
    ACTIVITY_TYPE_VERIFICATION,
    ACTIVITY_TYPE_UX_UI_TEST,
    ACTIVITY_TYPE_AI_IMAGE_TASK,
)

ACTIVITY_STATUS_DRAFT = "draft"
ACTIVITY_STATUS_ACTIVE = "active"
ACTIVITY_STATUS_PENDING = "pending"
ACTIVITY_STATUS_COMPLETED = "completed"
ACTIVITY_STATUS_ERROR = "error"

ACTIVITY_STATUSES = (
    ACTIVITY_STATUS_DRAFT,
    ACTIVITY_STATUS_ACTIVE,
    ACTIVITY_STATUS_PENDING,
    ACTIVITY_STATUS_COMPLETED,
    ACTIVITY_STATUS_ERROR,
)

COMPLETABLE_STATUSES = (ACTIVITY_STATUS_ACTIVE, ACTIVITY_STATUS_PENDING)

LOG_ACTION_COMPLETED = "completed"
LOG_ACTION_SURVEY_COMPLETED = "survey_completed"


class Activity(db.Model):
    __tablename__ = "activities"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(30), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    points = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=ACTIVITY_STATUS_DRAFT)
    is_template = Column(Boolean, nullable=False, default=False)

    # Video asset id or survey form id, used by the webhook receivers.
    external_id = Column(String(200), nullable=True, index=True)
    metadata_json = Column(JSON, nullable=True)

    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("points >= 0", name="ck_activities_points_nonneg"),
        Index("idx_activities_status", "status"),
        Index("idx_activities_template_status", "is_template", "status"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "points": int(self.points or 0),
            "status": self.status,
            "is_template": bool(self.is_template),
            "external_id": self.external_id,
            "metadata": self.metadata_json or {},
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ActivityCompletion(db.Model):
    __tablename__ = "activity_completions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    activity_id = Column(Integer, ForeignKey("activities.id"), nullable=False, index=True)
    completed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "activity_id", name="uq_activity_completion_user_activity"),
    )


class ActivityLog(db.Model):
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    activity_id = Column(Integer, ForeignKey("activities.id"), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_activity_logs_user_created", "user_id", "created_at"),
    )

    def to_dict(self):
        meta = self.metadata_json or {}
        return {
            "id": self.id,
            "user_id": self.user_id,
            "activity_id": self.activity_id,
            "action": self.action,
            "points": int(meta.get("points") or 0),
            "type": meta.get("type"),
            "metadata": meta,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
