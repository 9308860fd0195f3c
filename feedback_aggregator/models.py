import enum
import uuid

from sqlalchemy import (
    Boolean, Column, Integer, String, JSON,
    DateTime, ForeignKey, Index, func, Text,
)
from feedback_aggregator.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class FeedbackSource(str, enum.Enum):
    JIRA = "jira"
    NOTION = "notion"
    ZOHO = "zoho"
    MANUAL = "manual"
    ZAPIER = "zapier"


class FeedbackPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FeedbackStatus(str, enum.Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class SyncFrequency(str, enum.Enum):
    MANUAL = "manual"
    HOURLY = "hourly"
    TWICE_DAILY = "twice_daily"
    DAILY = "daily"


class SyncStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class Integration(Base):
    __tablename__ = "integrations"

    id              = Column(String(36), primary_key=True, default=_uuid)
    user_id         = Column(String(64), nullable=False)
    source          = Column(String(20), nullable=False)
    name            = Column(String(200), nullable=False)
    config          = Column(JSON, nullable=False, default=dict)
    is_active       = Column(Boolean, nullable=False, default=True)
    sync_frequency  = Column(String(20), nullable=False, default=SyncFrequency.MANUAL.value)
    last_synced_at  = Column(DateTime(timezone=True), nullable=True)
    created_at      = Column(DateTime(timezone=True), server_default=func.now())
    updated_at      = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_integration_user", "user_id"),
        Index("ix_integration_active", "is_active"),
    )


class Feedback(Base):
    __tablename__ = "feedbacks"

    id                  = Column(String(36), primary_key=True, default=_uuid)
    user_id             = Column(String(64), nullable=False)
    integration_id      = Column(String(36), ForeignKey("integrations.id", ondelete="SET NULL"), nullable=True)
    source              = Column(String(20), nullable=False)
    external_id         = Column(String(255), nullable=True)
    title               = Column(Text, nullable=False)
    description         = Column(Text, nullable=True)
    priority            = Column(String(20), nullable=True)
    status              = Column(String(20), nullable=True, default=FeedbackStatus.NEW.value)
    tags                = Column(JSON, nullable=False, default=list)
    source_metadata     = Column(JSON, nullable=True)
    analysis            = Column(JSON(none_as_null=True), nullable=True)
    customer_name       = Column(String(255), nullable=True)
    interviewee_name    = Column(String(255), nullable=True)
    conversation_at     = Column(DateTime(timezone=True), nullable=True)
    external_created_at = Column(DateTime(timezone=True), nullable=True)
    external_updated_at = Column(DateTime(timezone=True), nullable=True)
    created_at          = Column(DateTime(timezone=True), server_default=func.now())
    updated_at          = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        # one source per integration, so this also keeps (source, integration_id, external_id) unique
        Index("ix_feedback_integration_ext", "integration_id", "external_id", unique=True),
        Index("ix_feedback_owner_lookup", "source", "user_id", "external_id"),
        Index("ix_feedback_created", "created_at"),
    )


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id              = Column(String(36), primary_key=True, default=_uuid)
    integration_id  = Column(String(36), ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False)
    status          = Column(String(20), nullable=False, default=SyncStatus.RUNNING.value)
    items_processed = Column(Integer, default=0)
    items_created   = Column(Integer, default=0)
    items_updated   = Column(Integer, default=0)
    error_message   = Column(Text, nullable=True)
    started_at      = Column(DateTime(timezone=True), server_default=func.now())
    completed_at    = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_sync_log_integration", "integration_id"),
        Index("ix_sync_log_started", "started_at"),
    )
