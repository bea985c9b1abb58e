"""Sync job model"""
import enum

from sqlalchemy import Column, DateTime, Enum, Index, Integer, JSON, String, Text

from issue_relay.models.base import Base, utcnow


class SyncDirection(str, enum.Enum):
    """Sync direction enumeration"""
    A_TO_B = "a_to_b"
    B_TO_A = "b_to_a"


class EventType(str, enum.Enum):
    """Inbound event types"""
    ISSUE_CREATED = "issue-created"
    ISSUE_UPDATED = "issue-updated"
    ISSUE_DELETED = "issue-deleted"
    COMMENT_CREATED = "comment-created"
    COMMENT_UPDATED = "comment-updated"
    LABEL_CHANGED = "label-changed"
    ASSIGNEE_CHANGED = "assignee-changed"
    STATUS_CHANGED = "status-changed"


class JobStatus(str, enum.Enum):
    """Job status enumeration"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"


WAITING_STATUSES = (JobStatus.PENDING, JobStatus.RETRY)


class SyncJobRecord(Base):
    """Durable queue entry for one unit of sync work"""

    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index("ix_sync_jobs_dequeue", "queue_name", "status", "available_at"),
    )

    id = Column(String(36), primary_key=True)
    queue_name = Column(String, nullable=False, index=True)

    # Event
    direction = Column(Enum(SyncDirection), nullable=False)
    event_type = Column(Enum(EventType), nullable=False)
    source_id = Column(String, nullable=False, index=True)
    source_data = Column(JSON, nullable=False, default=dict)
    target_id = Column(String, nullable=True)
    job_metadata = Column("metadata", JSON, nullable=True)

    # Scheduling
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.PENDING)
    priority = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    stalled_count = Column(Integer, nullable=False, default=0)
    available_at = Column(DateTime, nullable=False, default=utcnow)

    # Lease held by the worker currently processing the job
    lease_owner = Column(String, nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    error = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    processed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<SyncJobRecord(id={self.id}, event={self.event_type}, status={self.status})>"
