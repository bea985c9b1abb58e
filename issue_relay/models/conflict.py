"""Conflict model"""
from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text

from issue_relay.models.base import Base, utcnow


class ConflictRecord(Base):
    """Detected divergence retained for operator visibility"""

    __tablename__ = "conflicts"

    id = Column(Integer, primary_key=True, index=True)

    # Job that detected it
    job_id = Column(String(36), nullable=True, index=True)

    # Linked issues
    system_a_id = Column(String, nullable=False, index=True)
    system_b_id = Column(String, nullable=False)

    # Conflict details
    conflicting_fields = Column(JSON, nullable=False)  # list of field names
    snapshot_a = Column(JSON, nullable=True)
    snapshot_b = Column(JSON, nullable=True)
    updated_at_a = Column(String, nullable=True)
    updated_at_b = Column(String, nullable=True)
    strategy = Column(String, nullable=False)
    resolution = Column(String, nullable=False)  # a-wins | b-wins | manual | merged
    requires_manual_review = Column(Boolean, default=False, index=True)

    # Resolution
    resolved = Column(Boolean, default=False)
    resolved_at = Column(DateTime, nullable=True)
    resolution_notes = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, index=True)

    def __repr__(self):
        return f"<ConflictRecord(fields={self.conflicting_fields}, resolved={self.resolved})>"
