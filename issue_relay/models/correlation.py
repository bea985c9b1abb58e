"""Correlation model"""
from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from issue_relay.models.base import Base, utcnow


class Correlation(Base):
    """Link between a System A issue and its System B counterpart"""

    __tablename__ = "correlations"
    __table_args__ = (
        # 1:1 in both directions; a second link for either side is rejected by the database.
        UniqueConstraint("system_a_id", name="uq_correlations_system_a_id"),
        UniqueConstraint("system_b_id", name="uq_correlations_system_b_id"),
    )

    id = Column(Integer, primary_key=True, index=True)

    system_a_id = Column(String, nullable=False, index=True)
    system_b_id = Column(String, nullable=False, index=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    last_synced_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<Correlation(a={self.system_a_id}, b={self.system_b_id})>"
