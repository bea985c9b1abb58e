"""Persisted conflict reports awaiting (or recording) resolution"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import sessionmaker

from issue_relay.models import ConflictRecord
from issue_relay.models.base import utcnow
from issue_relay.services.conflict_engine import ConflictReport, ConflictResolution, Resolution

logger = logging.getLogger(__name__)

OPERATOR_RESOLUTIONS = (Resolution.A_WINS, Resolution.B_WINS, Resolution.MERGED)


class ConflictLog:
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def record(
        self,
        report: ConflictReport,
        strategy: str,
        resolution: ConflictResolution,
        *,
        system_a_id: str,
        system_b_id: str,
        job_id: Optional[str] = None,
    ) -> int:
        """Store a detected conflict; automatic resolutions are stored already resolved."""
        now = self._clock()
        row = ConflictRecord(
            job_id=job_id,
            system_a_id=str(system_a_id),
            system_b_id=str(system_b_id),
            conflicting_fields=sorted(report.conflicting_fields),
            snapshot_a=report.snapshot_a.as_dict(),
            snapshot_b=report.snapshot_b.as_dict(),
            updated_at_a=report.updated_at_a,
            updated_at_b=report.updated_at_b,
            strategy=str(getattr(strategy, "value", strategy)),
            resolution=resolution.resolution.value,
            requires_manual_review=resolution.requires_manual_review,
            resolved=resolution.resolved,
            resolved_at=now if resolution.resolved else None,
            created_at=now,
        )
        db = self._session_factory()
        try:
            db.add(row)
            db.commit()
            conflict_id = row.id
        finally:
            db.close()

        fields = ", ".join(sorted(report.conflicting_fields))
        if resolution.requires_manual_review:
            logger.warning(
                f"Conflict {conflict_id} on A:{system_a_id} / B:{system_b_id} needs manual review ({fields})"
            )
        else:
            logger.info(
                f"Conflict {conflict_id} on A:{system_a_id} / B:{system_b_id} resolved "
                f"{resolution.resolution.value} ({fields})"
            )
        return conflict_id

    def get(self, conflict_id: int) -> Optional[ConflictRecord]:
        db = self._session_factory()
        try:
            return db.query(ConflictRecord).filter(ConflictRecord.id == conflict_id).first()
        finally:
            db.close()

    def list(
        self,
        resolved: Optional[bool] = None,
        manual_only: bool = False,
        limit: int = 100,
    ) -> List[ConflictRecord]:
        db = self._session_factory()
        try:
            query = db.query(ConflictRecord).order_by(ConflictRecord.created_at.desc())
            if resolved is not None:
                query = query.filter(ConflictRecord.resolved == resolved)
            if manual_only:
                query = query.filter(ConflictRecord.requires_manual_review == True)  # noqa: E712
            return query.limit(limit).all()
        finally:
            db.close()

    def resolve(self, conflict_id: int, resolution: str, notes: Optional[str] = None) -> Optional[ConflictRecord]:
        """Record an operator decision. Returns None for an unknown id."""
        resolution = Resolution(resolution)
        if resolution not in OPERATOR_RESOLUTIONS:
            raise ValueError(f"Operators resolve conflicts as a-wins, b-wins or merged, not {resolution.value}")
        db = self._session_factory()
        try:
            row = db.query(ConflictRecord).filter(ConflictRecord.id == conflict_id).first()
            if row is None:
                return None
            row.resolved = True
            row.resolution = resolution.value
            row.resolved_at = self._clock()
            row.resolution_notes = notes
            db.commit()
            db.refresh(row)
            logger.info(f"Conflict {conflict_id} resolved by operator: {resolution.value}")
            return row
        finally:
            db.close()

    def count_unresolved(self) -> int:
        db = self._session_factory()
        try:
            return db.query(ConflictRecord).filter(ConflictRecord.resolved == False).count()  # noqa: E712
        finally:
            db.close()
