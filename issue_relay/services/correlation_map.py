"""Bidirectional correlation map between System A and System B issues"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from issue_relay.models import Correlation, SyncDirection
from issue_relay.models.base import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CorrelationEntry:
    system_a_id: str
    system_b_id: str
    last_synced_at: Optional[datetime]

    def target_for(self, direction: SyncDirection) -> str:
        """Id on the receiving side of `direction`."""
        return self.system_b_id if direction == SyncDirection.A_TO_B else self.system_a_id


def _entry(row: Correlation) -> CorrelationEntry:
    return CorrelationEntry(
        system_a_id=row.system_a_id,
        system_b_id=row.system_b_id,
        last_synced_at=row.last_synced_at,
    )


class CorrelationMap:
    """1:1 links between the two systems.

    Writes go through the database's UNIQUE constraints, so concurrent workers
    cannot create two live links for the same id. Existing links are never
    overwritten by `link`; replacing one takes an explicit `relink`.
    """

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def get_by_a(self, system_a_id: str) -> Optional[CorrelationEntry]:
        db = self._session_factory()
        try:
            row = db.query(Correlation).filter(Correlation.system_a_id == str(system_a_id)).first()
            return _entry(row) if row else None
        finally:
            db.close()

    def get_by_b(self, system_b_id: str) -> Optional[CorrelationEntry]:
        db = self._session_factory()
        try:
            row = db.query(Correlation).filter(Correlation.system_b_id == str(system_b_id)).first()
            return _entry(row) if row else None
        finally:
            db.close()

    def lookup(self, direction: SyncDirection, source_id: str) -> Optional[CorrelationEntry]:
        """Find the link for an id on the sending side of `direction`."""
        if direction == SyncDirection.A_TO_B:
            return self.get_by_a(source_id)
        return self.get_by_b(source_id)

    def link(self, system_a_id: str, system_b_id: str) -> bool:
        """Create a new link. False if either id is already linked."""
        db = self._session_factory()
        try:
            now = self._clock()
            db.add(
                Correlation(
                    system_a_id=str(system_a_id),
                    system_b_id=str(system_b_id),
                    created_at=now,
                    last_synced_at=now,
                )
            )
            db.commit()
            logger.info(f"Linked A:{system_a_id} <-> B:{system_b_id}")
            return True
        except IntegrityError:
            # Another worker linked one of the ids first.
            db.rollback()
            logger.warning(f"Refusing to overwrite correlation for A:{system_a_id} / B:{system_b_id}")
            return False
        finally:
            db.close()

    def relink(self, system_a_id: str, system_b_id: str) -> CorrelationEntry:
        """Replace any links touching either id with A:system_a_id <-> B:system_b_id."""
        db = self._session_factory()
        try:
            removed = (
                db.query(Correlation)
                .filter(
                    (Correlation.system_a_id == str(system_a_id))
                    | (Correlation.system_b_id == str(system_b_id))
                )
                .delete(synchronize_session=False)
            )
            now = self._clock()
            row = Correlation(
                system_a_id=str(system_a_id),
                system_b_id=str(system_b_id),
                created_at=now,
                last_synced_at=now,
            )
            db.add(row)
            db.commit()
            logger.info(f"Relinked A:{system_a_id} <-> B:{system_b_id} (replaced {removed})")
            return _entry(row)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def touch(self, system_a_id: str) -> bool:
        """Record a successful sync on an existing link."""
        db = self._session_factory()
        try:
            updated = (
                db.query(Correlation)
                .filter(Correlation.system_a_id == str(system_a_id))
                .update({Correlation.last_synced_at: self._clock()}, synchronize_session=False)
            )
            db.commit()
            return updated > 0
        finally:
            db.close()

    def unlink(self, system_a_id: str) -> bool:
        db = self._session_factory()
        try:
            deleted = (
                db.query(Correlation)
                .filter(Correlation.system_a_id == str(system_a_id))
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted > 0
        finally:
            db.close()

    def list(self, limit: int = 100, offset: int = 0) -> List[CorrelationEntry]:
        db = self._session_factory()
        try:
            rows = (
                db.query(Correlation)
                .order_by(Correlation.last_synced_at.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [_entry(r) for r in rows]
        finally:
            db.close()
