"""Durable job queue on the relay database.

Jobs are rows in `sync_jobs`. Every state change is a conditional UPDATE
whose row count tells the caller whether it won, so any number of worker
threads or processes can share one queue:

- dequeue:   (pending|retry) -> processing, leased to one worker
- complete:  processing -> completed           (only by the lease holder)
- fail:      processing -> retry | failed      (only by the lease holder)
- stalled:   processing with an expired lease -> retry (or failed past max_stalled)
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from issue_relay.models import EventType, JobStatus, SyncDirection, SyncJobRecord
from issue_relay.models.base import utcnow
from issue_relay.models.sync_job import WAITING_STATUSES
from issue_relay.services.errors import JobNotFound

logger = logging.getLogger(__name__)

QUEUE_SYSTEM_A = "system-a-sync"
QUEUE_SYSTEM_B = "system-b-sync"
QUEUE_NAMES = (QUEUE_SYSTEM_A, QUEUE_SYSTEM_B)

# Candidates fetched per dequeue attempt; losing a race moves on to the next one.
_DEQUEUE_BATCH = 5


def queue_for(direction: SyncDirection) -> str:
    """Jobs from System A go to one stream, jobs from System B to the other."""
    return QUEUE_SYSTEM_A if SyncDirection(direction) == SyncDirection.A_TO_B else QUEUE_SYSTEM_B


@dataclass(frozen=True)
class QueuePolicy:
    max_attempts: int = 3
    backoff_base_ms: int = 5000
    backoff_max_ms: int = 300_000
    lease_seconds: int = 30
    max_stalled: int = 1
    completed_retention: timedelta = timedelta(hours=24)
    failed_retention: timedelta = timedelta(days=7)

    @classmethod
    def from_settings(cls, settings) -> "QueuePolicy":
        return cls(
            max_attempts=settings.queue_max_attempts,
            backoff_base_ms=settings.queue_backoff_base_ms,
            backoff_max_ms=settings.queue_backoff_max_ms,
            lease_seconds=settings.queue_lease_seconds,
            max_stalled=settings.queue_max_stalled,
            completed_retention=timedelta(hours=settings.queue_completed_retention_hours),
            failed_retention=timedelta(days=settings.queue_failed_retention_days),
        )

    def backoff(self, retry_number: int) -> timedelta:
        """Delay before retry `retry_number` (1-based): base * 2^(n-1), capped."""
        delay_ms = self.backoff_base_ms * (2 ** max(0, retry_number - 1))
        return timedelta(milliseconds=min(delay_ms, self.backoff_max_ms))


@dataclass(frozen=True)
class SyncJob:
    """Read-only view of a job handed to the orchestrator."""

    id: str
    queue_name: str
    direction: SyncDirection
    event_type: EventType
    source_id: str
    source_data: Dict[str, Any]
    target_id: Optional[str]
    status: JobStatus
    retry_count: int
    max_attempts: int
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, row: SyncJobRecord) -> "SyncJob":
        return cls(
            id=row.id,
            queue_name=row.queue_name,
            direction=SyncDirection(row.direction),
            event_type=EventType(row.event_type),
            source_id=row.source_id,
            source_data=dict(row.source_data or {}),
            target_id=row.target_id,
            status=JobStatus(row.status),
            retry_count=row.retry_count,
            max_attempts=row.max_attempts,
            created_at=row.created_at,
            updated_at=row.updated_at,
            processed_at=row.processed_at,
            error=row.error,
            metadata=dict(row.job_metadata or {}),
        )


@dataclass(frozen=True)
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
        }


class JobQueue:
    """Direction-scoped durable queues with priority, delay, retry/backoff and dead-lettering."""

    def __init__(
        self,
        session_factory: sessionmaker,
        policy: Optional[QueuePolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.policy = policy or QueuePolicy()
        self._clock = clock
        self._draining = False

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        direction: SyncDirection,
        event_type: EventType,
        source_id: str,
        source_data: Dict[str, Any],
        *,
        target_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        priority: Optional[int] = None,
        delay_ms: Optional[int] = None,
        job_id: Optional[str] = None,
    ) -> str:
        """Durably store a job; returns its id."""
        now = self._clock()
        job_id = job_id or str(uuid.uuid4())
        queue_name = queue_for(direction)
        row = SyncJobRecord(
            id=job_id,
            queue_name=queue_name,
            direction=SyncDirection(direction),
            event_type=EventType(event_type),
            source_id=str(source_id),
            source_data=source_data or {},
            target_id=target_id,
            job_metadata=metadata,
            status=JobStatus.PENDING,
            priority=int(priority or 0),
            retry_count=0,
            max_attempts=self.policy.max_attempts,
            stalled_count=0,
            available_at=now + timedelta(milliseconds=max(0, int(delay_ms or 0))),
            created_at=now,
            updated_at=now,
        )
        db = self._session_factory()
        try:
            db.add(row)
            db.commit()
        finally:
            db.close()
        logger.info(f"Sync job {job_id} enqueued on {queue_name}: {event_type} for {source_id}")
        return job_id

    def cancel(self, job_id: str) -> bool:
        """Remove a job that no worker has claimed yet."""
        db = self._session_factory()
        try:
            deleted = (
                db.query(SyncJobRecord)
                .filter(SyncJobRecord.id == job_id, SyncJobRecord.status.in_(WAITING_STATUSES))
                .delete(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()
        if deleted:
            logger.info(f"Sync job {job_id} cancelled")
        return deleted > 0

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def dequeue(self, queue_names: Sequence[str], worker_id: str) -> Optional[SyncJob]:
        """Lease the next ready job from the first queue (in order) that has one."""
        if self._draining:
            return None
        for queue_name in queue_names:
            job = self._dequeue_from(queue_name, worker_id)
            if job is not None:
                return job
        return None

    def _dequeue_from(self, queue_name: str, worker_id: str) -> Optional[SyncJob]:
        now = self._clock()
        db = self._session_factory()
        try:
            candidates = [
                row_id
                for (row_id,) in db.query(SyncJobRecord.id)
                .filter(
                    SyncJobRecord.queue_name == queue_name,
                    SyncJobRecord.status.in_(WAITING_STATUSES),
                    SyncJobRecord.available_at <= now,
                )
                .order_by(
                    SyncJobRecord.priority.desc(),
                    SyncJobRecord.available_at.asc(),
                    SyncJobRecord.created_at.asc(),
                )
                .limit(_DEQUEUE_BATCH)
                .all()
            ]
            for row_id in candidates:
                claimed = (
                    db.query(SyncJobRecord)
                    .filter(SyncJobRecord.id == row_id, SyncJobRecord.status.in_(WAITING_STATUSES))
                    .update(
                        {
                            SyncJobRecord.status: JobStatus.PROCESSING,
                            SyncJobRecord.lease_owner: worker_id,
                            SyncJobRecord.lease_expires_at: now
                            + timedelta(seconds=self.policy.lease_seconds),
                            SyncJobRecord.updated_at: now,
                        },
                        synchronize_session=False,
                    )
                )
                db.commit()
                if claimed == 1:
                    row = db.query(SyncJobRecord).filter(SyncJobRecord.id == row_id).first()
                    return SyncJob.from_record(row)
            return None
        finally:
            db.close()

    def heartbeat(self, job_id: str, worker_id: str) -> bool:
        """Extend the lease; False if the worker no longer holds it."""
        now = self._clock()
        db = self._session_factory()
        try:
            updated = (
                db.query(SyncJobRecord)
                .filter(
                    SyncJobRecord.id == job_id,
                    SyncJobRecord.status == JobStatus.PROCESSING,
                    SyncJobRecord.lease_owner == worker_id,
                )
                .update(
                    {SyncJobRecord.lease_expires_at: now + timedelta(seconds=self.policy.lease_seconds)},
                    synchronize_session=False,
                )
            )
            db.commit()
            return updated == 1
        finally:
            db.close()

    def complete(self, job_id: str, worker_id: str, target_id: Optional[str] = None) -> bool:
        """Mark a leased job completed."""
        now = self._clock()
        values = {
            SyncJobRecord.status: JobStatus.COMPLETED,
            SyncJobRecord.lease_owner: None,
            SyncJobRecord.lease_expires_at: None,
            SyncJobRecord.processed_at: now,
            SyncJobRecord.updated_at: now,
            SyncJobRecord.error: None,
        }
        if target_id is not None:
            values[SyncJobRecord.target_id] = str(target_id)
        updated = self._update_leased(job_id, worker_id, values)
        if updated:
            logger.info(f"Sync job {job_id} completed")
        else:
            logger.warning(f"Ignoring completion of {job_id} from {worker_id}: lease no longer held")
        return updated

    def fail(
        self,
        job_id: str,
        worker_id: str,
        error: str,
        *,
        retryable: bool = True,
        max_attempts: Optional[int] = None,
    ) -> Optional[JobStatus]:
        """Record a failed attempt; the queue decides retry vs terminal failure.

        Returns the job's new status, or None if the worker no longer held the lease.
        """
        now = self._clock()
        db = self._session_factory()
        try:
            row = (
                db.query(SyncJobRecord)
                .filter(
                    SyncJobRecord.id == job_id,
                    SyncJobRecord.status == JobStatus.PROCESSING,
                    SyncJobRecord.lease_owner == worker_id,
                )
                .first()
            )
            if row is None:
                logger.warning(f"Ignoring failure of {job_id} from {worker_id}: lease no longer held")
                return None

            limit = min(row.max_attempts, max_attempts) if max_attempts else row.max_attempts
            attempts_made = row.retry_count + 1
            if retryable and attempts_made < limit:
                retry_number = row.retry_count + 1
                values = {
                    SyncJobRecord.status: JobStatus.RETRY,
                    SyncJobRecord.retry_count: retry_number,
                    SyncJobRecord.available_at: now + self.policy.backoff(retry_number),
                }
                new_status = JobStatus.RETRY
            else:
                values = {
                    SyncJobRecord.status: JobStatus.FAILED,
                    SyncJobRecord.processed_at: now,
                }
                new_status = JobStatus.FAILED
            values.update(
                {
                    SyncJobRecord.lease_owner: None,
                    SyncJobRecord.lease_expires_at: None,
                    SyncJobRecord.updated_at: now,
                    SyncJobRecord.error: error,
                }
            )
            updated = (
                db.query(SyncJobRecord)
                .filter(
                    SyncJobRecord.id == job_id,
                    SyncJobRecord.status == JobStatus.PROCESSING,
                    SyncJobRecord.lease_owner == worker_id,
                )
                .update(values, synchronize_session=False)
            )
            db.commit()
            if updated != 1:
                return None
        finally:
            db.close()

        if new_status == JobStatus.RETRY:
            logger.warning(
                f"Sync job {job_id} failed (attempt {attempts_made}/{limit}), retry scheduled: {error}"
            )
        else:
            logger.error(f"Sync job {job_id} terminally failed after {attempts_made} attempt(s): {error}")
        return new_status

    def _update_leased(self, job_id: str, worker_id: str, values: Dict[Any, Any]) -> bool:
        db = self._session_factory()
        try:
            updated = (
                db.query(SyncJobRecord)
                .filter(
                    SyncJobRecord.id == job_id,
                    SyncJobRecord.status == JobStatus.PROCESSING,
                    SyncJobRecord.lease_owner == worker_id,
                )
                .update(values, synchronize_session=False)
            )
            db.commit()
            return updated == 1
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def recover_stalled(self) -> int:
        """Return jobs whose lease expired to the waiting set."""
        now = self._clock()
        recovered = 0
        db = self._session_factory()
        try:
            stalled = (
                db.query(SyncJobRecord)
                .filter(
                    SyncJobRecord.status == JobStatus.PROCESSING,
                    SyncJobRecord.lease_expires_at < now,
                )
                .all()
            )
            for row in stalled:
                stalled_count = row.stalled_count + 1
                if stalled_count > self.policy.max_stalled:
                    values = {
                        SyncJobRecord.status: JobStatus.FAILED,
                        SyncJobRecord.processed_at: now,
                        SyncJobRecord.error: "job stalled more than allowable limit",
                    }
                else:
                    values = {
                        SyncJobRecord.status: JobStatus.RETRY,
                        SyncJobRecord.available_at: now,
                    }
                values.update(
                    {
                        SyncJobRecord.stalled_count: stalled_count,
                        SyncJobRecord.lease_owner: None,
                        SyncJobRecord.lease_expires_at: None,
                        SyncJobRecord.updated_at: now,
                    }
                )
                # Guard on the lease we saw so a late heartbeat wins the race.
                updated = (
                    db.query(SyncJobRecord)
                    .filter(
                        SyncJobRecord.id == row.id,
                        SyncJobRecord.status == JobStatus.PROCESSING,
                        SyncJobRecord.lease_owner == row.lease_owner,
                        SyncJobRecord.lease_expires_at < now,
                    )
                    .update(values, synchronize_session=False)
                )
                if updated:
                    recovered += 1
                    logger.warning(f"Sync job {row.id} stalled (worker {row.lease_owner})")
            db.commit()
        finally:
            db.close()
        return recovered

    def purge_finished(self) -> int:
        """Delete completed and failed jobs past their retention windows."""
        now = self._clock()
        db = self._session_factory()
        try:
            completed = (
                db.query(SyncJobRecord)
                .filter(
                    SyncJobRecord.status == JobStatus.COMPLETED,
                    SyncJobRecord.processed_at < now - self.policy.completed_retention,
                )
                .delete(synchronize_session=False)
            )
            failed = (
                db.query(SyncJobRecord)
                .filter(
                    SyncJobRecord.status == JobStatus.FAILED,
                    SyncJobRecord.processed_at < now - self.policy.failed_retention,
                )
                .delete(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()
        if completed or failed:
            logger.info(f"Old jobs cleaned: completed={completed} failed={failed}")
        return completed + failed

    def drain(self):
        """Stop handing out jobs; enqueued jobs stay in the database."""
        self._draining = True
        logger.info("Job queue draining")

    def resume(self):
        self._draining = False
        logger.info("Job queue resumed")

    @property
    def draining(self) -> bool:
        return self._draining

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> SyncJob:
        db = self._session_factory()
        try:
            row = db.query(SyncJobRecord).filter(SyncJobRecord.id == job_id).first()
            if row is None:
                raise JobNotFound(job_id)
            return SyncJob.from_record(row)
        finally:
            db.close()

    def stats(self, queue_name: str) -> QueueStats:
        db = self._session_factory()
        try:
            counts = dict(
                db.query(SyncJobRecord.status, func.count(SyncJobRecord.id))
                .filter(SyncJobRecord.queue_name == queue_name)
                .group_by(SyncJobRecord.status)
                .all()
            )
        finally:
            db.close()
        return QueueStats(
            waiting=counts.get(JobStatus.PENDING, 0) + counts.get(JobStatus.RETRY, 0),
            active=counts.get(JobStatus.PROCESSING, 0),
            completed=counts.get(JobStatus.COMPLETED, 0),
            failed=counts.get(JobStatus.FAILED, 0),
        )

    def all_stats(self) -> Dict[str, QueueStats]:
        return {name: self.stats(name) for name in QUEUE_NAMES}

    def list_failed(self, queue_name: str, limit: int = 100) -> List[SyncJob]:
        db = self._session_factory()
        try:
            rows = (
                db.query(SyncJobRecord)
                .filter(
                    SyncJobRecord.queue_name == queue_name,
                    SyncJobRecord.status == JobStatus.FAILED,
                )
                .order_by(SyncJobRecord.processed_at.desc())
                .limit(limit)
                .all()
            )
            return [SyncJob.from_record(r) for r in rows]
        finally:
            db.close()

    def retry_failed(self, job_id: str) -> bool:
        """Operator replay of a terminal-failed job with a fresh retry budget."""
        now = self._clock()
        db = self._session_factory()
        try:
            updated = (
                db.query(SyncJobRecord)
                .filter(SyncJobRecord.id == job_id, SyncJobRecord.status == JobStatus.FAILED)
                .update(
                    {
                        SyncJobRecord.status: JobStatus.PENDING,
                        SyncJobRecord.retry_count: 0,
                        SyncJobRecord.stalled_count: 0,
                        SyncJobRecord.available_at: now,
                        SyncJobRecord.processed_at: None,
                        SyncJobRecord.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
        finally:
            db.close()
        if updated:
            logger.info(f"Sync job {job_id} re-queued by operator")
        return updated == 1
