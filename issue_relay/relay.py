"""Relay runtime: wires the pipeline components together.

There are no module-level singletons; the process entry point builds one
`Relay` (usually through `build_relay`) and everything else receives its
collaborators through constructors.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from issue_relay.config import Settings
from issue_relay.models import EventType, SyncDirection
from issue_relay.models.base import create_database, utcnow
from issue_relay.scheduler import MaintenanceScheduler
from issue_relay.services.conflict_engine import FieldMappings, Strategy
from issue_relay.services.conflict_log import ConflictLog
from issue_relay.services.correlation_map import CorrelationMap
from issue_relay.services.errors import EventValidationError
from issue_relay.services.gitlab_client import GitLabTracker
from issue_relay.services.idempotency import DeduplicationEntry, IdempotencyStore, event_hash, validate_ttl
from issue_relay.services.jira_client import JiraTracker
from issue_relay.services.job_queue import JobQueue, QueuePolicy
from issue_relay.services.kv_store import KeyValueStore, build_kv_store
from issue_relay.services.metrics import MetricsSink, PrometheusMetrics
from issue_relay.services.orchestrator import SyncOrchestrator
from issue_relay.services.rate_limiter import RateLimiter
from issue_relay.services.trackers import IssueTracker, TimeoutGuard
from issue_relay.services.worker_pool import WorkerPool

logger = logging.getLogger(__name__)

COMMENT_EVENTS = (EventType.COMMENT_CREATED, EventType.COMMENT_UPDATED)


class Relay:
    """One relay process: ingress, queue, workers and maintenance."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        kv_store: KeyValueStore,
        system_a: IssueTracker,
        system_b: IssueTracker,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.kv_store = kv_store
        self.metrics = metrics or MetricsSink()

        self.idempotency = IdempotencyStore(kv_store, self.metrics)
        self.queue = JobQueue(session_factory, QueuePolicy.from_settings(settings), clock=clock)
        self.correlations = CorrelationMap(session_factory, clock=clock)
        self.conflicts = ConflictLog(session_factory, clock=clock)
        self.guard = TimeoutGuard(settings.remote_call_timeout_seconds, max_workers=settings.worker_concurrency * 2)
        self.orchestrator = SyncOrchestrator(
            system_a,
            system_b,
            self.correlations,
            self.conflicts,
            strategy=Strategy(settings.conflict_strategy),
            tie_breaker=Strategy(settings.conflict_tie_breaker),
            mappings=FieldMappings(
                label_mapping=dict(settings.label_mapping),
                status_mapping=dict(settings.status_mapping),
            ),
            archive_label=settings.archive_label,
            guard=self.guard,
            metrics=self.metrics,
        )
        self.rate_limiter = RateLimiter(
            max_jobs=settings.rate_limit_max_jobs,
            window_seconds=settings.rate_limit_window_ms / 1000.0,
        )
        self.workers = WorkerPool(
            self.queue,
            self.orchestrator,
            self.rate_limiter,
            concurrency=settings.worker_concurrency,
            poll_interval=settings.worker_poll_interval_ms / 1000.0,
            mapping_not_found_max_attempts=settings.mapping_not_found_max_attempts,
            metrics=self.metrics,
        )
        self.scheduler = MaintenanceScheduler(self.queue, self.metrics, kv_store)
        self._trackers = {SyncDirection.A_TO_B: system_a, SyncDirection.B_TO_A: system_b}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        logger.info("Starting issue relay")
        self.queue.resume()
        self.queue.recover_stalled()
        self.workers.start()
        self.scheduler.start()

    def stop(self, timeout: float = 30.0):
        logger.info("Stopping issue relay")
        self.scheduler.stop()
        self.workers.stop(timeout)
        self.guard.shutdown()

    # ------------------------------------------------------------------
    # Ingress
    # ------------------------------------------------------------------

    def submit_event(
        self,
        direction: str,
        event_type: str,
        source_id: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        priority: Optional[int] = None,
        delay_ms: Optional[int] = None,
        event_timestamp: Optional[str] = None,
        dedup_ttl: Optional[int] = None,
    ) -> Optional[str]:
        """Validate, deduplicate and enqueue one normalized event.

        Returns the job id, or None when the event is a duplicate.
        """
        try:
            direction = SyncDirection(direction)
        except ValueError:
            raise EventValidationError(f"Unknown direction: {direction!r}")
        try:
            event_type = EventType(event_type)
        except ValueError:
            raise EventValidationError(f"Unknown event type: {event_type!r}")
        if source_id is None or not str(source_id).strip():
            raise EventValidationError("source_id is required")
        source_id = str(source_id).strip()
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise EventValidationError("payload must be an object")
        if delay_ms is not None and int(delay_ms) < 0:
            raise EventValidationError("delay_ms must not be negative")
        try:
            ttl = validate_ttl(dedup_ttl if dedup_ttl is not None else self.settings.dedup_ttl_seconds)
        except ValueError as e:
            raise EventValidationError(str(e))

        entity_type = "issue"
        entity_id = source_id
        timestamp = event_timestamp or (payload.get("issue") or {}).get("updated_at")
        if event_type in COMMENT_EVENTS:
            comment = payload.get("comment")
            if not isinstance(comment, dict) or comment.get("id") in (None, ""):
                raise EventValidationError(f"{event_type.value} events need comment.id")
            entity_type = "comment"
            entity_id = f"{source_id}#{comment['id']}"
            timestamp = event_timestamp or comment.get("updated_at") or comment.get("created_at")

        source = self._trackers[direction].name
        hash_ = event_hash(source, event_type.value, entity_id, timestamp, payload)
        entry = DeduplicationEntry(
            hash=hash_,
            source_event=f"{source}:{event_type.value}",
            entity_type=entity_type,
            entity_id=entity_id,
            timestamp=timestamp or "",
            ttl=ttl,
        )
        if not self.idempotency.claim(hash_, ttl, entry):
            return None

        try:
            return self.queue.enqueue(
                direction,
                event_type,
                source_id,
                payload,
                metadata={"dedup_hash": hash_},
                priority=priority,
                delay_ms=delay_ms,
            )
        except Exception:
            # Let the sender's redelivery through.
            self.idempotency.release(hash_)
            raise

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_queue_stats(self) -> Dict[str, Dict[str, int]]:
        return {name: stats.as_dict() for name, stats in self.queue.all_stats().items()}

    def _database_ok(self) -> bool:
        db = self.session_factory()
        try:
            db.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Database health check failed: {e}")
            return False
        finally:
            db.close()

    def get_health(self) -> Dict[str, Any]:
        database_ok = self._database_ok()
        kv_ok = self.kv_store.ping()

        queues: Dict[str, Any] = {}
        queues_ok = database_ok
        if database_ok:
            for name, stats in self.queue.all_stats().items():
                backlog_ok = stats.waiting <= self.settings.queue_backlog_threshold
                queues[name] = {**stats.as_dict(), "healthy": backlog_ok}
                queues_ok = queues_ok and backlog_ok

        workers_ok = self.workers.running
        return {
            "healthy": database_ok and kv_ok and queues_ok and workers_ok,
            "checks": {
                "database": database_ok,
                "kv_store": kv_ok,
                "queues": {"healthy": queues_ok, "backlog_threshold": self.settings.queue_backlog_threshold, **queues},
                "workers": {
                    "healthy": workers_ok,
                    "concurrency": self.workers.concurrency,
                    "in_flight": self.workers.in_flight,
                    "draining": self.queue.draining,
                },
            },
        }


def build_relay(settings: Settings) -> Relay:
    """Construct a Relay for the configured database, key-value store and trackers."""
    session_factory = create_database(settings.database_url)
    kv_store = build_kv_store(settings, session_factory)
    metrics = PrometheusMetrics() if settings.metrics_enabled else MetricsSink()
    system_a = GitLabTracker(
        settings.system_a_url,
        settings.system_a_token,
        settings.system_a_project,
        timeout=settings.remote_call_timeout_seconds,
    )
    system_b = JiraTracker(
        settings.system_b_url,
        settings.system_b_email,
        settings.system_b_token,
        settings.system_b_project_key,
        issue_type=settings.system_b_issue_type,
        timeout=settings.remote_call_timeout_seconds,
        assignee_identity=settings.system_b_assignee_identity,
    )
    return Relay(settings, session_factory, kv_store, system_a, system_b, metrics=metrics)
