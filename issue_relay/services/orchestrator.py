"""Sync orchestrator: turns one queued job into calls on the two trackers.

Jobs are dispatched on their event type. The orchestrator never raises: every
outcome comes back as a `SyncResult` and the queue decides what happens next.
Re-running a job is safe: creates check the correlation map first, updates
compare against the target before writing, and relayed comments carry a
marker that is looked up before anything is posted.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from issue_relay.models import EventType, SyncDirection
from issue_relay.services.conflict_engine import (
    CLOSED,
    FIELD_ASSIGNEES,
    FIELD_LABELS,
    FIELD_STATUS,
    SYSTEM_A,
    FieldMappings,
    Snapshot,
    Strategy,
    detect_conflicts,
    fields_for,
    resolve,
)
from issue_relay.services.conflict_log import ConflictLog
from issue_relay.services.correlation_map import CorrelationEntry, CorrelationMap
from issue_relay.services.errors import EventValidationError, MappingNotFound, RemoteError
from issue_relay.services.job_queue import SyncJob
from issue_relay.services.metrics import MetricsSink
from issue_relay.services.trackers import IssueTracker, TimeoutGuard

logger = logging.getLogger(__name__)

ERROR_REMOTE = "remote"
ERROR_MAPPING_NOT_FOUND = "mapping_not_found"
ERROR_INVALID_PAYLOAD = "invalid_payload"
ERROR_UNEXPECTED = "unexpected"

_COMMENT_MARKER_RE = re.compile(r"<!-- issue-relay-comment:(?P<system>[\w-]+):(?P<id>[^\s>]+) -->")


def comment_marker(system: str, comment_id: str) -> str:
    return f"<!-- issue-relay-comment:{system}:{comment_id} -->"


@dataclass(frozen=True)
class SyncResult:
    success: bool
    source_id: str
    target_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retryable: bool = False
    conflict_resolved: Optional[bool] = None


@dataclass(frozen=True)
class _Route:
    direction: SyncDirection
    source: IssueTracker
    target: IssueTracker

    def ids(self, source_id: str, target_id: str):
        """(system A id, system B id)"""
        if self.direction == SyncDirection.A_TO_B:
            return str(source_id), str(target_id)
        return str(target_id), str(source_id)


# Event type -> handler method
_HANDLERS = {
    EventType.ISSUE_CREATED: "_issue_created",
    EventType.ISSUE_UPDATED: "_issue_updated",
    EventType.ISSUE_DELETED: "_issue_deleted",
    EventType.COMMENT_CREATED: "_comment_created",
    EventType.COMMENT_UPDATED: "_comment_updated",
    EventType.LABEL_CHANGED: "_labels_changed",
    EventType.ASSIGNEE_CHANGED: "_assignees_changed",
    EventType.STATUS_CHANGED: "_status_changed",
}

_missing = set(EventType) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"No orchestrator handler for event types: {sorted(e.value for e in _missing)}")


class SyncOrchestrator:
    def __init__(
        self,
        system_a: IssueTracker,
        system_b: IssueTracker,
        correlations: CorrelationMap,
        conflicts: ConflictLog,
        *,
        strategy: Strategy = Strategy.LAST_WRITE_WINS,
        tie_breaker: Strategy = Strategy.A_WINS,
        mappings: Optional[FieldMappings] = None,
        archive_label: str = "archived",
        guard: Optional[TimeoutGuard] = None,
        metrics: Optional[MetricsSink] = None,
    ):
        self.system_a = system_a
        self.system_b = system_b
        self.correlations = correlations
        self.conflicts = conflicts
        self.strategy = Strategy(strategy)
        self.tie_breaker = Strategy(tie_breaker)
        self.mappings = mappings or FieldMappings()
        self.archive_label = archive_label
        self.guard = guard or TimeoutGuard(30.0)
        self.metrics = metrics or MetricsSink()

    def _route(self, direction: SyncDirection) -> _Route:
        if SyncDirection(direction) == SyncDirection.A_TO_B:
            return _Route(SyncDirection.A_TO_B, self.system_a, self.system_b)
        return _Route(SyncDirection.B_TO_A, self.system_b, self.system_a)

    def _call(self, tracker: IssueTracker, operation: str, fn: Callable[..., Any], *args) -> Any:
        return self.guard.call(f"{tracker.name}.{operation}", fn, *args)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def process(self, job: SyncJob) -> SyncResult:
        """Run one job to a result. Never raises."""
        route = self._route(job.direction)
        handler = getattr(self, _HANDLERS[EventType(job.event_type)])
        try:
            return handler(job, route)
        except MappingNotFound as e:
            logger.warning(f"Job {job.id} ({job.event_type.value}): {e}")
            return SyncResult(
                success=False,
                source_id=job.source_id,
                error=str(e),
                error_kind=ERROR_MAPPING_NOT_FOUND,
                retryable=True,
            )
        except EventValidationError as e:
            logger.error(f"Job {job.id} ({job.event_type.value}) has an unusable payload: {e}")
            return SyncResult(
                success=False,
                source_id=job.source_id,
                error=str(e),
                error_kind=ERROR_INVALID_PAYLOAD,
                retryable=False,
            )
        except RemoteError as e:
            logger.error(f"Job {job.id} ({job.event_type.value}) remote call failed: {e}")
            return SyncResult(
                success=False,
                source_id=job.source_id,
                error=str(e),
                error_kind=ERROR_REMOTE,
                retryable=e.retryable,
            )
        except Exception as e:
            logger.exception(f"Job {job.id} ({job.event_type.value}) failed unexpectedly")
            return SyncResult(
                success=False,
                source_id=job.source_id,
                error=f"{type(e).__name__}: {e}",
                error_kind=ERROR_UNEXPECTED,
                retryable=True,
            )

    # ------------------------------------------------------------------
    # Payload helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _issue_payload(job: SyncJob) -> Dict[str, Any]:
        data = job.source_data or {}
        issue = data.get("issue")
        if issue is None:
            issue = {k: v for k, v in data.items() if k != "comment"}
        return issue

    def _source_snapshot(self, job: SyncJob, route: _Route) -> Snapshot:
        payload = dict(self._issue_payload(job))
        payload["id"] = job.source_id
        return Snapshot.from_payload(route.source.system, payload)

    @staticmethod
    def _comment_payload(job: SyncJob) -> Dict[str, Any]:
        comment = (job.source_data or {}).get("comment") or {}
        if comment.get("id") in (None, ""):
            raise EventValidationError("comment event without comment.id")
        return comment

    def _require_link(self, job: SyncJob, route: _Route) -> CorrelationEntry:
        entry = self.correlations.lookup(route.direction, job.source_id)
        if entry is None:
            raise MappingNotFound(job.source_id)
        return entry

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def _issue_created(self, job: SyncJob, route: _Route) -> SyncResult:
        if self.correlations.lookup(route.direction, job.source_id) is not None:
            logger.info(f"Issue {job.source_id} already linked, treating create as update")
            return self._issue_updated(job, route)
        return self._create(job, route)

    def _create(self, job: SyncJob, route: _Route) -> SyncResult:
        snapshot = self._source_snapshot(job, route)
        fields = self.mappings.translate(snapshot)
        status_field = "state" if route.target.system == SYSTEM_A else "status"
        status = fields.pop(status_field, None)
        target_id = str(self._call(route.target, "create_issue", route.target.create_issue, fields))
        a_id, b_id = route.ids(job.source_id, target_id)
        if not self.correlations.link(a_id, b_id):
            existing = self.correlations.lookup(route.direction, job.source_id)
            existing_target = existing.target_for(route.direction) if existing else None
            logger.warning(
                f"Issue {job.source_id} was linked concurrently to {existing_target}; "
                f"{route.target.display_name} issue {target_id} is left unlinked"
            )
            return SyncResult(success=True, source_id=job.source_id, target_id=existing_target)

        # Status goes in only once the link exists, so a failure here is retried
        # as an update of the linked issue. GitLab issues always start open.
        if status and (status_field == "status" or status == CLOSED):
            self._call(
                route.target, "update_issue", route.target.update_issue, target_id, {status_field: status}
            )
        logger.info(
            f"Created {route.target.display_name} issue {target_id} from "
            f"{route.source.display_name} issue {job.source_id}"
        )
        return SyncResult(success=True, source_id=job.source_id, target_id=target_id)

    def _issue_updated(self, job: SyncJob, route: _Route) -> SyncResult:
        entry = self.correlations.lookup(route.direction, job.source_id)
        if entry is None:
            logger.info(f"Issue {job.source_id} is not linked yet, creating it")
            return self._create(job, route)

        target_id = entry.target_for(route.direction)
        source_snapshot = self._source_snapshot(job, route)
        target_snapshot = self._call(route.target, "get_issue", route.target.get_issue, target_id)
        if route.source.system == SYSTEM_A:
            report = detect_conflicts(source_snapshot, target_snapshot, self.mappings)
        else:
            report = detect_conflicts(target_snapshot, source_snapshot, self.mappings)

        if report is None:
            # Target already matches: nothing to write (also ends relay echo loops).
            self.correlations.touch(entry.system_a_id)
            return SyncResult(success=True, source_id=job.source_id, target_id=target_id)

        resolution = resolve(report, self.strategy, self.mappings, self.tie_breaker)
        self.metrics.record_conflict(self.strategy.value, resolution.resolved)
        self.conflicts.record(
            report,
            self.strategy,
            resolution,
            system_a_id=entry.system_a_id,
            system_b_id=entry.system_b_id,
            job_id=job.id,
        )

        if resolution.requires_manual_review:
            # Source values go through; the operator reviews the recorded report.
            fields = self._pick(
                self.mappings.translate(source_snapshot), route.target.system, report.conflicting_fields
            )
            self._call(route.target, "update_issue", route.target.update_issue, target_id, fields)
            self.correlations.touch(entry.system_a_id)
            return SyncResult(
                success=True, source_id=job.source_id, target_id=target_id, conflict_resolved=False
            )

        if resolution.winner == route.source.system:
            fields = self._pick(resolution.winning_data, route.target.system, report.conflicting_fields)
            self._call(route.target, "update_issue", route.target.update_issue, target_id, fields)
            logger.info(
                f"Updated {route.target.display_name} issue {target_id} "
                f"({', '.join(sorted(fields))}) from {route.source.display_name} issue {job.source_id}"
            )
        else:
            # Target is authoritative: push its values back so both sides converge.
            fields = self._pick(resolution.winning_data, route.source.system, report.conflicting_fields)
            self._call(route.source, "update_issue", route.source.update_issue, job.source_id, fields)
            logger.info(
                f"{route.target.display_name} issue {target_id} won ({resolution.resolution.value}); "
                f"wrote {', '.join(sorted(fields))} back to {route.source.display_name} issue {job.source_id}"
            )
        self.correlations.touch(entry.system_a_id)
        return SyncResult(success=True, source_id=job.source_id, target_id=target_id, conflict_resolved=True)

    @staticmethod
    def _pick(data: Dict[str, Any], system: str, conflict_fields) -> Dict[str, Any]:
        keys = fields_for(system, conflict_fields)
        return {key: data[key] for key in keys if key in data}

    def _issue_deleted(self, job: SyncJob, route: _Route) -> SyncResult:
        entry = self.correlations.lookup(route.direction, job.source_id)
        if entry is None:
            logger.info(f"Deleted issue {job.source_id} was never linked, nothing to archive")
            return SyncResult(success=True, source_id=job.source_id)

        target_id = entry.target_for(route.direction)
        current = self._call(route.target, "get_issue", route.target.get_issue, target_id)
        labels = list(current.labels)
        for label in (self.archive_label, f"deleted-in-{route.source.name}"):
            if label not in labels:
                labels.append(label)
        if route.target.system == SYSTEM_A:
            fields = {"labels": labels, "state": CLOSED}
        else:
            fields = {"labels": labels, "status": self.mappings.status_to_b(CLOSED)}
        self._call(route.target, "update_issue", route.target.update_issue, target_id, fields)
        self.correlations.touch(entry.system_a_id)
        logger.info(
            f"Archived {route.target.display_name} issue {target_id} "
            f"(deleted in {route.source.display_name} as {job.source_id})"
        )
        return SyncResult(success=True, source_id=job.source_id, target_id=target_id)

    # ------------------------------------------------------------------
    # Partial updates
    # ------------------------------------------------------------------

    def _partial_update(self, job: SyncJob, route: _Route, field: str) -> SyncResult:
        entry = self._require_link(job, route)
        target_id = entry.target_for(route.direction)
        source_snapshot = self._source_snapshot(job, route)
        current = self._call(route.target, "get_issue", route.target.get_issue, target_id)
        if route.source.system == SYSTEM_A:
            report = detect_conflicts(source_snapshot, current, self.mappings)
        else:
            report = detect_conflicts(current, source_snapshot, self.mappings)

        if report is None or field not in report.conflicting_fields:
            self.correlations.touch(entry.system_a_id)
            return SyncResult(success=True, source_id=job.source_id, target_id=target_id)

        fields = self._pick(self.mappings.translate(source_snapshot), route.target.system, [field])
        self._call(route.target, "update_issue", route.target.update_issue, target_id, fields)
        self.correlations.touch(entry.system_a_id)
        logger.info(f"Updated {field} of {route.target.display_name} issue {target_id}")
        return SyncResult(success=True, source_id=job.source_id, target_id=target_id)

    def _labels_changed(self, job: SyncJob, route: _Route) -> SyncResult:
        return self._partial_update(job, route, FIELD_LABELS)

    def _assignees_changed(self, job: SyncJob, route: _Route) -> SyncResult:
        return self._partial_update(job, route, FIELD_ASSIGNEES)

    def _status_changed(self, job: SyncJob, route: _Route) -> SyncResult:
        return self._partial_update(job, route, FIELD_STATUS)

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    def _relayed_body(self, route: _Route, comment: Dict[str, Any]) -> str:
        author = comment.get("author") or "unknown"
        marker = comment_marker(route.source.name, str(comment["id"]))
        return (
            f"**{author}** commented on {route.source.display_name}:\n\n"
            f"{comment.get('body') or ''}\n\n{marker}"
        )

    def _find_relayed(self, route: _Route, target_id: str, comment_id: str) -> Optional[str]:
        marker = comment_marker(route.source.name, comment_id)
        comments = self._call(route.target, "get_comments", route.target.get_comments, target_id)
        for existing in comments:
            if marker in (existing.body or ""):
                return existing.id
        return None

    def _comment_created(self, job: SyncJob, route: _Route) -> SyncResult:
        comment = self._comment_payload(job)
        entry = self._require_link(job, route)
        target_id = entry.target_for(route.direction)

        if _COMMENT_MARKER_RE.search(comment.get("body") or ""):
            logger.debug(f"Skipping relayed comment {comment['id']} on issue {job.source_id}")
            return SyncResult(success=True, source_id=job.source_id, target_id=target_id)

        if self._find_relayed(route, target_id, str(comment["id"])) is not None:
            logger.info(f"Comment {comment['id']} already relayed to issue {target_id}")
            return SyncResult(success=True, source_id=job.source_id, target_id=target_id)

        body = self._relayed_body(route, comment)
        self._call(route.target, "create_comment", route.target.create_comment, target_id, body)
        self.correlations.touch(entry.system_a_id)
        logger.info(
            f"Relayed comment {comment['id']} to {route.target.display_name} issue {target_id}"
        )
        return SyncResult(success=True, source_id=job.source_id, target_id=target_id)

    def _comment_updated(self, job: SyncJob, route: _Route) -> SyncResult:
        comment = self._comment_payload(job)
        entry = self._require_link(job, route)
        target_id = entry.target_for(route.direction)

        if _COMMENT_MARKER_RE.search(comment.get("body") or ""):
            return SyncResult(success=True, source_id=job.source_id, target_id=target_id)

        body = self._relayed_body(route, comment)
        existing_id = self._find_relayed(route, target_id, str(comment["id"]))
        if existing_id is None:
            self._call(route.target, "create_comment", route.target.create_comment, target_id, body)
            logger.info(f"Relayed edited comment {comment['id']} as new comment on issue {target_id}")
        else:
            self._call(
                route.target, "update_comment", route.target.update_comment, target_id, existing_id, body
            )
            logger.info(f"Updated relayed comment {existing_id} on issue {target_id}")
        self.correlations.touch(entry.system_a_id)
        return SyncResult(success=True, source_id=job.source_id, target_id=target_id)
