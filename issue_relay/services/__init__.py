"""Services"""

from issue_relay.services.conflict_log import ConflictLog
from issue_relay.services.correlation_map import CorrelationMap
from issue_relay.services.gitlab_client import GitLabTracker
from issue_relay.services.idempotency import IdempotencyStore
from issue_relay.services.jira_client import JiraTracker
from issue_relay.services.job_queue import JobQueue
from issue_relay.services.orchestrator import SyncOrchestrator, SyncResult
from issue_relay.services.worker_pool import WorkerPool

__all__ = [
    "ConflictLog",
    "CorrelationMap",
    "GitLabTracker",
    "IdempotencyStore",
    "JiraTracker",
    "JobQueue",
    "SyncOrchestrator",
    "SyncResult",
    "WorkerPool",
]
