"""Database models"""

from issue_relay.models.base import Base
from issue_relay.models.conflict import ConflictRecord
from issue_relay.models.correlation import Correlation
from issue_relay.models.kv_entry import KeyValueEntry
from issue_relay.models.sync_job import EventType, JobStatus, SyncDirection, SyncJobRecord

__all__ = [
    "Base",
    "ConflictRecord",
    "Correlation",
    "EventType",
    "JobStatus",
    "KeyValueEntry",
    "SyncDirection",
    "SyncJobRecord",
]
