"""Capability interface the orchestrator uses to talk to each tracked system"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from issue_relay.services.conflict_engine import Snapshot
from issue_relay.services.errors import RemoteError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Comment:
    id: str
    body: str
    author: Optional[str] = None


class IssueTracker:
    """Operations one tracked system must support.

    Field dicts use the system's own vocabulary (see conflict_engine). Every
    method raises RemoteError on failure.
    """

    name = "tracker"
    display_name = "Tracker"
    system = ""

    def get_issue(self, ref: str) -> Snapshot:
        raise NotImplementedError

    def create_issue(self, fields: Dict[str, Any]) -> str:
        """Create the issue in its initial state and return its ref.

        Status is left to a follow-up update_issue once the ref is linked.
        """
        raise NotImplementedError

    def update_issue(self, ref: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    def get_comments(self, ref: str) -> List[Comment]:
        raise NotImplementedError

    def create_comment(self, ref: str, body: str) -> str:
        raise NotImplementedError

    def update_comment(self, ref: str, comment_id: str, body: str) -> None:
        raise NotImplementedError


class TimeoutGuard:
    """Run remote calls with a caller-side deadline.

    A call that overruns raises a retryable RemoteError("timeout"). The
    underlying thread is left to finish on its own; its result is discarded.
    """

    def __init__(self, timeout_seconds: float, max_workers: int = 16):
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="remote-call")

    def call(self, label: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            logger.error(f"Remote call {label} timed out after {self.timeout_seconds}s")
            raise RemoteError("timeout", f"{label} timed out after {self.timeout_seconds}s", retryable=True)

    def shutdown(self):
        self._executor.shutdown(wait=False)
