"""GitLab tracker (System A) on python-gitlab"""
import functools
import logging
import threading
from typing import Any, Dict, List, Optional

import gitlab
import requests

from issue_relay.services.conflict_engine import CLOSED, OPEN, SYSTEM_A, Snapshot
from issue_relay.services.errors import RemoteError
from issue_relay.services.trackers import Comment, IssueTracker

logger = logging.getLogger(__name__)


def _remote_errors(operation: str):
    """Translate python-gitlab / transport failures into RemoteError."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except gitlab.exceptions.GitlabError as e:
                code = getattr(e, "response_code", None)
                logger.error(f"GitLab {operation} failed ({code}): {e}")
                raise RemoteError(code, f"GitLab {operation} failed: {e}") from e
            except requests.exceptions.RequestException as e:
                logger.error(f"GitLab {operation} failed: {e}")
                raise RemoteError("network", f"GitLab {operation} failed: {e}") from e

        return wrapper

    return decorator


class GitLabTracker(IssueTracker):
    """Issues of one GitLab project, addressed by IID."""

    name = "gitlab"
    display_name = "GitLab"
    system = SYSTEM_A

    def __init__(
        self,
        url: str,
        access_token: str,
        project_id: str,
        gl: Optional[gitlab.Gitlab] = None,
        timeout: Optional[float] = 30.0,
    ):
        self.url = url
        self.project_id = project_id
        self.gl = gl or gitlab.Gitlab(url, private_token=access_token, timeout=timeout)
        self._project = None
        self._user_ids: Dict[str, Optional[int]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _normalize_issue_payload(issue_data: Dict[str, Any], *, for_update: bool) -> Dict[str, Any]:
        """Normalize payload fields for GitLab API quirks."""
        data = dict(issue_data)

        # GitLab API expects comma-separated string for `labels`. Some servers ignore empty lists.
        if "labels" in data:
            labels = data.get("labels")
            if not labels:
                if for_update:
                    data["labels"] = ""
                else:
                    data.pop("labels", None)
            elif isinstance(labels, (list, tuple)):
                data["labels"] = ",".join(labels)
        return data

    @staticmethod
    def _username(user: Any) -> Optional[str]:
        if isinstance(user, dict):
            return user.get("username")
        return getattr(user, "username", None)

    def _get_project(self):
        with self._lock:
            if self._project is None:
                self._project = self.gl.projects.get(self.project_id)
            return self._project

    def _user_id(self, username: str) -> Optional[int]:
        with self._lock:
            if username in self._user_ids:
                return self._user_ids[username]
        users = self.gl.users.list(username=username)
        user_id = users[0].id if users else None
        if user_id is None:
            logger.warning(f"GitLab user '{username}' not found; assignee skipped")
        with self._lock:
            self._user_ids[username] = user_id
        return user_id

    def _assignee_ids(self, usernames) -> List[int]:
        ids = []
        for username in usernames or ():
            user_id = self._user_id(username)
            if user_id is not None:
                ids.append(user_id)
        return ids

    def _to_snapshot(self, issue: Any) -> Snapshot:
        state = CLOSED if getattr(issue, "state", "opened") == "closed" else OPEN
        assignees = [self._username(a) for a in (getattr(issue, "assignees", None) or [])]
        return Snapshot(
            system=SYSTEM_A,
            ref=str(issue.iid),
            title=getattr(issue, "title", "") or "",
            description=getattr(issue, "description", "") or "",
            status=state,
            labels=tuple(getattr(issue, "labels", None) or ()),
            assignees=tuple(a for a in assignees if a),
            updated_at=getattr(issue, "updated_at", None),
        )

    def _api_payload(self, fields: Dict[str, Any], *, for_update: bool) -> Dict[str, Any]:
        payload = {k: fields[k] for k in ("title", "description", "labels") if k in fields}
        if "assignees" in fields:
            payload["assignee_ids"] = self._assignee_ids(fields["assignees"])
        return self._normalize_issue_payload(payload, for_update=for_update)

    @_remote_errors("get issue")
    def get_issue(self, ref: str) -> Snapshot:
        issue = self._get_project().issues.get(int(ref))
        return self._to_snapshot(issue)

    @_remote_errors("create issue")
    def create_issue(self, fields: Dict[str, Any]) -> str:
        project = self._get_project()
        issue = project.issues.create(self._api_payload(fields, for_update=False))
        logger.info(f"Created issue #{issue.iid} in project {self.project_id}")
        return str(issue.iid)

    @_remote_errors("update issue")
    def update_issue(self, ref: str, fields: Dict[str, Any]) -> None:
        issue = self._get_project().issues.get(int(ref))
        for key, value in self._api_payload(fields, for_update=True).items():
            setattr(issue, key, value)
        if "state" in fields:
            currently_closed = getattr(issue, "state", "opened") == "closed"
            if fields["state"] == CLOSED and not currently_closed:
                issue.state_event = "close"
            elif fields["state"] == OPEN and currently_closed:
                issue.state_event = "reopen"
        issue.save()
        logger.info(f"Updated issue #{ref} in project {self.project_id}")

    @_remote_errors("list notes")
    def get_comments(self, ref: str) -> List[Comment]:
        issue = self._get_project().issues.get(int(ref))
        notes = issue.notes.list(get_all=True, per_page=100, order_by="created_at", sort="asc")
        return [
            Comment(
                id=str(note.id),
                body=getattr(note, "body", "") or "",
                author=self._username(getattr(note, "author", None)),
            )
            for note in notes
            # Skip system notes
            if not getattr(note, "system", False)
        ]

    @_remote_errors("create note")
    def create_comment(self, ref: str, body: str) -> str:
        issue = self._get_project().issues.get(int(ref))
        note = issue.notes.create({"body": body})
        logger.info(f"Created note on issue #{ref}")
        return str(note.id)

    @_remote_errors("update note")
    def update_comment(self, ref: str, comment_id: str, body: str) -> None:
        issue = self._get_project().issues.get(int(ref))
        note = issue.notes.get(int(comment_id))
        note.body = body
        note.save()
        logger.info(f"Updated note {comment_id} on issue #{ref}")
