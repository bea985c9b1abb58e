"""
Jira Cloud tracker (System B) over the REST API v3.

Descriptions and comments travel as Atlassian Document Format; the relay
works in plain text, one paragraph per line.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from issue_relay.services.conflict_engine import SYSTEM_B, Snapshot
from issue_relay.services.errors import RemoteError
from issue_relay.services.trackers import Comment, IssueTracker

logger = logging.getLogger(__name__)

ISSUE_FIELDS = "summary,description,status,labels,assignee,updated"

ASSIGNEE_BY_EMAIL = "email"
ASSIGNEE_BY_DISPLAY_NAME = "display_name"


def text_to_adf(text: Optional[str]) -> Dict[str, Any]:
    """Plain text -> ADF document, one paragraph per line."""
    content = []
    for line in (text or "").split("\n"):
        paragraph: Dict[str, Any] = {"type": "paragraph", "content": []}
        if line:
            paragraph["content"].append({"type": "text", "text": line})
        content.append(paragraph)
    return {"type": "doc", "version": 1, "content": content}


def adf_to_text(node: Any) -> str:
    """ADF document (or legacy plain string) -> plain text."""
    if node is None:
        return ""
    if isinstance(node, str):
        return node
    node_type = node.get("type")
    if node_type == "text":
        return node.get("text", "")
    if node_type == "hardBreak":
        return "\n"
    children = node.get("content") or []
    if node_type == "doc":
        return "\n".join(adf_to_text(child) for child in children)
    return "".join(adf_to_text(child) for child in children)


class JiraTracker(IssueTracker):
    """Issues of one Jira project, addressed by issue key."""

    name = "jira"
    display_name = "Jira"
    system = SYSTEM_B

    API_VERSION = "3"

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        project_key: str,
        issue_type: str = "Task",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        assignee_identity: str = ASSIGNEE_BY_EMAIL,
    ):
        if assignee_identity not in (ASSIGNEE_BY_EMAIL, ASSIGNEE_BY_DISPLAY_NAME):
            raise ValueError(f"Unknown assignee identity: {assignee_identity!r}")
        self.base_url = base_url.rstrip("/")
        self.api_url = f"{self.base_url}/rest/api/{self.API_VERSION}"
        self.project_key = project_key
        self.issue_type = issue_type
        self.timeout = timeout
        self.assignee_identity = assignee_identity

        self._session = session or requests.Session()
        self._session.auth = (email, api_token)
        self._session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )
        self._account_ids: Dict[str, Optional[str]] = {}

    # -------------------------------------------------------------------------
    # Core Request Methods
    # -------------------------------------------------------------------------

    def request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        """Authenticated request; failures become RemoteError."""
        url = f"{self.api_url}/{endpoint}"
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            logger.error(f"Timeout on {method} {endpoint}: {e}")
            raise RemoteError("timeout", f"{method} {endpoint} timed out") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Connection error on {method} {endpoint}: {e}")
            raise RemoteError("network", f"{method} {endpoint} failed: {e}") from e

        if response.ok:
            if response.text:
                return response.json()
            return {}

        status = response.status_code
        error_body = response.text[:500] if response.text else ""
        logger.error(f"Jira API error {status} on {method} {endpoint}: {error_body}")
        raise RemoteError(status, f"Jira API error {status} on {endpoint}: {error_body}")

    def get(self, endpoint: str, **kwargs: Any) -> Any:
        return self.request("GET", endpoint, **kwargs)

    def post(self, endpoint: str, json: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Any:
        return self.request("POST", endpoint, json=json, **kwargs)

    def put(self, endpoint: str, json: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Any:
        return self.request("PUT", endpoint, json=json, **kwargs)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _account_id(self, user: str) -> Optional[str]:
        if user in self._account_ids:
            return self._account_ids[user]
        matches = self.get("user/search", params={"query": user}) or []
        account_id = matches[0].get("accountId") if matches else None
        if account_id is None:
            logger.warning(f"Jira user '{user}' not found; assignee skipped")
        self._account_ids[user] = account_id
        return account_id

    def _assignee_field(self, assignees) -> Optional[Dict[str, str]]:
        # Jira issues carry a single assignee; the first resolvable one wins.
        for user in assignees or ():
            account_id = self._account_id(user)
            if account_id:
                return {"accountId": account_id}
        return None

    def _fields_payload(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if "summary" in fields:
            payload["summary"] = fields["summary"]
        if "description" in fields:
            payload["description"] = text_to_adf(fields["description"])
        if "labels" in fields:
            payload["labels"] = list(fields["labels"] or [])
        if "assignees" in fields:
            payload["assignee"] = self._assignee_field(fields["assignees"])
        return payload

    def get_transitions(self, key: str) -> List[Dict[str, Any]]:
        return self.get(f"issue/{key}/transitions").get("transitions", [])

    def transition_to(self, key: str, status: str) -> None:
        """Move the issue to the named status, if it is not there already."""
        current = self.get(f"issue/{key}", params={"fields": "status"})
        current_name = ((current.get("fields") or {}).get("status") or {}).get("name", "")
        if current_name.casefold() == status.casefold():
            return
        for transition in self.get_transitions(key):
            to_name = (transition.get("to") or {}).get("name", "")
            if to_name.casefold() == status.casefold() or transition.get("name", "").casefold() == status.casefold():
                self.post(f"issue/{key}/transitions", json={"transition": {"id": transition["id"]}})
                logger.info(f"Transitioned {key} from {current_name} to {status}")
                return
        raise RemoteError(
            "no_transition",
            f"No transition from '{current_name}' to '{status}' on {key}",
            retryable=False,
        )

    def _assignee_identity(self, assignee: Dict[str, Any]) -> Optional[str]:
        # The email local-part lines up with GitLab usernames; Jira Cloud may hide it.
        email = assignee.get("emailAddress")
        if self.assignee_identity == ASSIGNEE_BY_EMAIL and email:
            return email.split("@", 1)[0]
        return assignee.get("displayName") or email

    def _to_snapshot(self, data: Dict[str, Any]) -> Snapshot:
        fields = data.get("fields") or {}
        assignee_name = self._assignee_identity(fields.get("assignee") or {})
        return Snapshot(
            system=SYSTEM_B,
            ref=data.get("key", ""),
            title=fields.get("summary") or "",
            description=adf_to_text(fields.get("description")),
            status=(fields.get("status") or {}).get("name", ""),
            labels=tuple(fields.get("labels") or ()),
            assignees=(assignee_name,) if assignee_name else (),
            updated_at=fields.get("updated"),
        )

    # -------------------------------------------------------------------------
    # Tracker operations
    # -------------------------------------------------------------------------

    def get_issue(self, ref: str) -> Snapshot:
        return self._to_snapshot(self.get(f"issue/{ref}", params={"fields": ISSUE_FIELDS}))

    def create_issue(self, fields: Dict[str, Any]) -> str:
        payload = self._fields_payload(fields)
        payload["project"] = {"key": self.project_key}
        payload["issuetype"] = {"name": self.issue_type}
        if payload.get("assignee") is None:
            payload.pop("assignee", None)
        created = self.post("issue", json={"fields": payload})
        key = created["key"]
        logger.info(f"Created Jira issue {key}")
        return key

    def update_issue(self, ref: str, fields: Dict[str, Any]) -> None:
        payload = self._fields_payload(fields)
        if payload:
            self.put(f"issue/{ref}", json={"fields": payload})
        if fields.get("status"):
            self.transition_to(ref, fields["status"])
        logger.info(f"Updated Jira issue {ref}")

    def get_comments(self, ref: str) -> List[Comment]:
        data = self.get(f"issue/{ref}/comment")
        return [
            Comment(
                id=str(c.get("id")),
                body=adf_to_text(c.get("body")),
                author=(c.get("author") or {}).get("displayName"),
            )
            for c in data.get("comments", data.get("values", []))
        ]

    def create_comment(self, ref: str, body: str) -> str:
        created = self.post(f"issue/{ref}/comment", json={"body": text_to_adf(body)})
        logger.info(f"Created comment on Jira issue {ref}")
        return str(created.get("id"))

    def update_comment(self, ref: str, comment_id: str, body: str) -> None:
        self.put(f"issue/{ref}/comment/{comment_id}", json={"body": text_to_adf(body)})
        logger.info(f"Updated comment {comment_id} on Jira issue {ref}")
