import logging
import threading
import unittest


def _issue_a(**kwargs):
    issue = {
        "title": "Title",
        "description": "Body",
        "state": "open",
        "labels": [],
        "assignees": [],
        "updated_at": "2024-01-01T11:00:00Z",
    }
    issue.update(kwargs)
    return {"issue": issue}


class SyncOrchestratorTests(unittest.TestCase):
    def setUp(self):
        logging.disable(logging.CRITICAL)
        self._build()

    def tearDown(self):
        self.orchestrator.guard.shutdown()
        logging.disable(logging.NOTSET)

    def _build(self, strategy="last-write-wins", timeout=5.0):
        from fakes import make_trackers

        from issue_relay.models.base import create_database
        from issue_relay.services.conflict_engine import FieldMappings, Strategy
        from issue_relay.services.conflict_log import ConflictLog
        from issue_relay.services.correlation_map import CorrelationMap
        from issue_relay.services.orchestrator import SyncOrchestrator
        from issue_relay.services.trackers import TimeoutGuard

        session_factory = create_database("sqlite://")
        self.gitlab, self.jira = make_trackers()
        self.correlations = CorrelationMap(session_factory)
        self.conflicts = ConflictLog(session_factory)
        self.orchestrator = SyncOrchestrator(
            self.gitlab,
            self.jira,
            self.correlations,
            self.conflicts,
            strategy=Strategy(strategy),
            mappings=FieldMappings(label_mapping={"bug": "Bug"}),
            guard=TimeoutGuard(timeout),
        )

    def _run(self, direction, event_type, source_id, data=None):
        from fakes import make_job

        return self.orchestrator.process(make_job(direction, event_type, source_id, data))

    def _link_existing(self, jira_updated="2024-01-01T10:00:00Z", **jira_fields):
        fields = {
            "summary": "Title",
            "description": "Body",
            "status": "To Do",
            "labels": [],
            "assignees": [],
            "updated_at": jira_updated,
        }
        fields.update(jira_fields)
        self.jira.add_issue("PROJ-1", **fields)
        self.gitlab.add_issue("7", title="Title", description="Body", state="open", labels=[], assignees=[])
        self.correlations.link("7", "PROJ-1")

    # Issues ---------------------------------------------------------------

    def test_issue_created_creates_target_and_links(self):
        result = self._run("a_to_b", "issue-created", "7", _issue_a(labels=["bug"]))

        self.assertTrue(result.success)
        self.assertEqual(result.target_id, "PROJ-1")
        self.assertEqual(self.correlations.get_by_a("7").system_b_id, "PROJ-1")
        created = self.jira.issues["PROJ-1"]
        self.assertEqual(created["summary"], "Title")
        self.assertEqual(created["status"], "To Do")
        self.assertEqual(created["labels"], ["Bug"])

    def test_repeated_create_is_treated_as_update(self):
        self._run("a_to_b", "issue-created", "7", _issue_a())
        result = self._run("a_to_b", "issue-created", "7", _issue_a())

        self.assertTrue(result.success)
        self.assertEqual(result.target_id, "PROJ-1")
        self.assertEqual(len(self.jira.calls_named("create_issue")), 1)
        # Only the status step that follows the first create.
        self.assertEqual(
            self.jira.calls_named("update_issue"), [("update_issue", "PROJ-1", {"status": "To Do"})]
        )

    def test_update_without_link_falls_back_to_create(self):
        result = self._run("b_to_a", "issue-updated", "PROJ-5", {"issue": {"summary": "From Jira", "status": "Done"}})

        self.assertTrue(result.success)
        self.assertEqual(self.correlations.get_by_b("PROJ-5").system_a_id, result.target_id)
        created = self.gitlab.issues[result.target_id]
        self.assertEqual(created["title"], "From Jira")
        self.assertEqual(created["state"], "closed")

    def test_created_issue_gets_status_after_it_is_linked(self):
        self._run("a_to_b", "issue-created", "7", _issue_a(state="closed"))

        (create_call,) = self.jira.calls_named("create_issue")
        self.assertNotIn("status", create_call[1])
        self.assertEqual(
            self.jira.calls_named("update_issue"), [("update_issue", "PROJ-1", {"status": "Done"})]
        )
        self.assertEqual(self.jira.issues["PROJ-1"]["status"], "Done")

    def test_open_issue_created_in_gitlab_needs_no_state_update(self):
        self._run("b_to_a", "issue-created", "PROJ-5", {"issue": {"summary": "From Jira", "status": "To Do"}})

        self.assertEqual(len(self.gitlab.calls_named("create_issue")), 1)
        self.assertEqual(self.gitlab.calls_named("update_issue"), [])

    def test_failed_status_step_retries_without_creating_again(self):
        from issue_relay.services.errors import RemoteError
        from issue_relay.services.orchestrator import ERROR_REMOTE

        self.jira.fail_ops["update_issue"] = RemoteError(503, "transitions unavailable")

        first = self._run("a_to_b", "issue-created", "7", _issue_a(state="closed"))

        self.assertFalse(first.success)
        self.assertTrue(first.retryable)
        self.assertEqual(first.error_kind, ERROR_REMOTE)
        self.assertEqual(self.correlations.get_by_a("7").system_b_id, "PROJ-1")

        del self.jira.fail_ops["update_issue"]
        second = self._run("a_to_b", "issue-created", "7", _issue_a(state="closed"))

        self.assertTrue(second.success)
        self.assertEqual(second.target_id, "PROJ-1")
        self.assertEqual(len(self.jira.calls_named("create_issue")), 1)
        self.assertEqual(list(self.jira.issues), ["PROJ-1"])
        self.assertEqual(self.jira.issues["PROJ-1"]["status"], "Done")

    def test_update_without_differences_writes_nothing(self):
        self._link_existing()

        result = self._run("a_to_b", "issue-updated", "7", _issue_a())

        self.assertTrue(result.success)
        self.assertIsNone(result.conflict_resolved)
        self.assertEqual(self.jira.calls_named("update_issue"), [])

    def test_newer_source_updates_only_conflicting_target_fields(self):
        self._link_existing()

        result = self._run("a_to_b", "issue-updated", "7", _issue_a(title="New title", state="closed"))

        self.assertTrue(result.success)
        self.assertTrue(result.conflict_resolved)
        self.assertEqual(
            self.jira.calls_named("update_issue"),
            [("update_issue", "PROJ-1", {"summary": "New title", "status": "Done"})],
        )

    def test_newer_target_is_written_back_to_source(self):
        self._link_existing(jira_updated="2024-01-01T12:00:00Z", summary="Jira Title")

        result = self._run("a_to_b", "issue-updated", "7", _issue_a(title="GitLab Title"))

        self.assertTrue(result.success)
        self.assertEqual(self.jira.calls_named("update_issue"), [])
        self.assertEqual(
            self.gitlab.calls_named("update_issue"), [("update_issue", "7", {"title": "Jira Title"})]
        )
        recorded = self.conflicts.list()
        self.assertEqual(len(recorded), 1)
        self.assertTrue(recorded[0].resolved)
        self.assertEqual(recorded[0].resolution, "b-wins")
        self.assertEqual(self.conflicts.count_unresolved(), 0)

    def test_manual_strategy_records_conflict_and_applies_source(self):
        self.orchestrator.guard.shutdown()
        self._build(strategy="manual")
        self._link_existing()

        result = self._run("a_to_b", "issue-updated", "7", _issue_a(title="New title"))

        self.assertTrue(result.success)
        self.assertFalse(result.conflict_resolved)
        self.assertEqual(self.jira.issues["PROJ-1"]["summary"], "New title")
        conflicts = self.conflicts.list(resolved=False)
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0].conflicting_fields, ["title"])
        self.assertTrue(conflicts[0].requires_manual_review)
        self.assertEqual(conflicts[0].system_b_id, "PROJ-1")

    def test_delete_archives_instead_of_deleting(self):
        self._link_existing(labels=["ui"])

        result = self._run("a_to_b", "issue-deleted", "7", {})

        self.assertTrue(result.success)
        target = self.jira.issues["PROJ-1"]
        self.assertEqual(target["labels"], ["ui", "archived", "deleted-in-gitlab"])
        self.assertEqual(target["status"], "Done")

    def test_delete_from_b_closes_a(self):
        self._link_existing()

        self._run("b_to_a", "issue-deleted", "PROJ-1", {})

        self.assertEqual(self.gitlab.issues["7"]["state"], "closed")
        self.assertIn("deleted-in-jira", self.gitlab.issues["7"]["labels"])

    def test_delete_of_unlinked_issue_is_a_no_op(self):
        result = self._run("a_to_b", "issue-deleted", "99", {})

        self.assertTrue(result.success)
        self.assertIsNone(result.target_id)
        self.assertEqual(self.jira.calls, [])

    # Partial updates -------------------------------------------------------

    def test_label_change_updates_only_labels(self):
        self._link_existing()

        self._run("a_to_b", "label-changed", "7", _issue_a(title="ignored", labels=["bug"]))

        self.assertEqual(
            self.jira.calls_named("update_issue"), [("update_issue", "PROJ-1", {"labels": ["Bug"]})]
        )

    def test_status_change_from_b_maps_to_a_state(self):
        self._link_existing()

        self._run("b_to_a", "status-changed", "PROJ-1", {"issue": {"status": "Done"}})

        self.assertEqual(self.gitlab.calls_named("update_issue"), [("update_issue", "7", {"state": "closed"})])

    def test_assignee_change_already_applied_is_a_no_op(self):
        self._link_existing(assignees=["Alice"])

        result = self._run("a_to_b", "assignee-changed", "7", _issue_a(assignees=["alice"]))

        self.assertTrue(result.success)
        self.assertEqual(self.jira.calls_named("update_issue"), [])

    def test_partial_update_without_link_is_mapping_not_found(self):
        from issue_relay.services.orchestrator import ERROR_MAPPING_NOT_FOUND

        result = self._run("a_to_b", "label-changed", "7", _issue_a(labels=["x"]))

        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, ERROR_MAPPING_NOT_FOUND)

    # Comments --------------------------------------------------------------

    def _comment(self, comment_id="55", body="Looks good", author="alice"):
        return {"comment": {"id": comment_id, "body": body, "author": author}}

    def test_comment_without_parent_link_fails_retryably(self):
        from issue_relay.services.orchestrator import ERROR_MAPPING_NOT_FOUND

        result = self._run("a_to_b", "comment-created", "7", self._comment())

        self.assertFalse(result.success)
        self.assertTrue(result.retryable)
        self.assertEqual(result.error_kind, ERROR_MAPPING_NOT_FOUND)
        self.assertIn("7", result.error)

    def test_comment_is_relayed_once_with_marker(self):
        from issue_relay.services.orchestrator import comment_marker

        self._link_existing()

        self._run("a_to_b", "comment-created", "7", self._comment())
        self._run("a_to_b", "comment-created", "7", self._comment())

        comments = self.jira.comments["PROJ-1"]
        self.assertEqual(len(comments), 1)
        self.assertTrue(comments[0].body.startswith("**alice** commented on GitLab:\n\nLooks good"))
        self.assertIn(comment_marker("gitlab", "55"), comments[0].body)

    def test_relayed_comment_is_not_echoed_back(self):
        self._link_existing()
        self._run("a_to_b", "comment-created", "7", self._comment())
        echoed = self.jira.comments["PROJ-1"][0]

        result = self._run("b_to_a", "comment-created", "PROJ-1", self._comment(echoed.id, echoed.body, "relay"))

        self.assertTrue(result.success)
        self.assertEqual(self.gitlab.calls_named("create_comment"), [])

    def test_comment_update_edits_relayed_comment(self):
        self._link_existing()
        self._run("a_to_b", "comment-created", "7", self._comment())

        self._run("a_to_b", "comment-updated", "7", self._comment(body="Edited"))

        comments = self.jira.comments["PROJ-1"]
        self.assertEqual(len(comments), 1)
        self.assertIn("Edited", comments[0].body)

    def test_comment_update_without_relayed_comment_creates_one(self):
        self._link_existing()

        self._run("a_to_b", "comment-updated", "7", self._comment(body="Edited"))

        self.assertEqual(len(self.jira.comments["PROJ-1"]), 1)

    def test_comment_event_without_comment_id_is_terminal(self):
        from issue_relay.services.orchestrator import ERROR_INVALID_PAYLOAD

        self._link_existing()
        result = self._run("a_to_b", "comment-created", "7", {"comment": {"body": "no id"}})

        self.assertFalse(result.success)
        self.assertFalse(result.retryable)
        self.assertEqual(result.error_kind, ERROR_INVALID_PAYLOAD)

    # Failures --------------------------------------------------------------

    def test_remote_errors_carry_retry_classification(self):
        from issue_relay.services.errors import RemoteError

        self.jira.fail_with = RemoteError(400, "bad request")
        result = self._run("a_to_b", "issue-created", "7", _issue_a())
        self.assertFalse(result.success)
        self.assertFalse(result.retryable)
        self.assertIn("400", result.error)

        self.jira.fail_with = RemoteError(503, "unavailable")
        result = self._run("a_to_b", "issue-created", "7", _issue_a())
        self.assertTrue(result.retryable)
        self.assertIsNone(self.correlations.get_by_a("7"))

    def test_unexpected_errors_are_retryable(self):
        from issue_relay.services.orchestrator import ERROR_UNEXPECTED

        self.jira.fail_with = KeyError("surprise")
        result = self._run("a_to_b", "issue-created", "7", _issue_a())

        self.assertFalse(result.success)
        self.assertTrue(result.retryable)
        self.assertEqual(result.error_kind, ERROR_UNEXPECTED)

    def test_slow_remote_call_times_out(self):
        self.orchestrator.guard.shutdown()
        self._build(timeout=0.05)
        self.jira.block = threading.Event()
        try:
            result = self._run("a_to_b", "issue-created", "7", _issue_a())
        finally:
            self.jira.block.set()

        self.assertFalse(result.success)
        self.assertTrue(result.retryable)
        self.assertIn("timed out", result.error)
        self.assertIsNone(self.correlations.get_by_a("7"))

    def test_every_event_type_has_a_handler(self):
        from issue_relay.models import EventType
        from issue_relay.services.orchestrator import SyncOrchestrator, _HANDLERS

        for event_type in EventType:
            self.assertTrue(callable(getattr(SyncOrchestrator, _HANDLERS[event_type])))


if __name__ == "__main__":
    unittest.main()
