import logging
import unittest
from datetime import timedelta


class JobQueueTests(unittest.TestCase):
    def setUp(self):
        logging.disable(logging.CRITICAL)
        from fakes import FakeClock

        from issue_relay.models.base import create_database
        from issue_relay.services.job_queue import JobQueue, QueuePolicy

        self.clock = FakeClock()
        self.policy = QueuePolicy(max_attempts=3, backoff_base_ms=5000, backoff_max_ms=60_000, lease_seconds=30)
        self.queue = JobQueue(create_database("sqlite://"), self.policy, clock=self.clock)

    def tearDown(self):
        logging.disable(logging.NOTSET)

    def _enqueue(self, direction="a_to_b", event_type="issue-created", source_id="1", **kwargs):
        return self.queue.enqueue(direction, event_type, source_id, {"issue": {"title": "t"}}, **kwargs)

    def test_jobs_go_to_direction_scoped_queues(self):
        from issue_relay.services.job_queue import QUEUE_SYSTEM_A, QUEUE_SYSTEM_B

        self._enqueue(direction="a_to_b")
        self._enqueue(direction="b_to_a", source_id="PROJ-1")

        self.assertEqual(self.queue.stats(QUEUE_SYSTEM_A).waiting, 1)
        self.assertEqual(self.queue.stats(QUEUE_SYSTEM_B).waiting, 1)
        job = self.queue.dequeue([QUEUE_SYSTEM_B], "w1")
        self.assertEqual(job.source_id, "PROJ-1")

    def test_dequeue_leases_job_to_one_worker(self):
        from issue_relay.models import JobStatus
        from issue_relay.services.job_queue import QUEUE_NAMES

        job_id = self._enqueue()
        job = self.queue.dequeue(QUEUE_NAMES, "w1")

        self.assertEqual(job.id, job_id)
        self.assertEqual(job.status, JobStatus.PROCESSING)
        self.assertEqual(job.source_data, {"issue": {"title": "t"}})
        self.assertIsNone(self.queue.dequeue(QUEUE_NAMES, "w2"))

    def test_higher_priority_first(self):
        from issue_relay.services.job_queue import QUEUE_NAMES

        self._enqueue(source_id="low")
        self._enqueue(source_id="high", priority=5)

        self.assertEqual(self.queue.dequeue(QUEUE_NAMES, "w1").source_id, "high")
        self.assertEqual(self.queue.dequeue(QUEUE_NAMES, "w1").source_id, "low")

    def test_delayed_job_waits(self):
        from issue_relay.services.job_queue import QUEUE_NAMES

        self._enqueue(delay_ms=1000)
        self.assertIsNone(self.queue.dequeue(QUEUE_NAMES, "w1"))
        self.clock.advance(seconds=1)
        self.assertIsNotNone(self.queue.dequeue(QUEUE_NAMES, "w1"))

    def test_complete(self):
        from issue_relay.models import JobStatus
        from issue_relay.services.job_queue import QUEUE_NAMES, QUEUE_SYSTEM_A

        job_id = self._enqueue()
        self.queue.dequeue(QUEUE_NAMES, "w1")

        self.assertTrue(self.queue.complete(job_id, "w1", target_id="PROJ-9"))
        job = self.queue.get(job_id)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.target_id, "PROJ-9")
        self.assertEqual(job.processed_at, self.clock.now)
        self.assertEqual(self.queue.stats(QUEUE_SYSTEM_A).completed, 1)

    def test_backoff_grows_and_is_capped(self):
        delays = [self.policy.backoff(n) for n in range(1, 8)]
        self.assertEqual(delays[0], timedelta(seconds=5))
        self.assertEqual(delays[1], timedelta(seconds=10))
        self.assertEqual(delays[2], timedelta(seconds=20))
        self.assertEqual(delays[-1], timedelta(seconds=60))
        self.assertEqual(delays, sorted(delays))

    def test_retryable_failure_retries_until_attempts_exhausted(self):
        from issue_relay.models import JobStatus
        from issue_relay.services.job_queue import QUEUE_NAMES

        job_id = self._enqueue()

        self.queue.dequeue(QUEUE_NAMES, "w1")
        self.assertEqual(self.queue.fail(job_id, "w1", "boom"), JobStatus.RETRY)
        self.assertEqual(self.queue.get(job_id).retry_count, 1)
        # Not before the backoff delay.
        self.assertIsNone(self.queue.dequeue(QUEUE_NAMES, "w1"))

        self.clock.advance(seconds=5)
        self.assertIsNotNone(self.queue.dequeue(QUEUE_NAMES, "w1"))
        self.assertEqual(self.queue.fail(job_id, "w1", "boom"), JobStatus.RETRY)
        self.assertIsNone(self.queue.dequeue(QUEUE_NAMES, "w1"))

        self.clock.advance(seconds=10)
        self.assertIsNotNone(self.queue.dequeue(QUEUE_NAMES, "w1"))
        self.assertEqual(self.queue.fail(job_id, "w1", "boom"), JobStatus.FAILED)

        job = self.queue.get(job_id)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.retry_count, 2)
        self.assertLessEqual(job.retry_count, job.max_attempts)
        self.assertEqual(job.error, "boom")

    def test_non_retryable_failure_is_terminal_immediately(self):
        from issue_relay.models import JobStatus
        from issue_relay.services.job_queue import QUEUE_NAMES

        job_id = self._enqueue()
        self.queue.dequeue(QUEUE_NAMES, "w1")

        self.assertEqual(self.queue.fail(job_id, "w1", "[400] bad", retryable=False), JobStatus.FAILED)
        self.assertEqual(self.queue.get(job_id).retry_count, 0)

    def test_max_attempts_override_only_lowers_the_limit(self):
        from issue_relay.models import JobStatus
        from issue_relay.services.job_queue import QUEUE_NAMES

        job_id = self._enqueue()
        self.queue.dequeue(QUEUE_NAMES, "w1")
        self.assertEqual(self.queue.fail(job_id, "w1", "x", max_attempts=1), JobStatus.FAILED)

        other = self._enqueue(source_id="2")
        self.queue.dequeue(QUEUE_NAMES, "w1")
        self.queue.fail(other, "w1", "x", max_attempts=50)
        self.clock.advance(seconds=5)
        self.queue.dequeue(QUEUE_NAMES, "w1")
        self.queue.fail(other, "w1", "x", max_attempts=50)
        self.clock.advance(seconds=10)
        self.queue.dequeue(QUEUE_NAMES, "w1")
        self.assertEqual(self.queue.fail(other, "w1", "x", max_attempts=50), JobStatus.FAILED)

    def test_stalled_job_is_recovered_then_failed(self):
        from issue_relay.models import JobStatus
        from issue_relay.services.job_queue import QUEUE_NAMES

        job_id = self._enqueue()
        self.queue.dequeue(QUEUE_NAMES, "w1")

        self.clock.advance(seconds=10)
        self.assertEqual(self.queue.recover_stalled(), 0)

        self.clock.advance(seconds=25)
        self.assertEqual(self.queue.recover_stalled(), 1)
        self.assertEqual(self.queue.get(job_id).status, JobStatus.RETRY)

        # Another worker picks it up; the stalled worker's late report is ignored.
        self.assertEqual(self.queue.dequeue(QUEUE_NAMES, "w2").id, job_id)
        self.assertFalse(self.queue.complete(job_id, "w1"))
        self.assertIsNone(self.queue.fail(job_id, "w1", "late"))

        self.clock.advance(seconds=31)
        self.assertEqual(self.queue.recover_stalled(), 1)
        job = self.queue.get(job_id)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertIn("stalled", job.error)

    def test_heartbeat_keeps_lease(self):
        from issue_relay.services.job_queue import QUEUE_NAMES

        job_id = self._enqueue()
        self.queue.dequeue(QUEUE_NAMES, "w1")

        self.clock.advance(seconds=20)
        self.assertTrue(self.queue.heartbeat(job_id, "w1"))
        self.assertFalse(self.queue.heartbeat(job_id, "w2"))
        self.clock.advance(seconds=20)
        self.assertEqual(self.queue.recover_stalled(), 0)
        self.assertTrue(self.queue.complete(job_id, "w1"))

    def test_cancel_only_while_waiting(self):
        from issue_relay.services.job_queue import QUEUE_NAMES, QUEUE_SYSTEM_A

        waiting = self._enqueue()
        self.assertTrue(self.queue.cancel(waiting))
        self.assertEqual(self.queue.stats(QUEUE_SYSTEM_A).waiting, 0)

        claimed = self._enqueue()
        self.queue.dequeue(QUEUE_NAMES, "w1")
        self.assertFalse(self.queue.cancel(claimed))

    def test_drain_stops_dequeue_without_losing_jobs(self):
        from issue_relay.services.job_queue import QUEUE_NAMES, QUEUE_SYSTEM_A

        self._enqueue()
        self.queue.drain()

        self.assertIsNone(self.queue.dequeue(QUEUE_NAMES, "w1"))
        self.assertEqual(self.queue.stats(QUEUE_SYSTEM_A).waiting, 1)

        self.queue.resume()
        self.assertIsNotNone(self.queue.dequeue(QUEUE_NAMES, "w1"))

    def test_stats_counts_each_state(self):
        from issue_relay.services.job_queue import QUEUE_NAMES, QUEUE_SYSTEM_A

        done = self._enqueue(source_id="1")
        self.clock.advance(seconds=1)
        dead = self._enqueue(source_id="2")
        self.clock.advance(seconds=1)
        self._enqueue(source_id="3")
        self._enqueue(source_id="4")

        self.assertEqual(self.queue.dequeue(QUEUE_NAMES, "w1").id, done)
        self.queue.complete(done, "w1")
        self.assertEqual(self.queue.dequeue(QUEUE_NAMES, "w1").id, dead)
        self.queue.fail(dead, "w1", "x", retryable=False)
        self.queue.dequeue(QUEUE_NAMES, "w1")

        stats = self.queue.stats(QUEUE_SYSTEM_A)
        self.assertEqual(stats.as_dict(), {"waiting": 1, "active": 1, "completed": 1, "failed": 1})

    def test_failed_jobs_can_be_listed_and_replayed(self):
        from issue_relay.models import JobStatus
        from issue_relay.services.job_queue import QUEUE_NAMES, QUEUE_SYSTEM_A

        job_id = self._enqueue()
        self.queue.dequeue(QUEUE_NAMES, "w1")
        self.queue.fail(job_id, "w1", "nope", retryable=False)

        self.assertEqual([j.id for j in self.queue.list_failed(QUEUE_SYSTEM_A)], [job_id])
        self.assertTrue(self.queue.retry_failed(job_id))
        self.assertFalse(self.queue.retry_failed(job_id))

        job = self.queue.get(job_id)
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertEqual(job.retry_count, 0)

    def test_purge_keeps_failed_jobs_longer(self):
        from issue_relay.services.job_queue import QUEUE_NAMES, QUEUE_SYSTEM_A

        done = self._enqueue(source_id="1")
        self.clock.advance(seconds=1)
        dead = self._enqueue(source_id="2")
        self.queue.dequeue(QUEUE_NAMES, "w1")
        self.queue.complete(done, "w1")
        self.queue.dequeue(QUEUE_NAMES, "w1")
        self.queue.fail(dead, "w1", "x", retryable=False)

        self.clock.advance(hours=25)
        self.assertEqual(self.queue.purge_finished(), 1)
        stats = self.queue.stats(QUEUE_SYSTEM_A)
        self.assertEqual((stats.completed, stats.failed), (0, 1))

        self.clock.advance(days=7)
        self.assertEqual(self.queue.purge_finished(), 1)
        self.assertEqual(self.queue.stats(QUEUE_SYSTEM_A).failed, 0)

    def test_get_unknown_job(self):
        from issue_relay.services.errors import JobNotFound

        with self.assertRaises(JobNotFound):
            self.queue.get("missing")


if __name__ == "__main__":
    unittest.main()
