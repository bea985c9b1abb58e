"""Thread pool pulling jobs from both direction queues"""

import logging
import threading
import time
from typing import Dict, List, Optional

from issue_relay.services.job_queue import QUEUE_SYSTEM_A, QUEUE_SYSTEM_B, JobQueue, SyncJob
from issue_relay.services.metrics import MetricsSink
from issue_relay.services.orchestrator import ERROR_MAPPING_NOT_FOUND, SyncOrchestrator, SyncResult
from issue_relay.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class WorkerPool:
    """Bounded-concurrency consumers for the job queue.

    `concurrency` threads each run one job at a time; the rate limiter caps
    total throughput on top of that. A separate heartbeat thread keeps the
    leases of in-flight jobs alive.
    """

    def __init__(
        self,
        queue: JobQueue,
        orchestrator: SyncOrchestrator,
        rate_limiter: Optional[RateLimiter] = None,
        *,
        concurrency: int = 10,
        poll_interval: float = 0.5,
        mapping_not_found_max_attempts: int = 3,
        metrics: Optional[MetricsSink] = None,
        name: str = "relay-worker",
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.orchestrator = orchestrator
        self.rate_limiter = rate_limiter or RateLimiter()
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.mapping_not_found_max_attempts = mapping_not_found_max_attempts
        self.metrics = metrics or MetricsSink()
        self.name = name

        self._stop = threading.Event()
        self._heartbeat_stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._heartbeat_thread: Optional[threading.Thread] = None
        self._in_flight: Dict[str, str] = {}  # job id -> worker id
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self):
        if self.running:
            logger.warning("Worker pool already running")
            return
        self._stop.clear()
        self._heartbeat_stop.clear()
        self._threads = []
        for index in range(self.concurrency):
            worker_id = f"{self.name}-{index}"
            thread = threading.Thread(target=self._run, args=(worker_id, index), name=worker_id, daemon=True)
            thread.start()
            self._threads.append(thread)
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop, name=f"{self.name}-heartbeat", daemon=True
        )
        self._heartbeat_thread.start()
        logger.info(f"Worker pool started with {self.concurrency} workers")

    def stop(self, timeout: float = 30.0):
        """Stop dequeuing, let in-flight jobs finish, then join the threads."""
        self.queue.drain()
        self._stop.set()
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        # In-flight jobs keep their leases until the workers are done.
        self._heartbeat_stop.set()
        if self._heartbeat_thread is not None:
            self._heartbeat_thread.join(max(0.0, deadline - time.monotonic()))
        still_running = [t.name for t in self._threads if t.is_alive()]
        if still_running:
            logger.warning(f"Workers still busy after {timeout}s: {', '.join(still_running)}")
        self._threads = []
        self._heartbeat_thread = None
        logger.info("Worker pool stopped")

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    @staticmethod
    def _queue_order(turn: int):
        return (QUEUE_SYSTEM_A, QUEUE_SYSTEM_B) if turn % 2 == 0 else (QUEUE_SYSTEM_B, QUEUE_SYSTEM_A)

    def _run(self, worker_id: str, index: int):
        turn = index
        while not self._stop.is_set():
            try:
                handled = self.run_once(worker_id, turn=turn)
            except Exception:
                # Queue store trouble: back off and keep the worker alive.
                logger.exception(f"Worker {worker_id} failed to poll the queue")
                handled = False
            turn += 1
            if not handled:
                self._stop.wait(self.poll_interval)

    def run_once(self, worker_id: str = "inline-worker", turn: int = 0) -> bool:
        """Process at most one job on the calling thread. True if a job ran."""
        if not self.rate_limiter.acquire(timeout=self.poll_interval):
            return False
        job = self.queue.dequeue(self._queue_order(turn), worker_id)
        if job is None:
            self.rate_limiter.refund()
            return False

        with self._lock:
            self._in_flight[job.id] = worker_id
        started = time.monotonic()
        try:
            result = self.orchestrator.process(job)
        finally:
            with self._lock:
                self._in_flight.pop(job.id, None)
        self._report(job, worker_id, result, time.monotonic() - started)
        return True

    def _report(self, job: SyncJob, worker_id: str, result: SyncResult, duration: float):
        if result.success:
            self.queue.complete(job.id, worker_id, target_id=result.target_id)
            status = "success"
        else:
            max_attempts = None
            if result.error_kind == ERROR_MAPPING_NOT_FOUND:
                max_attempts = self.mapping_not_found_max_attempts
            new_status = self.queue.fail(
                job.id,
                worker_id,
                result.error or "unknown error",
                retryable=result.retryable,
                max_attempts=max_attempts,
            )
            status = new_status.value if new_status is not None else "lost"
        self.metrics.record_job(job.direction.value, job.event_type.value, status, duration)

    def _heartbeat_loop(self):
        interval = max(self.queue.policy.lease_seconds / 3.0, 0.05)
        while not self._heartbeat_stop.wait(interval):
            with self._lock:
                leases = list(self._in_flight.items())
            for job_id, worker_id in leases:
                try:
                    if not self.queue.heartbeat(job_id, worker_id):
                        logger.warning(f"Lost lease on job {job_id} held by {worker_id}")
                except Exception:
                    logger.exception(f"Heartbeat failed for job {job_id}")
