"""Background scheduler for queue maintenance"""

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from issue_relay.services.job_queue import JobQueue
from issue_relay.services.kv_store import KeyValueStore, SqlKeyValueStore
from issue_relay.services.metrics import MetricsSink

logger = logging.getLogger(__name__)

RECOVER_STALLED_JOB = "recover_stalled"
PURGE_FINISHED_JOB = "purge_finished"
QUEUE_GAUGES_JOB = "queue_gauges"


class MaintenanceScheduler:
    """Periodic housekeeping: stalled-lease recovery, retention purge, queue gauges"""

    def __init__(
        self,
        queue: JobQueue,
        metrics: Optional[MetricsSink] = None,
        kv_store: Optional[KeyValueStore] = None,
        gauge_interval_seconds: int = 30,
    ):
        self.queue = queue
        self.metrics = metrics or MetricsSink()
        self.kv_store = kv_store
        self.gauge_interval_seconds = gauge_interval_seconds
        self.scheduler = BackgroundScheduler()

    def start(self):
        """Start the scheduler"""
        stalled_interval = max(1, self.queue.policy.lease_seconds // 2)
        self.scheduler.add_job(
            func=self.recover_stalled,
            trigger=IntervalTrigger(seconds=stalled_interval),
            id=RECOVER_STALLED_JOB,
            replace_existing=True,
        )
        self.scheduler.add_job(
            func=self.purge_finished,
            trigger=IntervalTrigger(hours=1),
            id=PURGE_FINISHED_JOB,
            replace_existing=True,
        )
        self.scheduler.add_job(
            func=self.refresh_queue_gauges,
            trigger=IntervalTrigger(seconds=self.gauge_interval_seconds),
            id=QUEUE_GAUGES_JOB,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Maintenance scheduler started (stalled check every {stalled_interval}s)")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Maintenance scheduler stopped")

    def recover_stalled(self):
        try:
            recovered = self.queue.recover_stalled()
            if recovered:
                logger.info(f"Recovered {recovered} stalled job(s)")
        except Exception as e:
            logger.error(f"Stalled job recovery failed: {e}")

    def purge_finished(self):
        try:
            self.queue.purge_finished()
            if isinstance(self.kv_store, SqlKeyValueStore):
                self.kv_store.purge_expired()
        except Exception as e:
            logger.error(f"Retention purge failed: {e}")

    def refresh_queue_gauges(self):
        try:
            for name, stats in self.queue.all_stats().items():
                self.metrics.set_queue_depth(name, stats.waiting, stats.active)
        except Exception as e:
            logger.error(f"Queue gauge refresh failed: {e}")
