"""Metrics sink: counters and durations reported by the pipeline"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class MetricsSink:
    """No-op sink; the pipeline reports through this interface only."""

    def record_job(self, direction: str, event_type: str, status: str, duration_seconds: float) -> None:
        pass

    def record_conflict(self, strategy: str, resolved: bool) -> None:
        pass

    def record_dedup_hit(self) -> None:
        pass

    def record_dedup_fail_open(self) -> None:
        pass

    def set_queue_depth(self, queue: str, waiting: int, active: int) -> None:
        pass


class PrometheusMetrics(MetricsSink):
    """Prometheus-backed sink on a private registry."""

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry or CollectorRegistry()

        self.jobs_total = Counter(
            "issue_relay_jobs_total",
            "Total number of sync jobs processed",
            ["direction", "event_type", "status"],
            registry=self.registry,
        )
        self.job_duration_seconds = Histogram(
            "issue_relay_job_duration_seconds",
            "Duration of sync job processing in seconds",
            ["direction", "event_type"],
            buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
            registry=self.registry,
        )
        self.conflicts_detected_total = Counter(
            "issue_relay_conflicts_detected_total",
            "Total number of conflicts detected",
            ["strategy"],
            registry=self.registry,
        )
        self.conflicts_resolved_total = Counter(
            "issue_relay_conflicts_resolved_total",
            "Total number of conflicts by resolution type",
            ["resolution_type"],
            registry=self.registry,
        )
        self.dedup_hits_total = Counter(
            "issue_relay_deduplication_hits_total",
            "Total number of duplicate events filtered",
            registry=self.registry,
        )
        self.dedup_fail_open_total = Counter(
            "issue_relay_deduplication_fail_open_total",
            "Events admitted because the idempotency store was unreachable",
            registry=self.registry,
        )
        self.queue_waiting_jobs = Gauge(
            "issue_relay_queue_waiting_jobs",
            "Number of waiting jobs in the queue",
            ["queue"],
            registry=self.registry,
        )
        self.queue_active_jobs = Gauge(
            "issue_relay_queue_active_jobs",
            "Number of active jobs in the queue",
            ["queue"],
            registry=self.registry,
        )

    def record_job(self, direction: str, event_type: str, status: str, duration_seconds: float) -> None:
        self.jobs_total.labels(direction=direction, event_type=event_type, status=status).inc()
        self.job_duration_seconds.labels(direction=direction, event_type=event_type).observe(
            duration_seconds
        )

    def record_conflict(self, strategy: str, resolved: bool) -> None:
        self.conflicts_detected_total.labels(strategy=strategy).inc()
        self.conflicts_resolved_total.labels(resolution_type="auto" if resolved else "manual").inc()

    def record_dedup_hit(self) -> None:
        self.dedup_hits_total.inc()

    def record_dedup_fail_open(self) -> None:
        self.dedup_fail_open_total.inc()

    def set_queue_depth(self, queue: str, waiting: int, active: int) -> None:
        self.queue_waiting_jobs.labels(queue=queue).set(waiting)
        self.queue_active_jobs.labels(queue=queue).set(active)

    def render(self) -> bytes:
        """Text exposition for the /metrics endpoint."""
        return generate_latest(self.registry)
