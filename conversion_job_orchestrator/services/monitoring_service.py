"""
MonitoringService for the Conversion Job Orchestrator

Prometheus metrics fed by lifecycle events and by periodic snapshots of the
queue, the worker pool and the resource allocator.
"""

from typing import Any, Callable, Dict, List, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from ..core import events
from ..core.events import EventBus
from ..models.job import QueueStats
from ..models.worker import WorkerPoolStats
from ..utils.logger import get_logger, set_log_context

# Conversions range from sub-second analysis passes to multi-minute packaging runs
DURATION_BUCKETS = (0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0)


class MonitoringService:
    """
    Collects scheduling metrics.

    Each instance owns its CollectorRegistry, so several orchestrators (or
    tests) can live in one process without clashing on metric names.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "cjo"):
        self.registry = registry or CollectorRegistry()
        self.namespace = namespace
        self._unsubscribers: List[Callable[[], None]] = []

        self.jobs_submitted = Counter(
            "jobs_submitted_total", "Jobs accepted into the queue",
            ["job_type"], namespace=namespace, registry=self.registry
        )
        self.jobs_finished = Counter(
            "jobs_finished_total", "Jobs that reached a terminal status",
            ["job_type", "outcome"], namespace=namespace, registry=self.registry
        )
        self.job_retries = Counter(
            "job_retries_total", "Retries scheduled after a failed attempt",
            ["job_type"], namespace=namespace, registry=self.registry
        )
        self.worker_timeouts = Counter(
            "worker_timeouts_total", "Work taken away from stalled or overrunning workers",
            ["reason"], namespace=namespace, registry=self.registry
        )
        self.job_duration = Histogram(
            "job_duration_seconds", "Time from first start to completion",
            ["job_type"], namespace=namespace, registry=self.registry, buckets=DURATION_BUCKETS
        )
        self.queue_depth = Gauge(
            "queue_depth", "Jobs waiting for dispatch",
            namespace=namespace, registry=self.registry
        )
        self.jobs_by_status = Gauge(
            "jobs", "Known jobs by status",
            ["status"], namespace=namespace, registry=self.registry
        )
        self.workers_by_status = Gauge(
            "workers", "Workers by status",
            ["status"], namespace=namespace, registry=self.registry
        )
        self.resources_allocated = Gauge(
            "resources_allocated", "Reserved resources by dimension",
            ["dimension"], namespace=namespace, registry=self.registry
        )

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="monitoring_service")

    def attach(self, event_bus: EventBus):
        """Subscribe the event-driven counters to ``event_bus``."""
        handlers = {
            events.JOB_QUEUED: self._on_job_queued,
            events.JOB_RETRYING: self._on_job_retrying,
            events.JOB_COMPLETED: self._on_job_finished,
            events.JOB_FAILED: self._on_job_finished,
            events.JOB_CANCELLED: self._on_job_finished,
            events.WORKER_TIMEOUT: self._on_worker_timeout,
        }
        for event, handler in handlers.items():
            self._unsubscribers.append(event_bus.on(event, handler))

    def detach(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def update_snapshot(
        self,
        queue_stats: QueueStats,
        pool_stats: WorkerPoolStats,
        allocated: Optional[Dict[str, float]] = None
    ):
        """Refresh the gauges from point-in-time statistics."""
        self.queue_depth.set(queue_stats.queue_depth)
        for status, value in (
            ("pending", queue_stats.pending_jobs),
            ("running", queue_stats.running_jobs),
            ("completed", queue_stats.completed_jobs),
            ("failed", queue_stats.failed_jobs),
            ("cancelled", queue_stats.cancelled_jobs),
        ):
            self.jobs_by_status.labels(status=status).set(value)

        self.workers_by_status.labels(status="idle").set(pool_stats.idle_workers)
        self.workers_by_status.labels(status="busy").set(pool_stats.busy_workers)
        self.workers_by_status.labels(status="error").set(pool_stats.error_workers)

        for dimension, value in (allocated or {}).items():
            self.resources_allocated.labels(dimension=dimension).set(value)

    def render(self) -> bytes:
        """Metrics in the Prometheus text exposition format."""
        return generate_latest(self.registry)

    def get_sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Current value of one sample (``name`` is the full sample name, namespace included)."""
        return self.registry.get_sample_value(name, labels or {})

    def _on_job_queued(self, event: str, payload: Dict[str, Any]):
        self.jobs_submitted.labels(job_type=payload.get("job_type", "unknown")).inc()

    def _on_job_retrying(self, event: str, payload: Dict[str, Any]):
        self.job_retries.labels(job_type=payload.get("job_type", "unknown")).inc()

    def _on_job_finished(self, event: str, payload: Dict[str, Any]):
        job_type = payload.get("job_type", "unknown")
        outcome = event.split(":", 1)[1]
        self.jobs_finished.labels(job_type=job_type, outcome=outcome).inc()

        duration = (payload.get("job") or {}).get("duration_seconds")
        if event == events.JOB_COMPLETED and duration is not None:
            self.job_duration.labels(job_type=job_type).observe(duration)

    def _on_worker_timeout(self, event: str, payload: Dict[str, Any]):
        self.worker_timeouts.labels(reason=payload.get("reason", "heartbeat")).inc()
