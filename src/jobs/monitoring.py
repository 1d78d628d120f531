"""Job execution monitoring: durations, failure rates, and queue backlog.

Thresholds:
    slow job      — a single attempt longer than 5 minutes
    backlog       — waiting + delayed above 1,000 jobs
    failure rate  — failed / (completed + failed) above 10%, once more than
                    10 jobs have finished

Every recorded attempt goes to Prometheus: ``syncguard_jobs_total`` by queue
and status, and ``syncguard_job_duration_seconds`` by queue.  Each monitor
owns its ``CollectorRegistry``, exposed at ``/api/admin/metrics``.

Depth counts come from the dispatch backend when it can report them (worker
backend).  The push backend cannot, so its report falls back to the job
counters this process has recorded.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

from prometheus_client import CollectorRegistry, Counter, Histogram

from src.jobs.backend import DispatchBackend
from src.jobs.queues import QueueName
from src.sync.types import utc_now

logger = logging.getLogger("syncguard.jobs.monitoring")

MIN_FAILURE_SAMPLES = 10
DURATION_BUCKETS = (0.5, 1, 5, 15, 30, 60, 120, 300, 600, 1800)


@dataclass(frozen=True)
class JobExecution:
    queue: QueueName
    job_id: str
    duration_seconds: float
    status: str  # completed | failed | retrying
    finished_at: datetime
    error: str | None = None


@dataclass
class QueueReport:
    """Monitoring view of one queue.

    Attributes:
        queue:        Queue name.
        counts:       waiting/active/delayed/completed/failed, or None when the
                      backend cannot report depth.
        completed:    Completed jobs used for the failure rate.
        failed:       Failed jobs used for the failure rate.
        failure_rate: failed / (completed + failed).
        backlog:      waiting + delayed (0 when unknown).
    """

    queue: QueueName
    counts: dict[str, int] | None
    completed: int
    failed: int
    failure_rate: float
    backlog: int


@dataclass
class MonitoringReport:
    generated_at: datetime
    backend: str
    queues: list[QueueReport] = field(default_factory=list)
    slow_jobs: list[JobExecution] = field(default_factory=list)
    alerts: list[str] = field(default_factory=list)


class JobMonitor:
    def __init__(
        self,
        slow_job_threshold_seconds: float = 300,
        backlog_threshold: int = 1000,
        failure_rate_threshold: float = 0.10,
        slow_job_limit: int = 100,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self.slow_job_threshold_seconds = slow_job_threshold_seconds
        self.backlog_threshold = backlog_threshold
        self.failure_rate_threshold = failure_rate_threshold
        self.registry = registry if registry is not None else CollectorRegistry()
        self.jobs_total = Counter(
            "syncguard_jobs",
            "Job attempts by queue and outcome",
            labelnames=["queue", "status"],
            registry=self.registry,
        )
        self.job_duration = Histogram(
            "syncguard_job_duration_seconds",
            "Job attempt duration",
            labelnames=["queue"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self._slow: deque[JobExecution] = deque(maxlen=slow_job_limit)

    def record_job(
        self,
        queue: QueueName,
        job_id: str,
        duration_seconds: float,
        status: str,
        error: str | None = None,
    ) -> JobExecution:
        execution = JobExecution(queue, job_id, duration_seconds, status, utc_now(), error)
        self.jobs_total.labels(queue=queue.value, status=status).inc()
        self.job_duration.labels(queue=queue.value).observe(duration_seconds)
        if duration_seconds > self.slow_job_threshold_seconds:
            self._slow.append(execution)
            logger.warning(
                "Job %s in queue %s took %.1fs (threshold: %.0fs)",
                job_id,
                queue.value,
                duration_seconds,
                self.slow_job_threshold_seconds,
            )
        return execution

    def slow_jobs(self) -> list[JobExecution]:
        return list(self._slow)

    def recorded(self, queue: QueueName, status: str) -> int:
        """Attempts recorded by this process for ``queue`` with ``status``."""
        value = self.registry.get_sample_value(
            "syncguard_jobs_total", {"queue": queue.value, "status": status}
        )
        return int(value or 0)

    def failure_rate_alert(self, queue: QueueName, completed: int, failed: int) -> str | None:
        total = completed + failed
        rate = failed / total if total else 0.0
        if total > MIN_FAILURE_SAMPLES and rate > self.failure_rate_threshold:
            return (
                f"Queue {queue.value} has high failure rate: "
                f"{rate * 100:.1f}% ({failed}/{total})"
            )
        return None

    async def build_report(self, backend: DispatchBackend) -> MonitoringReport:
        report = MonitoringReport(generated_at=utc_now(), backend=backend.name)

        for queue in QueueName:
            counts = await backend.queue_counts(queue)
            if counts is not None:
                completed, failed = counts["completed"], counts["failed"]
                backlog = counts["waiting"] + counts["delayed"]
            else:
                completed = self.recorded(queue, "completed")
                failed = self.recorded(queue, "failed")
                backlog = 0
            total = completed + failed
            report.queues.append(
                QueueReport(
                    queue=queue,
                    counts=counts,
                    completed=completed,
                    failed=failed,
                    failure_rate=failed / total if total else 0.0,
                    backlog=backlog,
                )
            )

            if backlog > self.backlog_threshold:
                report.alerts.append(
                    f"Queue {queue.value} has high backlog: {backlog} jobs "
                    f"(threshold: {self.backlog_threshold})"
                )
            alert = self.failure_rate_alert(queue, completed, failed)
            if alert:
                report.alerts.append(alert)

        report.slow_jobs = self.slow_jobs()
        for alert in report.alerts:
            logger.error("ALERT: %s", alert)
        return report
