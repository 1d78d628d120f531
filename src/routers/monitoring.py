"""Admin endpoints: queue report, job metrics, failed-job retry, sync health."""

from __future__ import annotations

import dataclasses
import logging

from fastapi import APIRouter, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from src.dependencies import AdminOnly, Runtime
from src.errors import UnknownQueue
from src.jobs.queues import QueueName, parse_queue_name
from src.models.jobs import (
    FailedJob,
    JobsReport,
    QueueStatus,
    RetryFailedRequest,
    RetryFailedResponse,
    SlowJob,
    SyncHealth,
)
from src.sync.health_report import build_sync_health_summary

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[AdminOnly])
logger = logging.getLogger("syncguard.routers.monitoring")


def _queue(name: str) -> QueueName:
    try:
        return parse_queue_name(name)
    except UnknownQueue as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/jobs/report", response_model=JobsReport)
async def jobs_report(runtime: Runtime) -> JobsReport:
    report = await runtime.monitor.build_report(runtime.backend)
    return JobsReport(
        generated_at=report.generated_at,
        backend=report.backend,
        queues=[
            QueueStatus(
                queue=q.queue.value,
                counts=q.counts,
                completed=q.completed,
                failed=q.failed,
                failure_rate=q.failure_rate,
                backlog=q.backlog,
            )
            for q in report.queues
        ],
        slow_jobs=[
            SlowJob(
                queue=e.queue.value,
                job_id=e.job_id,
                duration_seconds=e.duration_seconds,
                status=e.status,
                finished_at=e.finished_at,
            )
            for e in report.slow_jobs
        ],
        alerts=report.alerts,
    )


@router.get("/jobs/{queue_name}/failed", response_model=list[FailedJob])
async def list_failed_jobs(
    queue_name: str, runtime: Runtime, limit: int = 50
) -> list[FailedJob]:
    jobs = await runtime.backend.failed_jobs(_queue(queue_name), limit)
    return [
        FailedJob(
            id=job.id,
            data=job.payload,
            failed_reason=job.last_error,
            attempts_made=job.attempt,
            created_at=job.created_at,
        )
        for job in jobs
    ]


@router.post("/jobs/{queue_name}/retry", response_model=RetryFailedResponse)
async def retry_failed_jobs(
    queue_name: str,
    runtime: Runtime,
    body: RetryFailedRequest | None = None,
) -> RetryFailedResponse:
    queue = _queue(queue_name)
    job_id = body.job_id if body else None
    requeued = await runtime.backend.retry_failed(queue, job_id)
    logger.info("Admin retry on %s (job=%s): %d re-queued", queue.value, job_id, requeued)
    return RetryFailedResponse(queue=queue.value, requeued=requeued)


@router.get("/sync-health", response_model=SyncHealth)
async def sync_health(runtime: Runtime) -> SyncHealth:
    summary = await build_sync_health_summary(runtime.store)
    return SyncHealth(**dataclasses.asdict(summary))


@router.get("/metrics")
async def job_metrics(runtime: Runtime) -> Response:
    return Response(
        content=generate_latest(runtime.monitor.registry), media_type=CONTENT_TYPE_LATEST
    )
