"""Job callback endpoint invoked by the push dispatcher.

The dispatcher retries on any non-2xx answer, so the status code is the
retry decision:

    200  handled, duplicate, or permanently failed (acknowledged)
    400  malformed request (no idempotency key)
    404  unknown job name
    500  transient failure, retry
"""

from __future__ import annotations

import logging
import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from src.dependencies import Runtime
from src.errors import ConfigurationError, UnknownQueue
from src.jobs.queues import parse_queue_name
from src.models.jobs import JobInvocation, JobInvocationResult

router = APIRouter(prefix="/api/jobs", tags=["jobs"])
logger = logging.getLogger("syncguard.routers.jobs")


def _error(status_code: int, message: str, retryable: bool) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, "retryable": retryable},
    )


@router.post("/{job_name}", response_model=JobInvocationResult, response_model_by_alias=True)
async def run_job(job_name: str, body: JobInvocation, runtime: Runtime):
    try:
        queue = parse_queue_name(job_name)
    except UnknownQueue:
        logger.warning("Callback for unknown job %r", job_name)
        return _error(404, f"Unknown job: {job_name}", retryable=False)

    key = body.idempotency_key
    if not key:
        return _error(400, "Missing idempotencyKey", retryable=False)

    if await runtime.idempotency.is_processed(key):
        logger.info("Job %s already processed (key %s)", queue.value, key[:12])
        cached = await runtime.idempotency.get_cached_result(key)
        return JobInvocationResult(success=True, duplicate=True, result=cached)

    started = time.monotonic()
    try:
        result = await runtime.handler_for(queue)(body.data)
    except ConfigurationError as exc:
        runtime.monitor.record_job(
            queue, key, time.monotonic() - started, "failed", str(exc)
        )
        logger.error("Job %s failed permanently: %s", queue.value, exc)
        return JSONResponse(
            status_code=200,
            content={"success": False, "retryable": False, "error": str(exc)},
        )
    except Exception as exc:
        message = str(exc) or type(exc).__name__
        runtime.monitor.record_job(
            queue, key, time.monotonic() - started, "retrying", message
        )
        logger.exception("Job %s failed; dispatcher will retry", queue.value)
        return _error(500, message, retryable=True)

    await runtime.idempotency.mark_processed(key)
    await runtime.idempotency.cache_result(key, result)
    duration = time.monotonic() - started
    runtime.monitor.record_job(queue, key, duration, "completed")
    return JobInvocationResult(
        success=True, result=result, duration_ms=int(duration * 1000)
    )
