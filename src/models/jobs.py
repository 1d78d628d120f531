"""Pydantic models for job callbacks, manual triggers, and monitoring responses."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from src.models.base import SyncGuardBase


# ---------- Job callbacks ----------


class JobInvocation(SyncGuardBase):
    """Body the push dispatcher posts to ``/api/jobs/{job_name}``."""

    data: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey")
    job_name: str | None = Field(default=None, alias="jobName")


class JobInvocationResult(SyncGuardBase):
    success: bool
    duplicate: bool = False
    retryable: bool | None = None
    result: Any = None
    error: str | None = None
    duration_ms: int | None = Field(default=None, serialization_alias="durationMs")


# ---------- Monitoring ----------


class QueueStatus(SyncGuardBase):
    queue: str
    counts: dict[str, int] | None = None
    completed: int
    failed: int
    failure_rate: float
    backlog: int


class SlowJob(SyncGuardBase):
    queue: str
    job_id: str
    duration_seconds: float
    status: str
    finished_at: datetime


class JobsReport(SyncGuardBase):
    generated_at: datetime
    backend: str
    queues: list[QueueStatus]
    slow_jobs: list[SlowJob]
    alerts: list[str]


class FailedJob(SyncGuardBase):
    id: str
    data: dict[str, Any]
    failed_reason: str | None = None
    attempts_made: int
    created_at: datetime


class RetryFailedRequest(SyncGuardBase):
    job_id: str | None = None


class RetryFailedResponse(SyncGuardBase):
    queue: str
    requeued: int


class SyncHealth(SyncGuardBase):
    open_breakers: int
    invalid_tokens: int
    total_syncs: int
    successful_syncs: int
    failed_syncs: int
    skipped_syncs: int
    success_rate: float
    api_calls_made: int
    api_calls_saved: int
    skip_reasons: dict[str, int]
