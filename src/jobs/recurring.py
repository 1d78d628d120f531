"""Recurring job scheduler for the worker process.

Time is cut into fixed windows per job (aligned to the epoch).  APScheduler
fires each job at its window boundaries, and once at startup for the
window already under way.  A firing enqueues the job with the window start
in its payload and job id.  The payload therefore differs per window
(distinct idempotency key) while several worker processes firing the same
window collide on the same job id and are absorbed.

Schedule:
    token-refresh           every 6h
    adaptive-sync           hourly, once per integration
    webhook-health-check    every 12h
    webhook-renewal         daily
    token-health-reminder   daily
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.jobs.backend import DispatchBackend
from src.jobs.queues import JobOptions, QueueName
from src.sync.types import IntegrationType, utc_now

logger = logging.getLogger("syncguard.jobs.recurring")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def window_start(now: datetime, interval: timedelta) -> datetime:
    """Start of the fixed window containing ``now``."""
    elapsed = now - _EPOCH
    return _EPOCH + (elapsed // interval) * interval


@dataclass
class RecurringJob:
    name: str
    queue: QueueName
    interval: timedelta
    payload: dict[str, Any] = field(default_factory=dict)

    def build(self, start: datetime) -> tuple[dict[str, Any], JobOptions]:
        stamp = int(start.timestamp())
        payload = {**self.payload, "window": start.isoformat()}
        return payload, JobOptions(job_id=f"{self.name}-{stamp}")


DEFAULT_RECURRING_JOBS: list[RecurringJob] = [
    RecurringJob("token-refresh", QueueName.TOKEN_REFRESH, timedelta(hours=6)),
    *(
        RecurringJob(
            f"adaptive-sync-{integration.value}",
            QueueName.ADAPTIVE_SYNC,
            timedelta(hours=1),
            {"integration": integration.value},
        )
        for integration in IntegrationType
    ),
    RecurringJob("webhook-health-check", QueueName.WEBHOOK_HEALTH_CHECK, timedelta(hours=12)),
    RecurringJob("webhook-renewal", QueueName.WEBHOOK_RENEWAL, timedelta(days=1)),
    RecurringJob("token-health-reminder", QueueName.TOKEN_HEALTH_REMINDER, timedelta(days=1)),
]


class RecurringScheduler:
    """Enqueues the recurring jobs from an APScheduler ``AsyncIOScheduler``.

    Every job gets an ``IntervalTrigger`` whose start is its window boundary,
    so runs land on window starts.  Missed runs are coalesced and a job never
    overlaps itself.
    """

    def __init__(
        self,
        backend: DispatchBackend,
        jobs: list[RecurringJob] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._backend = backend
        self.jobs = jobs if jobs is not None else list(DEFAULT_RECURRING_JOBS)
        self._clock = clock
        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._last_window: dict[str, datetime] = {}

    async def fire(self, job: RecurringJob) -> bool:
        """Enqueue ``job`` for its current window. Returns False if already done."""
        start = window_start(self._clock(), job.interval)
        if self._last_window.get(job.name) == start:
            return False
        payload, options = job.build(start)
        try:
            handle = await self._backend.enqueue(job.queue, payload, options)
        except Exception:
            logger.exception("Failed to enqueue recurring job %s", job.name)
            return False
        self._last_window[job.name] = start
        if not handle.deduplicated:
            logger.info("Enqueued recurring %s for window %s", job.name, start.isoformat())
        return True

    async def tick(self) -> list[str]:
        """Fire every job whose current window is new. Returns their names."""
        return [job.name for job in self.jobs if await self.fire(job)]

    def start(self) -> None:
        now = self._clock()
        for job in self.jobs:
            self._scheduler.add_job(
                self.fire,
                trigger=IntervalTrigger(
                    seconds=int(job.interval.total_seconds()),
                    start_date=window_start(now, job.interval),
                    timezone=timezone.utc,
                ),
                args=[job],
                id=job.name,
                name=f"Recurring {job.name}",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
        self._scheduler.start()
        logger.info("Recurring scheduler started (%d jobs)", len(self.jobs))

    def scheduled_jobs(self) -> list[Job]:
        return self._scheduler.get_jobs()

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=True)
            logger.info("Recurring scheduler stopped")

    async def run(self, stop: asyncio.Event) -> None:
        """Schedule every job, fire the current windows, then wait for ``stop``."""
        self.start()
        try:
            await self.tick()
            await stop.wait()
        finally:
            self.shutdown()
