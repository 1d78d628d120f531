"""Worker backend: jobs pulled from a broker by long-lived worker tasks.

Each queue gets ``worker_concurrency`` loops.  A loop pops the next ready
job, runs its handler under ``attempt_timeout_seconds`` and then:

    success              → complete
    ConfigurationError   → fail immediately (permanent)
    anything else        → retry after the queue's backoff, or fail once
                           ``max_attempts`` is reached

Failed jobs stay in the broker for inspection and manual retry.  When an
idempotency store is attached, a job whose key was already processed is
completed without running its handler.

Each popped job is leased for its attempt timeout plus a margin, so a job
whose worker died is picked up again by the broker.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from src.errors import ConfigurationError
from src.jobs.backend import DispatchBackend
from src.jobs.broker import Broker
from src.jobs.idempotency import IdempotencyStore, generate_key
from src.jobs.monitoring import JobMonitor
from src.jobs.queues import (
    Job,
    JobHandle,
    JobOptions,
    QueueConfig,
    QueueName,
    new_job_id,
    parse_queue_name,
    resolve_schedule_time,
)
from src.sync.types import utc_now

logger = logging.getLogger("syncguard.jobs.worker")

# Extra lease time past the attempt timeout before a job counts as stalled.
LEASE_MARGIN_SECONDS = 60.0

JobHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class WorkerQueueBackend(DispatchBackend):
    name = "worker"

    def __init__(
        self,
        broker: Broker,
        configs: dict[QueueName, QueueConfig],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.broker = broker
        self.configs = configs
        self._clock = clock

    async def enqueue(self, queue, payload, options=None):
        queue = queue if isinstance(queue, QueueName) else parse_queue_name(queue)
        options = options or JobOptions()
        schedule_time = resolve_schedule_time(options, self._clock())
        job = Job(
            id=options.job_id or new_job_id(),
            queue=queue,
            payload=payload,
            idempotency_key=generate_key(queue.value, payload),
            max_attempts=options.max_attempts or self.configs[queue].max_attempts,
            schedule_time=schedule_time,
            created_at=self._clock(),
        )
        added = await self.broker.add_job(job)
        if not added:
            logger.info("Job %s already in flight on %s; absorbed", job.id, queue.value)
        return JobHandle(
            job_id=job.id,
            queue_name=queue,
            idempotency_key=job.idempotency_key,
            schedule_time=schedule_time,
            deduplicated=not added,
        )

    async def queue_counts(self, queue):
        return await self.broker.counts(queue)

    async def failed_jobs(self, queue, limit=50):
        return await self.broker.failed_jobs(queue, limit)

    async def retry_failed(self, queue, job_id=None):
        count = await self.broker.retry_failed(queue, job_id)
        logger.info("Re-queued %d failed job(s) on %s", count, queue.value)
        return count

    async def close(self):
        await self.broker.close()


class Worker:
    """Processes jobs for one queue."""

    def __init__(
        self,
        queue: QueueName,
        broker: Broker,
        config: QueueConfig,
        handler: JobHandler,
        monitor: JobMonitor,
        idempotency: IdempotencyStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.queue = queue
        self._broker = broker
        self.config = config
        self._handler = handler
        self._monitor = monitor
        self._idempotency = idempotency
        self._clock = clock

    async def run_once(self) -> bool:
        """Process the next ready job. Returns False when the queue was empty."""
        job = await self._broker.pop_ready(
            self.queue, self.config.attempt_timeout_seconds + LEASE_MARGIN_SECONDS
        )
        if job is None:
            return False
        await self.process(job)
        return True

    async def process(self, job: Job) -> None:
        started = time.monotonic()
        if self._idempotency and await self._idempotency.is_processed(job.idempotency_key):
            logger.info("Job %s on %s already processed; skipping", job.id, self.queue.value)
            await self._broker.complete(job)
            return

        job.attempt += 1
        try:
            result = await asyncio.wait_for(
                self._handler(job.payload), timeout=self.config.attempt_timeout_seconds
            )
        except ConfigurationError as exc:
            job.last_error = str(exc)
            await self._broker.fail(job)
            self._record(job, started, "failed")
            logger.error(
                "Job %s on %s failed permanently: %s", job.id, self.queue.value, exc
            )
        except Exception as exc:
            if isinstance(exc, asyncio.TimeoutError):
                job.last_error = f"Timed out after {self.config.attempt_timeout_seconds}s"
            else:
                job.last_error = str(exc) or type(exc).__name__
            await self._retry_or_fail(job, started)
        else:
            if self._idempotency:
                await self._idempotency.mark_processed(job.idempotency_key)
                await self._idempotency.cache_result(job.idempotency_key, result)
            await self._broker.complete(job)
            self._record(job, started, "completed")

    async def _retry_or_fail(self, job: Job, started: float) -> None:
        if job.attempt >= job.max_attempts:
            await self._broker.fail(job)
            self._record(job, started, "failed")
            logger.error(
                "Job %s on %s failed after %d attempts: %s",
                job.id,
                self.queue.value,
                job.attempt,
                job.last_error,
            )
            return

        delay = self.config.retry_delay(job.attempt - 1)
        await self._broker.retry(job, self._clock() + timedelta(seconds=delay))
        self._record(job, started, "retrying")
        logger.warning(
            "Job %s on %s attempt %d/%d failed (%s); retrying in %.0fs",
            job.id,
            self.queue.value,
            job.attempt,
            job.max_attempts,
            job.last_error,
            delay,
        )

    def _record(self, job: Job, started: float, status: str) -> None:
        self._monitor.record_job(
            self.queue, job.id, time.monotonic() - started, status, job.last_error
        )


class WorkerPool:
    """Runs every queue's workers as asyncio tasks over one shared broker."""

    def __init__(
        self,
        broker: Broker,
        configs: dict[QueueName, QueueConfig],
        handlers: dict[QueueName, JobHandler],
        monitor: JobMonitor,
        idempotency: IdempotencyStore | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        self.workers = {
            queue: Worker(
                queue, broker, configs[queue], handlers[queue], monitor, idempotency
            )
            for queue in QueueName
        }
        self.poll_interval = poll_interval
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    def start(self) -> None:
        for queue, worker in self.workers.items():
            for slot in range(worker.config.worker_concurrency):
                self._tasks.append(
                    asyncio.create_task(self._loop(worker), name=f"{queue.value}-{slot}")
                )
        logger.info("Worker pool started (%d tasks)", len(self._tasks))

    async def _loop(self, worker: Worker) -> None:
        while not self._stopping.is_set():
            try:
                processed = await worker.run_once()
            except Exception:
                logger.exception("Worker loop error on %s", worker.queue.value)
                processed = False
            if not processed:
                try:
                    await asyncio.wait_for(self._stopping.wait(), self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def stop(self) -> None:
        """Stop polling and let in-flight jobs finish."""
        self._stopping.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Worker pool stopped")
