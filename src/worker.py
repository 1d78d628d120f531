"""SyncGuard worker process.

With ``DISPATCH_BACKEND=worker`` this runs the worker pool over the Redis
broker plus the recurring scheduler.  With ``DISPATCH_BACKEND=push`` jobs
execute in the API process, so only the recurring scheduler runs here (after
pushing queue retry/rate settings to the dispatcher).

Run:
    python -m src.worker
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from src.config import Settings, get_settings
from src.jobs.push_backend import PushQueueBackend
from src.jobs.recurring import RecurringScheduler
from src.jobs.runtime import JobRuntime, build_runtime
from src.jobs.worker import WorkerPool, WorkerQueueBackend

logger = logging.getLogger("syncguard.worker")


async def run_worker(runtime: JobRuntime, stop: asyncio.Event) -> None:
    """Run until ``stop`` is set, then drain in-flight jobs."""
    pool: WorkerPool | None = None
    backend = runtime.backend
    if isinstance(backend, WorkerQueueBackend):
        pool = WorkerPool(
            backend.broker,
            runtime.configs,
            runtime.handlers,
            runtime.monitor,
            runtime.idempotency,
            poll_interval=runtime.settings.worker_poll_interval_seconds,
        )
        pool.start()
    elif isinstance(backend, PushQueueBackend):
        await backend.sync_queue_configuration()

    scheduler = RecurringScheduler(backend)
    try:
        await scheduler.run(stop)
    finally:
        if pool is not None:
            await pool.stop()


async def _main(settings: Settings) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    runtime = await build_runtime(settings)
    logger.info("SyncGuard worker started (%s backend)", runtime.backend.name)
    try:
        await run_worker(runtime, stop)
    finally:
        await runtime.close()
    logger.info("SyncGuard worker shut down")


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )
    asyncio.run(_main(settings))


if __name__ == "__main__":
    main()
