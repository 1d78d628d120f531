"""The one interface callers use to dispatch work.

Two strategies implement it and exactly one is chosen at startup:

    WorkerQueueBackend — ``src.jobs.worker``; Redis broker + long-lived workers
    PushQueueBackend   — ``src.jobs.push_backend``; managed HTTP task dispatcher

Callers never branch on which one is active.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.jobs.queues import Job, JobHandle, JobOptions, QueueName


class DispatchBackend(ABC):
    name: str = "abstract"

    @abstractmethod
    async def enqueue(
        self,
        queue: QueueName | str,
        payload: dict[str, Any],
        options: JobOptions | None = None,
    ) -> JobHandle:
        """Dispatch a job.

        Raises:
            UnknownQueue:    If ``queue`` is not a known queue name.
            InvalidSchedule: If the requested time is outside [now, now + 30 days].
        """

    async def queue_counts(self, queue: QueueName) -> dict[str, int] | None:
        """Per-state job counts, or None when the backend cannot report them."""
        return None

    async def failed_jobs(self, queue: QueueName, limit: int = 50) -> list[Job]:
        return []

    async def retry_failed(self, queue: QueueName, job_id: str | None = None) -> int:
        """Re-queue terminally failed jobs. Returns how many were re-queued."""
        return 0

    async def close(self) -> None:
        pass
