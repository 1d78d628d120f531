"""Job brokers for the worker backend.

Redis layout per queue (``{p}`` = prefix, ``{q}`` = queue name)::

    {p}:{q}:waiting     LIST   job ids ready to run (LPUSH in, LMOVE to active)
    {p}:{q}:delayed     ZSET   job ids scored by ready-at epoch seconds
    {p}:{q}:active      LIST   job ids currently being processed
    {p}:{q}:leases      ZSET   active job ids scored by lease deadline
    {p}:{q}:completed   STRING completed-job counter
    {p}:{q}:failed      HASH   job id → job JSON (terminal failures, kept)
    {p}:{q}:job:{id}    STRING job JSON; exists only while the job is in flight

The in-flight job key doubles as the de-duplication marker: ``add_job`` uses
``SET NX`` so a second job with the same id is refused until the first one
completes or fails.

A worker that dies mid-job leaves its id in ``active``.  Every ``pop_ready``
first sweeps leases past their deadline: the job goes back to ``waiting``
with the lost run counted as an attempt, or to ``failed`` once its attempts
are used up.  This also releases the de-duplication marker.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable

import redis.asyncio as redis

from src.jobs.queues import Job, QueueName
from src.sync.types import utc_now

logger = logging.getLogger("syncguard.jobs.broker")

COUNT_STATES = ("waiting", "active", "delayed", "completed", "failed")
DEFAULT_LEASE_SECONDS = 600.0
STALLED_ERROR = "Worker lease expired before the job finished"


class Broker(ABC):
    @abstractmethod
    async def add_job(self, job: Job) -> bool:
        """Store and queue a job. Returns False if a job with this id is in flight."""

    @abstractmethod
    async def pop_ready(
        self, queue: QueueName, lease_seconds: float = DEFAULT_LEASE_SECONDS
    ) -> Job | None:
        """Move the next ready job to active and return it.

        The job is leased for ``lease_seconds``; if it is still active after
        that, a later call recovers it.
        """

    @abstractmethod
    async def complete(self, job: Job) -> None: ...

    @abstractmethod
    async def retry(self, job: Job, ready_at: datetime) -> None:
        """Return an active job to the delayed set until ``ready_at``."""

    @abstractmethod
    async def fail(self, job: Job) -> None:
        """Move an active job to the retained failed set."""

    @abstractmethod
    async def counts(self, queue: QueueName) -> dict[str, int]: ...

    @abstractmethod
    async def failed_jobs(self, queue: QueueName, limit: int = 50) -> list[Job]: ...

    @abstractmethod
    async def retry_failed(self, queue: QueueName, job_id: str | None = None) -> int: ...

    async def close(self) -> None:
        pass


class RedisBroker(Broker):
    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "syncguard",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._redis = client
        self._prefix = prefix
        self._clock = clock

    def _key(self, queue: QueueName, suffix: str) -> str:
        return f"{self._prefix}:{queue.value}:{suffix}"

    def _job_key(self, queue: QueueName, job_id: str) -> str:
        return self._key(queue, f"job:{job_id}")

    async def add_job(self, job):
        stored = await self._redis.set(
            self._job_key(job.queue, job.id), json.dumps(job.to_dict()), nx=True
        )
        if not stored:
            return False
        await self._schedule(job)
        return True

    async def _schedule(self, job: Job) -> None:
        if job.schedule_time is not None and job.schedule_time > self._clock():
            await self._redis.zadd(
                self._key(job.queue, "delayed"), {job.id: job.schedule_time.timestamp()}
            )
        else:
            await self._redis.lpush(self._key(job.queue, "waiting"), job.id)

    async def _promote_delayed(self, queue: QueueName) -> None:
        delayed = self._key(queue, "delayed")
        due = await self._redis.zrangebyscore(delayed, 0, self._clock().timestamp())
        for job_id in due:
            # Only the worker whose ZREM succeeds promotes the job.
            if await self._redis.zrem(delayed, job_id):
                await self._redis.lpush(self._key(queue, "waiting"), job_id)

    async def _recover_stalled(self, queue: QueueName) -> None:
        leases = self._key(queue, "leases")
        expired = await self._redis.zrangebyscore(leases, 0, self._clock().timestamp())
        for job_id in expired:
            # Only the worker whose ZREM succeeds recovers the job.
            if not await self._redis.zrem(leases, job_id):
                continue
            await self._redis.lrem(self._key(queue, "active"), 1, job_id)
            raw = await self._redis.get(self._job_key(queue, job_id))
            if raw is None:
                continue
            job = Job.from_dict(json.loads(raw))
            job.attempt += 1
            job.last_error = STALLED_ERROR
            if job.attempt >= job.max_attempts:
                logger.error(
                    "Job %s on %s stalled on its final attempt; failing it",
                    job_id,
                    queue.value,
                )
                await self.fail(job)
                continue
            logger.warning(
                "Job %s on %s stalled (attempt %d/%d); requeueing",
                job_id,
                queue.value,
                job.attempt,
                job.max_attempts,
            )
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(queue, job_id), json.dumps(job.to_dict()))
                pipe.lpush(self._key(queue, "waiting"), job_id)
                await pipe.execute()

    async def pop_ready(self, queue, lease_seconds=DEFAULT_LEASE_SECONDS):
        await self._recover_stalled(queue)
        await self._promote_delayed(queue)
        job_id = await self._redis.lmove(
            self._key(queue, "waiting"), self._key(queue, "active"), "RIGHT", "LEFT"
        )
        if job_id is None:
            return None
        deadline = self._clock() + timedelta(seconds=lease_seconds)
        await self._redis.zadd(self._key(queue, "leases"), {job_id: deadline.timestamp()})
        raw = await self._redis.get(self._job_key(queue, job_id))
        if raw is None:
            logger.warning("Dropping orphaned job id %s on %s", job_id, queue.value)
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self._key(queue, "active"), 1, job_id)
                pipe.zrem(self._key(queue, "leases"), job_id)
                await pipe.execute()
            return None
        return Job.from_dict(json.loads(raw))

    async def complete(self, job):
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key(job.queue, "active"), 1, job.id)
            pipe.zrem(self._key(job.queue, "leases"), job.id)
            pipe.delete(self._job_key(job.queue, job.id))
            pipe.incr(self._key(job.queue, "completed"))
            await pipe.execute()

    async def retry(self, job, ready_at):
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.queue, job.id), json.dumps(job.to_dict()))
            pipe.lrem(self._key(job.queue, "active"), 1, job.id)
            pipe.zrem(self._key(job.queue, "leases"), job.id)
            pipe.zadd(self._key(job.queue, "delayed"), {job.id: ready_at.timestamp()})
            await pipe.execute()

    async def fail(self, job):
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key(job.queue, "active"), 1, job.id)
            pipe.zrem(self._key(job.queue, "leases"), job.id)
            pipe.delete(self._job_key(job.queue, job.id))
            pipe.hset(self._key(job.queue, "failed"), job.id, json.dumps(job.to_dict()))
            await pipe.execute()

    async def counts(self, queue):
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.llen(self._key(queue, "waiting"))
            pipe.llen(self._key(queue, "active"))
            pipe.zcard(self._key(queue, "delayed"))
            pipe.get(self._key(queue, "completed"))
            pipe.hlen(self._key(queue, "failed"))
            waiting, active, delayed, completed, failed = await pipe.execute()
        return {
            "waiting": waiting,
            "active": active,
            "delayed": delayed,
            "completed": int(completed or 0),
            "failed": failed,
        }

    async def failed_jobs(self, queue, limit=50):
        raw = await self._redis.hvals(self._key(queue, "failed"))
        jobs = [Job.from_dict(json.loads(r)) for r in raw]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    async def retry_failed(self, queue, job_id=None):
        failed_key = self._key(queue, "failed")
        if job_id is not None:
            raw = await self._redis.hget(failed_key, job_id)
            entries = {job_id: raw} if raw is not None else {}
        else:
            entries = await self._redis.hgetall(failed_key)

        requeued = 0
        for jid, raw in entries.items():
            job = Job.from_dict(json.loads(raw))
            job.attempt = 0
            job.schedule_time = None
            job.last_error = None
            if await self._redis.hdel(failed_key, jid) and await self.add_job(job):
                requeued += 1
        return requeued


class InMemoryBroker(Broker):
    """Single-process broker with the same semantics as RedisBroker."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._jobs: dict[tuple[QueueName, str], Job] = {}
        self._waiting: dict[QueueName, deque[str]] = {q: deque() for q in QueueName}
        self._delayed: dict[QueueName, dict[str, datetime]] = {q: {} for q in QueueName}
        self._active: dict[QueueName, set[str]] = {q: set() for q in QueueName}
        self._leases: dict[QueueName, dict[str, datetime]] = {q: {} for q in QueueName}
        self._completed: dict[QueueName, int] = {q: 0 for q in QueueName}
        self._failed: dict[QueueName, dict[str, Job]] = {q: {} for q in QueueName}

    async def add_job(self, job):
        key = (job.queue, job.id)
        if key in self._jobs:
            return False
        self._jobs[key] = job
        if job.schedule_time is not None and job.schedule_time > self._clock():
            self._delayed[job.queue][job.id] = job.schedule_time
        else:
            self._waiting[job.queue].appendleft(job.id)
        return True

    def _recover_stalled(self, queue: QueueName, now: datetime) -> None:
        leases = self._leases[queue]
        for job_id in [jid for jid, deadline in leases.items() if deadline <= now]:
            del leases[job_id]
            self._active[queue].discard(job_id)
            job = self._jobs.get((queue, job_id))
            if job is None:
                continue
            job.attempt += 1
            job.last_error = STALLED_ERROR
            if job.attempt >= job.max_attempts:
                logger.error(
                    "Job %s on %s stalled on its final attempt; failing it",
                    job_id,
                    queue.value,
                )
                del self._jobs[(queue, job_id)]
                self._failed[queue][job_id] = job
            else:
                logger.warning("Job %s on %s stalled; requeueing", job_id, queue.value)
                self._waiting[queue].appendleft(job_id)

    async def pop_ready(self, queue, lease_seconds=DEFAULT_LEASE_SECONDS):
        now = self._clock()
        self._recover_stalled(queue, now)
        delayed = self._delayed[queue]
        for job_id, ready_at in sorted(delayed.items(), key=lambda kv: kv[1]):
            if ready_at <= now:
                del delayed[job_id]
                self._waiting[queue].appendleft(job_id)
        if not self._waiting[queue]:
            return None
        job_id = self._waiting[queue].pop()
        self._active[queue].add(job_id)
        self._leases[queue][job_id] = now + timedelta(seconds=lease_seconds)
        # Workers get a copy, as they would from Redis, so an abandoned run
        # leaves the stored attempt count untouched.
        return replace(self._jobs[(queue, job_id)])

    async def complete(self, job):
        self._active[job.queue].discard(job.id)
        self._leases[job.queue].pop(job.id, None)
        self._jobs.pop((job.queue, job.id), None)
        self._completed[job.queue] += 1

    async def retry(self, job, ready_at):
        self._active[job.queue].discard(job.id)
        self._leases[job.queue].pop(job.id, None)
        self._jobs[(job.queue, job.id)] = job
        self._delayed[job.queue][job.id] = ready_at

    async def fail(self, job):
        self._active[job.queue].discard(job.id)
        self._leases[job.queue].pop(job.id, None)
        self._jobs.pop((job.queue, job.id), None)
        self._failed[job.queue][job.id] = job

    async def counts(self, queue):
        return {
            "waiting": len(self._waiting[queue]),
            "active": len(self._active[queue]),
            "delayed": len(self._delayed[queue]),
            "completed": self._completed[queue],
            "failed": len(self._failed[queue]),
        }

    async def failed_jobs(self, queue, limit=50):
        jobs = sorted(self._failed[queue].values(), key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    async def retry_failed(self, queue, job_id=None):
        failed = self._failed[queue]
        ids = [job_id] if job_id is not None else list(failed)
        requeued = 0
        for jid in ids:
            job = failed.pop(jid, None)
            if job is None:
                continue
            job.attempt = 0
            job.schedule_time = None
            job.last_error = None
            if await self.add_job(job):
                requeued += 1
        return requeued

    def next_ready_at(self, queue: QueueName) -> datetime | None:
        """Earliest delayed ready-at time (test helper for clock advancing)."""
        delayed = self._delayed[queue]
        return min(delayed.values()) if delayed else None
