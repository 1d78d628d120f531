"""Tests for the Redis broker key layout and job lifecycle.

Runs against ``fakeredis`` with a fresh server per test; time comes from the
suite's ``FakeClock`` so delays and leases never sleep.
"""

from __future__ import annotations

import json
from datetime import timedelta

import fakeredis
import pytest

from src.jobs.broker import STALLED_ERROR, RedisBroker
from src.jobs.queues import Job, QueueName

Q = QueueName.CALENDAR_SYNC
JOB_ID = "calendar-sync-u1"


def _key(suffix: str) -> str:
    return f"test:{Q.value}:{suffix}"


def _job(clock, job_id: str = JOB_ID, max_attempts: int = 3, **kwargs) -> Job:
    return Job(
        id=job_id,
        queue=Q,
        payload={"userId": "u1"},
        idempotency_key=f"key-{job_id}",
        max_attempts=max_attempts,
        created_at=clock(),
        **kwargs,
    )


@pytest.fixture
def client() -> fakeredis.FakeAsyncRedis:
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def broker(client, clock) -> RedisBroker:
    return RedisBroker(client, prefix="test", clock=clock)


class TestAddJob:
    @pytest.mark.asyncio
    async def test_in_flight_id_refused(self, broker, client, clock):
        assert await broker.add_job(_job(clock))
        assert not await broker.add_job(_job(clock))

        assert await client.lrange(_key("waiting"), 0, -1) == [JOB_ID]
        stored = json.loads(await client.get(_key(f"job:{JOB_ID}")))
        assert stored["payload"] == {"userId": "u1"}

    @pytest.mark.asyncio
    async def test_id_free_again_after_complete(self, broker, clock):
        await broker.add_job(_job(clock))
        job = await broker.pop_ready(Q)
        await broker.complete(job)

        assert await broker.add_job(_job(clock))
        counts = await broker.counts(Q)
        assert counts["completed"] == 1
        assert counts["waiting"] == 1
        assert counts["active"] == 0


class TestDelayed:
    @pytest.mark.asyncio
    async def test_future_job_promoted_when_due(self, broker, client, clock):
        ready_at = clock() + timedelta(seconds=60)
        await broker.add_job(_job(clock, schedule_time=ready_at))

        assert await client.zscore(_key("delayed"), JOB_ID) == ready_at.timestamp()
        assert await broker.pop_ready(Q) is None

        clock.advance(seconds=60)
        job = await broker.pop_ready(Q)

        assert job.id == JOB_ID
        assert await client.zcard(_key("delayed")) == 0
        assert await client.lrange(_key("active"), 0, -1) == [JOB_ID]

    @pytest.mark.asyncio
    async def test_retry_parks_job_until_ready(self, broker, client, clock):
        await broker.add_job(_job(clock))
        job = await broker.pop_ready(Q)
        job.attempt = 1
        job.last_error = "provider 503"
        ready_at = clock() + timedelta(seconds=120)

        await broker.retry(job, ready_at)

        assert await client.llen(_key("active")) == 0
        assert await client.zscore(_key("delayed"), JOB_ID) == ready_at.timestamp()
        assert not await broker.add_job(_job(clock))
        assert await broker.pop_ready(Q) is None

        clock.advance(seconds=120)
        again = await broker.pop_ready(Q)
        assert again.attempt == 1
        assert again.last_error == "provider 503"


class TestFailed:
    async def _fail_one(self, broker, clock) -> Job:
        await broker.add_job(_job(clock))
        job = await broker.pop_ready(Q)
        job.attempt = 3
        job.last_error = "provider 503"
        await broker.fail(job)
        return job

    @pytest.mark.asyncio
    async def test_failed_job_kept_for_inspection(self, broker, client, clock):
        await self._fail_one(broker, clock)

        [failed] = await broker.failed_jobs(Q)
        assert failed.id == JOB_ID
        assert failed.attempt == 3
        assert failed.last_error == "provider 503"
        assert not await client.exists(_key(f"job:{JOB_ID}"))
        counts = await broker.counts(Q)
        assert (counts["failed"], counts["active"]) == (1, 0)

    @pytest.mark.asyncio
    async def test_retry_failed_starts_attempts_over(self, broker, clock):
        await self._fail_one(broker, clock)

        assert await broker.retry_failed(Q, "unknown") == 0
        assert await broker.retry_failed(Q, JOB_ID) == 1

        counts = await broker.counts(Q)
        assert (counts["failed"], counts["waiting"]) == (0, 1)
        job = await broker.pop_ready(Q)
        assert job.attempt == 0
        assert job.last_error is None


class TestStalled:
    @pytest.mark.asyncio
    async def test_expired_lease_requeues_with_attempt_counted(self, broker, client, clock):
        await broker.add_job(_job(clock))
        await broker.pop_ready(Q, lease_seconds=60)

        clock.advance(seconds=30)
        assert await broker.pop_ready(Q) is None
        assert not await broker.add_job(_job(clock))

        clock.advance(seconds=31)
        job = await broker.pop_ready(Q, lease_seconds=60)

        assert job.id == JOB_ID
        assert job.attempt == 1
        assert job.last_error == STALLED_ERROR
        assert await client.lrange(_key("active"), 0, -1) == [JOB_ID]
        assert await client.zscore(_key("leases"), JOB_ID) == (
            clock() + timedelta(seconds=60)
        ).timestamp()

    @pytest.mark.asyncio
    async def test_expired_final_attempt_fails_and_frees_id(self, broker, client, clock):
        await broker.add_job(_job(clock, max_attempts=1))
        await broker.pop_ready(Q, lease_seconds=60)

        clock.advance(seconds=61)
        assert await broker.pop_ready(Q) is None

        [failed] = await broker.failed_jobs(Q)
        assert failed.last_error == STALLED_ERROR
        assert await client.llen(_key("active")) == 0
        assert await client.zcard(_key("leases")) == 0
        assert await broker.add_job(_job(clock))

    @pytest.mark.asyncio
    async def test_finished_job_releases_lease(self, broker, client, clock):
        await broker.add_job(_job(clock))
        job = await broker.pop_ready(Q, lease_seconds=60)
        await broker.complete(job)

        clock.advance(seconds=120)

        assert await broker.pop_ready(Q) is None
        assert await client.zcard(_key("leases")) == 0
        assert (await broker.counts(Q))["completed"] == 1
