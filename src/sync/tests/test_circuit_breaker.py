"""Tests for the per-user circuit breaker state machine."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from src.sync.circuit_breaker import CircuitBreakerRegistry
from src.sync.tests.conftest import CALENDAR, CONTACTS
from src.sync.types import BreakerState


async def _fail(registry: CircuitBreakerRegistry, times: int, user: str = "u1") -> None:
    for _ in range(times):
        await registry.report_outcome(user, CALENDAR, False, "HTTP 500")


# ---------------------------------------------------------------------------
# Opening
# ---------------------------------------------------------------------------


class TestOpening:
    @pytest.mark.asyncio
    async def test_stays_closed_below_threshold(self, store, clock):
        registry = CircuitBreakerRegistry(store, clock=clock)
        await _fail(registry, 4)
        record = await registry.get_state("u1", CALENDAR)
        assert record.state == BreakerState.CLOSED
        assert record.failure_count == 4
        assert await registry.allow_request("u1", CALENDAR)

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, store, clock):
        registry = CircuitBreakerRegistry(store, clock=clock)
        await _fail(registry, 5)
        record = await registry.get_state("u1", CALENDAR)
        assert record.state == BreakerState.OPEN
        assert record.next_retry_at == clock() + timedelta(hours=1)
        assert record.last_failure_reason == "HTTP 500"
        assert not await registry.allow_request("u1", CALENDAR)

    @pytest.mark.asyncio
    async def test_success_resets_count(self, store, clock):
        registry = CircuitBreakerRegistry(store, clock=clock)
        await _fail(registry, 4)
        await registry.report_outcome("u1", CALENDAR, True)
        await _fail(registry, 4)
        assert (await registry.get_state("u1", CALENDAR)).state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_breakers_are_per_integration(self, store, clock):
        registry = CircuitBreakerRegistry(store, clock=clock)
        await _fail(registry, 5)
        assert not await registry.allow_request("u1", CALENDAR)
        assert await registry.allow_request("u1", CONTACTS)
        assert await registry.allow_request("u2", CALENDAR)

    def test_threshold_must_be_positive(self, store):
        with pytest.raises(ValueError):
            CircuitBreakerRegistry(store, failure_threshold=0)


# ---------------------------------------------------------------------------
# Half-open trial
# ---------------------------------------------------------------------------


class TestHalfOpen:
    @pytest.mark.asyncio
    async def test_single_trial_after_cooldown(self, store, clock):
        registry = CircuitBreakerRegistry(store, clock=clock)
        await _fail(registry, 5)
        clock.advance(hours=1, seconds=1)

        assert await registry.allow_request("u1", CALENDAR)
        assert (await registry.get_state("u1", CALENDAR)).state == BreakerState.HALF_OPEN
        assert not await registry.allow_request("u1", CALENDAR)

    @pytest.mark.asyncio
    async def test_concurrent_callers_get_one_trial(self, store, clock):
        registry = CircuitBreakerRegistry(store, clock=clock)
        await _fail(registry, 5)
        clock.advance(hours=2)

        granted = await asyncio.gather(
            *(registry.allow_request("u1", CALENDAR) for _ in range(10))
        )
        assert granted.count(True) == 1

    @pytest.mark.asyncio
    async def test_trial_success_closes(self, store, clock):
        registry = CircuitBreakerRegistry(store, clock=clock)
        await _fail(registry, 5)
        clock.advance(hours=2)
        assert await registry.allow_request("u1", CALENDAR)

        record = await registry.report_outcome("u1", CALENDAR, True)
        assert record.state == BreakerState.CLOSED
        assert record.failure_count == 0
        assert await registry.allow_request("u1", CALENDAR)

    @pytest.mark.asyncio
    async def test_trial_failure_reopens(self, store, clock):
        registry = CircuitBreakerRegistry(store, clock=clock)
        await _fail(registry, 5)
        clock.advance(hours=2)
        assert await registry.allow_request("u1", CALENDAR)

        record = await registry.report_outcome("u1", CALENDAR, False, "still down")
        assert record.state == BreakerState.OPEN
        assert record.next_retry_at == clock() + timedelta(hours=1)
        assert not await registry.allow_request("u1", CALENDAR)

    @pytest.mark.asyncio
    async def test_abandoned_trial_lease_expires(self, store, clock):
        registry = CircuitBreakerRegistry(store, clock=clock)
        await _fail(registry, 5)
        clock.advance(hours=2)
        assert await registry.allow_request("u1", CALENDAR)

        clock.advance(hours=1, seconds=1)
        assert await registry.allow_request("u1", CALENDAR)


@pytest.mark.asyncio
async def test_reset_closes_breaker(store, clock):
    registry = CircuitBreakerRegistry(store, clock=clock)
    await _fail(registry, 5)
    await registry.reset("u1", CALENDAR)
    assert await registry.allow_request("u1", CALENDAR)
    assert (await registry.get_state("u1", CALENDAR)).failure_count == 0
