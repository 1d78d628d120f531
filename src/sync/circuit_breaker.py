"""Per-user, per-integration circuit breaker.

State machine:

    closed    --(failure_count >= threshold)-->  open
    open      --(cooldown elapsed, next check)->  half_open  (one trial)
    half_open --(trial succeeded)------------->  closed     (count reset)
    half_open --(trial failed)---------------->  open

The caller whose ``allow_request`` performs the open→half_open transition
owns the trial.  The trial is leased for one cooldown; until the outcome is
reported (or the lease runs out) every other caller is refused.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from src.sync.store import StateStore
from src.sync.types import (
    BreakerState,
    CircuitBreakerRecord,
    IntegrationType,
    utc_now,
)

logger = logging.getLogger("syncguard.sync.circuit_breaker")

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_COOLDOWN = timedelta(hours=1)


class CircuitBreakerRegistry:
    """Breakers for every ``(user_id, integration)`` pair, backed by a StateStore."""

    def __init__(
        self,
        store: StateStore,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self._store = store
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock

    async def get_state(
        self, user_id: str, integration: IntegrationType
    ) -> CircuitBreakerRecord:
        record = await self._store.get_breaker(user_id, integration)
        return record or CircuitBreakerRecord(user_id, integration)

    async def allow_request(self, user_id: str, integration: IntegrationType) -> bool:
        """Return True if a third-party call may proceed for this user."""
        record = await self._store.get_breaker(user_id, integration)
        if record is None or record.state == BreakerState.CLOSED:
            return True

        now = self._clock()
        if record.next_retry_at is not None and record.next_retry_at > now:
            return False

        claimed = await self._store.claim_breaker_trial(
            user_id, integration, now, now + self.cooldown
        )
        if claimed:
            logger.info(
                "Circuit breaker %s/%s: %s -> half_open (trial granted)",
                user_id,
                integration.value,
                record.state.value,
            )
        return claimed

    async def report_outcome(
        self,
        user_id: str,
        integration: IntegrationType,
        success: bool,
        reason: str | None = None,
    ) -> CircuitBreakerRecord:
        """Drive the state machine with the outcome of one attempt."""
        now = self._clock()
        record = await self.get_state(user_id, integration)
        previous = record.state

        if success:
            record.state = BreakerState.CLOSED
            record.failure_count = 0
            record.opened_at = None
            record.next_retry_at = None
        else:
            record.failure_count += 1
            record.last_failure_reason = reason
            record.last_failure_at = now
            if (
                previous != BreakerState.CLOSED
                or record.failure_count >= self.failure_threshold
            ):
                record.state = BreakerState.OPEN
                record.opened_at = now
                record.next_retry_at = now + self.cooldown

        await self._store.save_breaker(record)

        if record.state != previous:
            log = logger.warning if record.state == BreakerState.OPEN else logger.info
            log(
                "Circuit breaker %s/%s: %s -> %s (failures=%d, reason=%s)",
                user_id,
                integration.value,
                previous.value,
                record.state.value,
                record.failure_count,
                reason,
            )
        return record

    async def reset(self, user_id: str, integration: IntegrationType) -> None:
        """Force the breaker closed (admin action or user re-authorization)."""
        await self._store.save_breaker(CircuitBreakerRecord(user_id, integration))
        logger.info("Circuit breaker %s/%s reset", user_id, integration.value)
