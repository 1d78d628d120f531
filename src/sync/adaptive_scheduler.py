"""Adaptive per-user sync intervals.

Active users are polled more often, quiet users less often:

    change detected  → interval × 0.5, floored at the integration minimum
    no change        → interval × 1.5, capped at the integration maximum

New users get an onboarding window during which they are always due.
Failures do not touch the interval; they push ``next_due_at`` out with an
exponential backoff instead.

Interval bounds (hours):
    google_calendar:   1 – 8,   default 4
    google_contacts:  24 – 168, default 72
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from src.sync.store import StateStore
from src.sync.types import IntegrationType, SyncScheduleRecord, utc_now

logger = logging.getLogger("syncguard.sync.adaptive_scheduler")


@dataclass(frozen=True)
class IntervalBounds:
    min_hours: float
    max_hours: float
    default_hours: float

    def clamp(self, hours: float) -> float:
        return max(self.min_hours, min(self.max_hours, hours))


INTERVAL_BOUNDS: dict[IntegrationType, IntervalBounds] = {
    IntegrationType.GOOGLE_CALENDAR: IntervalBounds(1, 8, 4),
    IntegrationType.GOOGLE_CONTACTS: IntervalBounds(24, 168, 72),
}

SHRINK_FACTOR = 0.5
GROWTH_FACTOR = 1.5
ONBOARDING_WINDOW = timedelta(hours=24)
FAILURE_BACKOFF_BASE = timedelta(minutes=5)
FAILURE_BACKOFF_CAP = timedelta(hours=24)


def failure_backoff(failure_count: int) -> timedelta:
    """5 min × 2^(n−1), capped at 24h."""
    if failure_count < 1:
        return timedelta(0)
    # 2**9 × 5 min already exceeds the cap
    exponent = min(failure_count - 1, 10)
    return min(FAILURE_BACKOFF_BASE * (2 ** exponent), FAILURE_BACKOFF_CAP)


class AdaptiveSyncScheduler:
    def __init__(
        self,
        store: StateStore,
        bounds: dict[IntegrationType, IntervalBounds] | None = None,
        onboarding_window: timedelta = ONBOARDING_WINDOW,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self.bounds = bounds or INTERVAL_BOUNDS
        self.onboarding_window = onboarding_window
        self._clock = clock

    async def initialize_schedule(
        self, user_id: str, integration: IntegrationType
    ) -> SyncScheduleRecord:
        """Create the schedule for a newly connected integration.

        The user is due immediately and stays due for the onboarding window.
        """
        now = self._clock()
        bounds = self.bounds[integration]
        record = SyncScheduleRecord(
            user_id=user_id,
            integration_type=integration,
            current_interval_hours=bounds.default_hours,
            default_interval_hours=bounds.default_hours,
            next_due_at=now,
            onboarding_until=now + self.onboarding_window,
        )
        await self._store.save_schedule(record)
        logger.info(
            "Initialized %s schedule for %s (onboarding until %s)",
            integration.value,
            user_id,
            record.onboarding_until.isoformat(),
        )
        return record

    async def get_schedule(
        self, user_id: str, integration: IntegrationType
    ) -> SyncScheduleRecord | None:
        return await self._store.get_schedule(user_id, integration)

    async def get_users_due_for_sync(self, integration: IntegrationType) -> list[str]:
        return await self._store.list_due_users(integration, self._clock())

    async def is_due(self, user_id: str, integration: IntegrationType) -> bool:
        """A user with no schedule yet is always due."""
        record = await self._store.get_schedule(user_id, integration)
        if record is None:
            return True
        now = self._clock()
        if record.onboarding_until is not None and record.onboarding_until > now:
            return True
        return now >= record.next_due_at

    async def record_sync(
        self,
        user_id: str,
        integration: IntegrationType,
        change_detected: bool,
    ) -> SyncScheduleRecord:
        """Adjust the interval after a completed sync and schedule the next one."""
        now = self._clock()
        bounds = self.bounds[integration]
        record = await self._get_or_create(user_id, integration, now)

        previous = record.current_interval_hours
        factor = SHRINK_FACTOR if change_detected else GROWTH_FACTOR
        record.current_interval_hours = bounds.clamp(previous * factor)
        record.last_sync_at = now
        if change_detected:
            record.last_change_detected_at = now
        record.consecutive_failures = 0
        record.next_due_at = now + timedelta(hours=record.current_interval_hours)
        await self._store.save_schedule(record)

        if record.current_interval_hours != previous:
            logger.debug(
                "%s/%s interval %.2fh -> %.2fh (change_detected=%s)",
                user_id,
                integration.value,
                previous,
                record.current_interval_hours,
                change_detected,
            )
        return record

    async def record_failure(
        self,
        user_id: str,
        integration: IntegrationType,
        failure_count: int | None = None,
    ) -> SyncScheduleRecord:
        """Push the next attempt out by the failure backoff.

        ``failure_count`` defaults to the stored consecutive-failure count + 1.
        """
        now = self._clock()
        record = await self._get_or_create(user_id, integration, now)
        record.consecutive_failures = (
            failure_count if failure_count is not None else record.consecutive_failures + 1
        )
        record.next_due_at = now + failure_backoff(record.consecutive_failures)
        await self._store.save_schedule(record)
        return record

    async def set_webhook_fallback_interval(
        self, user_id: str, integration: IntegrationType
    ) -> SyncScheduleRecord:
        """Relax polling to the ceiling while push notifications are active."""
        now = self._clock()
        bounds = self.bounds[integration]
        record = await self._get_or_create(user_id, integration, now)
        record.current_interval_hours = bounds.max_hours
        record.default_interval_hours = bounds.max_hours
        if record.last_sync_at is not None:
            record.next_due_at = record.last_sync_at + timedelta(hours=bounds.max_hours)
        await self._store.save_schedule(record)
        logger.info(
            "%s/%s polling relaxed to %.0fh (webhook active)",
            user_id,
            integration.value,
            bounds.max_hours,
        )
        return record

    async def restore_normal_polling(
        self, user_id: str, integration: IntegrationType
    ) -> SyncScheduleRecord:
        now = self._clock()
        bounds = self.bounds[integration]
        record = await self._get_or_create(user_id, integration, now)
        record.current_interval_hours = bounds.default_hours
        record.default_interval_hours = bounds.default_hours
        record.next_due_at = min(
            record.next_due_at, now + timedelta(hours=bounds.default_hours)
        )
        await self._store.save_schedule(record)
        logger.info(
            "%s/%s polling restored to %.0fh", user_id, integration.value, bounds.default_hours
        )
        return record

    async def _get_or_create(
        self, user_id: str, integration: IntegrationType, now: datetime
    ) -> SyncScheduleRecord:
        record = await self._store.get_schedule(user_id, integration)
        if record is not None:
            return record
        bounds = self.bounds[integration]
        return SyncScheduleRecord(
            user_id=user_id,
            integration_type=integration,
            current_interval_hours=bounds.default_hours,
            default_interval_hours=bounds.default_hours,
            next_due_at=now,
        )
