"""Keyed state storage for breakers, token health, schedules, webhooks and metrics.

``StateStore`` is the narrow interface every monitor depends on.  Two
implementations exist:

    InMemoryStateStore  — this module; tests and single-process local runs
    PostgresStateStore  — ``src.sync.pg_store``; production (asyncpg)

All per-user state is keyed by ``(user_id, integration_type)`` so jobs for
different users never contend.  The only compare-and-set operation is
``claim_breaker_trial``, which must be atomic in every implementation.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime

from src.sync.types import (
    BreakerState,
    CircuitBreakerRecord,
    IntegrationType,
    SyncMetric,
    SyncScheduleRecord,
    TokenHealthRecord,
    TokenStatus,
    WebhookNotification,
    WebhookSubscription,
)

logger = logging.getLogger("syncguard.sync.store")

Key = tuple[str, IntegrationType]


class StateStore(ABC):
    """Abstract keyed storage used by the sync resilience layer."""

    async def ping(self) -> bool:
        """Cheap connectivity check for the liveness endpoint."""
        return True

    # ── Circuit breakers ──

    @abstractmethod
    async def get_breaker(
        self, user_id: str, integration: IntegrationType
    ) -> CircuitBreakerRecord | None: ...

    @abstractmethod
    async def save_breaker(self, record: CircuitBreakerRecord) -> None: ...

    @abstractmethod
    async def claim_breaker_trial(
        self,
        user_id: str,
        integration: IntegrationType,
        now: datetime,
        lease_until: datetime,
    ) -> bool:
        """Atomically grant the single half-open trial.

        Succeeds only when the breaker is open or half-open and
        ``next_retry_at <= now``; on success the breaker becomes half-open
        with ``next_retry_at = lease_until``.
        """

    @abstractmethod
    async def list_breakers(
        self, state: BreakerState | None = None
    ) -> list[CircuitBreakerRecord]: ...

    # ── Token health ──

    @abstractmethod
    async def get_token_health(
        self, user_id: str, integration: IntegrationType
    ) -> TokenHealthRecord | None: ...

    @abstractmethod
    async def save_token_health(self, record: TokenHealthRecord) -> None: ...

    @abstractmethod
    async def list_tokens_for_refresh(
        self, expiring_before: datetime
    ) -> list[TokenHealthRecord]:
        """Records that are ``expiring_soon``, or ``valid`` and expiring before the cutoff."""

    @abstractmethod
    async def list_token_health(
        self, statuses: list[TokenStatus] | None = None
    ) -> list[TokenHealthRecord]: ...

    @abstractmethod
    async def delete_token_health(
        self, user_id: str, integration: IntegrationType
    ) -> None: ...

    # ── Schedules ──

    @abstractmethod
    async def get_schedule(
        self, user_id: str, integration: IntegrationType
    ) -> SyncScheduleRecord | None: ...

    @abstractmethod
    async def save_schedule(self, record: SyncScheduleRecord) -> None: ...

    @abstractmethod
    async def list_due_users(
        self, integration: IntegrationType, now: datetime
    ) -> list[str]:
        """Users with ``next_due_at <= now`` or ``onboarding_until > now``, oldest due first."""

    @abstractmethod
    async def delete_schedule(
        self, user_id: str, integration: IntegrationType
    ) -> None: ...

    # ── Webhook subscriptions ──

    @abstractmethod
    async def get_subscription(self, user_id: str) -> WebhookSubscription | None: ...

    @abstractmethod
    async def get_subscription_by_channel(
        self, channel_id: str, resource_id: str
    ) -> WebhookSubscription | None: ...

    @abstractmethod
    async def save_subscription(self, subscription: WebhookSubscription) -> None: ...

    @abstractmethod
    async def delete_subscription(self, user_id: str) -> None: ...

    @abstractmethod
    async def list_subscriptions(self) -> list[WebhookSubscription]: ...

    @abstractmethod
    async def record_notification(self, notification: WebhookNotification) -> None: ...

    @abstractmethod
    async def last_notification_at(self, user_id: str) -> datetime | None: ...

    # ── Metrics ──

    @abstractmethod
    async def record_metric(self, metric: SyncMetric) -> None: ...

    @abstractmethod
    async def list_metrics(
        self, since: datetime, integration: IntegrationType | None = None
    ) -> list[SyncMetric]: ...

    async def close(self) -> None:
        """Release any resources held by the store."""


class InMemoryStateStore(StateStore):
    """Dict-backed StateStore.

    Records are copied on the way in and out so callers can never mutate
    stored state without going through ``save_*``.
    """

    def __init__(self) -> None:
        self._breakers: dict[Key, CircuitBreakerRecord] = {}
        self._tokens: dict[Key, TokenHealthRecord] = {}
        self._schedules: dict[Key, SyncScheduleRecord] = {}
        self._subscriptions: dict[str, WebhookSubscription] = {}
        self._notifications: list[WebhookNotification] = []
        self._metrics: list[SyncMetric] = []
        self._lock = asyncio.Lock()

    # ── Circuit breakers ──

    async def get_breaker(self, user_id, integration):
        record = self._breakers.get((user_id, integration))
        return replace(record) if record else None

    async def save_breaker(self, record):
        self._breakers[(record.user_id, record.integration_type)] = replace(record)

    async def claim_breaker_trial(self, user_id, integration, now, lease_until):
        async with self._lock:
            record = self._breakers.get((user_id, integration))
            if record is None or record.state == BreakerState.CLOSED:
                return False
            if record.next_retry_at is not None and record.next_retry_at > now:
                return False
            record.state = BreakerState.HALF_OPEN
            record.next_retry_at = lease_until
            return True

    async def list_breakers(self, state=None):
        return [
            replace(r)
            for r in self._breakers.values()
            if state is None or r.state == state
        ]

    # ── Token health ──

    async def get_token_health(self, user_id, integration):
        record = self._tokens.get((user_id, integration))
        return replace(record) if record else None

    async def save_token_health(self, record):
        self._tokens[(record.user_id, record.integration_type)] = replace(record)

    async def list_tokens_for_refresh(self, expiring_before):
        due = []
        for record in self._tokens.values():
            if record.status == TokenStatus.EXPIRING_SOON:
                due.append(replace(record))
            elif (
                record.status == TokenStatus.VALID
                and record.expires_at is not None
                and record.expires_at < expiring_before
            ):
                due.append(replace(record))
        return due

    async def list_token_health(self, statuses=None):
        return [
            replace(r)
            for r in self._tokens.values()
            if statuses is None or r.status in statuses
        ]

    async def delete_token_health(self, user_id, integration):
        self._tokens.pop((user_id, integration), None)

    # ── Schedules ──

    async def get_schedule(self, user_id, integration):
        record = self._schedules.get((user_id, integration))
        return replace(record) if record else None

    async def save_schedule(self, record):
        self._schedules[(record.user_id, record.integration_type)] = replace(record)

    async def list_due_users(self, integration, now):
        due = [
            r
            for (_, integ), r in self._schedules.items()
            if integ == integration
            and (
                r.next_due_at <= now
                or (r.onboarding_until is not None and r.onboarding_until > now)
            )
        ]
        due.sort(key=lambda r: r.next_due_at)
        return [r.user_id for r in due]

    async def delete_schedule(self, user_id, integration):
        self._schedules.pop((user_id, integration), None)

    # ── Webhook subscriptions ──

    async def get_subscription(self, user_id):
        sub = self._subscriptions.get(user_id)
        return replace(sub) if sub else None

    async def get_subscription_by_channel(self, channel_id, resource_id):
        for sub in self._subscriptions.values():
            if sub.channel_id == channel_id and sub.resource_id == resource_id:
                return replace(sub)
        return None

    async def save_subscription(self, subscription):
        self._subscriptions[subscription.user_id] = replace(subscription)

    async def delete_subscription(self, user_id):
        self._subscriptions.pop(user_id, None)

    async def list_subscriptions(self):
        return sorted(
            (replace(s) for s in self._subscriptions.values()),
            key=lambda s: s.created_at,
            reverse=True,
        )

    async def record_notification(self, notification):
        self._notifications.append(notification)

    async def last_notification_at(self, user_id):
        times = [n.created_at for n in self._notifications if n.user_id == user_id]
        return max(times) if times else None

    # ── Metrics ──

    async def record_metric(self, metric):
        self._metrics.append(metric)

    async def list_metrics(self, since, integration=None):
        return [
            m
            for m in self._metrics
            if m.created_at >= since
            and (integration is None or m.integration_type == integration)
        ]
