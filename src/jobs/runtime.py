"""Composition root.

``build_runtime`` constructs every component exactly once and wires them
together; the API app and the worker process each hold one ``JobRuntime``.
Anything passed in explicitly (store, backend, idempotency store,
collaborators) is used as-is, which is how tests assemble isolated runtimes.

Backend selection happens here and nowhere else:

    DISPATCH_BACKEND=worker → WorkerQueueBackend over a Redis broker
    DISPATCH_BACKEND=push   → PushQueueBackend over the Cloud Tasks REST API

With ``STATE_BACKEND=memory`` every store is in-process (local runs).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx

from src.config import Settings
from src.errors import ConfigurationError
from src.integrations.google import GoogleCalendarChannelClient, GoogleOAuthRefresh
from src.jobs.backend import DispatchBackend
from src.jobs.broker import InMemoryBroker, RedisBroker
from src.jobs.handlers import build_handler_table
from src.jobs.idempotency import (
    IdempotencyStore,
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
)
from src.jobs.monitoring import JobMonitor
from src.jobs.push_backend import PushQueueBackend
from src.jobs.queues import QueueConfig, QueueName, load_queue_configs
from src.jobs.worker import JobHandler, WorkerQueueBackend
from src.services.database import Database
from src.services.redis import close_redis, create_redis
from src.sync.adaptive_scheduler import AdaptiveSyncScheduler
from src.sync.circuit_breaker import CircuitBreakerRegistry
from src.sync.collaborators import (
    Collaborators,
    UnconfiguredOAuthRefresh,
    UnconfiguredWebhookChannelClient,
)
from src.sync.orchestrator import SyncOrchestrator
from src.sync.pg_store import PostgresCredentialStore, PostgresStateStore
from src.sync.store import InMemoryStateStore, StateStore
from src.sync.token_health import TokenHealthMonitor
from src.sync.types import utc_now
from src.sync.webhook_health import WebhookHealthManager

logger = logging.getLogger("syncguard.runtime")


@dataclass
class JobRuntime:
    """Every long-lived component, built once."""

    settings: Settings
    configs: dict[QueueName, QueueConfig]
    store: StateStore
    backend: DispatchBackend
    idempotency: IdempotencyStore
    collaborators: Collaborators
    breakers: CircuitBreakerRegistry
    tokens: TokenHealthMonitor
    scheduler: AdaptiveSyncScheduler
    webhooks: WebhookHealthManager
    orchestrator: SyncOrchestrator
    monitor: JobMonitor
    handlers: dict[QueueName, JobHandler] = field(default_factory=dict)
    _resources: list[Any] = field(default_factory=list, repr=False)

    def handler_for(self, queue: QueueName) -> JobHandler:
        return self.handlers[queue]

    async def close(self) -> None:
        await self.backend.close()
        await self.idempotency.close()
        await self.store.close()
        for resource in reversed(self._resources):
            if isinstance(resource, httpx.AsyncClient):
                await resource.aclose()
            elif isinstance(resource, Database):
                await resource.close()
            else:
                await close_redis(resource)
        logger.info("Runtime closed")


def validate_settings(settings: Settings) -> None:
    """Cross-setting checks that must hold before anything is built.

    Raises:
        ConfigurationError: On an invalid combination.
    """
    if settings.idempotency_ttl_seconds != settings.push_dedup_window_seconds:
        raise ConfigurationError(
            "IDEMPOTENCY_TTL_SECONDS "
            f"({settings.idempotency_ttl_seconds}) must equal "
            f"PUSH_DEDUP_WINDOW_SECONDS ({settings.push_dedup_window_seconds})"
        )
    if settings.dispatch_backend not in ("worker", "push"):
        raise ConfigurationError(
            f"DISPATCH_BACKEND must be 'worker' or 'push', got {settings.dispatch_backend!r}"
        )
    if settings.state_backend not in ("postgres", "memory"):
        raise ConfigurationError(
            f"STATE_BACKEND must be 'postgres' or 'memory', got {settings.state_backend!r}"
        )


async def build_runtime(
    settings: Settings,
    collaborators: Collaborators | None = None,
    *,
    store: StateStore | None = None,
    backend: DispatchBackend | None = None,
    idempotency: IdempotencyStore | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> JobRuntime:
    validate_settings(settings)
    configs = load_queue_configs(settings.queue_overrides_path)
    resources: list[Any] = []
    in_memory = settings.state_backend == "memory"

    # ── State ──
    db: Database | None = None
    if store is None:
        if in_memory:
            store = InMemoryStateStore()
        else:
            db = Database.from_settings(settings)
            await db.connect()
            pg_store = PostgresStateStore(db)
            await pg_store.ensure_schema()
            store = pg_store

    # ── Collaborators ──
    if collaborators is None:
        collaborators = Collaborators()
        if db is not None:
            collaborators.credentials = PostgresCredentialStore(db)
    if settings.google_client_id and isinstance(
        collaborators.oauth, UnconfiguredOAuthRefresh
    ):
        google_http = httpx.AsyncClient(timeout=30)
        resources.append(google_http)
        collaborators.oauth = GoogleOAuthRefresh(
            settings.google_client_id, settings.google_client_secret, google_http
        )
        if isinstance(collaborators.channels, UnconfiguredWebhookChannelClient):
            collaborators.channels = GoogleCalendarChannelClient(google_http)

    # ── Redis-backed stores ──
    redis_client = None
    if not in_memory and (
        idempotency is None or (backend is None and settings.dispatch_backend == "worker")
    ):
        redis_client = create_redis(settings.redis_url)
        resources.append(redis_client)

    if idempotency is None:
        if redis_client is not None:
            idempotency = RedisIdempotencyStore(
                redis_client, settings.queue_prefix, settings.idempotency_ttl_seconds
            )
        else:
            idempotency = InMemoryIdempotencyStore(settings.idempotency_ttl_seconds)

    if backend is None:
        if settings.dispatch_backend == "push":
            backend = PushQueueBackend(
                settings, configs, httpx.AsyncClient(timeout=30), clock=clock
            )
        elif redis_client is not None:
            backend = WorkerQueueBackend(
                RedisBroker(redis_client, settings.queue_prefix, clock), configs, clock
            )
        else:
            backend = WorkerQueueBackend(InMemoryBroker(clock), configs, clock)

    # Registered after the stores so close() releases the database last.
    if db is not None:
        resources.insert(0, db)

    # ── Sync layer ──
    breakers = CircuitBreakerRegistry(
        store,
        failure_threshold=settings.breaker_failure_threshold,
        cooldown=timedelta(seconds=settings.breaker_cooldown_seconds),
        clock=clock,
    )
    tokens = TokenHealthMonitor(
        store,
        collaborators.oauth,
        collaborators.credentials,
        refresh_buffer=timedelta(seconds=settings.token_refresh_buffer_seconds),
        expiring_soon=timedelta(hours=settings.token_expiring_soon_hours),
        refresh_lookahead=timedelta(hours=settings.token_refresh_lookahead_hours),
        alert_failure_rate=settings.token_refresh_alert_rate,
        clock=clock,
    )
    scheduler = AdaptiveSyncScheduler(store, clock=clock)
    webhooks = WebhookHealthManager(
        store,
        collaborators.channels,
        collaborators.credentials,
        tokens,
        scheduler,
        callback_url=settings.calendar_webhook_url,
        silence_threshold=timedelta(hours=settings.webhook_silence_hours),
        expiry_window=timedelta(hours=settings.webhook_expiry_hours),
        alert_failure_rate=settings.webhook_reregistration_alert_rate,
        clock=clock,
    )
    orchestrator = SyncOrchestrator(
        store, breakers, tokens, scheduler, collaborators, clock=clock
    )
    monitor = JobMonitor(
        slow_job_threshold_seconds=settings.slow_job_threshold_seconds,
        backlog_threshold=settings.queue_backlog_threshold,
        failure_rate_threshold=settings.queue_failure_rate_threshold,
    )

    runtime = JobRuntime(
        settings=settings,
        configs=configs,
        store=store,
        backend=backend,
        idempotency=idempotency,
        collaborators=collaborators,
        breakers=breakers,
        tokens=tokens,
        scheduler=scheduler,
        webhooks=webhooks,
        orchestrator=orchestrator,
        monitor=monitor,
        _resources=resources,
    )
    runtime.handlers = build_handler_table(runtime)
    logger.info(
        "Runtime built (dispatch=%s, state=%s, queues=%d)",
        backend.name,
        settings.state_backend,
        len(configs),
    )
    return runtime
