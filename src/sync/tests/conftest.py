"""Shared fixtures and fakes for the sync layer test suite.

Everything runs against ``InMemoryStateStore`` and a controllable clock, so
no database or network is needed.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.sync.adaptive_scheduler import AdaptiveSyncScheduler
from src.sync.circuit_breaker import CircuitBreakerRegistry
from src.sync.collaborators import (
    Collaborators,
    InMemoryCredentialStore,
    OAuthRefresh,
    SyncRoutine,
    SyncRoutineResult,
    WatchChannel,
    WebhookChannelClient,
)
from src.sync.orchestrator import SyncOrchestrator
from src.sync.store import InMemoryStateStore
from src.sync.token_health import TokenHealthMonitor
from src.sync.types import IntegrationType, OAuthTokens
from src.sync.webhook_health import WebhookHealthManager

CALENDAR = IntegrationType.GOOGLE_CALENDAR
CONTACTS = IntegrationType.GOOGLE_CONTACTS
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeSyncRoutine(SyncRoutine):
    """Returns queued results in order, then repeats the last one."""

    def __init__(self, *results: SyncRoutineResult) -> None:
        self.results = list(results) or [SyncRoutineResult(items_processed=1)]
        self.calls: list[tuple[str, str]] = []

    async def sync(self, user_id, credentials, sync_type):
        self.calls.append((user_id, sync_type.value))
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class FakeOAuth(OAuthRefresh):
    def __init__(self, clock: FakeClock, error: Exception | None = None) -> None:
        self.clock = clock
        self.error = error
        self.calls: list[str] = []

    async def refresh(self, integration, refresh_token):
        self.calls.append(refresh_token)
        if self.error is not None:
            raise self.error
        return OAuthTokens(
            access_token=f"fresh-{len(self.calls)}",
            expires_at=self.clock() + timedelta(hours=1),
        )


class FakeChannels(WebhookChannelClient):
    def __init__(self, clock: FakeClock, fail: bool = False) -> None:
        self.clock = clock
        self.fail = fail
        self.watched: list[str] = []
        self.access_tokens: list[str] = []
        self.stopped: list[str] = []

    async def watch(self, credentials, channel_id, token, address):
        if self.fail:
            raise RuntimeError("watch refused")
        self.watched.append(channel_id)
        self.access_tokens.append(credentials.access_token)
        return WatchChannel(
            resource_id=f"res-{len(self.watched)}",
            expiration=self.clock() + timedelta(days=7),
        )

    async def stop(self, credentials, channel_id, resource_id):
        self.stopped.append(channel_id)


def valid_tokens(clock: FakeClock, hours: float = 72) -> OAuthTokens:
    return OAuthTokens(
        access_token="access",
        refresh_token="refresh",
        expires_at=clock() + timedelta(hours=hours),
    )


class SyncHarness:
    """Every sync component wired over one store and one clock."""

    def __init__(self, routine: FakeSyncRoutine | None = None) -> None:
        self.clock = FakeClock()
        self.store = InMemoryStateStore()
        self.routine = routine or FakeSyncRoutine()
        self.oauth = FakeOAuth(self.clock)
        self.channels = FakeChannels(self.clock)
        self.credentials = InMemoryCredentialStore()
        self.collaborators = Collaborators(
            sync_routines={CALENDAR: self.routine, CONTACTS: self.routine},
            oauth=self.oauth,
            credentials=self.credentials,
            channels=self.channels,
        )
        self.breakers = CircuitBreakerRegistry(self.store, clock=self.clock)
        self.tokens = TokenHealthMonitor(
            self.store, self.oauth, self.credentials, clock=self.clock
        )
        self.scheduler = AdaptiveSyncScheduler(self.store, clock=self.clock)
        self.webhooks = WebhookHealthManager(
            self.store,
            self.channels,
            self.credentials,
            self.tokens,
            self.scheduler,
            callback_url="https://sync.example.com/api/webhooks/calendar",
            clock=self.clock,
        )
        self.orchestrator = SyncOrchestrator(
            self.store,
            self.breakers,
            self.tokens,
            self.scheduler,
            self.collaborators,
            clock=self.clock,
        )

    async def connect(self, user_id: str, integration: IntegrationType = CALENDAR) -> None:
        await self.credentials.save_credentials(
            user_id, integration, valid_tokens(self.clock)
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def harness() -> SyncHarness:
    return SyncHarness()
