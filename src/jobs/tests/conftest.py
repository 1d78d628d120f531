"""Shared fixtures for the job dispatch test suite.

Runtimes are built with ``STATE_BACKEND=memory``: in-memory state store,
in-memory broker and idempotency store, driven by the sync suite's
``FakeClock``.
"""

from __future__ import annotations

from typing import Any

import pytest

from src.config import Settings
from src.jobs.runtime import JobRuntime, build_runtime
from src.sync.collaborators import Collaborators, InMemoryCredentialStore, Notifier
from src.sync.tests.conftest import (
    CALENDAR,
    CONTACTS,
    FakeChannels,
    FakeClock,
    FakeOAuth,
    FakeSyncRoutine,
)


def memory_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "state_backend": "memory",
        "dispatch_backend": "worker",
        "admin_api_key": "admin-secret",
        "_env_file": None,
    }
    values.update(overrides)
    return Settings(**values)


class RecordingNotifier(Notifier):
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.sent: list[tuple[str, str]] = []

    async def send(self, user_id, template, data):
        if user_id in self.failing:
            raise RuntimeError(f"mailbox for {user_id} unavailable")
        self.sent.append((user_id, template))


def fake_collaborators(clock: FakeClock, routine: FakeSyncRoutine | None = None) -> Collaborators:
    routine = routine or FakeSyncRoutine()
    return Collaborators(
        sync_routines={CALENDAR: routine, CONTACTS: routine},
        oauth=FakeOAuth(clock),
        credentials=InMemoryCredentialStore(),
        channels=FakeChannels(clock),
        notifier=RecordingNotifier(),
    )


async def memory_runtime(
    clock: FakeClock,
    collaborators: Collaborators | None = None,
    **overrides: Any,
) -> JobRuntime:
    return await build_runtime(
        memory_settings(**overrides),
        collaborators or fake_collaborators(clock),
        clock=clock,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
