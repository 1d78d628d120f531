"""Tests for the push dispatcher backend (Cloud Tasks REST, mocked with httpx)."""

from __future__ import annotations

import base64
import json
from datetime import timedelta

import httpx
import pytest

from src.errors import ConfigurationError, TransientJobError
from src.jobs.idempotency import generate_key
from src.jobs.push_backend import CLOUD_TASKS_API, PushQueueBackend, task_id_for
from src.jobs.queues import DEFAULT_QUEUE_CONFIGS, JobOptions, QueueName, per_user_job_id
from src.jobs.tests.conftest import memory_settings

SETTINGS = dict(
    dispatch_backend="push",
    push_project_id="acme",
    push_location="us-central1",
    push_service_url="https://sync.example.com",
    push_service_account_email="dispatcher@acme.iam.gserviceaccount.com",
)


async def _token() -> str:
    return "cloud-token"


def _backend(clock, handler) -> tuple[PushQueueBackend, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    backend = PushQueueBackend(
        memory_settings(**SETTINGS),
        dict(DEFAULT_QUEUE_CONFIGS),
        client,
        token_provider=_token,
        clock=clock,
    )
    return backend, seen


def test_requires_project_and_service_account(clock):
    with pytest.raises(ConfigurationError):
        PushQueueBackend(
            memory_settings(dispatch_backend="push"),
            dict(DEFAULT_QUEUE_CONFIGS),
            httpx.AsyncClient(),
        )


def test_task_id_sanitized():
    assert task_id_for("calendar-sync-user@example.com") == "calendar-sync-user-example-com"


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_task_carries_payload_key_and_oidc(self, clock):
        backend, seen = _backend(clock, lambda r: httpx.Response(200, json={}))
        payload = {"userId": "u1", "syncType": "webhook_triggered"}

        handle = await backend.enqueue(
            QueueName.CALENDAR_SYNC,
            payload,
            JobOptions(job_id=per_user_job_id(QueueName.CALENDAR_SYNC, "u1"), delay_seconds=30),
        )

        [request] = seen
        assert str(request.url) == (
            f"{CLOUD_TASKS_API}/projects/acme/locations/us-central1/queues/calendar-sync/tasks"
        )
        assert request.headers["Authorization"] == "Bearer cloud-token"
        task = json.loads(request.content)["task"]
        assert task["name"].endswith("/queues/calendar-sync/tasks/calendar-sync-u1")
        http = task["httpRequest"]
        assert http["url"] == "https://sync.example.com/api/jobs/calendar-sync"
        assert http["oidcToken"] == {
            "serviceAccountEmail": "dispatcher@acme.iam.gserviceaccount.com",
            "audience": "https://sync.example.com",
        }
        body = json.loads(base64.b64decode(http["body"]))
        assert body == {
            "data": payload,
            "idempotencyKey": generate_key("calendar-sync", payload),
            "jobName": "calendar-sync",
        }
        assert task["scheduleTime"] == (clock() + timedelta(seconds=30)).isoformat().replace(
            "+00:00", "Z"
        )
        assert not handle.deduplicated
        assert handle.idempotency_key == body["idempotencyKey"]

    @pytest.mark.asyncio
    async def test_existing_task_is_deduplicated(self, clock):
        backend, _ = _backend(clock, lambda r: httpx.Response(409, json={}))
        handle = await backend.enqueue(QueueName.CALENDAR_SYNC, {"userId": "u1"})
        assert handle.deduplicated

    @pytest.mark.asyncio
    async def test_server_errors_are_transient(self, clock):
        backend, _ = _backend(clock, lambda r: httpx.Response(503))
        with pytest.raises(TransientJobError):
            await backend.enqueue(QueueName.TOKEN_REFRESH, {})

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, clock):
        backend, _ = _backend(clock, lambda r: httpx.Response(429))
        with pytest.raises(TransientJobError):
            await backend.enqueue(QueueName.TOKEN_REFRESH, {})

    @pytest.mark.asyncio
    async def test_client_errors_are_permanent(self, clock):
        backend, _ = _backend(clock, lambda r: httpx.Response(400, text="bad task"))
        with pytest.raises(ConfigurationError):
            await backend.enqueue(QueueName.TOKEN_REFRESH, {})

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, clock):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        backend, _ = _backend(clock, refuse)
        with pytest.raises(TransientJobError):
            await backend.enqueue(QueueName.TOKEN_REFRESH, {})


class TestQueueConfiguration:
    def test_queue_settings_render_retry_and_rate(self, clock):
        backend, _ = _backend(clock, lambda r: httpx.Response(200))
        settings = backend.queue_settings(QueueName.CALENDAR_SYNC)
        assert settings == {
            "retryConfig": {
                "maxAttempts": 3,
                "minBackoff": "60s",
                "maxBackoff": "3600s",
                "maxDoublings": 2,
            },
            "rateLimits": {"maxDispatchesPerSecond": 5, "maxConcurrentDispatches": 5},
        }

    @pytest.mark.asyncio
    async def test_sync_patches_every_queue(self, clock):
        backend, seen = _backend(
            clock,
            lambda r: httpx.Response(500 if r.url.path.endswith("token-refresh") else 200),
        )

        results = await backend.sync_queue_configuration()

        assert len(seen) == len(QueueName)
        assert all(r.method == "PATCH" for r in seen)
        assert results[QueueName.TOKEN_REFRESH] is False
        assert results[QueueName.CALENDAR_SYNC] is True
