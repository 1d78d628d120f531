"""API tests: job callbacks, calendar notifications, admin endpoints, health.

The runtime is in-memory (``STATE_BACKEND=memory``) with fake collaborators,
and OIDC verification is replaced by ``FakeVerifier``.  Async setup runs on
the client's own event loop through ``client.portal``.
"""

from __future__ import annotations

import asyncio

import jwt
import pytest
from fastapi.testclient import TestClient

from src.dependencies import DispatcherIdentity
from src.jobs.idempotency import generate_key
from src.jobs.queues import QueueName
from src.jobs.tests.conftest import fake_collaborators, memory_runtime
from src.main import create_app
from src.sync.collaborators import SyncRoutineResult
from src.sync.tests.conftest import CALENDAR, FakeClock, FakeSyncRoutine, valid_tokens

DISPATCHER = "dispatcher@acme.iam.gserviceaccount.com"
JOB_AUTH = {"Authorization": "Bearer good-token"}
ADMIN_AUTH = {"Authorization": "Bearer admin-secret"}


class FakeVerifier:
    def verify(self, token: str) -> DispatcherIdentity:
        if token != "good-token":
            raise jwt.InvalidTokenError("signature mismatch")
        return DispatcherIdentity(email=DISPATCHER, subject="1234")


def make_client(clock: FakeClock, routine: FakeSyncRoutine | None = None, **overrides):
    runtime = asyncio.run(memory_runtime(clock, fake_collaborators(clock, routine), **overrides))
    app = create_app(runtime.settings, runtime, verifier=FakeVerifier())
    return TestClient(app), runtime


def job_body(queue: str, data: dict) -> dict:
    return {"data": data, "idempotencyKey": generate_key(queue, data), "jobName": queue}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ----------------------------------------------------------------------
# Job callbacks
# ----------------------------------------------------------------------


class TestJobCallbackAuth:
    def test_missing_token_rejected(self, clock):
        client, _ = make_client(clock)
        with client:
            resp = client.post("/api/jobs/token-refresh", json=job_body("token-refresh", {}))
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing OIDC token"

    def test_invalid_token_rejected(self, clock):
        client, _ = make_client(clock)
        with client:
            resp = client.post(
                "/api/jobs/token-refresh",
                json=job_body("token-refresh", {}),
                headers={"Authorization": "Bearer forged"},
            )
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid token"


class TestJobCallbacks:
    def test_unknown_job_is_404(self, clock):
        client, _ = make_client(clock)
        with client:
            resp = client.post(
                "/api/jobs/calendar-synk", json=job_body("calendar-synk", {}), headers=JOB_AUTH
            )
        assert resp.status_code == 404
        assert resp.json()["retryable"] is False

    def test_missing_idempotency_key_is_400(self, clock):
        client, _ = make_client(clock)
        with client:
            resp = client.post("/api/jobs/token-refresh", json={"data": {}}, headers=JOB_AUTH)
        assert resp.status_code == 400

    def test_success_then_duplicate(self, clock):
        client, runtime = make_client(clock)
        data = {"userId": "u1", "syncType": "webhook_triggered", "notifiedAt": "t1"}
        body = job_body("calendar-sync", data)
        with client:
            client.portal.call(
                runtime.collaborators.credentials.save_credentials,
                "u1",
                CALENDAR,
                valid_tokens(clock),
            )
            first = client.post("/api/jobs/calendar-sync", json=body, headers=JOB_AUTH)
            second = client.post("/api/jobs/calendar-sync", json=body, headers=JOB_AUTH)

        assert first.status_code == 200
        assert first.json()["success"] is True
        assert first.json()["result"]["result"] == "success"
        assert "durationMs" in first.json()
        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        assert second.json()["result"] == first.json()["result"]
        assert len(runtime.collaborators.sync_routines[CALENDAR].calls) == 1

    def test_permanent_failure_acknowledged(self, clock):
        client, runtime = make_client(clock)
        with client:
            resp = client.post(
                "/api/jobs/calendar-sync",
                json=job_body("calendar-sync", {"syncType": "manual"}),
                headers=JOB_AUTH,
            )
        assert resp.status_code == 200
        assert resp.json() == {
            "success": False,
            "retryable": False,
            "error": "Job payload is missing 'userId'",
        }

    def test_transient_failure_is_500(self, clock):
        routine = FakeSyncRoutine(SyncRoutineResult(error="HTTP 503 backend unavailable"))
        client, runtime = make_client(clock, routine)
        body = job_body("calendar-sync", {"userId": "u1", "syncType": "webhook_triggered"})
        with client:
            client.portal.call(
                runtime.collaborators.credentials.save_credentials,
                "u1",
                CALENDAR,
                valid_tokens(clock),
            )
            resp = client.post("/api/jobs/calendar-sync", json=body, headers=JOB_AUTH)
            processed = client.portal.call(
                runtime.idempotency.is_processed, body["idempotencyKey"]
            )

        assert resp.status_code == 500
        assert resp.json()["retryable"] is True
        assert not processed


# ----------------------------------------------------------------------
# Calendar notifications
# ----------------------------------------------------------------------


class TestCalendarWebhook:
    def _headers(self, subscription, state="exists", token=None):
        return {
            "X-Goog-Channel-ID": subscription.channel_id,
            "X-Goog-Resource-ID": subscription.resource_id,
            "X-Goog-Resource-State": state,
            "X-Goog-Channel-Token": token if token is not None else subscription.token,
        }

    def _register(self, client, runtime, clock):
        client.portal.call(
            runtime.collaborators.credentials.save_credentials,
            "u1",
            CALENDAR,
            valid_tokens(clock),
        )
        return client.portal.call(runtime.webhooks.register_webhook, "u1")

    def test_change_enqueues_one_sync(self, clock):
        client, runtime = make_client(clock)
        with client:
            subscription = self._register(client, runtime, clock)
            first = client.post("/api/webhooks/calendar", headers=self._headers(subscription))
            second = client.post("/api/webhooks/calendar", headers=self._headers(subscription))
            counts = client.portal.call(runtime.backend.queue_counts, QueueName.CALENDAR_SYNC)

        assert first.json() == {"received": True, "syncQueued": True}
        assert second.json() == {"received": True, "syncQueued": False}
        assert counts["waiting"] == 1

    def test_change_after_sync_finishes_is_queued(self, clock):
        client, runtime = make_client(clock)
        broker = runtime.backend.broker

        async def run_pending_sync():
            job = await broker.pop_ready(QueueName.CALENDAR_SYNC)
            await runtime.handler_for(QueueName.CALENDAR_SYNC)(job.payload)
            await broker.complete(job)
            return job

        with client:
            subscription = self._register(client, runtime, clock)
            first = client.post("/api/webhooks/calendar", headers=self._headers(subscription))
            done = client.portal.call(run_pending_sync)
            second = client.post("/api/webhooks/calendar", headers=self._headers(subscription))
            counts = client.portal.call(broker.counts, QueueName.CALENDAR_SYNC)

        assert first.json()["syncQueued"] is True
        assert second.json()["syncQueued"] is True
        assert done.id.startswith("calendar-sync-u1-")
        assert counts["waiting"] == 1
        assert counts["completed"] == 1
        assert len(runtime.collaborators.sync_routines[CALENDAR].calls) == 1

    def test_sync_state_does_not_enqueue(self, clock):
        client, runtime = make_client(clock)
        with client:
            subscription = self._register(client, runtime, clock)
            resp = client.post(
                "/api/webhooks/calendar", headers=self._headers(subscription, state="sync")
            )
        assert resp.json() == {"received": True, "syncQueued": False}

    def test_bad_token_rejected(self, clock):
        client, runtime = make_client(clock)
        with client:
            subscription = self._register(client, runtime, clock)
            resp = client.post(
                "/api/webhooks/calendar", headers=self._headers(subscription, token="nope")
            )
        assert resp.status_code == 400

    def test_unknown_channel_rejected(self, clock):
        client, _ = make_client(clock)
        with client:
            resp = client.post(
                "/api/webhooks/calendar",
                headers={
                    "X-Goog-Channel-ID": "ghost",
                    "X-Goog-Resource-ID": "res-0",
                    "X-Goog-Resource-State": "exists",
                },
            )
        assert resp.status_code == 400


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------


class TestAdmin:
    def test_disabled_without_key(self, clock):
        client, _ = make_client(clock, admin_api_key="")
        with client:
            resp = client.get("/api/admin/jobs/report", headers=ADMIN_AUTH)
        assert resp.status_code == 403

    def test_wrong_key_rejected(self, clock):
        client, _ = make_client(clock)
        with client:
            resp = client.get(
                "/api/admin/jobs/report", headers={"Authorization": "Bearer guess"}
            )
        assert resp.status_code == 401

    def test_jobs_report(self, clock):
        client, runtime = make_client(clock)
        with client:
            client.portal.call(runtime.backend.enqueue, QueueName.TOKEN_REFRESH, {"window": "w"})
            resp = client.get("/api/admin/jobs/report", headers=ADMIN_AUTH)

        assert resp.status_code == 200
        report = resp.json()
        assert report["backend"] == "worker"
        assert len(report["queues"]) == len(QueueName)
        [refresh] = [q for q in report["queues"] if q["queue"] == "token-refresh"]
        assert refresh["backlog"] == 1
        assert report["alerts"] == []

    def test_failed_jobs_listed_and_retried(self, clock):
        client, runtime = make_client(clock)
        broker = runtime.backend.broker

        async def fail_one():
            await runtime.backend.enqueue(QueueName.CALENDAR_SYNC, {"userId": "u1"})
            job = await broker.pop_ready(QueueName.CALENDAR_SYNC)
            job.attempt = 3
            job.last_error = "provider 503"
            await broker.fail(job)
            return job

        with client:
            job = client.portal.call(fail_one)
            listed = client.get("/api/admin/jobs/calendar-sync/failed", headers=ADMIN_AUTH)
            retried = client.post(
                "/api/admin/jobs/calendar-sync/retry",
                json={"job_id": job.id},
                headers=ADMIN_AUTH,
            )
            counts = client.portal.call(broker.counts, QueueName.CALENDAR_SYNC)

        [failed] = listed.json()
        assert failed["id"] == job.id
        assert failed["failed_reason"] == "provider 503"
        assert failed["attempts_made"] == 3
        assert retried.json() == {"queue": "calendar-sync", "requeued": 1}
        assert counts["failed"] == 0
        assert counts["waiting"] == 1

    def test_metrics_exposition(self, clock):
        client, runtime = make_client(clock)
        runtime.monitor.record_job(QueueName.TOKEN_REFRESH, "j1", 1.5, "completed")
        with client:
            resp = client.get("/api/admin/metrics", headers=ADMIN_AUTH)

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert 'syncguard_jobs_total{queue="token-refresh",status="completed"} 1.0' in resp.text

    def test_unknown_queue_is_404(self, clock):
        client, _ = make_client(clock)
        with client:
            resp = client.get("/api/admin/jobs/nope/failed", headers=ADMIN_AUTH)
        assert resp.status_code == 404

    def test_sync_health_counts_open_breakers(self, clock):
        client, runtime = make_client(clock)

        async def trip():
            for _ in range(5):
                await runtime.breakers.report_outcome("u1", CALENDAR, False, "HTTP 500")

        with client:
            client.portal.call(trip)
            resp = client.get("/api/admin/sync-health", headers=ADMIN_AUTH)

        assert resp.status_code == 200
        assert resp.json()["open_breakers"] == 1
        assert resp.json()["success_rate"] == 1.0


# ----------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------


def test_health_is_public(clock):
    client, _ = make_client(clock)
    with client:
        resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["stateStore"] == "connected"
    assert body["dispatch"] == {"backend": "worker", "status": "connected"}


def test_health_degraded_when_store_unreachable(clock):
    client, runtime = make_client(clock)

    async def refuse():
        raise ConnectionRefusedError("state store down")

    runtime.store.ping = refuse
    with client:
        resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "degraded"
    assert resp.json()["stateStore"] == "unreachable"
