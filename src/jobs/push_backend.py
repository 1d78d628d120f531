"""Push backend: one task per job on a managed HTTP task dispatcher.

Uses the Cloud Tasks REST API over httpx.  There are no workers: the
dispatcher calls back ``POST {service_url}/api/jobs/{queue}`` with an OIDC
token for the designated service account, carrying::

    {"data": <payload>, "idempotencyKey": <key>, "jobName": <queue>}

Tasks are named after the job id, so the dispatcher itself refuses a second
task with the same name (HTTP 409) and the handle comes back
``deduplicated``.  Retry and rate settings live on the dispatcher's queues
and are pushed there by ``sync_queue_configuration()`` from the shared
``QueueConfig`` table.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import time
from datetime import datetime
from typing import Any, Awaitable, Callable

import httpx

from src.config import Settings
from src.errors import ConfigurationError, TransientJobError
from src.jobs.backend import DispatchBackend
from src.jobs.idempotency import generate_key
from src.jobs.queues import (
    JobHandle,
    JobOptions,
    QueueConfig,
    QueueName,
    new_job_id,
    parse_queue_name,
    resolve_schedule_time,
)
from src.sync.types import utc_now

logger = logging.getLogger("syncguard.jobs.push_backend")

CLOUD_TASKS_API = "https://cloudtasks.googleapis.com/v2"
METADATA_TOKEN_URL = (
    "http://metadata.google.internal/computeMetadata/v1/"
    "instance/service-accounts/default/token"
)

TokenProvider = Callable[[], Awaitable[str]]

_TASK_ID_INVALID = re.compile(r"[^A-Za-z0-9_-]")


def task_id_for(job_id: str) -> str:
    """Task ids allow only letters, digits, hyphens and underscores (max 500)."""
    return _TASK_ID_INVALID.sub("-", job_id)[:500]


def _rfc3339(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def _duration(seconds: float) -> str:
    return f"{seconds:g}s"


class MetadataTokenProvider:
    """Access tokens for the runtime service account from the GCE metadata server."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client
        self._token: str | None = None
        self._expires_at = 0.0

    async def __call__(self) -> str:
        if self._token and time.monotonic() < self._expires_at - 60:
            return self._token
        response = await self._client.get(
            METADATA_TOKEN_URL, headers={"Metadata-Flavor": "Google"}
        )
        response.raise_for_status()
        body = response.json()
        self._token = body["access_token"]
        self._expires_at = time.monotonic() + float(body.get("expires_in", 300))
        return self._token


class PushQueueBackend(DispatchBackend):
    name = "push"

    def __init__(
        self,
        settings: Settings,
        configs: dict[QueueName, QueueConfig],
        client: httpx.AsyncClient,
        token_provider: TokenProvider | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not settings.push_project_id or not settings.push_service_account_email:
            raise ConfigurationError(
                "Push dispatch needs PUSH_PROJECT_ID and PUSH_SERVICE_ACCOUNT_EMAIL"
            )
        self.project_id = settings.push_project_id
        self.location = settings.push_location
        self.service_url = settings.push_service_url.rstrip("/")
        self.service_account_email = settings.push_service_account_email
        self.audience = settings.oidc_audience
        self.configs = configs
        self._client = client
        self._token_provider = token_provider or MetadataTokenProvider(client)
        self._clock = clock

    def queue_path(self, queue: QueueName) -> str:
        return f"projects/{self.project_id}/locations/{self.location}/queues/{queue.value}"

    def build_task(
        self,
        queue: QueueName,
        job_id: str,
        payload: dict[str, Any],
        idempotency_key: str,
        schedule_time: datetime | None,
    ) -> dict[str, Any]:
        body = {"data": payload, "idempotencyKey": idempotency_key, "jobName": queue.value}
        task: dict[str, Any] = {
            "name": f"{self.queue_path(queue)}/tasks/{task_id_for(job_id)}",
            "httpRequest": {
                "httpMethod": "POST",
                "url": f"{self.service_url}/api/jobs/{queue.value}",
                "headers": {"Content-Type": "application/json"},
                "body": base64.b64encode(json.dumps(body).encode()).decode(),
                "oidcToken": {
                    "serviceAccountEmail": self.service_account_email,
                    "audience": self.audience,
                },
            },
        }
        if schedule_time is not None:
            task["scheduleTime"] = _rfc3339(schedule_time)
        return task

    async def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {await self._token_provider()}"}

    async def enqueue(self, queue, payload, options=None):
        queue = queue if isinstance(queue, QueueName) else parse_queue_name(queue)
        options = options or JobOptions()
        schedule_time = resolve_schedule_time(options, self._clock())
        if options.max_attempts is not None:
            # Attempts are a queue-level setting on the dispatcher.
            logger.debug("max_attempts override ignored by push backend for %s", queue.value)

        job_id = options.job_id or new_job_id()
        key = generate_key(queue.value, payload)
        task = self.build_task(queue, job_id, payload, key, schedule_time)

        try:
            response = await self._client.post(
                f"{CLOUD_TASKS_API}/{self.queue_path(queue)}/tasks",
                json={"task": task},
                headers=await self._headers(),
            )
        except httpx.HTTPError as exc:
            raise TransientJobError(f"Task dispatch failed for {queue.value}: {exc}") from exc

        deduplicated = response.status_code == 409
        if deduplicated:
            logger.info("Task %s already exists on %s; absorbed", job_id, queue.value)
        elif response.status_code >= 500 or response.status_code == 429:
            raise TransientJobError(
                f"Task dispatch failed for {queue.value}: HTTP {response.status_code}"
            )
        elif response.is_error:
            raise ConfigurationError(
                f"Task dispatch rejected for {queue.value}: "
                f"HTTP {response.status_code} {response.text}"
            )

        return JobHandle(
            job_id=job_id,
            queue_name=queue,
            idempotency_key=key,
            schedule_time=schedule_time,
            deduplicated=deduplicated,
        )

    def queue_settings(self, queue: QueueName) -> dict[str, Any]:
        """Render one queue's config into the dispatcher's queue resource."""
        config = self.configs[queue]
        rate_limits: dict[str, Any] = {}
        if config.max_dispatches_per_second is not None:
            rate_limits["maxDispatchesPerSecond"] = config.max_dispatches_per_second
        if config.max_concurrent_dispatches is not None:
            rate_limits["maxConcurrentDispatches"] = config.max_concurrent_dispatches
        return {
            "retryConfig": {
                "maxAttempts": config.max_attempts,
                "minBackoff": _duration(config.min_backoff_seconds),
                "maxBackoff": _duration(config.max_backoff_seconds),
                "maxDoublings": config.max_doublings,
            },
            "rateLimits": rate_limits,
        }

    async def sync_queue_configuration(self) -> dict[QueueName, bool]:
        """PATCH every dispatcher queue with its retry/rate settings."""
        results: dict[QueueName, bool] = {}
        headers = await self._headers()
        for queue in QueueName:
            response = await self._client.patch(
                f"{CLOUD_TASKS_API}/{self.queue_path(queue)}",
                params={"updateMask": "retryConfig,rateLimits"},
                json=self.queue_settings(queue),
                headers=headers,
            )
            results[queue] = response.is_success
            if response.is_error:
                logger.error(
                    "Failed to update queue %s: HTTP %d %s",
                    queue.value,
                    response.status_code,
                    response.text,
                )
        logger.info(
            "Synced %d/%d dispatcher queue configs",
            sum(results.values()),
            len(results),
        )
        return results

    async def close(self):
        await self._client.aclose()
