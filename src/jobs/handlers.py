"""Job handlers, one per queue.

Every handler takes the job payload (wire format, camelCase keys) and returns
a JSON-serializable result.  Handlers signal retryable problems by raising
(``TransientJobError`` or any non-configuration exception) and permanent
ones with ``ConfigurationError``.

``build_handler_table`` maps every ``QueueName`` to a handler and refuses to
build a partial table.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from src.errors import ConfigurationError, TransientJobError
from src.jobs.queues import JobOptions, QueueName, per_user_job_id, webhook_sync_lock
from src.jobs.worker import JobHandler
from src.sync.orchestrator import SyncJobRequest
from src.sync.types import IntegrationType, SyncType, utc_now

if TYPE_CHECKING:
    from src.jobs.runtime import JobRuntime

logger = logging.getLogger("syncguard.jobs.handlers")

SYNC_QUEUE_FOR: dict[IntegrationType, QueueName] = {
    IntegrationType.GOOGLE_CALENDAR: QueueName.CALENDAR_SYNC,
    IntegrationType.GOOGLE_CONTACTS: QueueName.CONTACTS_SYNC,
}


def _require(payload: dict[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value in (None, ""):
        raise ConfigurationError(f"Job payload is missing '{key}'")
    return value


def _integration(payload: dict[str, Any]) -> IntegrationType:
    raw = _require(payload, "integration")
    try:
        return IntegrationType(raw)
    except ValueError:
        raise ConfigurationError(f"Unknown integration {raw!r}") from None


def _sync_type(payload: dict[str, Any]) -> SyncType:
    raw = payload.get("syncType", SyncType.INCREMENTAL.value)
    try:
        return SyncType(raw)
    except ValueError:
        raise ConfigurationError(f"Unknown sync type {raw!r}") from None


class JobHandlers:
    def __init__(self, runtime: "JobRuntime") -> None:
        self.rt = runtime

    # ── Sync ──

    async def _sync(self, integration: IntegrationType, payload: dict) -> dict:
        sync_type = _sync_type(payload)
        request = SyncJobRequest(
            user_id=_require(payload, "userId"),
            integration=integration,
            sync_type=sync_type,
            bypass_circuit_breaker=bool(
                payload.get("bypassCircuitBreaker", sync_type == SyncType.MANUAL)
            ),
        )
        result = await self.rt.orchestrator.execute_sync_job(request)
        if result.retryable:
            raise TransientJobError(result.error or "Sync failed")
        return result.to_dict()

    async def calendar_sync(self, payload: dict) -> dict:
        try:
            return await self._sync(IntegrationType.GOOGLE_CALENDAR, payload)
        finally:
            user_id = payload.get("userId")
            if user_id and payload.get("syncType") == SyncType.WEBHOOK_TRIGGERED.value:
                # Lets the next notification for this user enqueue a sync.
                await self.rt.idempotency.release_lock(webhook_sync_lock(user_id))

    async def contacts_sync(self, payload: dict) -> dict:
        return await self._sync(IntegrationType.GOOGLE_CONTACTS, payload)

    async def adaptive_sync(self, payload: dict) -> dict:
        """Fan out one per-user sync job for every due user of an integration."""
        integration = _integration(payload)
        queue = SYNC_QUEUE_FOR[integration]
        # The window keeps each round's per-user payload (and key) distinct.
        window = payload.get("window") or utc_now().isoformat()
        users = await self.rt.scheduler.get_users_due_for_sync(integration)
        enqueued = deduplicated = failed = 0
        for user_id in users:
            try:
                handle = await self.rt.backend.enqueue(
                    queue,
                    {
                        "userId": user_id,
                        "syncType": SyncType.INCREMENTAL.value,
                        "window": window,
                    },
                    JobOptions(job_id=per_user_job_id(queue, user_id)),
                )
            except Exception:
                logger.exception("Could not enqueue %s for %s", queue.value, user_id)
                failed += 1
                continue
            if handle.deduplicated:
                deduplicated += 1
            else:
                enqueued += 1
        logger.info(
            "Adaptive sync %s: due=%d enqueued=%d deduplicated=%d failed=%d",
            integration.value,
            len(users),
            enqueued,
            deduplicated,
            failed,
        )
        return {
            "integration": integration.value,
            "due": len(users),
            "enqueued": enqueued,
            "deduplicated": deduplicated,
            "failed": failed,
        }

    # ── Tokens ──

    async def token_refresh(self, payload: dict) -> dict:
        report = await self.rt.tokens.refresh_expiring_tokens()
        return {
            "checked": report.checked,
            "refreshed": report.refreshed,
            "failed": report.failed,
            "alert": report.alert,
        }

    async def token_health_reminder(self, payload: dict) -> dict:
        hours = self.rt.settings.token_reminder_after_hours
        records = await self.rt.tokens.get_tokens_needing_reminder(timedelta(hours=hours))
        sent = failed = 0
        for record in records:
            try:
                await self.rt.collaborators.notifier.send(
                    record.user_id,
                    "token_reauth_reminder",
                    {
                        "integration": record.integration_type.value,
                        "status": record.status.value,
                    },
                )
                sent += 1
            except ConfigurationError:
                raise
            except Exception:
                logger.exception("Reminder failed for %s", record.user_id)
                failed += 1
        return {"candidates": len(records), "sent": sent, "failed": failed}

    # ── Webhooks ──

    async def webhook_renewal(self, payload: dict) -> dict:
        report = await self.rt.webhooks.renew_expiring_webhooks()
        return {"checked": report.checked, "renewed": report.renewed, "failed": report.failed}

    async def webhook_health_check(self, payload: dict) -> dict:
        report = await self.rt.webhooks.run_health_check()
        return {
            "checked": report.checked,
            "stale": report.stale,
            "reregistered": report.reregistered,
            "failed": report.failed,
            "expiring": report.expiring,
            "alert": report.alert,
        }

    # ── Suggestions and notifications ──

    async def suggestion_generation(self, payload: dict) -> dict:
        user_id = _require(payload, "userId")
        count = await self.rt.collaborators.suggestions.generate(user_id, payload)
        return {"userId": user_id, "generated": count}

    async def suggestion_regeneration(self, payload: dict) -> dict:
        user_id = _require(payload, "userId")
        count = await self.rt.collaborators.suggestions.regenerate(user_id, payload)
        return {"userId": user_id, "generated": count}

    async def notification_reminder(self, payload: dict) -> dict:
        user_id = _require(payload, "userId")
        await self.rt.collaborators.notifier.send(
            user_id, _require(payload, "template"), payload.get("data") or {}
        )
        return {"userId": user_id, "sent": 1}

    async def batch_notifications(self, payload: dict) -> dict:
        template = _require(payload, "template")
        user_ids = _require(payload, "userIds")
        sent = failed = 0
        for user_id in user_ids:
            try:
                await self.rt.collaborators.notifier.send(
                    user_id, template, payload.get("data") or {}
                )
                sent += 1
            except ConfigurationError:
                raise
            except Exception:
                logger.exception("Notification to %s failed", user_id)
                failed += 1
        if user_ids and sent == 0:
            raise TransientJobError(f"All {failed} notifications failed")
        return {"sent": sent, "failed": failed}


def build_handler_table(runtime: "JobRuntime") -> dict[QueueName, JobHandler]:
    h = JobHandlers(runtime)
    table: dict[QueueName, JobHandler] = {
        QueueName.TOKEN_REFRESH: h.token_refresh,
        QueueName.CALENDAR_SYNC: h.calendar_sync,
        QueueName.CONTACTS_SYNC: h.contacts_sync,
        QueueName.ADAPTIVE_SYNC: h.adaptive_sync,
        QueueName.WEBHOOK_RENEWAL: h.webhook_renewal,
        QueueName.SUGGESTION_REGENERATION: h.suggestion_regeneration,
        QueueName.BATCH_NOTIFICATIONS: h.batch_notifications,
        QueueName.SUGGESTION_GENERATION: h.suggestion_generation,
        QueueName.WEBHOOK_HEALTH_CHECK: h.webhook_health_check,
        QueueName.NOTIFICATION_REMINDER: h.notification_reminder,
        QueueName.TOKEN_HEALTH_REMINDER: h.token_health_reminder,
    }
    missing = set(QueueName) - set(table)
    if missing:
        raise ConfigurationError(f"No handler for queues: {sorted(q.value for q in missing)}")
    return table
