"""Calendar push notification receiver.

Google posts an empty body to the channel address with the channel state in
``X-Goog-*`` headers.  A valid ``exists`` notification enqueues a
``webhook_triggered`` calendar sync with its own job id.  The enqueue first
takes the user's webhook-sync lock, which the calendar-sync handler releases
when the run finishes, so a burst of notifications while a sync is pending or
running collapses into one job, and a change arriving after it is synced
again.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Header, HTTPException

from src.dependencies import Runtime
from src.errors import WebhookValidationError
from src.jobs.queues import (
    JobOptions,
    QueueName,
    webhook_sync_job_id,
    webhook_sync_lock,
)
from src.sync.types import SyncType, utc_now

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger("syncguard.routers.webhooks")


@router.post("/calendar")
async def calendar_notification(
    runtime: Runtime,
    channel_id: str = Header(..., alias="X-Goog-Channel-ID"),
    resource_id: str = Header(..., alias="X-Goog-Resource-ID"),
    resource_state: str = Header(..., alias="X-Goog-Resource-State"),
    channel_token: str | None = Header(None, alias="X-Goog-Channel-Token"),
) -> dict:
    try:
        outcome = await runtime.webhooks.handle_notification(
            channel_id, resource_id, resource_state, channel_token
        )
    except WebhookValidationError as exc:
        logger.warning("Rejected calendar notification: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if not outcome.trigger_sync:
        return {"received": True, "syncQueued": False}

    user_id = outcome.user_id
    lock = webhook_sync_lock(user_id)
    if not await runtime.idempotency.acquire_lock(
        lock, runtime.settings.webhook_sync_lock_seconds
    ):
        logger.info("Calendar change for %s; sync already in flight", user_id)
        return {"received": True, "syncQueued": False}

    notified_at = utc_now()
    payload = {
        "userId": user_id,
        "syncType": SyncType.WEBHOOK_TRIGGERED.value,
        "notifiedAt": notified_at.isoformat(),
    }
    try:
        handle = await runtime.backend.enqueue(
            QueueName.CALENDAR_SYNC,
            payload,
            JobOptions(job_id=webhook_sync_job_id(user_id, notified_at)),
        )
    except Exception:
        await runtime.idempotency.release_lock(lock)
        raise
    logger.info(
        "Calendar change for %s; sync %s",
        user_id,
        "already pending" if handle.deduplicated else "queued",
    )
    return {"received": True, "syncQueued": not handle.deduplicated}
