"""Liveness endpoint, public.

Checks the state store and the dispatch backend.  A failed check degrades
the status but still answers 200 so the process is not restarted for a
dependency outage.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Awaitable

from fastapi import APIRouter

from src.dependencies import Runtime
from src.jobs.queues import QueueName

router = APIRouter(tags=["system"])
logger = logging.getLogger("syncguard.health")


async def _check_dependency(name: str, check: Awaitable[object]) -> str:
    try:
        answer = await check
    except Exception as exc:
        logger.warning("Health check %s failed: %s", name, exc)
        return "unreachable"
    if answer is False:
        logger.warning("Health check %s got no answer", name)
        return "unreachable"
    return "connected"


@router.get("/health")
async def health_check(runtime: Runtime) -> dict:
    store = await _check_dependency("state store", runtime.store.ping())
    # The push backend has nothing to check and always reports connected.
    dispatch = await _check_dependency(
        "dispatch backend", runtime.backend.queue_counts(QueueName.TOKEN_REFRESH)
    )
    healthy = store == dispatch == "connected"
    return {
        "status": "healthy" if healthy else "degraded",
        "version": runtime.settings.app_version,
        "environment": runtime.settings.environment,
        "stateStore": store,
        "dispatch": {"backend": runtime.backend.name, "status": dispatch},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
