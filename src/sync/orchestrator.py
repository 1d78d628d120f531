"""Sync orchestrator: the single entry point every sync job goes through.

Guard order is fixed and short-circuiting, cheapest first:

    1. circuit breaker   (skipped for manual syncs)
    2. token health
    3. adaptive schedule (skipped for manual, initial and webhook-triggered syncs)

Only when all three pass is the integration's ``SyncRoutine`` called.  After
the call the orchestrator records a ``SyncMetric``, reports the outcome to the
breaker, updates the schedule and, for auth errors, marks the token invalid.
Skips are recorded as metrics too but are never reported to the breaker.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from src.errors import ConfigurationError
from src.sync.adaptive_scheduler import AdaptiveSyncScheduler
from src.sync.circuit_breaker import CircuitBreakerRegistry
from src.sync.collaborators import Collaborators, SyncRoutineResult
from src.sync.store import StateStore
from src.sync.token_health import TokenHealthMonitor
from src.sync.types import (
    IntegrationType,
    OAuthTokens,
    SkipReason,
    SyncMetric,
    SyncOutcome,
    SyncType,
    utc_now,
)

logger = logging.getLogger("syncguard.sync.orchestrator")

AUTH_ERROR_PATTERN = re.compile(r"\b401\b|unauthorized|invalid_grant", re.IGNORECASE)
STATUS_RETENTION = timedelta(minutes=5)
# A provider notification or a first sync is due by definition.
DUE_CHECK_EXEMPT = frozenset({SyncType.WEBHOOK_TRIGGERED, SyncType.INITIAL})


def is_auth_error(message: str | None) -> bool:
    return bool(message) and AUTH_ERROR_PATTERN.search(message) is not None


@dataclass
class SyncJobRequest:
    """One request to sync a user's integration.

    Attributes:
        user_id:                Internal user id.
        integration:            Integration to sync.
        sync_type:              Why the sync runs (incremental, manual, ...).
        credentials:            Credentials to use; loaded from the credential
                                store when omitted.
        bypass_circuit_breaker: Skip the breaker and due-check (manual syncs).
    """

    user_id: str
    integration: IntegrationType
    sync_type: SyncType = SyncType.INCREMENTAL
    credentials: OAuthTokens | None = None
    bypass_circuit_breaker: bool = False


@dataclass
class SyncJobResult:
    user_id: str
    integration: IntegrationType
    sync_type: SyncType
    result: SyncOutcome
    skip_reason: SkipReason | None = None
    items_processed: int = 0
    api_calls_made: int = 0
    api_calls_saved: int = 0
    change_detected: bool = False
    duration_ms: int = 0
    error: str | None = None

    @property
    def retryable(self) -> bool:
        """Failures other than auth errors are worth another attempt."""
        return self.result == SyncOutcome.FAILURE and not is_auth_error(self.error)

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "integration": self.integration.value,
            "syncType": self.sync_type.value,
            "result": self.result.value,
            "skipReason": self.skip_reason.value if self.skip_reason else None,
            "itemsProcessed": self.items_processed,
            "apiCallsMade": self.api_calls_made,
            "apiCallsSaved": self.api_calls_saved,
            "changeDetected": self.change_detected,
            "durationMs": self.duration_ms,
            "error": self.error,
        }


@dataclass
class SyncStatus:
    """Last-run status for onboarding and settings screens."""

    state: str  # in_progress | completed | failed
    sync_type: SyncType
    started_at: datetime
    finished_at: datetime | None = None
    result: SyncJobResult | None = field(default=None, repr=False)


class SyncOrchestrator:
    def __init__(
        self,
        store: StateStore,
        breakers: CircuitBreakerRegistry,
        tokens: TokenHealthMonitor,
        scheduler: AdaptiveSyncScheduler,
        collaborators: Collaborators,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._breakers = breakers
        self._tokens = tokens
        self._scheduler = scheduler
        self._collaborators = collaborators
        self._clock = clock
        self._status: dict[tuple[str, IntegrationType], SyncStatus] = {}

    async def execute_sync_job(self, request: SyncJobRequest) -> SyncJobResult:
        """Run the guards, delegate the sync, and do the bookkeeping.

        Raises:
            ConfigurationError: If the integration has no sync routine wired in.
        """
        user_id, integration = request.user_id, request.integration
        key = (user_id, integration)
        started = time.monotonic()
        self._status[key] = SyncStatus("in_progress", request.sync_type, self._clock())

        try:
            result = await self._run(request, started)
        except Exception:
            self._finish(key, "failed", None)
            raise

        self._finish(
            key,
            "failed" if result.result == SyncOutcome.FAILURE else "completed",
            result,
        )
        return result

    async def _run(self, request: SyncJobRequest, started: float) -> SyncJobResult:
        user_id, integration = request.user_id, request.integration

        # 1. Circuit breaker
        if not request.bypass_circuit_breaker:
            if not await self._breakers.allow_request(user_id, integration):
                return await self._skip(request, SkipReason.CIRCUIT_BREAKER_OPEN, started)

        # 2. Token health
        credentials = request.credentials
        if credentials is None:
            credentials = await self._collaborators.credentials.get_credentials(
                user_id, integration
            )
        check = await self._tokens.check_for_sync(user_id, integration, credentials)
        if not check.usable or check.credentials is None:
            return await self._skip(
                request, SkipReason.INVALID_TOKEN, started, saved=1, error=check.error
            )

        # 3. Schedule
        if (
            not request.bypass_circuit_breaker
            and request.sync_type not in DUE_CHECK_EXEMPT
        ):
            if not await self._scheduler.is_due(user_id, integration):
                return await self._skip(request, SkipReason.NOT_DUE, started, saved=1)

        # 4. Delegate
        routine = self._collaborators.routine_for(integration)
        try:
            outcome = await routine.sync(user_id, check.credentials, request.sync_type)
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.exception("Sync routine raised for %s/%s", user_id, integration.value)
            outcome = SyncRoutineResult(error=str(exc) or type(exc).__name__)

        # 5. Bookkeeping
        success = outcome.error is None
        result = SyncJobResult(
            user_id=user_id,
            integration=integration,
            sync_type=request.sync_type,
            result=SyncOutcome.SUCCESS if success else SyncOutcome.FAILURE,
            items_processed=outcome.items_processed,
            api_calls_made=outcome.api_calls_made,
            api_calls_saved=outcome.api_calls_saved,
            change_detected=outcome.change_detected,
            duration_ms=_elapsed_ms(started),
            error=outcome.error,
        )
        await self._record_metric(result)
        breaker = await self._breakers.report_outcome(
            user_id, integration, success, outcome.error
        )
        if success:
            await self._scheduler.record_sync(
                user_id, integration, outcome.change_detected
            )
        else:
            await self._scheduler.record_failure(
                user_id, integration, breaker.failure_count
            )
            if is_auth_error(outcome.error):
                await self._tokens.mark_token_invalid(
                    user_id, integration, outcome.error or "unauthorized"
                )
            logger.warning(
                "Sync failed for %s/%s: %s", user_id, integration.value, outcome.error
            )
        return result

    async def _skip(
        self,
        request: SyncJobRequest,
        reason: SkipReason,
        started: float,
        saved: int = 0,
        error: str | None = None,
    ) -> SyncJobResult:
        result = SyncJobResult(
            user_id=request.user_id,
            integration=request.integration,
            sync_type=request.sync_type,
            result=SyncOutcome.SKIPPED,
            skip_reason=reason,
            api_calls_saved=saved,
            duration_ms=_elapsed_ms(started),
            error=error,
        )
        await self._record_metric(result)
        logger.debug(
            "Skipped %s/%s: %s", request.user_id, request.integration.value, reason.value
        )
        return result

    async def _record_metric(self, result: SyncJobResult) -> None:
        await self._store.record_metric(
            SyncMetric(
                user_id=result.user_id,
                integration_type=result.integration,
                sync_type=result.sync_type,
                result=result.result,
                skip_reason=result.skip_reason,
                items_processed=result.items_processed,
                api_calls_made=result.api_calls_made,
                api_calls_saved=result.api_calls_saved,
                duration_ms=result.duration_ms,
                error_message=result.error,
                created_at=self._clock(),
            )
        )

    # ------------------------------------------------------------------
    # Status tracking
    # ------------------------------------------------------------------

    def get_sync_status(
        self, user_id: str, integration: IntegrationType
    ) -> SyncStatus | None:
        """Status of the last run, kept for five minutes after it finished."""
        key = (user_id, integration)
        status = self._status.get(key)
        if status is None or self._expired(status):
            return None
        return status

    def _expired(self, status: SyncStatus) -> bool:
        return (
            status.finished_at is not None
            and self._clock() - status.finished_at > STATUS_RETENTION
        )

    def _finish(
        self,
        key: tuple[str, IntegrationType],
        state: str,
        result: SyncJobResult | None,
    ) -> None:
        status = self._status.get(key)
        if status is None:
            return
        status.state = state
        status.finished_at = self._clock()
        status.result = result
        for stale in [k for k, s in self._status.items() if self._expired(s)]:
            del self._status[stale]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
