"""Canonical records for the sync resilience layer.

Every store, monitor and the orchestrator speak in these types.  The keyed
records (breaker, token health, schedule) have exactly one live instance per
``(user_id, integration_type)``; ``SyncMetric`` and ``WebhookNotification``
are append-only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class IntegrationType(str, Enum):
    GOOGLE_CALENDAR = "google_calendar"
    GOOGLE_CONTACTS = "google_contacts"


class SyncType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    WEBHOOK_TRIGGERED = "webhook_triggered"
    MANUAL = "manual"
    INITIAL = "initial"


class SyncOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"
    INVALID_TOKEN = "invalid_token"
    NOT_DUE = "not_due"


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class TokenStatus(str, Enum):
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    REVOKED = "revoked"

    @property
    def usable(self) -> bool:
        return self in (TokenStatus.VALID, TokenStatus.EXPIRING_SOON)


# ---------------------------------------------------------------------------
# OAuth credentials
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """OAuth token pair as held by the credential store.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    UTC datetime when the access_token expires.
        token_type:    Token type, typically "Bearer".
        scope:         Granted OAuth scopes.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Keyed state records
# ---------------------------------------------------------------------------


@dataclass
class CircuitBreakerRecord:
    """Failure state machine for one user + integration.

    Attributes:
        user_id:             Internal user id.
        integration_type:    Integration the breaker guards.
        state:               closed | open | half_open.
        failure_count:       Consecutive failures (reset to 0 on success).
        last_failure_reason: Error message from the last failed attempt.
        last_failure_at:     When the last failure was recorded.
        opened_at:           When the breaker last opened.
        next_retry_at:       Open: when a trial becomes allowed.
                             Half-open: when the current trial lease expires.
    """

    user_id: str
    integration_type: IntegrationType
    state: BreakerState = BreakerState.CLOSED
    failure_count: int = 0
    last_failure_reason: str | None = None
    last_failure_at: datetime | None = None
    opened_at: datetime | None = None
    next_retry_at: datetime | None = None


@dataclass
class TokenHealthRecord:
    user_id: str
    integration_type: IntegrationType
    status: TokenStatus
    expires_at: datetime | None = None
    last_checked: datetime = field(default_factory=utc_now)
    error_message: str | None = None


@dataclass
class SyncScheduleRecord:
    """Adaptive polling schedule for one user + integration.

    Attributes:
        current_interval_hours: Interval applied after the next completed sync.
        default_interval_hours: Baseline restored by webhook/polling switches.
        next_due_at:            The user is due once ``now >= next_due_at``.
        onboarding_until:       Users inside this window are always due.
        consecutive_failures:   Drives the failure backoff on ``next_due_at``.
    """

    user_id: str
    integration_type: IntegrationType
    current_interval_hours: float
    default_interval_hours: float
    next_due_at: datetime
    last_sync_at: datetime | None = None
    last_change_detected_at: datetime | None = None
    onboarding_until: datetime | None = None
    consecutive_failures: int = 0


@dataclass
class WebhookSubscription:
    user_id: str
    channel_id: str
    resource_id: str
    expiration: datetime
    token: str
    resource_uri: str = ""
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class WebhookNotification:
    """One received push notification (append-only receipt log)."""

    user_id: str
    channel_id: str
    resource_id: str
    resource_state: str
    result: str = "success"  # success | failure | ignored
    error_message: str | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class SyncMetric:
    """Immutable audit record of one orchestrated sync attempt."""

    user_id: str
    integration_type: IntegrationType
    sync_type: SyncType
    result: SyncOutcome
    skip_reason: SkipReason | None = None
    items_processed: int = 0
    api_calls_made: int = 0
    api_calls_saved: int = 0
    duration_ms: int = 0
    error_message: str | None = None
    created_at: datetime = field(default_factory=utc_now)
