"""Queue identifiers, per-queue retry/rate configuration, and job records.

Both dispatch backends read the same ``QueueConfig`` table: the worker
backend applies it locally, the push backend renders it into the managed
dispatcher's ``retryConfig``/``rateLimits``.

Retry delay for retry ``k`` (0-based), with ``d = max_doublings``::

    k <= d : min_backoff * 2**k
    k >  d : min_backoff * 2**d * (k - d + 1)

always capped at ``max_backoff``.  With min=10s, d=3: 10, 20, 40, 80, 160,
240, 320, ...

Per-queue values can be overridden from a YAML file (``QUEUE_OVERRIDES_PATH``)::

    calendar-sync:
      max_attempts: 5
      max_dispatches_per_second: 2
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from src.errors import (
    ConfigurationError,
    ConfigValidationError,
    InvalidSchedule,
    UnknownQueue,
)
from src.sync.types import utc_now

logger = logging.getLogger("syncguard.jobs.queues")

MAX_SCHEDULE_HORIZON = timedelta(days=30)
# Tolerated lag between computing a schedule time and validating it.
SCHEDULE_SKEW = timedelta(seconds=5)


class QueueName(str, Enum):
    TOKEN_REFRESH = "token-refresh"
    CALENDAR_SYNC = "calendar-sync"
    CONTACTS_SYNC = "contacts-sync"
    ADAPTIVE_SYNC = "adaptive-sync"
    WEBHOOK_RENEWAL = "webhook-renewal"
    SUGGESTION_REGENERATION = "suggestion-regeneration"
    BATCH_NOTIFICATIONS = "batch-notifications"
    SUGGESTION_GENERATION = "suggestion-generation"
    WEBHOOK_HEALTH_CHECK = "webhook-health-check"
    NOTIFICATION_REMINDER = "notification-reminder"
    TOKEN_HEALTH_REMINDER = "token-health-reminder"


def parse_queue_name(name: str) -> QueueName:
    """Map an external queue/job name onto the closed enumeration.

    Raises:
        UnknownQueue: If the name is not a known queue.
    """
    try:
        return QueueName(name)
    except ValueError:
        raise UnknownQueue(name) from None


@dataclass(frozen=True)
class QueueConfig:
    """Retry and rate configuration for one queue.

    Attributes:
        max_attempts:              Total attempts including the first.
        min_backoff_seconds:       Delay before the first retry.
        max_backoff_seconds:       Upper bound on any retry delay.
        max_doublings:             Retries over which the delay doubles before
                                   growing linearly.
        max_dispatches_per_second: Push dispatcher rate limit (None = provider default).
        max_concurrent_dispatches: Push dispatcher concurrency (None = provider default).
        worker_concurrency:        Concurrent jobs per worker process.
        attempt_timeout_seconds:   Per-attempt timeout enforced by the worker.
    """

    max_attempts: int
    min_backoff_seconds: float
    max_backoff_seconds: float
    max_doublings: int
    max_dispatches_per_second: float | None = None
    max_concurrent_dispatches: int | None = None
    worker_concurrency: int = 1
    attempt_timeout_seconds: float = 300

    def retry_delay(self, retry_index: int) -> float:
        """Seconds to wait before retry ``retry_index`` (0 = first retry)."""
        k = max(retry_index, 0)
        d = self.max_doublings
        if k <= d:
            delay = self.min_backoff_seconds * (2 ** k)
        else:
            delay = self.min_backoff_seconds * (2 ** d) * (k - d + 1)
        return min(delay, self.max_backoff_seconds)

    def problems(self) -> list[str]:
        errors = []
        if self.max_attempts < 1:
            errors.append("max_attempts must be >= 1")
        if self.min_backoff_seconds < 0:
            errors.append("min_backoff_seconds must be >= 0")
        if self.max_backoff_seconds < self.min_backoff_seconds:
            errors.append("max_backoff_seconds must be >= min_backoff_seconds")
        if self.max_doublings < 0:
            errors.append("max_doublings must be >= 0")
        if self.max_dispatches_per_second is not None and self.max_dispatches_per_second <= 0:
            errors.append("max_dispatches_per_second must be > 0")
        if self.max_concurrent_dispatches is not None and self.max_concurrent_dispatches < 1:
            errors.append("max_concurrent_dispatches must be >= 1")
        if self.worker_concurrency < 1:
            errors.append("worker_concurrency must be >= 1")
        if self.attempt_timeout_seconds <= 0:
            errors.append("attempt_timeout_seconds must be > 0")
        return errors


# API-bound queues run one job at a time per worker; notification queues are
# light and run wider.
DEFAULT_QUEUE_CONFIGS: dict[QueueName, QueueConfig] = {
    QueueName.TOKEN_REFRESH: QueueConfig(5, 60, 3600, 3, 10, 5, 1, 600),
    QueueName.CALENDAR_SYNC: QueueConfig(3, 60, 3600, 2, 5, 5, 1, 300),
    QueueName.CONTACTS_SYNC: QueueConfig(3, 60, 3600, 2, 5, 5, 1, 600),
    QueueName.ADAPTIVE_SYNC: QueueConfig(3, 30, 600, 3, 1, 1, 1, 600),
    QueueName.WEBHOOK_RENEWAL: QueueConfig(3, 60, 3600, 3, 1, 1, 1, 600),
    QueueName.SUGGESTION_REGENERATION: QueueConfig(3, 10, 300, 3, 10, 10, 1, 300),
    QueueName.BATCH_NOTIFICATIONS: QueueConfig(3, 2, 60, 4, 50, 20, 5, 120),
    QueueName.SUGGESTION_GENERATION: QueueConfig(3, 10, 300, 3, 10, 10, 1, 300),
    QueueName.WEBHOOK_HEALTH_CHECK: QueueConfig(3, 60, 3600, 2, 1, 1, 1, 900),
    QueueName.NOTIFICATION_REMINDER: QueueConfig(3, 2, 60, 4, 50, 20, 5, 120),
    QueueName.TOKEN_HEALTH_REMINDER: QueueConfig(3, 60, 1800, 2, 10, 5, 1, 300),
}

_missing = set(QueueName) - set(DEFAULT_QUEUE_CONFIGS)
if _missing:
    raise ConfigurationError(
        f"No default config for queues: {sorted(q.value for q in _missing)}"
    )


# ---------------------------------------------------------------------------
# YAML overrides
# ---------------------------------------------------------------------------

_OVERRIDABLE = {f.name: f for f in fields(QueueConfig)}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"Queue override file not found: {path}")
    with path.open(encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def apply_queue_overrides(
    raw: dict[str, Any],
    base: dict[QueueName, QueueConfig] | None = None,
) -> dict[QueueName, QueueConfig]:
    """Merge per-queue overrides onto the defaults.

    Every problem is collected before raising so one run reports them all.

    Raises:
        ConfigValidationError: If any queue name, key, or value is invalid.
    """
    configs = dict(base or DEFAULT_QUEUE_CONFIGS)
    errors: list[str] = []

    if not isinstance(raw, dict):
        raise ConfigValidationError("Queue overrides must be a mapping of queue → settings")

    for name, overrides in raw.items():
        try:
            queue = parse_queue_name(str(name))
        except UnknownQueue:
            errors.append(f"Unknown queue '{name}'")
            continue
        if not isinstance(overrides, dict):
            errors.append(f"{name} must be a mapping of setting → value")
            continue

        changes: dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in _OVERRIDABLE:
                errors.append(f"{name}.{key} is not a queue setting")
                continue
            if value is not None and (
                isinstance(value, bool) or not isinstance(value, (int, float))
            ):
                errors.append(f"{name}.{key} must be a number, got {value!r}")
                continue
            changes[key] = value

        if not changes:
            continue
        candidate = replace(configs[queue], **changes)
        problems = candidate.problems()
        errors.extend(f"{name}: {p}" for p in problems)
        if not problems:
            configs[queue] = candidate

    if errors:
        raise ConfigValidationError(
            f"Queue overrides have {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )
    return configs


def load_queue_configs(path: str | Path | None = None) -> dict[QueueName, QueueConfig]:
    """Return the default table, with overrides from ``path`` when given."""
    if path is None:
        return dict(DEFAULT_QUEUE_CONFIGS)
    configs = apply_queue_overrides(_load_yaml(Path(path)))
    logger.info("Loaded queue overrides from %s", path)
    return configs


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@dataclass
class JobOptions:
    """Per-enqueue options.

    ``delay_seconds`` and ``schedule_time`` are mutually exclusive.
    ``job_id`` makes the enqueue idempotent while a prior job with the same
    id is still in flight.
    """

    delay_seconds: float | None = None
    schedule_time: datetime | None = None
    max_attempts: int | None = None
    job_id: str | None = None


@dataclass
class JobHandle:
    job_id: str
    queue_name: QueueName
    idempotency_key: str
    schedule_time: datetime | None = None
    deduplicated: bool = False


@dataclass
class Job:
    """A unit of work owned by the dispatch backend.

    Attributes:
        id:              Job id (deterministic for per-user jobs).
        queue:           Queue the job belongs to.
        payload:         JSON-serializable handler input.
        idempotency_key: Key checked before any side effect.
        attempt:         Attempts already made.
        max_attempts:    Attempts allowed in total.
        schedule_time:   Earliest time the job may run.
        created_at:      When the job was enqueued.
        last_error:      Error message from the latest failed attempt.
    """

    id: str
    queue: QueueName
    payload: dict[str, Any]
    idempotency_key: str
    max_attempts: int
    attempt: int = 0
    schedule_time: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["queue"] = self.queue.value
        data["schedule_time"] = self.schedule_time.isoformat() if self.schedule_time else None
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            queue=QueueName(data["queue"]),
            payload=data["payload"],
            idempotency_key=data["idempotency_key"],
            max_attempts=data["max_attempts"],
            attempt=data.get("attempt", 0),
            schedule_time=(
                datetime.fromisoformat(data["schedule_time"])
                if data.get("schedule_time")
                else None
            ),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_error=data.get("last_error"),
        )


def new_job_id() -> str:
    return uuid.uuid4().hex


def per_user_job_id(queue: QueueName, user_id: str) -> str:
    """Deterministic id so a repeat trigger for the same user is absorbed."""
    return f"{queue.value}-{user_id}"


def webhook_sync_job_id(user_id: str, notified_at: datetime) -> str:
    """One calendar-sync job per push notification."""
    stamp = int(notified_at.timestamp() * 1000)
    return f"{per_user_job_id(QueueName.CALENDAR_SYNC, user_id)}-{stamp}"


def webhook_sync_lock(user_id: str) -> str:
    """Lock held from a notification-triggered enqueue until that sync finishes."""
    return f"webhook-sync:{user_id}"


def resolve_schedule_time(
    options: JobOptions, now: datetime | None = None
) -> datetime | None:
    """Turn ``delay_seconds``/``schedule_time`` into a validated absolute time.

    Raises:
        InvalidSchedule: If both are given, or the time is outside [now, now + 30 days].
    """
    now = now or utc_now()
    if options.delay_seconds is not None and options.schedule_time is not None:
        raise InvalidSchedule("Pass either delay_seconds or schedule_time, not both")
    if options.delay_seconds is not None:
        if options.delay_seconds < 0:
            raise InvalidSchedule("delay_seconds must be >= 0")
        target = now + timedelta(seconds=options.delay_seconds)
    elif options.schedule_time is not None:
        target = options.schedule_time
    else:
        return None

    if target.tzinfo is None:
        raise InvalidSchedule("schedule_time must be timezone-aware")
    if target < now - SCHEDULE_SKEW:
        raise InvalidSchedule(f"schedule_time {target.isoformat()} is in the past")
    if target > now + MAX_SCHEDULE_HORIZON:
        raise InvalidSchedule(
            f"schedule_time {target.isoformat()} is more than 30 days ahead"
        )
    return target
