"""Postgres implementation of StateStore (and CredentialStore) over asyncpg.

Keyed records are written with ``INSERT ... ON CONFLICT DO UPDATE`` so there
is exactly one row per ``(user_id, integration_type)``.  ``schema.sql`` next
to this module holds the DDL; ``ensure_schema()`` applies it.
"""

from __future__ import annotations

import logging
from pathlib import Path

import asyncpg

from src.services.database import Database
from src.sync.collaborators import CredentialStore
from src.sync.store import StateStore
from src.sync.types import (
    BreakerState,
    CircuitBreakerRecord,
    IntegrationType,
    OAuthTokens,
    SkipReason,
    SyncMetric,
    SyncOutcome,
    SyncScheduleRecord,
    SyncType,
    TokenHealthRecord,
    TokenStatus,
    WebhookNotification,
    WebhookSubscription,
)

logger = logging.getLogger("syncguard.sync.pg_store")

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
        update_set += ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )


_KEY = ["user_id", "integration_type"]

BREAKER_COLUMNS = [
    "user_id",
    "integration_type",
    "state",
    "failure_count",
    "last_failure_reason",
    "last_failure_at",
    "opened_at",
    "next_retry_at",
]
TOKEN_COLUMNS = [
    "user_id",
    "integration_type",
    "status",
    "expires_at",
    "last_checked",
    "error_message",
]
SCHEDULE_COLUMNS = [
    "user_id",
    "integration_type",
    "current_interval_hours",
    "default_interval_hours",
    "next_due_at",
    "last_sync_at",
    "last_change_detected_at",
    "onboarding_until",
    "consecutive_failures",
]
SUBSCRIPTION_COLUMNS = [
    "user_id",
    "channel_id",
    "resource_id",
    "expiration",
    "token",
    "resource_uri",
    "created_at",
]
CREDENTIAL_COLUMNS = [
    "user_id",
    "integration_type",
    "access_token",
    "refresh_token",
    "expires_at",
    "token_type",
    "scope",
]

UPSERT_BREAKER = build_upsert_query("circuit_breaker_state", BREAKER_COLUMNS, _KEY)
UPSERT_TOKEN = build_upsert_query("token_health", TOKEN_COLUMNS, _KEY)
UPSERT_SCHEDULE = build_upsert_query("sync_schedule", SCHEDULE_COLUMNS, _KEY)
UPSERT_SUBSCRIPTION = build_upsert_query(
    "calendar_webhook_subscriptions", SUBSCRIPTION_COLUMNS, ["user_id"]
)
UPSERT_CREDENTIALS = build_upsert_query("oauth_tokens", CREDENTIAL_COLUMNS, _KEY)


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _breaker(row: asyncpg.Record) -> CircuitBreakerRecord:
    return CircuitBreakerRecord(
        user_id=row["user_id"],
        integration_type=IntegrationType(row["integration_type"]),
        state=BreakerState(row["state"]),
        failure_count=row["failure_count"],
        last_failure_reason=row["last_failure_reason"],
        last_failure_at=row["last_failure_at"],
        opened_at=row["opened_at"],
        next_retry_at=row["next_retry_at"],
    )


def _token(row: asyncpg.Record) -> TokenHealthRecord:
    return TokenHealthRecord(
        user_id=row["user_id"],
        integration_type=IntegrationType(row["integration_type"]),
        status=TokenStatus(row["status"]),
        expires_at=row["expires_at"],
        last_checked=row["last_checked"],
        error_message=row["error_message"],
    )


def _schedule(row: asyncpg.Record) -> SyncScheduleRecord:
    return SyncScheduleRecord(
        user_id=row["user_id"],
        integration_type=IntegrationType(row["integration_type"]),
        current_interval_hours=row["current_interval_hours"],
        default_interval_hours=row["default_interval_hours"],
        next_due_at=row["next_due_at"],
        last_sync_at=row["last_sync_at"],
        last_change_detected_at=row["last_change_detected_at"],
        onboarding_until=row["onboarding_until"],
        consecutive_failures=row["consecutive_failures"],
    )


def _subscription(row: asyncpg.Record) -> WebhookSubscription:
    return WebhookSubscription(**{c: row[c] for c in SUBSCRIPTION_COLUMNS})


def _metric(row: asyncpg.Record) -> SyncMetric:
    return SyncMetric(
        user_id=row["user_id"],
        integration_type=IntegrationType(row["integration_type"]),
        sync_type=SyncType(row["sync_type"]),
        result=SyncOutcome(row["result"]),
        skip_reason=SkipReason(row["skip_reason"]) if row["skip_reason"] else None,
        items_processed=row["items_processed"],
        api_calls_made=row["api_calls_made"],
        api_calls_saved=row["api_calls_saved"],
        duration_ms=row["duration_ms"],
        error_message=row["error_message"],
        created_at=row["created_at"],
    )


class PostgresStateStore(StateStore):
    def __init__(self, db: Database) -> None:
        self._db = db

    async def ensure_schema(self) -> None:
        await self._db.run_script(SCHEMA_PATH)
        logger.info("State schema ensured")

    async def ping(self):
        return await self._db.fetchval("SELECT 1") == 1

    # ── Circuit breakers ──

    async def get_breaker(self, user_id, integration):
        row = await self._db.fetchrow(
            "SELECT * FROM circuit_breaker_state WHERE user_id = $1 AND integration_type = $2",
            user_id,
            integration.value,
        )
        return _breaker(row) if row else None

    async def save_breaker(self, record):
        await self._db.execute(
            UPSERT_BREAKER,
            record.user_id,
            record.integration_type.value,
            record.state.value,
            record.failure_count,
            record.last_failure_reason,
            record.last_failure_at,
            record.opened_at,
            record.next_retry_at,
        )

    async def claim_breaker_trial(self, user_id, integration, now, lease_until):
        claimed = await self._db.fetchval(
            """
            UPDATE circuit_breaker_state
               SET state = 'half_open', next_retry_at = $4, updated_at = NOW()
             WHERE user_id = $1 AND integration_type = $2
               AND state IN ('open', 'half_open')
               AND (next_retry_at IS NULL OR next_retry_at <= $3)
            RETURNING user_id
            """,
            user_id,
            integration.value,
            now,
            lease_until,
        )
        return claimed is not None

    async def list_breakers(self, state=None):
        if state is None:
            rows = await self._db.fetch("SELECT * FROM circuit_breaker_state")
        else:
            rows = await self._db.fetch(
                "SELECT * FROM circuit_breaker_state WHERE state = $1", state.value
            )
        return [_breaker(r) for r in rows]

    # ── Token health ──

    async def get_token_health(self, user_id, integration):
        row = await self._db.fetchrow(
            "SELECT * FROM token_health WHERE user_id = $1 AND integration_type = $2",
            user_id,
            integration.value,
        )
        return _token(row) if row else None

    async def save_token_health(self, record):
        await self._db.execute(
            UPSERT_TOKEN,
            record.user_id,
            record.integration_type.value,
            record.status.value,
            record.expires_at,
            record.last_checked,
            record.error_message,
        )

    async def list_tokens_for_refresh(self, expiring_before):
        rows = await self._db.fetch(
            """
            SELECT * FROM token_health
             WHERE status = 'expiring_soon'
                OR (status = 'valid' AND expires_at < $1)
             ORDER BY expires_at NULLS LAST
            """,
            expiring_before,
        )
        return [_token(r) for r in rows]

    async def list_token_health(self, statuses=None):
        if statuses is None:
            rows = await self._db.fetch("SELECT * FROM token_health")
        else:
            rows = await self._db.fetch(
                "SELECT * FROM token_health WHERE status = ANY($1::text[])",
                [s.value for s in statuses],
            )
        return [_token(r) for r in rows]

    async def delete_token_health(self, user_id, integration):
        await self._db.execute(
            "DELETE FROM token_health WHERE user_id = $1 AND integration_type = $2",
            user_id,
            integration.value,
        )

    # ── Schedules ──

    async def get_schedule(self, user_id, integration):
        row = await self._db.fetchrow(
            "SELECT * FROM sync_schedule WHERE user_id = $1 AND integration_type = $2",
            user_id,
            integration.value,
        )
        return _schedule(row) if row else None

    async def save_schedule(self, record):
        await self._db.execute(
            UPSERT_SCHEDULE,
            record.user_id,
            record.integration_type.value,
            record.current_interval_hours,
            record.default_interval_hours,
            record.next_due_at,
            record.last_sync_at,
            record.last_change_detected_at,
            record.onboarding_until,
            record.consecutive_failures,
        )

    async def list_due_users(self, integration, now):
        rows = await self._db.fetch(
            """
            SELECT user_id FROM sync_schedule
             WHERE integration_type = $1
               AND (next_due_at <= $2 OR onboarding_until > $2)
             ORDER BY next_due_at
            """,
            integration.value,
            now,
        )
        return [r["user_id"] for r in rows]

    async def delete_schedule(self, user_id, integration):
        await self._db.execute(
            "DELETE FROM sync_schedule WHERE user_id = $1 AND integration_type = $2",
            user_id,
            integration.value,
        )

    # ── Webhook subscriptions ──

    async def get_subscription(self, user_id):
        row = await self._db.fetchrow(
            "SELECT * FROM calendar_webhook_subscriptions WHERE user_id = $1", user_id
        )
        return _subscription(row) if row else None

    async def get_subscription_by_channel(self, channel_id, resource_id):
        row = await self._db.fetchrow(
            """
            SELECT * FROM calendar_webhook_subscriptions
             WHERE channel_id = $1 AND resource_id = $2
            """,
            channel_id,
            resource_id,
        )
        return _subscription(row) if row else None

    async def save_subscription(self, subscription):
        await self._db.execute(
            UPSERT_SUBSCRIPTION,
            *(getattr(subscription, c) for c in SUBSCRIPTION_COLUMNS),
        )

    async def delete_subscription(self, user_id):
        await self._db.execute(
            "DELETE FROM calendar_webhook_subscriptions WHERE user_id = $1", user_id
        )

    async def list_subscriptions(self):
        rows = await self._db.fetch(
            "SELECT * FROM calendar_webhook_subscriptions ORDER BY created_at DESC"
        )
        return [_subscription(r) for r in rows]

    async def record_notification(self, notification: WebhookNotification):
        await self._db.execute(
            """
            INSERT INTO webhook_notifications
                (user_id, channel_id, resource_id, resource_state, result,
                 error_message, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            notification.user_id,
            notification.channel_id,
            notification.resource_id,
            notification.resource_state,
            notification.result,
            notification.error_message,
            notification.created_at,
        )

    async def last_notification_at(self, user_id):
        return await self._db.fetchval(
            "SELECT MAX(created_at) FROM webhook_notifications WHERE user_id = $1",
            user_id,
        )

    # ── Metrics ──

    async def record_metric(self, metric):
        await self._db.execute(
            """
            INSERT INTO sync_metrics
                (user_id, integration_type, sync_type, result, skip_reason,
                 items_processed, api_calls_made, api_calls_saved, duration_ms,
                 error_message, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """,
            metric.user_id,
            metric.integration_type.value,
            metric.sync_type.value,
            metric.result.value,
            metric.skip_reason.value if metric.skip_reason else None,
            metric.items_processed,
            metric.api_calls_made,
            metric.api_calls_saved,
            metric.duration_ms,
            metric.error_message,
            metric.created_at,
        )

    async def list_metrics(self, since, integration=None):
        if integration is None:
            rows = await self._db.fetch(
                "SELECT * FROM sync_metrics WHERE created_at >= $1", since
            )
        else:
            rows = await self._db.fetch(
                """
                SELECT * FROM sync_metrics
                 WHERE created_at >= $1 AND integration_type = $2
                """,
                since,
                integration.value,
            )
        return [_metric(r) for r in rows]


class PostgresCredentialStore(CredentialStore):
    """Reads and writes the ``oauth_tokens`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get_credentials(self, user_id, integration):
        row = await self._db.fetchrow(
            "SELECT * FROM oauth_tokens WHERE user_id = $1 AND integration_type = $2",
            user_id,
            integration.value,
        )
        if row is None:
            return None
        return OAuthTokens(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            token_type=row["token_type"],
            scope=list(row["scope"] or []),
        )

    async def save_credentials(self, user_id, integration, tokens):
        await self._db.execute(
            UPSERT_CREDENTIALS,
            user_id,
            integration.value,
            tokens.access_token,
            tokens.refresh_token,
            tokens.expires_at,
            tokens.token_type,
            tokens.scope,
        )
