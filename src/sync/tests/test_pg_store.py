"""Tests for the Postgres state store query building and row mapping.

The database is an ``AsyncMock``; rows are plain dicts, which index like
``asyncpg.Record``.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.sync.pg_store import (
    SCHEMA_PATH,
    UPSERT_BREAKER,
    PostgresCredentialStore,
    PostgresStateStore,
    build_upsert_query,
)
from src.sync.tests.conftest import CALENDAR, T0
from src.sync.types import BreakerState, CircuitBreakerRecord, OAuthTokens


def _db() -> AsyncMock:
    db = AsyncMock()
    db.fetchrow.return_value = None
    db.fetch.return_value = []
    return db


class TestBuildUpsertQuery:
    def test_updates_non_key_columns(self):
        sql = build_upsert_query("t", ["a", "b", "c"], ["a"])
        assert sql == (
            "INSERT INTO t (a, b, c) VALUES ($1, $2, $3) "
            "ON CONFLICT (a) DO UPDATE SET b = EXCLUDED.b, c = EXCLUDED.c, "
            "updated_at = NOW()"
        )

    def test_key_only_table_does_nothing_on_conflict(self):
        sql = build_upsert_query("t", ["a"], ["a"])
        assert sql.endswith("ON CONFLICT (a) DO NOTHING")

    def test_breaker_upsert_keyed_by_user_and_integration(self):
        assert "ON CONFLICT (user_id, integration_type)" in UPSERT_BREAKER


def test_schema_file_defines_every_table():
    ddl = SCHEMA_PATH.read_text()
    for table in (
        "circuit_breaker_state",
        "token_health",
        "sync_schedule",
        "calendar_webhook_subscriptions",
        "webhook_notifications",
        "sync_metrics",
        "oauth_tokens",
    ):
        assert f"CREATE TABLE IF NOT EXISTS {table}" in ddl


class TestPostgresStateStore:
    @pytest.mark.asyncio
    async def test_save_breaker_passes_enum_values(self):
        db = _db()
        store = PostgresStateStore(db)
        record = CircuitBreakerRecord(
            "u1", CALENDAR, BreakerState.OPEN, 5, "HTTP 500", T0, T0, T0
        )

        await store.save_breaker(record)

        args = db.execute.await_args.args
        assert args[0] == UPSERT_BREAKER
        assert args[1:4] == ("u1", "google_calendar", "open")

    @pytest.mark.asyncio
    async def test_get_breaker_maps_row(self):
        db = _db()
        db.fetchrow.return_value = {
            "user_id": "u1",
            "integration_type": "google_calendar",
            "state": "half_open",
            "failure_count": 5,
            "last_failure_reason": "HTTP 500",
            "last_failure_at": T0,
            "opened_at": T0,
            "next_retry_at": T0,
        }

        record = await PostgresStateStore(db).get_breaker("u1", CALENDAR)

        assert record.state == BreakerState.HALF_OPEN
        assert record.integration_type == CALENDAR

    @pytest.mark.asyncio
    async def test_claim_trial_reports_update_result(self):
        db = _db()
        store = PostgresStateStore(db)

        db.fetchval.return_value = "u1"
        assert await store.claim_breaker_trial("u1", CALENDAR, T0, T0)
        db.fetchval.return_value = None
        assert not await store.claim_breaker_trial("u1", CALENDAR, T0, T0)

    @pytest.mark.asyncio
    async def test_ping_is_select_one(self):
        db = _db()
        db.fetchval.return_value = 1

        assert await PostgresStateStore(db).ping()
        db.fetchval.assert_awaited_once_with("SELECT 1")
        db.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_breaker_is_none(self):
        assert await PostgresStateStore(_db()).get_breaker("u1", CALENDAR) is None


@pytest.mark.asyncio
async def test_credentials_round_trip_through_row():
    db = _db()
    store = PostgresCredentialStore(db)
    tokens = OAuthTokens("a", "r", T0, "Bearer", ["calendar"])

    await store.save_credentials("u1", CALENDAR, tokens)
    args = db.execute.await_args.args
    assert args[1:3] == ("u1", "google_calendar")

    db.fetchrow.return_value = {
        "access_token": "a",
        "refresh_token": "r",
        "expires_at": T0,
        "token_type": "Bearer",
        "scope": ["calendar"],
    }
    assert await store.get_credentials("u1", CALENDAR) == tokens
