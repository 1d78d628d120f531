"""Sync health summary for the admin dashboard."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from src.sync.store import StateStore
from src.sync.types import BreakerState, SyncOutcome, TokenStatus, utc_now


@dataclass
class SyncHealthSummary:
    """Aggregates over breakers, token health and the last 24h of metrics.

    Attributes:
        open_breakers:    Breakers currently open or half-open.
        invalid_tokens:   Token records that are expired or revoked.
        total_syncs:      Metrics recorded in the window (skips included).
        successful_syncs: Metrics with result=success.
        failed_syncs:     Metrics with result=failure.
        skipped_syncs:    Metrics with result=skipped.
        success_rate:     successes / (successes + failures), 1.0 when idle.
        api_calls_made:   Sum over the window.
        api_calls_saved:  Sum over the window.
        skip_reasons:     Count per skip reason.
    """

    open_breakers: int = 0
    invalid_tokens: int = 0
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    skipped_syncs: int = 0
    success_rate: float = 1.0
    api_calls_made: int = 0
    api_calls_saved: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)


async def build_sync_health_summary(
    store: StateStore,
    window: timedelta = timedelta(hours=24),
    clock: Callable[[], datetime] = utc_now,
) -> SyncHealthSummary:
    breakers = await store.list_breakers()
    tokens = await store.list_token_health([TokenStatus.EXPIRED, TokenStatus.REVOKED])
    metrics = await store.list_metrics(clock() - window)

    results = Counter(m.result for m in metrics)
    attempted = results[SyncOutcome.SUCCESS] + results[SyncOutcome.FAILURE]
    return SyncHealthSummary(
        open_breakers=sum(1 for b in breakers if b.state != BreakerState.CLOSED),
        invalid_tokens=len(tokens),
        total_syncs=len(metrics),
        successful_syncs=results[SyncOutcome.SUCCESS],
        failed_syncs=results[SyncOutcome.FAILURE],
        skipped_syncs=results[SyncOutcome.SKIPPED],
        success_rate=(results[SyncOutcome.SUCCESS] / attempted) if attempted else 1.0,
        api_calls_made=sum(m.api_calls_made for m in metrics),
        api_calls_saved=sum(m.api_calls_saved for m in metrics),
        skip_reasons=dict(Counter(m.skip_reason.value for m in metrics if m.skip_reason)),
    )
