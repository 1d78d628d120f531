"""Sync resilience layer.

Core modules:
    types              — Canonical records and enums
    store              — StateStore ABC and the in-memory implementation
    pg_store           — Postgres StateStore / CredentialStore (asyncpg)
    collaborators      — External collaborator interfaces
    circuit_breaker    — Per-user, per-integration circuit breakers
    token_health       — OAuth token health and proactive refresh
    adaptive_scheduler — Adaptive per-user sync intervals
    webhook_health     — Push channel lifecycle and silence detection
    orchestrator       — Guarded sync execution and bookkeeping
    health_report      — Sync health summary for admins
"""
