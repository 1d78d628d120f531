"""Job dispatch: queues, backends, handlers, and monitoring.

Core modules:
    queues        — Queue names, per-queue retry/rate config, job records
    backend       — DispatchBackend interface
    broker        — Redis and in-memory brokers for the worker backend
    worker        — Worker backend, workers and the worker pool
    push_backend  — Managed HTTP task dispatcher backend
    idempotency   — Idempotency keys and processed-key stores
    handlers      — One handler per queue
    monitoring    — Durations, failure rates and backlog alerts
    recurring     — Recurring job scheduler for the worker process
    runtime       — Composition root
"""
