"""Idempotency keys and the processed-key store.

A push dispatcher may deliver the same job more than once.  Every handler
invocation checks ``is_processed(key)`` before any side effect and marks the
key afterwards, caching the result so a duplicate delivery can return it.

Failure policy: the store is advisory.  If Redis is unavailable,
``is_processed`` answers False (fail open) and ``get_cached_result`` answers
None; writes are logged and dropped.  The orchestrator's own guards are the
second line of defence against duplicate side effects.

The store also holds short-lived named locks (``acquire_lock`` /
``release_lock``).  A lock expires on its own after its TTL, so a holder that
dies never blocks the name for longer than that.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import redis.asyncio as redis

logger = logging.getLogger("syncguard.jobs.idempotency")

DEFAULT_TTL_SECONDS = 24 * 60 * 60


def generate_key(job_name: str, payload: dict[str, Any]) -> str:
    """Deterministic key for a logical job.

    Args:
        job_name: Queue/job name.
        payload:  JSON-serializable job payload.

    Returns:
        SHA-256 hex digest of the canonical JSON of ``{job, payload}``.
    """
    canonical = json.dumps(
        {"job": job_name, "payload": payload},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


class IdempotencyStore(ABC):
    def __init__(self, default_ttl: int = DEFAULT_TTL_SECONDS) -> None:
        self.default_ttl = default_ttl

    @abstractmethod
    async def is_processed(self, key: str) -> bool: ...

    @abstractmethod
    async def mark_processed(self, key: str, ttl: int | None = None) -> None: ...

    @abstractmethod
    async def cache_result(self, key: str, result: Any, ttl: int | None = None) -> None: ...

    @abstractmethod
    async def get_cached_result(self, key: str) -> Any | None: ...

    @abstractmethod
    async def acquire_lock(self, name: str, ttl: int) -> bool:
        """Take ``name`` for ``ttl`` seconds. Returns False if it is already held."""

    @abstractmethod
    async def release_lock(self, name: str) -> None: ...

    async def close(self) -> None:
        pass


class RedisIdempotencyStore(IdempotencyStore):
    """Keys: ``{prefix}:idem:{key}`` (marker), ``{prefix}:idem-result:{key}`` (JSON)
    and ``{prefix}:lock:{name}``.
    """

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "syncguard",
        default_ttl: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        super().__init__(default_ttl)
        self._redis = client
        self._prefix = prefix

    def _marker(self, key: str) -> str:
        return f"{self._prefix}:idem:{key}"

    def _result(self, key: str) -> str:
        return f"{self._prefix}:idem-result:{key}"

    def _lock(self, name: str) -> str:
        return f"{self._prefix}:lock:{name}"

    async def is_processed(self, key: str) -> bool:
        try:
            return bool(await self._redis.exists(self._marker(key)))
        except redis.RedisError as exc:
            logger.warning("Idempotency check failed open for %s: %s", key[:12], exc)
            return False

    async def mark_processed(self, key: str, ttl: int | None = None) -> None:
        try:
            await self._redis.set(self._marker(key), "1", ex=ttl or self.default_ttl)
        except redis.RedisError as exc:
            logger.error("Failed to mark %s processed: %s", key[:12], exc)

    async def cache_result(self, key: str, result: Any, ttl: int | None = None) -> None:
        try:
            await self._redis.set(
                self._result(key),
                json.dumps(result, default=str),
                ex=ttl or self.default_ttl,
            )
        except (redis.RedisError, TypeError) as exc:
            logger.error("Failed to cache result for %s: %s", key[:12], exc)

    async def get_cached_result(self, key: str) -> Any | None:
        try:
            raw = await self._redis.get(self._result(key))
        except redis.RedisError as exc:
            logger.warning("Cached result lookup failed for %s: %s", key[:12], exc)
            return None
        return json.loads(raw) if raw is not None else None

    async def acquire_lock(self, name: str, ttl: int) -> bool:
        try:
            return bool(await self._redis.set(self._lock(name), "1", nx=True, ex=ttl))
        except redis.RedisError as exc:
            logger.warning("Lock %s acquired without Redis: %s", name, exc)
            return True

    async def release_lock(self, name: str) -> None:
        try:
            await self._redis.delete(self._lock(name))
        except redis.RedisError as exc:
            logger.error("Failed to release lock %s: %s", name, exc)


class InMemoryIdempotencyStore(IdempotencyStore):
    """Expiring dict store for tests and local runs."""

    def __init__(
        self,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(default_ttl)
        self._clock = clock
        self._markers: dict[str, float] = {}
        self._results: dict[str, tuple[float, Any]] = {}
        self._locks: dict[str, float] = {}

    async def is_processed(self, key: str) -> bool:
        expires = self._markers.get(key)
        if expires is None:
            return False
        if expires <= self._clock():
            del self._markers[key]
            return False
        return True

    async def mark_processed(self, key: str, ttl: int | None = None) -> None:
        self._markers[key] = self._clock() + (ttl or self.default_ttl)

    async def cache_result(self, key: str, result: Any, ttl: int | None = None) -> None:
        self._results[key] = (self._clock() + (ttl or self.default_ttl), result)

    async def get_cached_result(self, key: str) -> Any | None:
        entry = self._results.get(key)
        if entry is None:
            return None
        expires, result = entry
        if expires <= self._clock():
            del self._results[key]
            return None
        return result

    async def acquire_lock(self, name: str, ttl: int) -> bool:
        expires = self._locks.get(name)
        if expires is not None and expires > self._clock():
            return False
        self._locks[name] = self._clock() + ttl
        return True

    async def release_lock(self, name: str) -> None:
        self._locks.pop(name, None)
