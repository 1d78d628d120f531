"""Tests for idempotency keys and the processed-key stores."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
import redis.asyncio as redis

from src.jobs.idempotency import (
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
    generate_key,
)


class TestGenerateKey:
    def test_same_payload_same_key(self):
        a = generate_key("calendar-sync", {"userId": "u1", "syncType": "manual"})
        b = generate_key("calendar-sync", {"syncType": "manual", "userId": "u1"})
        assert a == b
        assert len(a) == 64

    def test_job_name_is_part_of_key(self):
        payload = {"userId": "u1"}
        assert generate_key("calendar-sync", payload) != generate_key("contacts-sync", payload)

    def test_window_distinguishes_rounds(self):
        first = generate_key("calendar-sync", {"userId": "u1", "window": "2026-03-02T09:00"})
        second = generate_key("calendar-sync", {"userId": "u1", "window": "2026-03-02T10:00"})
        assert first != second


class MonotonicClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_mark_and_cache(self):
        store = InMemoryIdempotencyStore(default_ttl=60, clock=MonotonicClock())
        assert not await store.is_processed("k")

        await store.mark_processed("k")
        await store.cache_result("k", {"synced": 3})

        assert await store.is_processed("k")
        assert await store.get_cached_result("k") == {"synced": 3}

    @pytest.mark.asyncio
    async def test_entries_expire_after_ttl(self):
        clock = MonotonicClock()
        store = InMemoryIdempotencyStore(default_ttl=60, clock=clock)
        await store.mark_processed("k")
        await store.cache_result("k", "done")

        clock.now += 59
        assert await store.is_processed("k")
        clock.now += 1
        assert not await store.is_processed("k")
        assert await store.get_cached_result("k") is None

    @pytest.mark.asyncio
    async def test_explicit_ttl_overrides_default(self):
        clock = MonotonicClock()
        store = InMemoryIdempotencyStore(default_ttl=60, clock=clock)
        await store.mark_processed("k", ttl=600)
        clock.now += 300
        assert await store.is_processed("k")


class TestRedisStore:
    @pytest.mark.asyncio
    async def test_uses_prefixed_keys_with_ttl(self):
        client = AsyncMock()
        store = RedisIdempotencyStore(client, prefix="sg", default_ttl=86400)

        await store.mark_processed("abc")
        await store.cache_result("abc", {"ok": True})

        client.set.assert_any_await("sg:idem:abc", "1", ex=86400)
        client.set.assert_any_await("sg:idem-result:abc", '{"ok": true}', ex=86400)

    @pytest.mark.asyncio
    async def test_cached_result_decoded(self):
        client = AsyncMock()
        client.get.return_value = '{"synced": 2}'
        store = RedisIdempotencyStore(client)
        assert await store.get_cached_result("abc") == {"synced": 2}

    @pytest.mark.asyncio
    async def test_fails_open_when_redis_is_down(self):
        client = AsyncMock()
        client.exists.side_effect = redis.ConnectionError("refused")
        client.get.side_effect = redis.ConnectionError("refused")
        client.set.side_effect = redis.ConnectionError("refused")
        store = RedisIdempotencyStore(client)

        assert not await store.is_processed("abc")
        assert await store.get_cached_result("abc") is None
        await store.mark_processed("abc")


class TestLocks:
    @pytest.mark.asyncio
    async def test_in_memory_lock_held_until_release_or_ttl(self):
        clock = MonotonicClock()
        store = InMemoryIdempotencyStore(clock=clock)

        assert await store.acquire_lock("webhook-sync:u1", ttl=600)
        assert not await store.acquire_lock("webhook-sync:u1", ttl=600)
        assert await store.acquire_lock("webhook-sync:u2", ttl=600)

        await store.release_lock("webhook-sync:u1")
        assert await store.acquire_lock("webhook-sync:u1", ttl=600)

        clock.now += 600
        assert await store.acquire_lock("webhook-sync:u1", ttl=600)

    @pytest.mark.asyncio
    async def test_redis_lock_is_set_nx_with_expiry(self):
        client = AsyncMock()
        client.set.return_value = None
        store = RedisIdempotencyStore(client, prefix="sg")

        assert not await store.acquire_lock("webhook-sync:u1", ttl=600)
        client.set.assert_awaited_once_with("sg:lock:webhook-sync:u1", "1", nx=True, ex=600)

        await store.release_lock("webhook-sync:u1")
        client.delete.assert_awaited_once_with("sg:lock:webhook-sync:u1")

    @pytest.mark.asyncio
    async def test_redis_lock_fails_open(self):
        client = AsyncMock()
        client.set.side_effect = redis.ConnectionError("refused")
        store = RedisIdempotencyStore(client)

        assert await store.acquire_lock("webhook-sync:u1", ttl=600)
