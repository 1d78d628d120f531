"""Shared Redis client.

One client (and therefore one connection pool) serves every queue, the
broker and the idempotency store.
"""

from __future__ import annotations

import logging

import redis.asyncio as redis

logger = logging.getLogger("syncguard.redis")


def create_redis(url: str) -> redis.Redis:
    client = redis.from_url(url, encoding="utf-8", decode_responses=True)
    logger.info("Redis client created for %s", url.split("@")[-1])
    return client


async def close_redis(client: redis.Redis) -> None:
    await client.aclose()
    logger.info("Redis client closed")
