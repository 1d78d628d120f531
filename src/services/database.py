"""asyncpg connection pool wrapper.

One ``Database`` is created at the composition root and shared by every
Postgres-backed component.  Helpers acquire a pooled connection per call;
``transaction()`` is available when several statements must commit together.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator

import asyncpg

from src.config import Settings

logger = logging.getLogger("syncguard.db")


class Database:
    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 20) -> None:
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: asyncpg.Pool | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            settings.database_url,
            min_size=settings.database_pool_min,
            max_size=settings.database_pool_max,
        )

    async def connect(self) -> asyncpg.Pool:
        """Create the pool. Call once at startup."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30,
            )
            logger.info(
                "Database pool initialized (min=%d, max=%d)", self.min_size, self.max_size
            )
        return self._pool

    async def close(self) -> None:
        """Drain the pool. Call at shutdown."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database pool closed")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized; call connect() first")
        return self._pool

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire a connection inside a transaction.

        Usage::

            async with db.transaction() as conn:
                row = await conn.fetchrow("SELECT ... FOR UPDATE", key)
                await conn.execute("UPDATE ...", key)
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def execute(self, query: str, *args: Any) -> str:
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        async with self.pool.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(query, *args)

    async def run_script(self, path: Path) -> None:
        """Execute a multi-statement SQL file (schema bootstrap)."""
        async with self.pool.acquire() as conn:
            await conn.execute(path.read_text())
