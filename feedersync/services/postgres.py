"""PostgreSQL access via an ``asyncpg`` connection pool.

Every helper runs inside a transaction so that a failure anywhere in a
multi-statement unit rolls the whole unit back.  JSON/JSONB columns are
decoded to Python objects by a codec registered on each new connection.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import asyncpg

from feedersync.config import Settings, get_settings

logger = logging.getLogger("feedersync.db")

# Module-level connection pool — initialized once at app startup
_pool: asyncpg.Pool | None = None


async def _init_connection(conn: asyncpg.Connection) -> None:
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=s.db_pool_min_size,
        max_size=s.db_pool_max_size,
        command_timeout=30,
        init=_init_connection,
    )
    logger.info(
        "Database pool initialized (min=%d, max=%d)",
        s.db_pool_min_size,
        s.db_pool_max_size,
    )
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized — call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection() -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a pooled connection with an open transaction.

    Usage::

        async with get_connection() as conn:
            row = await conn.fetchrow("SELECT * FROM devices WHERE device_id = $1", device_id)

    The transaction commits when the block exits normally and rolls back if
    it raises.
    """
    pool = get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            yield conn


async def fetchval(query: str, *args: Any) -> Any:
    async with get_connection() as conn:
        return await conn.fetchval(query, *args)
