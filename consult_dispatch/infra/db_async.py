# consult_dispatch/infra/db_async.py
"""
asyncpg pool for the postgres responder directory.

The pool exists only when directory_backend=postgres; init_pool() and
close_pool() are called from the application lifespan and from the
migration runner.
"""
from __future__ import annotations
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from consult_dispatch.config import settings
from consult_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

# Directory queries are single indexed selects/updates
QUERY_TIMEOUT_SECONDS = 5

_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    """Create the pool once; later calls are no-ops."""
    global _pool
    if _pool is not None:
        return

    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is required for directory_backend=postgres")

    _pool = await asyncpg.create_pool(
        dsn=settings.database_url,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        command_timeout=QUERY_TIMEOUT_SECONDS,
        server_settings={"application_name": "consult_dispatch"},
    )
    logger.info(f"Responder database pool ready: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    global _pool
    pool, _pool = _pool, None
    if pool is not None:
        await pool.close()
        logger.info("Responder database pool closed")


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Borrow a pooled connection.

        async with db_conn() as conn:
            rows = await conn.fetch("SELECT id FROM responders WHERE language = $1", lang)

    With autocommit=False the block runs inside one transaction, rolled
    back if the block raises.
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    async with _pool.acquire() as conn:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
