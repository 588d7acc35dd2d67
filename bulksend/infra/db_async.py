# bulksend/infra/db_async.py
"""
Async database connection using asyncpg.
"""
from __future__ import annotations
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from bulksend.config import settings
from bulksend.infra.logging_config import get_logger

logger = get_logger(__name__)

# Global connection pool
_pool: asyncpg.Pool | None = None


def _connect_kwargs() -> dict:
    """Connection parameters: DATABASE_URL wins, PG* settings otherwise."""
    server_settings = {
        "application_name": "bulksend",
        "statement_timeout": str(settings.pg_statement_timeout_ms),
        "idle_in_transaction_session_timeout": str(settings.pg_idle_in_tx_timeout_ms),
    }
    if settings.database_url:
        return {"dsn": settings.database_url, "server_settings": server_settings}
    return {
        "host": settings.pghost,
        "port": settings.pgport,
        "user": settings.pguser,
        "password": settings.pgpassword,
        "database": settings.pgdatabase,
        "timeout": settings.pg_connect_timeout,
        "server_settings": server_settings,
    }


async def init_pool() -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    logger.info("Initializing asyncpg connection pool")

    _pool = await asyncpg.create_pool(
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        command_timeout=60,
        **_connect_kwargs(),
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Get database connection from pool (async).

    Usage:
        async with db_conn() as conn:
            result = await conn.fetch("SELECT * FROM bulk_jobs WHERE id = $1", job_id)

    Args:
        autocommit: If True (default), each statement commits on its own.
            If False, the block runs inside one transaction that commits on
            exit and rolls back on error.

    Yields:
        asyncpg.Connection
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    conn = await _pool.acquire()

    try:
        if not autocommit:
            transaction = conn.transaction()
            await transaction.start()

            try:
                yield conn
                await transaction.commit()
            except Exception:
                await transaction.rollback()
                raise
        else:
            yield conn
    finally:
        await _pool.release(conn)
