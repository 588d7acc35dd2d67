# bulksend/infra/db_resilience_async.py
"""
Async database resilience utilities.
Retry logic for asyncpg and translation of exhausted transient
failures into TransientStoreError.
"""
from __future__ import annotations
import asyncio
from typing import TypeVar, Callable
from contextlib import asynccontextmanager
from functools import wraps

import asyncpg
from bulksend.core.bulk.errors import TransientStoreError
from bulksend.infra.db_async import db_conn
from bulksend.infra.logging_config import get_logger
from bulksend.infra.metrics import BulkMetrics

logger = get_logger(__name__)

T = TypeVar('T')


def is_transient_error(exc: Exception) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors
    - Server closed connection
    - Too many connections
    - Deadlock / serialization failure
    """
    if isinstance(exc, TransientStoreError):
        return True

    if isinstance(exc, (asyncpg.PostgresConnectionError, OSError, asyncio.TimeoutError)):
        return True

    if isinstance(exc, asyncpg.TooManyConnectionsError):
        return True

    if isinstance(exc, (asyncpg.DeadlockDetectedError, asyncpg.SerializationError)):
        return True

    error_message = str(exc).lower()

    transient_patterns = [
        "connection",
        "timeout",
        "closed",
        "network",
        "deadlock",
        "too many connections",
        "server closed",
        "connection reset",
    ]

    return any(pattern in error_message for pattern in transient_patterns)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Decorator to retry async function on transient database errors.

    When retries are exhausted the last error is re-raised as
    TransientStoreError so callers can tell "try again later" apart
    from programming errors.

    Example:
        @retry_on_transient_error(max_retries=3)
        async def get_job(job_id: str):
            async with safe_db_conn() as conn:
                return await conn.fetchrow("SELECT * FROM bulk_jobs WHERE id = $1", job_id)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc):
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded in {func.__name__}: {exc}"
                        )
                        BulkMetrics.database_error(func.__name__)
                        if isinstance(exc, TransientStoreError):
                            raise
                        raise TransientStoreError(
                            f"Store unavailable during {func.__name__}"
                        ) from exc

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )

                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True):
    """
    Database connection with retry on transient errors while acquiring.

    Usage:
        async with safe_db_conn() as conn:
            result = await conn.fetch("SELECT * FROM bulk_jobs WHERE id = $1", job_id)

    Errors raised inside the block are not retried here (the block may
    not be idempotent); wrap the whole operation in
    @retry_on_transient_error for that.
    """
    max_retries = 3
    delay = 0.1

    for attempt in range(max_retries + 1):
        manager = db_conn(autocommit=autocommit)
        try:
            conn = await manager.__aenter__()
        except Exception as exc:
            if not is_transient_error(exc):
                raise

            if attempt >= max_retries:
                logger.error(f"Max retries ({max_retries}) exceeded getting connection")
                raise TransientStoreError("Store unavailable") from exc

            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )

            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)
        else:
            break

    try:
        yield conn
    except BaseException as exc:
        if not await manager.__aexit__(type(exc), exc, exc.__traceback__):
            raise
    else:
        await manager.__aexit__(None, None, None)
