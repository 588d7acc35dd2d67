# bulksend/infra/schema_validator.py
"""
Schema version validator for production deployments.

The application does NOT run migrations itself. Instead:
1. Migrations run separately (CI/CD, migrate job, manual script)
2. Application validates schema version matches expected version
3. Application refuses to start if schema is incompatible
"""
from __future__ import annotations
from bulksend.config import settings
from bulksend.infra.db_async import db_conn
from bulksend.infra.logging_config import get_logger

logger = get_logger(__name__)

_MIGRATE_HINT = "Run migrations first: python -m bulksend.infra.migrate"


async def _migrations_table_exists(conn) -> bool:
    return await conn.fetchval(
        """
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_schema = 'public'
            AND table_name = 'schema_migrations'
        )
        """
    )


async def validate_schema_version() -> dict:
    """
    Validate that database schema version matches expected version.

    Returns:
        dict with keys ok, current_version, expected_version, error

    Raises:
        RuntimeError: If schema version is incompatible
    """
    async with db_conn() as conn:
        if not await _migrations_table_exists(conn):
            error = f"Schema migrations table not found. {_MIGRATE_HINT}"
            logger.critical(error)
            raise RuntimeError(error)

        latest = await conn.fetchrow(
            """
            SELECT version, applied_at
            FROM schema_migrations
            ORDER BY version DESC
            LIMIT 1
            """
        )

        if not latest:
            error = f"No migrations have been applied. {_MIGRATE_HINT}"
            logger.critical(error)
            raise RuntimeError(error)

        current_version = latest['version']

        if current_version != settings.expected_schema_version:
            error = (
                f"Schema version mismatch! "
                f"Expected: {settings.expected_schema_version}, "
                f"Found: {current_version}. {_MIGRATE_HINT}"
            )
            logger.critical(error)
            raise RuntimeError(error)

        logger.info(f"Schema version validated: {current_version}")

        return {
            "ok": True,
            "current_version": current_version,
            "expected_version": settings.expected_schema_version,
            "error": None
        }


async def get_schema_info() -> dict:
    """Current schema state, for the readiness probe."""
    async with db_conn() as conn:
        if not await _migrations_table_exists(conn):
            return {
                "initialized": False,
                "migrations_applied": 0,
                "latest_version": None
            }

        rows = await conn.fetch(
            """
            SELECT version, applied_at
            FROM schema_migrations
            ORDER BY version
            """
        )

        latest = rows[-1]['version'] if rows else None
        return {
            "initialized": True,
            "migrations_applied": len(rows),
            "latest_version": latest,
            "expected_version": settings.expected_schema_version,
            "is_compatible": latest == settings.expected_schema_version,
        }
