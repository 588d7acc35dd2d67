#!/usr/bin/env python3
# bulksend/infra/migrate.py
"""
Standalone migration runner.

Run migrations separately from application startup:
    python -m bulksend.infra.migrate

Run it in CI/CD before deployment, as an init container, or by hand.
The application validates the schema version at startup but does NOT
run migrations.
"""
import asyncio
import sys

from bulksend.infra.migrations_async import apply_migrations
from bulksend.infra.db_async import init_pool, close_pool
from bulksend.infra.logging_config import setup_logging, get_logger
from bulksend.config import settings

setup_logging(level="INFO", use_json=False)
logger = get_logger(__name__)


async def main() -> int:
    """Run migrations"""
    logger.info("=" * 60)
    logger.info("Bulk jobs database migration runner")
    logger.info("=" * 60)
    logger.info(f"Environment: {settings.app_env}")
    if settings.database_url:
        logger.info("Database: DATABASE_URL")
    else:
        logger.info(f"Database: {settings.pghost}:{settings.pgport}/{settings.pgdatabase}")
    logger.info("=" * 60)

    try:
        await init_pool()
        logger.info("Database connected")

        result = await apply_migrations()

        logger.info(f"Status: {'SUCCESS' if result['ok'] else 'FAILED'}")
        logger.info(f"Migrations applied: {result['count']}")
        for migration in result['applied']:
            logger.info(f"  applied {migration}")
        if not result['applied']:
            logger.info("No new migrations to apply")

        return 0 if result['ok'] else 1

    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1

    finally:
        await close_pool()


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
