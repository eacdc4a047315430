#!/usr/bin/env python3
# consult_dispatch/infra/migrate.py
"""
Standalone migration runner for the postgres responder directory.

    python -m consult_dispatch.infra.migrate

Run it before starting the service with DIRECTORY_BACKEND=postgres;
the application itself never runs migrations.
"""
import asyncio
import sys

from consult_dispatch.config import settings
from consult_dispatch.infra.db_async import init_pool, close_pool
from consult_dispatch.infra.logging_config import setup_logging, get_logger
from consult_dispatch.infra.migrations_async import apply_migrations

logger = get_logger(__name__)


async def main() -> int:
    logger.info(f"Database migration runner: env={settings.app_env}")

    try:
        await init_pool()
        result = await apply_migrations()
    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    if result["applied"]:
        for migration in result["applied"]:
            logger.info(f"  applied {migration}")
    else:
        logger.info("No new migrations to apply")

    return 0 if result["ok"] else 1


if __name__ == "__main__":
    setup_logging(level="INFO", use_json=False)
    sys.exit(asyncio.run(main()))
