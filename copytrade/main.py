"""Entry point for the copy-trading service."""

from __future__ import annotations

import asyncio
import logging

from copytrade.config import setup_logging
from copytrade.migrate import run_migration
from copytrade.service import CopyTradingService
from copytrade.storage.clickhouse import ClickHouseRepository

logger = logging.getLogger(__name__)


async def _main() -> None:
    setup_logging()
    logger.info("copytrade_starting")

    service = CopyTradingService()

    # Schema migration before any component touches storage
    if isinstance(service.repository, ClickHouseRepository):
        try:
            await run_migration(service.repository)
        except Exception:
            logger.error("migration_failed", exc_info=True)
            raise

    await service.run_forever()


def main() -> None:
    asyncio.run(_main())


if __name__ == "__main__":
    main()
