"""Schema migration: reads SQL files and runs them against ClickHouse."""

from __future__ import annotations

import logging
from pathlib import Path

from copytrade.storage.clickhouse import ClickHouseRepository

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).parent / "schema"
SCHEMA_FILES = ["001_copytrade.sql"]


async def run_migration(repository: ClickHouseRepository) -> None:
    """Execute all schema migrations against ClickHouse."""
    for schema_file in SCHEMA_FILES:
        schema_path = SCHEMA_DIR / schema_file
        if not schema_path.exists():
            logger.warning("migration_skip", extra={"file": schema_file, "reason": "not found"})
            continue

        sql = schema_path.read_text()
        await repository.run_migration(sql)
        logger.info("migration_applied", extra={"file": schema_file})
