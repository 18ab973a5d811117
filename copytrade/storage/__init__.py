"""Persistence: abstract repository plus in-memory and ClickHouse backends."""

from copytrade.storage.clickhouse import ClickHouseRepository
from copytrade.storage.memory import MemoryRepository
from copytrade.storage.repository import Repository, log_activity

__all__ = ["ClickHouseRepository", "MemoryRepository", "Repository", "log_activity"]
