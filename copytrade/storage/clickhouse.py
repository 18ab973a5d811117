"""ClickHouse-backed repository.

Each entity table is a ReplacingMergeTree keyed by id: an update inserts a
new row with a higher ``version`` and reads use ``FINAL`` so only the latest
row per id is returned. Filterable fields are stored as columns next to the
full record serialised as JSON in ``payload``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime
from typing import Any, Callable, Optional, TypeVar

import clickhouse_connect
from clickhouse_connect.driver.client import Client

from copytrade.config import (
    CLICKHOUSE_DATABASE,
    CLICKHOUSE_HOST,
    CLICKHOUSE_PASSWORD,
    CLICKHOUSE_PORT,
    CLICKHOUSE_SECURE,
    CLICKHOUSE_USER,
    STORAGE_BASE_BACKOFF,
    STORAGE_MAX_RETRIES,
)
from copytrade.errors import ErrorCode, NotFoundError, StorageError
from copytrade.models import (
    ActivityEntry,
    PositionRecord,
    PositionStatus,
    TradeRecord,
    TradeStatus,
    TraderProfile,
    TraderStatus,
    utcnow,
)
from copytrade.storage.repository import Repository

logger = logging.getLogger(__name__)

T = TypeVar("T")

TABLE_COLUMNS: dict[str, list[str]] = {
    "traders": ["id", "wallet_address", "status", "created_at", "payload", "version", "deleted"],
    "positions": ["id", "trader_id", "market_id", "token_id", "status", "updated_at", "payload", "version"],
    "trades": [
        "id", "trader_id", "status", "retry_count", "created_at", "executed_at",
        "payload", "version",
    ],
    "activity_log": ["id", "type", "trader_id", "trade_id", "message", "metadata", "created_at"],
}


def _version() -> int:
    return time.time_ns()


class ClickHouseRepository(Repository):
    def __init__(
        self,
        host: str = CLICKHOUSE_HOST,
        port: int = CLICKHOUSE_PORT,
        username: str = CLICKHOUSE_USER,
        password: str = CLICKHOUSE_PASSWORD,
        database: str = CLICKHOUSE_DATABASE,
        secure: bool = CLICKHOUSE_SECURE,
    ) -> None:
        self._settings = dict(
            host=host,
            port=port,
            username=username,
            password=password,
            database=database,
            secure=secure,
        )
        self._client: Client | None = None

    def _get_client(self) -> Client:
        if self._client is None:
            self._client = clickhouse_connect.get_client(
                **self._settings,
                compress="lz4",
                connect_timeout=30,
                send_receive_timeout=300,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await asyncio.to_thread(client.close)

    # ------------------------------------------------------------------
    # Low-level helpers
    # ------------------------------------------------------------------

    async def _with_retry(self, op: str, fn: Callable[[Client], T]) -> T:
        backoff = STORAGE_BASE_BACKOFF
        for attempt in range(1, STORAGE_MAX_RETRIES + 1):
            try:
                return await asyncio.to_thread(fn, self._get_client())
            except Exception as exc:
                logger.warning(
                    "storage_retry",
                    extra={"op": op, "attempt": attempt, "backoff": backoff},
                    exc_info=True,
                )
                if attempt == STORAGE_MAX_RETRIES:
                    logger.error("storage_failed", extra={"op": op}, exc_info=True)
                    raise StorageError(f"{op} failed: {exc}") from exc
                await asyncio.sleep(backoff)
                backoff *= 2
                # Reconnect on next attempt
                self._client = None
        raise StorageError(f"{op} failed")

    async def _insert(self, table: str, rows: list[list[Any]]) -> None:
        columns = TABLE_COLUMNS[table]
        await self._with_retry(
            f"insert_{table}",
            lambda client: client.insert(table, rows, column_names=columns),
        )

    async def _query(self, op: str, sql: str, parameters: dict[str, Any]) -> list[tuple]:
        result = await self._with_retry(
            op, lambda client: client.query(sql, parameters=parameters)
        )
        return list(result.result_rows)

    async def run_migration(self, sql: str) -> None:
        """Execute raw SQL statements (schema migration)."""
        for statement in sql.split(";"):
            statement = statement.strip()
            if statement:
                await self._with_retry(
                    "migration", lambda client, stmt=statement: client.command(stmt)
                )
        logger.info("migration_complete")

    # ---- Traders ----

    async def _write_trader(self, trader: TraderProfile, deleted: int = 0) -> None:
        await self._insert("traders", [[
            trader.id,
            trader.wallet_address.lower(),
            trader.status.value,
            trader.created_at,
            trader.model_dump_json(),
            _version(),
            deleted,
        ]])

    async def _select_traders(self, where: str, parameters: dict[str, Any]) -> list[TraderProfile]:
        rows = await self._query(
            "select_traders",
            f"SELECT payload FROM traders FINAL WHERE deleted = 0 AND {where} ORDER BY created_at",
            parameters,
        )
        return [TraderProfile.model_validate_json(row[0]) for row in rows]

    async def get_trader(self, trader_id: str) -> Optional[TraderProfile]:
        traders = await self._select_traders("id = {id:String}", {"id": trader_id})
        return traders[0] if traders else None

    async def get_trader_by_wallet(self, wallet_address: str) -> Optional[TraderProfile]:
        traders = await self._select_traders(
            "wallet_address = {wallet:String}", {"wallet": wallet_address.lower()}
        )
        return traders[0] if traders else None

    async def list_traders(self, status: Optional[TraderStatus] = None) -> list[TraderProfile]:
        if status is None:
            return await self._select_traders("1 = 1", {})
        return await self._select_traders("status = {status:String}", {"status": status.value})

    async def create_trader(self, trader: TraderProfile) -> TraderProfile:
        await self._write_trader(trader)
        return trader

    async def update_trader(self, trader_id: str, **changes: Any) -> TraderProfile:
        current = await self.get_trader(trader_id)
        if current is None:
            raise NotFoundError(ErrorCode.TRADER_NOT_FOUND, f"Trader {trader_id} not found")
        updated = current.model_copy(update={**changes, "updated_at": utcnow()})
        await self._write_trader(updated)
        return updated

    async def delete_trader(self, trader_id: str) -> bool:
        current = await self.get_trader(trader_id)
        if current is None:
            return False
        await self._write_trader(current, deleted=1)
        return True

    # ---- Positions ----

    async def _select_positions(self, where: str, parameters: dict[str, Any]) -> list[PositionRecord]:
        rows = await self._query(
            "select_positions",
            f"SELECT payload FROM positions FINAL WHERE {where} ORDER BY updated_at DESC",
            parameters,
        )
        return [PositionRecord.model_validate_json(row[0]) for row in rows]

    async def get_position(self, position_id: str) -> Optional[PositionRecord]:
        positions = await self._select_positions("id = {id:String}", {"id": position_id})
        return positions[0] if positions else None

    async def find_open_position(
        self, trader_id: str, market_id: str, token_id: str
    ) -> Optional[PositionRecord]:
        positions = await self._select_positions(
            "status = 'OPEN' AND trader_id = {trader_id:String} "
            "AND market_id = {market_id:String} AND token_id = {token_id:String}",
            {"trader_id": trader_id, "market_id": market_id, "token_id": token_id},
        )
        return positions[0] if positions else None

    async def find_open_position_by_token(
        self, trader_id: str, token_id: str
    ) -> Optional[PositionRecord]:
        positions = await self._select_positions(
            "status = 'OPEN' AND trader_id = {trader_id:String} AND token_id = {token_id:String}",
            {"trader_id": trader_id, "token_id": token_id},
        )
        return positions[0] if positions else None

    async def list_positions(
        self,
        trader_id: Optional[str] = None,
        status: Optional[PositionStatus] = None,
    ) -> list[PositionRecord]:
        clauses = ["1 = 1"]
        parameters: dict[str, Any] = {}
        if trader_id is not None:
            clauses.append("trader_id = {trader_id:String}")
            parameters["trader_id"] = trader_id
        if status is not None:
            clauses.append("status = {status:String}")
            parameters["status"] = status.value
        return await self._select_positions(" AND ".join(clauses), parameters)

    async def save_position(self, position: PositionRecord) -> PositionRecord:
        stored = position.model_copy(update={"updated_at": utcnow()})
        await self._insert("positions", [[
            stored.id,
            stored.trader_id,
            stored.market_id,
            stored.token_id,
            stored.status.value,
            stored.updated_at,
            stored.model_dump_json(),
            _version(),
        ]])
        return stored

    async def count_open_positions(self, trader_id: Optional[str] = None) -> int:
        sql = "SELECT count() FROM positions FINAL WHERE status = 'OPEN'"
        parameters: dict[str, Any] = {}
        if trader_id is not None:
            sql += " AND trader_id = {trader_id:String}"
            parameters["trader_id"] = trader_id
        rows = await self._query("count_open_positions", sql, parameters)
        return int(rows[0][0]) if rows else 0

    # ---- Trades ----

    async def _write_trade(self, trade: TradeRecord) -> None:
        await self._insert("trades", [[
            trade.id,
            trade.trader_id,
            trade.status.value,
            trade.retry_count,
            trade.created_at,
            trade.executed_at,
            trade.model_dump_json(),
            _version(),
        ]])

    async def create_trade(self, trade: TradeRecord) -> TradeRecord:
        await self._write_trade(trade)
        return trade

    async def get_trade(self, trade_id: str) -> Optional[TradeRecord]:
        rows = await self._query(
            "get_trade",
            "SELECT payload FROM trades FINAL WHERE id = {id:String}",
            {"id": trade_id},
        )
        return TradeRecord.model_validate_json(rows[0][0]) if rows else None

    async def update_trade(self, trade_id: str, **changes: Any) -> TradeRecord:
        current = await self.get_trade(trade_id)
        if current is None:
            raise NotFoundError(ErrorCode.TRADE_NOT_FOUND, f"Trade {trade_id} not found")
        updated = current.model_copy(update={**changes, "updated_at": utcnow()})
        await self._write_trade(updated)
        return updated

    async def list_trades(
        self,
        trader_id: Optional[str] = None,
        status: Optional[TradeStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[TradeRecord]:
        clauses = ["1 = 1"]
        parameters: dict[str, Any] = {}
        if trader_id is not None:
            clauses.append("trader_id = {trader_id:String}")
            parameters["trader_id"] = trader_id
        if status is not None:
            clauses.append("status = {status:String}")
            parameters["status"] = status.value
        if since is not None:
            clauses.append("ifNull(executed_at, created_at) >= {since:DateTime64(3)}")
            parameters["since"] = since
        if until is not None:
            clauses.append("ifNull(executed_at, created_at) < {until:DateTime64(3)}")
            parameters["until"] = until
        sql = f"SELECT payload FROM trades FINAL WHERE {' AND '.join(clauses)} ORDER BY created_at DESC"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        rows = await self._query("list_trades", sql, parameters)
        return [TradeRecord.model_validate_json(row[0]) for row in rows]

    async def list_retryable_trades(self, max_retries: int, limit: int) -> list[TradeRecord]:
        rows = await self._query(
            "list_retryable_trades",
            "SELECT payload FROM trades FINAL "
            "WHERE status = 'FAILED' AND retry_count < {max_retries:UInt32} "
            f"ORDER BY created_at LIMIT {int(limit)}",
            {"max_retries": max_retries},
        )
        return [TradeRecord.model_validate_json(row[0]) for row in rows]

    async def count_trades_by_status(self) -> dict[TradeStatus, int]:
        rows = await self._query(
            "count_trades_by_status",
            "SELECT status, count() FROM trades FINAL GROUP BY status",
            {},
        )
        counts = {status: 0 for status in TradeStatus}
        for status, count in rows:
            counts[TradeStatus(status)] = int(count)
        return counts

    # ---- Activity ----

    async def append_activity(self, entry: ActivityEntry) -> None:
        await self._insert("activity_log", [[
            entry.id,
            entry.type.value,
            entry.trader_id or "",
            entry.trade_id or "",
            entry.message,
            json.dumps(entry.metadata, default=str),
            entry.created_at,
        ]])

    async def list_activity(
        self, trader_id: Optional[str] = None, limit: int = 100
    ) -> list[ActivityEntry]:
        sql = "SELECT id, type, trader_id, trade_id, message, metadata, created_at FROM activity_log"
        parameters: dict[str, Any] = {}
        if trader_id is not None:
            sql += " WHERE trader_id = {trader_id:String}"
            parameters["trader_id"] = trader_id
        sql += f" ORDER BY created_at DESC LIMIT {int(limit)}"
        rows = await self._query("list_activity", sql, parameters)
        return [
            ActivityEntry(
                id=row[0],
                type=row[1],
                trader_id=row[2] or None,
                trade_id=row[3] or None,
                message=row[4],
                metadata=json.loads(row[5] or "{}"),
                created_at=row[6],
            )
            for row in rows
        ]
