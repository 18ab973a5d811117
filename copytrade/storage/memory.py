"""In-process repository used for dry runs and tests."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from copytrade.errors import ErrorCode, NotFoundError
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


class MemoryRepository(Repository):
    """Dict-backed store. Records are copied on the way in and out so callers
    never share mutable state with the store."""

    def __init__(self) -> None:
        self._traders: dict[str, TraderProfile] = {}
        self._positions: dict[str, PositionRecord] = {}
        self._trades: dict[str, TradeRecord] = {}
        self._activity: list[ActivityEntry] = []

    # ---- Traders ----

    async def get_trader(self, trader_id: str) -> Optional[TraderProfile]:
        trader = self._traders.get(trader_id)
        return trader.model_copy(deep=True) if trader else None

    async def get_trader_by_wallet(self, wallet_address: str) -> Optional[TraderProfile]:
        wallet = wallet_address.lower()
        for trader in self._traders.values():
            if trader.wallet_address.lower() == wallet:
                return trader.model_copy(deep=True)
        return None

    async def list_traders(self, status: Optional[TraderStatus] = None) -> list[TraderProfile]:
        traders = [t for t in self._traders.values() if status is None or t.status == status]
        traders.sort(key=lambda t: t.created_at)
        return [t.model_copy(deep=True) for t in traders]

    async def create_trader(self, trader: TraderProfile) -> TraderProfile:
        self._traders[trader.id] = trader.model_copy(deep=True)
        return trader.model_copy(deep=True)

    async def update_trader(self, trader_id: str, **changes: Any) -> TraderProfile:
        current = self._traders.get(trader_id)
        if current is None:
            raise NotFoundError(ErrorCode.TRADER_NOT_FOUND, f"Trader {trader_id} not found")
        updated = current.model_copy(update={**changes, "updated_at": utcnow()}, deep=True)
        self._traders[trader_id] = updated
        return updated.model_copy(deep=True)

    async def delete_trader(self, trader_id: str) -> bool:
        return self._traders.pop(trader_id, None) is not None

    # ---- Positions ----

    async def get_position(self, position_id: str) -> Optional[PositionRecord]:
        position = self._positions.get(position_id)
        return position.model_copy(deep=True) if position else None

    async def find_open_position(
        self, trader_id: str, market_id: str, token_id: str
    ) -> Optional[PositionRecord]:
        for position in self._positions.values():
            if (
                position.status == PositionStatus.OPEN
                and position.trader_id == trader_id
                and position.market_id == market_id
                and position.token_id == token_id
            ):
                return position.model_copy(deep=True)
        return None

    async def find_open_position_by_token(
        self, trader_id: str, token_id: str
    ) -> Optional[PositionRecord]:
        for position in self._positions.values():
            if (
                position.status == PositionStatus.OPEN
                and position.trader_id == trader_id
                and position.token_id == token_id
            ):
                return position.model_copy(deep=True)
        return None

    async def list_positions(
        self,
        trader_id: Optional[str] = None,
        status: Optional[PositionStatus] = None,
    ) -> list[PositionRecord]:
        return [
            p.model_copy(deep=True)
            for p in self._positions.values()
            if (trader_id is None or p.trader_id == trader_id)
            and (status is None or p.status == status)
        ]

    async def save_position(self, position: PositionRecord) -> PositionRecord:
        stored = position.model_copy(update={"updated_at": utcnow()}, deep=True)
        self._positions[position.id] = stored
        return stored.model_copy(deep=True)

    # ---- Trades ----

    async def create_trade(self, trade: TradeRecord) -> TradeRecord:
        self._trades[trade.id] = trade.model_copy(deep=True)
        return trade.model_copy(deep=True)

    async def get_trade(self, trade_id: str) -> Optional[TradeRecord]:
        trade = self._trades.get(trade_id)
        return trade.model_copy(deep=True) if trade else None

    async def update_trade(self, trade_id: str, **changes: Any) -> TradeRecord:
        current = self._trades.get(trade_id)
        if current is None:
            raise NotFoundError(ErrorCode.TRADE_NOT_FOUND, f"Trade {trade_id} not found")
        updated = current.model_copy(update={**changes, "updated_at": utcnow()}, deep=True)
        self._trades[trade_id] = updated
        return updated.model_copy(deep=True)

    async def list_trades(
        self,
        trader_id: Optional[str] = None,
        status: Optional[TradeStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[TradeRecord]:
        trades = []
        for trade in self._trades.values():
            if trader_id is not None and trade.trader_id != trader_id:
                continue
            if status is not None and trade.status != status:
                continue
            ts = trade.executed_at or trade.created_at
            if since is not None and ts < since:
                continue
            if until is not None and ts >= until:
                continue
            trades.append(trade)
        trades.sort(key=lambda t: t.created_at, reverse=True)
        if limit is not None:
            trades = trades[:limit]
        return [t.model_copy(deep=True) for t in trades]

    # ---- Activity ----

    async def append_activity(self, entry: ActivityEntry) -> None:
        self._activity.append(entry.model_copy(deep=True))

    async def list_activity(
        self, trader_id: Optional[str] = None, limit: int = 100
    ) -> list[ActivityEntry]:
        entries = [e for e in self._activity if trader_id is None or e.trader_id == trader_id]
        return [e.model_copy(deep=True) for e in reversed(entries[-limit:])]
