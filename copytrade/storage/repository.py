"""Persistence contract for traders, positions, trades and the activity log."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from copytrade.models import (
    ActivityEntry,
    ActivityType,
    PositionRecord,
    PositionStatus,
    TradeRecord,
    TradeStatus,
    TraderProfile,
    TraderStatus,
)

logger = logging.getLogger(__name__)


class Repository(ABC):
    """Async repository.

    ``update_*`` methods apply partial changes and return the updated record;
    they raise ``NotFoundError`` for unknown ids. Implementations raise
    ``StorageError`` when the backing store fails.
    """

    # ---- Traders ----

    @abstractmethod
    async def get_trader(self, trader_id: str) -> Optional[TraderProfile]: ...

    @abstractmethod
    async def get_trader_by_wallet(self, wallet_address: str) -> Optional[TraderProfile]: ...

    @abstractmethod
    async def list_traders(self, status: Optional[TraderStatus] = None) -> list[TraderProfile]: ...

    @abstractmethod
    async def create_trader(self, trader: TraderProfile) -> TraderProfile: ...

    @abstractmethod
    async def update_trader(self, trader_id: str, **changes: Any) -> TraderProfile: ...

    @abstractmethod
    async def delete_trader(self, trader_id: str) -> bool: ...

    # ---- Positions ----

    @abstractmethod
    async def get_position(self, position_id: str) -> Optional[PositionRecord]: ...

    @abstractmethod
    async def find_open_position(
        self, trader_id: str, market_id: str, token_id: str
    ) -> Optional[PositionRecord]: ...

    @abstractmethod
    async def find_open_position_by_token(
        self, trader_id: str, token_id: str
    ) -> Optional[PositionRecord]: ...

    @abstractmethod
    async def list_positions(
        self,
        trader_id: Optional[str] = None,
        status: Optional[PositionStatus] = None,
    ) -> list[PositionRecord]: ...

    @abstractmethod
    async def save_position(self, position: PositionRecord) -> PositionRecord: ...

    async def count_open_positions(self, trader_id: Optional[str] = None) -> int:
        return len(await self.list_positions(trader_id, PositionStatus.OPEN))

    # ---- Trades ----

    @abstractmethod
    async def create_trade(self, trade: TradeRecord) -> TradeRecord: ...

    @abstractmethod
    async def get_trade(self, trade_id: str) -> Optional[TradeRecord]: ...

    @abstractmethod
    async def update_trade(self, trade_id: str, **changes: Any) -> TradeRecord: ...

    @abstractmethod
    async def list_trades(
        self,
        trader_id: Optional[str] = None,
        status: Optional[TradeStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[TradeRecord]:
        """Trades newest first. ``since``/``until`` filter on ``executed_at``
        when set, otherwise on ``created_at``."""

    async def list_retryable_trades(self, max_retries: int, limit: int) -> list[TradeRecord]:
        """FAILED trades with ``retry_count < max_retries``, oldest first."""
        failed = await self.list_trades(status=TradeStatus.FAILED)
        eligible = [t for t in failed if t.retry_count < max_retries]
        eligible.sort(key=lambda t: t.created_at)
        return eligible[:limit]

    async def count_trades_by_status(self) -> dict[TradeStatus, int]:
        counts = {status: 0 for status in TradeStatus}
        for trade in await self.list_trades():
            counts[trade.status] += 1
        return counts

    # ---- Activity ----

    @abstractmethod
    async def append_activity(self, entry: ActivityEntry) -> None: ...

    @abstractmethod
    async def list_activity(
        self, trader_id: Optional[str] = None, limit: int = 100
    ) -> list[ActivityEntry]: ...

    async def close(self) -> None:
        return None


async def log_activity(
    repository: Repository,
    type: ActivityType,
    message: str,
    *,
    trader_id: Optional[str] = None,
    trade_id: Optional[str] = None,
    **metadata: Any,
) -> None:
    """Append an audit entry. Best-effort: failures are logged, never raised."""
    entry = ActivityEntry(
        type=type,
        message=message,
        trader_id=trader_id,
        trade_id=trade_id,
        metadata=metadata,
    )
    try:
        await repository.append_activity(entry)
    except Exception:
        logger.warning(
            "activity_log_failed",
            extra={"activity": message, "trader_id": trader_id, "trade_id": trade_id},
            exc_info=True,
        )
