"""Stop-loss / take-profit guard.

Watches open positions whose trader configures SL/TP levels and force-sells
the full position at market once a level is crossed. Levels are absolute
prices derived from the entry price:

    stop_loss     = entry * (1 - sl% / 100)
    take_profit   = entry * (1 + tp% / 100)
    trailing_stop = highest * (1 - trail% / 100)   (ratchets up only)

Evaluation order per tick is stop-loss, trailing stop, take-profit; the
first level crossed fires and the position leaves the watch set before the
sell is sent, so a trigger never fires twice.

Every tick first picks up OPEN positions opened since the last tick, and a
trigger re-reads the position so the sell covers the shares actually held.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from copytrade.api.clob_client import ClobClient
from copytrade.config import SLTP_DEFAULT_TRAILING_PCT, SLTP_INTERVAL
from copytrade.events import EventBus, SLTPCloseEvent, SLTPTriggerEvent
from copytrade.execution.order_executor import ExecuteParams, ExecutionResult, OrderExecutor
from copytrade.models import ActivityType, OrderType, PositionStatus, TradeSide, TraderStatus
from copytrade.scheduling import JobScheduler
from copytrade.storage.repository import Repository, log_activity

logger = logging.getLogger(__name__)


class TriggerType(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    TRAILING_STOP = "TRAILING_STOP"
    TAKE_PROFIT = "TAKE_PROFIT"


class SLTPLevels(BaseModel):
    """Percent levels; ``None`` or 0 disables a level."""

    stop_loss_percent: Optional[float] = None
    take_profit_percent: Optional[float] = None
    trailing_stop_percent: Optional[float] = None


class WatchedPosition(BaseModel):
    position_id: str
    trader_id: str
    market_id: str
    token_id: str
    outcome: str = ""
    shares: float
    entry_price: float
    highest_price: float
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    trailing_stop_percent: Optional[float] = None
    trailing_stop_price: Optional[float] = None


class StopLossTakeProfitGuard:
    def __init__(
        self,
        repository: Repository,
        exchange: ClobClient,
        executor: OrderExecutor,
        bus: EventBus,
        interval: float = SLTP_INTERVAL,
        default_trailing_percent: Optional[float] = SLTP_DEFAULT_TRAILING_PCT,
    ) -> None:
        self._repo = repository
        self._exchange = exchange
        self._executor = executor
        self._bus = bus
        self.interval = interval
        self.default_trailing_percent = default_trailing_percent
        self._watched: dict[str, WatchedPosition] = {}
        # Removed or already triggered; never re-added by the per-tick scan
        self._retired: set[str] = set()
        self._scheduler = JobScheduler("sltp")
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self, interval: Optional[float] = None) -> None:
        if self._running:
            logger.warning("sltp_guard_already_running")
            return
        self.interval = interval or self.interval
        self._running = True
        await self._sync_positions()
        self._scheduler.every(self.interval, self.check_all, "check")
        logger.info(
            "sltp_guard_started",
            extra={"interval": self.interval, "positions": len(self._watched)},
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._scheduler.shutdown()
        self._watched.clear()
        self._retired.clear()
        logger.info("sltp_guard_stopped")

    async def add_position(self, position_id: str, levels: Optional[SLTPLevels] = None) -> bool:
        position = await self._repo.get_position(position_id)
        if position is None or position.status != PositionStatus.OPEN:
            return False

        levels = levels or SLTPLevels()
        entry = position.avg_entry_price
        watch = WatchedPosition(
            position_id=position.id,
            trader_id=position.trader_id,
            market_id=position.market_id,
            token_id=position.token_id,
            outcome=position.outcome,
            shares=position.shares,
            entry_price=entry,
            highest_price=entry,
        )
        if levels.stop_loss_percent:
            watch.stop_loss_price = entry * (1 - levels.stop_loss_percent / 100)
        if levels.take_profit_percent:
            watch.take_profit_price = entry * (1 + levels.take_profit_percent / 100)
        if levels.trailing_stop_percent:
            watch.trailing_stop_percent = levels.trailing_stop_percent
            watch.trailing_stop_price = entry * (1 - levels.trailing_stop_percent / 100)

        self._watched[position_id] = watch
        self._retired.discard(position_id)
        logger.debug(
            "sltp_position_added",
            extra={
                "position_id": position_id,
                "stop_loss": watch.stop_loss_price,
                "take_profit": watch.take_profit_price,
                "trailing_stop": watch.trailing_stop_price,
            },
        )
        return True

    def remove_position(self, position_id: str) -> bool:
        self._retired.add(position_id)
        return self._watched.pop(position_id, None) is not None

    def update_levels(self, position_id: str, levels: SLTPLevels) -> bool:
        """Apply only the levels explicitly set on ``levels``; 0 or None clears."""
        watch = self._watched.get(position_id)
        if watch is None:
            return False

        changed = levels.model_fields_set
        if "stop_loss_percent" in changed:
            pct = levels.stop_loss_percent
            watch.stop_loss_price = watch.entry_price * (1 - pct / 100) if pct else None
        if "take_profit_percent" in changed:
            pct = levels.take_profit_percent
            watch.take_profit_price = watch.entry_price * (1 + pct / 100) if pct else None
        if "trailing_stop_percent" in changed:
            pct = levels.trailing_stop_percent
            watch.trailing_stop_percent = pct or None
            watch.trailing_stop_price = watch.highest_price * (1 - pct / 100) if pct else None
        return True

    def monitored_positions(self) -> list[WatchedPosition]:
        return [w.model_copy() for w in self._watched.values()]

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "interval": self.interval,
            "positions": len(self._watched),
        }

    async def check_all(self) -> None:
        if not self._running:
            return
        try:
            await self._sync_positions()
        except Exception:
            logger.error("sltp_position_sync_failed", exc_info=True)

        for position_id in list(self._watched):
            if not self._running:
                return
            watch = self._watched.get(position_id)
            if watch is None:
                continue
            try:
                await self._check(watch)
            except Exception:
                logger.error("sltp_check_failed", extra={"position_id": position_id}, exc_info=True)

    # ------------------------------------------------------------------

    async def _sync_positions(self) -> None:
        """Watch OPEN positions of ACTIVE traders with SL/TP configured."""
        added = 0
        for trader in await self._repo.list_traders(TraderStatus.ACTIVE):
            if not trader.has_sltp:
                continue
            levels = SLTPLevels(
                stop_loss_percent=trader.stop_loss_percent,
                take_profit_percent=trader.take_profit_percent,
                trailing_stop_percent=trader.trailing_stop_percent or self.default_trailing_percent,
            )
            for position in await self._repo.list_positions(trader.id, PositionStatus.OPEN):
                if position.id in self._retired:
                    continue
                watch = self._watched.get(position.id)
                if watch is not None:
                    watch.shares = position.shares
                elif await self.add_position(position.id, levels):
                    added += 1
        if added:
            logger.info("sltp_positions_loaded", extra={"added": added, "count": len(self._watched)})

    async def _check(self, watch: WatchedPosition) -> None:
        try:
            price = (await self._exchange.get_price(watch.token_id)).bid
        except Exception:
            logger.debug("sltp_price_unavailable", extra={"position_id": watch.position_id}, exc_info=True)
            return

        if not self._running or self._watched.get(watch.position_id) is not watch:
            return

        if watch.trailing_stop_percent and price > watch.highest_price:
            watch.highest_price = price
            watch.trailing_stop_price = price * (1 - watch.trailing_stop_percent / 100)

        if watch.stop_loss_price is not None and price <= watch.stop_loss_price:
            fired = (TriggerType.STOP_LOSS, watch.stop_loss_price)
        elif watch.trailing_stop_price is not None and price <= watch.trailing_stop_price:
            fired = (TriggerType.TRAILING_STOP, watch.trailing_stop_price)
        elif watch.take_profit_price is not None and price >= watch.take_profit_price:
            fired = (TriggerType.TAKE_PROFIT, watch.take_profit_price)
        else:
            return

        position = await self._repo.get_position(watch.position_id)
        if position is None or position.status != PositionStatus.OPEN or position.shares <= 0:
            self._watched.pop(watch.position_id, None)
            logger.info("sltp_position_no_longer_open", extra={"position_id": watch.position_id})
            return
        watch.shares = position.shares

        await self._trigger(watch, fired[0], fired[1], price)

    async def _trigger(
        self, watch: WatchedPosition, trigger: TriggerType, trigger_price: float, price: float
    ) -> None:
        pnl_percent = (price - watch.entry_price) / watch.entry_price * 100 if watch.entry_price else 0.0
        logger.info(
            "sltp_triggered",
            extra={
                "position_id": watch.position_id,
                "trigger": trigger.value,
                "trigger_price": trigger_price,
                "current_price": price,
                "pnl_percent": pnl_percent,
            },
        )

        self._watched.pop(watch.position_id, None)
        self._retired.add(watch.position_id)
        self._bus.publish(
            SLTPTriggerEvent(
                position_id=watch.position_id,
                trader_id=watch.trader_id,
                token_id=watch.token_id,
                trigger=trigger.value,
                trigger_price=trigger_price,
                current_price=price,
            )
        )

        result: Optional[ExecutionResult] = None
        error = ""
        try:
            result = await self._executor.execute(
                ExecuteParams(
                    trader_id=watch.trader_id,
                    market_id=watch.market_id,
                    token_id=watch.token_id,
                    outcome=watch.outcome,
                    side=TradeSide.SELL,
                    amount=watch.shares * price,
                    order_type=OrderType.MARKET,
                    protective=True,
                )
            )
            error = result.error or ""
        except Exception as exc:
            error = str(exc)
            logger.error("sltp_close_failed", extra={"position_id": watch.position_id}, exc_info=True)

        success = result is not None and result.success
        sign = "+" if pnl_percent >= 0 else ""
        await log_activity(
            self._repo,
            ActivityType.RISK,
            f"{trigger.value} executed: {sign}{pnl_percent:.2f}%"
            if success
            else f"{trigger.value} close failed: {error}",
            trader_id=watch.trader_id,
            trade_id=result.trade_id if result else None,
            trigger=trigger.value,
            entry_price=watch.entry_price,
            exit_price=price,
            pnl_percent=pnl_percent,
            shares=watch.shares,
        )
        self._bus.publish(
            SLTPCloseEvent(
                position_id=watch.position_id,
                trader_id=watch.trader_id,
                trigger=trigger.value,
                success=success,
                trade_id=result.trade_id if result else None,
                error=error,
            )
        )
        if success:
            logger.info("sltp_close_executed", extra={"position_id": watch.position_id, "trigger": trigger.value})
        else:
            logger.error("sltp_close_rejected", extra={"position_id": watch.position_id, "error": error})
