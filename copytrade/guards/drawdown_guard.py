"""Drawdown guard: tracks peak equity per trader and pauses on the limit."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from copytrade.api.clob_client import ClobClient
from copytrade.config import DRAWDOWN_CRITICAL_RATIO, DRAWDOWN_INTERVAL, DRAWDOWN_WARN_RATIO
from copytrade.errors import ErrorCode, NotFoundError
from copytrade.events import DrawdownAlert, DrawdownRecovered, EventBus, TraderPausedEvent
from copytrade.models import (
    ActivityType,
    PositionStatus,
    RiskLimits,
    TradeStatus,
    TraderProfile,
    TraderStatus,
    resolve_limits,
    start_of_utc_day,
)
from copytrade.scheduling import JobScheduler
from copytrade.storage.repository import Repository, log_activity

logger = logging.getLogger(__name__)


class DrawdownLevel(str, Enum):
    WARN = "WARN"
    CRITICAL = "CRITICAL"
    LIMIT_REACHED = "LIMIT_REACHED"


class DrawdownSnapshot(BaseModel):
    trader_id: str
    current_balance: float
    open_position_value: float
    current_equity: float
    peak_balance: float
    drawdown_percent: float
    max_drawdown_percent: float
    daily_pnl: float
    weekly_pnl: float


def classify(drawdown_percent: float, max_drawdown_percent: float) -> Optional[DrawdownLevel]:
    if max_drawdown_percent <= 0:
        return None
    if drawdown_percent >= max_drawdown_percent:
        return DrawdownLevel.LIMIT_REACHED
    if drawdown_percent >= max_drawdown_percent * DRAWDOWN_CRITICAL_RATIO:
        return DrawdownLevel.CRITICAL
    if drawdown_percent >= max_drawdown_percent * DRAWDOWN_WARN_RATIO:
        return DrawdownLevel.WARN
    return None


class DrawdownGuard:
    """Periodic drawdown check over every ACTIVE trader.

    Alerts are published only when a trader's level changes, except
    LIMIT_REACHED which repeats every tick while it holds. Reaching the
    limit pauses the trader.
    """

    def __init__(
        self,
        repository: Repository,
        exchange: ClobClient,
        bus: EventBus,
        limits: Optional[RiskLimits] = None,
        interval: float = DRAWDOWN_INTERVAL,
    ) -> None:
        self._repo = repository
        self._exchange = exchange
        self._bus = bus
        self._limits = limits or RiskLimits()
        self.interval = interval
        self._last_levels: dict[str, DrawdownLevel] = {}
        self._scheduler = JobScheduler("drawdown")
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, interval: Optional[float] = None) -> None:
        if self._running:
            logger.warning("drawdown_guard_already_running")
            return
        self.interval = interval or self.interval
        self._running = True
        self._scheduler.every(self.interval, self.check_all, "check", run_now=True)
        logger.info("drawdown_guard_started", extra={"interval": self.interval})

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._scheduler.shutdown()
        self._last_levels.clear()
        logger.info("drawdown_guard_stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "interval": self.interval,
            "alerts": {tid: level.value for tid, level in self._last_levels.items()},
        }

    async def check_all(self) -> None:
        if not self._running:
            return
        try:
            traders = await self._repo.list_traders(TraderStatus.ACTIVE)
        except Exception:
            logger.error("drawdown_cycle_failed", exc_info=True)
            return

        for trader in traders:
            if not self._running:
                return
            try:
                snap = await self._compute(trader)
                if snap is None or not self._running:
                    continue
                await self._evaluate(trader, snap)
            except Exception:
                logger.error("drawdown_check_failed", extra={"trader_id": trader.id}, exc_info=True)

    async def check_trader(self, trader_id: str) -> Optional[DrawdownSnapshot]:
        """Compute one trader's snapshot and apply alerting."""
        trader = await self._repo.get_trader(trader_id)
        if trader is None:
            return None
        snap = await self._compute(trader)
        if snap is not None:
            await self._evaluate(trader, snap)
        return snap

    async def snapshot(self, trader_id: str) -> Optional[DrawdownSnapshot]:
        trader = await self._repo.get_trader(trader_id)
        if trader is None:
            return None
        return await self._compute(trader)

    async def all_snapshots(self) -> list[DrawdownSnapshot]:
        snaps = []
        for trader in await self._repo.list_traders(TraderStatus.ACTIVE):
            snap = await self._compute(trader)
            if snap is not None:
                snaps.append(snap)
        return snaps

    async def reset_peak_balance(self, trader_id: str) -> float:
        trader = await self._repo.get_trader(trader_id)
        if trader is None:
            raise NotFoundError(ErrorCode.TRADER_NOT_FOUND, f"Trader {trader_id} not found")
        try:
            balance = await self._exchange.get_balance()
        except Exception:
            logger.warning("drawdown_balance_unavailable", extra={"trader_id": trader_id}, exc_info=True)
            balance = 0.0
        equity = balance + await self._open_value(trader_id)
        await self._repo.update_trader(trader_id, peak_balance=equity)
        self._last_levels.pop(trader_id, None)
        logger.info("peak_balance_reset", extra={"trader_id": trader_id, "peak_balance": equity})
        return equity

    # ------------------------------------------------------------------

    async def _open_value(self, trader_id: str) -> float:
        positions = await self._repo.list_positions(trader_id, PositionStatus.OPEN)
        return sum(p.value for p in positions)

    async def _period_pnl(self, trader_id: str, since: datetime) -> float:
        trades = await self._repo.list_trades(
            trader_id=trader_id, status=TradeStatus.EXECUTED, since=since
        )
        return sum(t.pnl for t in trades)

    async def _compute(self, trader: TraderProfile) -> Optional[DrawdownSnapshot]:
        try:
            balance = await self._exchange.get_balance()
        except Exception:
            logger.warning("drawdown_balance_unavailable", extra={"trader_id": trader.id}, exc_info=True)
            return None

        open_value = await self._open_value(trader.id)
        equity = balance + open_value

        peak = trader.peak_balance or equity
        if equity > peak or not trader.peak_balance:
            peak = equity
            await self._repo.update_trader(trader.id, peak_balance=peak)

        drawdown = max(0.0, (peak - equity) / peak * 100) if peak > 0 else 0.0
        today = start_of_utc_day()

        return DrawdownSnapshot(
            trader_id=trader.id,
            current_balance=balance,
            open_position_value=open_value,
            current_equity=equity,
            peak_balance=peak,
            drawdown_percent=drawdown,
            max_drawdown_percent=resolve_limits(trader, self._limits).max_drawdown_percent,
            daily_pnl=await self._period_pnl(trader.id, today),
            weekly_pnl=await self._period_pnl(trader.id, today - timedelta(days=6)),
        )

    async def _evaluate(self, trader: TraderProfile, snap: DrawdownSnapshot) -> None:
        level = classify(snap.drawdown_percent, snap.max_drawdown_percent)
        previous = self._last_levels.get(trader.id)

        if level is None:
            if previous is not None:
                del self._last_levels[trader.id]
                logger.info("drawdown_recovered", extra={"trader_id": trader.id})
                self._bus.publish(
                    DrawdownRecovered(
                        trader_id=trader.id,
                        previous_level=previous.value,
                        drawdown_percent=snap.drawdown_percent,
                    )
                )
            return

        if level == previous and level != DrawdownLevel.LIMIT_REACHED:
            return

        self._last_levels[trader.id] = level
        logger.warning(
            "drawdown_alert",
            extra={
                "trader_id": trader.id,
                "level": level.value,
                "drawdown_percent": snap.drawdown_percent,
                "max_drawdown_percent": snap.max_drawdown_percent,
            },
        )
        self._bus.publish(
            DrawdownAlert(
                trader_id=trader.id,
                level=level.value,
                drawdown_percent=snap.drawdown_percent,
                max_drawdown_percent=snap.max_drawdown_percent,
                current_equity=snap.current_equity,
                peak_balance=snap.peak_balance,
            )
        )
        await log_activity(
            self._repo,
            ActivityType.RISK,
            f"Drawdown {level.value}: {snap.drawdown_percent:.1f}% (limit: {snap.max_drawdown_percent:g}%)",
            trader_id=trader.id,
            **snap.model_dump(exclude={"trader_id"}),
        )

        if level == DrawdownLevel.LIMIT_REACHED:
            await self._pause(trader.id)

    async def _pause(self, trader_id: str) -> None:
        try:
            await self._repo.update_trader(trader_id, status=TraderStatus.PAUSED)
        except Exception:
            logger.error("drawdown_pause_failed", extra={"trader_id": trader_id}, exc_info=True)
            return
        await log_activity(
            self._repo,
            ActivityType.WARNING,
            "Trading paused due to max drawdown limit reached",
            trader_id=trader_id,
        )
        self._bus.publish(TraderPausedEvent(trader_id=trader_id, reason="drawdown_limit"))
        logger.warning("trader_paused", extra={"trader_id": trader_id, "reason": "drawdown_limit"})
