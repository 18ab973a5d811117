"""Copy orchestrator: turns source position changes into mirrored trades.

Pipeline per ``PositionChangeEvent``: trader status check, sizing, SELL
inventory check, outcome resolution, execution, and a retry on failure.
Decisions for one trader are serialised with a per-trader lock so two
near-simultaneous signals cannot spend the same balance twice.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from pydantic import BaseModel

from copytrade.api.gamma_client import GammaClient
from copytrade.events import CopyCompletedEvent, EventBus, PositionChangeEvent, Subscription
from copytrade.execution.order_executor import ExecuteParams, ExecutionResult, OrderExecutor
from copytrade.execution.position_sizer import PositionSizer, SizingResult
from copytrade.execution.retry_scheduler import RetryScheduler
from copytrade.models import ActivityType, OrderType, TradeSide, TraderStatus
from copytrade.storage.repository import Repository, log_activity

logger = logging.getLogger(__name__)

DEFAULT_OUTCOME = "Yes"


class CopyStats(BaseModel):
    total_copied: int = 0
    successful_copies: int = 0
    failed_copies: int = 0
    skipped_copies: int = 0
    total_volume: float = 0.0


class CopyResult(BaseModel):
    success: bool
    trader_id: str
    trade_id: Optional[str] = None
    skipped: bool = False
    skip_reason: str = ""
    error: str = ""
    execution: Optional[ExecutionResult] = None


class CopyOrchestrator:
    def __init__(
        self,
        repository: Repository,
        bus: EventBus,
        sizer: PositionSizer,
        executor: OrderExecutor,
        retry_scheduler: RetryScheduler,
        gamma_client: Optional[GammaClient] = None,
    ) -> None:
        self._repo = repository
        self._bus = bus
        self._sizer = sizer
        self._executor = executor
        self._retries = retry_scheduler
        self._gamma = gamma_client
        self._stats = CopyStats()
        self._locks: dict[str, asyncio.Lock] = {}
        self._subscription: Optional[Subscription] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            logger.warning("orchestrator_already_running")
            return
        self._running = True
        self._subscription = self._bus.subscribe(PositionChangeEvent, self.handle_event)
        logger.info("orchestrator_started")

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        logger.info("orchestrator_stopped")

    def get_stats(self) -> CopyStats:
        return self._stats.model_copy()

    def reset_stats(self) -> None:
        self._stats = CopyStats()

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "stats": self._stats.model_dump(),
            "busy_traders": [tid for tid, lock in self._locks.items() if lock.locked()],
        }

    async def handle_event(self, event: PositionChangeEvent) -> Optional[CopyResult]:
        """Process one change. Returns None when the event was dropped."""
        if not self._running:
            return None

        async with self._lock_for(event.trader_id):
            if not self._running:
                return None
            logger.info(
                "copy_processing",
                extra={
                    "trader_id": event.trader_id,
                    "token_id": event.token_id,
                    "change": event.change_kind.value,
                    "delta": event.delta,
                    "price": event.price,
                },
            )
            return await self._process(event)

    async def manual_copy(
        self, trader_id: str, token_id: str, side: TradeSide, amount: float
    ) -> CopyResult:
        """Operator-initiated trade; bypasses sizing and monitoring."""
        trader = await self._repo.get_trader(trader_id)
        if trader is None:
            return self._skip(trader_id, token_id, side, "Trader not found")

        position = await self._repo.find_open_position_by_token(trader_id, token_id)
        params = ExecuteParams(
            trader_id=trader_id,
            market_id=position.market_id if position else "",
            token_id=token_id,
            outcome=(position.outcome if position else "") or DEFAULT_OUTCOME,
            side=side,
            amount=amount,
            order_type=OrderType.MARKET,
        )
        async with self._lock_for(trader_id):
            try:
                result = await self._executor.execute(params)
            except Exception as exc:
                logger.error("manual_copy_failed", extra={"trader_id": trader_id}, exc_info=True)
                return CopyResult(success=False, trader_id=trader_id, error=str(exc))

        return CopyResult(
            success=result.success,
            trader_id=trader_id,
            trade_id=result.trade_id,
            error=result.error or "",
            execution=result,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _lock_for(self, trader_id: str) -> asyncio.Lock:
        lock = self._locks.get(trader_id)
        if lock is None:
            lock = self._locks[trader_id] = asyncio.Lock()
        return lock

    async def _process(self, event: PositionChangeEvent) -> Optional[CopyResult]:
        trader_id = event.trader_id
        side = event.change_kind.side

        trader = await self._repo.get_trader(trader_id)
        if trader is None:
            return self._skip(trader_id, event.token_id, side, "Trader not found")
        if trader.status != TraderStatus.ACTIVE:
            return self._skip(trader_id, event.token_id, side, "Copying not enabled for trader")

        source_trade_size = abs(event.delta) * event.price
        sizing = await self._sizer.size(trader_id, source_trade_size, event.token_id, side)
        if not sizing.can_execute:
            reason = "; ".join(sizing.reasons) or "Position sizing check failed"
            return self._skip(trader_id, event.token_id, side, reason)

        amount = sizing.adjusted_size
        if side == TradeSide.SELL:
            held = await self._sizer.existing_position(trader_id, event.market_id, event.token_id)
            if held is None or held.shares <= 0:
                return self._skip(trader_id, event.token_id, side, "No position to sell")
            sellable = await self._sizer.decrease_size(trader_id, event.token_id, abs(event.delta))
            if sellable <= 0:
                return self._skip(trader_id, event.token_id, side, "No shares available to sell")
            try:
                sell_value = await self._sizer.sell_value(event.token_id, sellable)
            except Exception:
                logger.warning("copy_sell_price_unavailable", extra={"trader_id": trader_id}, exc_info=True)
                return self._skip(trader_id, event.token_id, side, "Failed to get current price")
            amount = min(amount, sell_value)
            if amount <= 0:
                return self._skip(trader_id, event.token_id, side, "No shares available to sell")

        outcome = await self._resolve_outcome(event)

        if not self._running:
            logger.info("copy_discarded_after_stop", extra={"trader_id": trader_id})
            return None

        params = ExecuteParams(
            trader_id=trader_id,
            market_id=event.market_id,
            token_id=event.token_id,
            outcome=outcome,
            side=side,
            amount=amount,
            order_type=OrderType.MARKET,
            source_trade_size=source_trade_size,
        )

        try:
            result = await self._executor.execute(params)
        except Exception as exc:
            logger.error(
                "copy_execution_failed",
                extra={"trader_id": trader_id, "token_id": event.token_id},
                exc_info=True,
            )
            self._stats.total_copied += 1
            self._stats.failed_copies += 1
            self._publish(trader_id, "failed", side, event.token_id, amount, reason=str(exc))
            return CopyResult(success=False, trader_id=trader_id, error=str(exc))

        self._stats.total_copied += 1
        if result.success:
            self._stats.successful_copies += 1
            self._stats.total_volume += result.executed_amount or 0.0
        else:
            self._stats.failed_copies += 1
            await self._schedule_retry(result)

        await self._log_copy(trader_id, result, sizing, amount)
        self._publish(
            trader_id,
            "executed" if result.success else "failed",
            side,
            event.token_id,
            amount,
            trade_id=result.trade_id,
            reason=result.error or "",
        )

        return CopyResult(
            success=result.success,
            trader_id=trader_id,
            trade_id=result.trade_id,
            error=result.error or "",
            execution=result,
        )

    async def _resolve_outcome(self, event: PositionChangeEvent) -> str:
        if event.outcome:
            return event.outcome
        if self._gamma is not None and event.market_id:
            market = await self._gamma.get_market(event.market_id)
            if market is not None:
                label = market.outcome_for(event.token_id) or (market.outcomes[0] if market.outcomes else "")
                if label:
                    return label
        return DEFAULT_OUTCOME

    async def _schedule_retry(self, result: ExecutionResult) -> None:
        if not result.trade_id:
            return
        try:
            await self._retries.schedule_retry(result.trade_id)
        except Exception:
            logger.error("copy_retry_schedule_failed", extra={"trade_id": result.trade_id}, exc_info=True)

    async def _log_copy(
        self, trader_id: str, result: ExecutionResult, sizing: SizingResult, amount: float
    ) -> None:
        if result.success:
            await log_activity(
                self._repo,
                ActivityType.TRADE,
                f"Copied trade executed: {amount:.2f} USDC",
                trader_id=trader_id,
                trade_id=result.trade_id,
                recommended_size=sizing.recommended_size,
                adjusted_size=sizing.adjusted_size,
                sizing_reasons=sizing.reasons,
                executed_amount=result.executed_amount,
                avg_price=result.avg_price,
                slippage=result.slippage,
            )
        else:
            await log_activity(
                self._repo,
                ActivityType.WARNING,
                f"Copy trade failed: {result.error}",
                trader_id=trader_id,
                trade_id=result.trade_id,
                recommended_size=sizing.recommended_size,
                adjusted_size=sizing.adjusted_size,
                sizing_reasons=sizing.reasons,
                failure_kind=result.failure_kind.value if result.failure_kind else None,
            )

    def _skip(self, trader_id: str, token_id: str, side: TradeSide, reason: str) -> CopyResult:
        logger.debug("copy_skipped", extra={"trader_id": trader_id, "reason": reason})
        self._stats.skipped_copies += 1
        self._publish(trader_id, "skipped", side, token_id, 0.0, reason=reason)
        return CopyResult(success=False, trader_id=trader_id, skipped=True, skip_reason=reason)

    def _publish(
        self,
        trader_id: str,
        outcome: str,
        side: TradeSide,
        token_id: str,
        amount: float,
        trade_id: Optional[str] = None,
        reason: str = "",
    ) -> None:
        try:
            self._bus.publish(
                CopyCompletedEvent(
                    trader_id=trader_id,
                    outcome=outcome,
                    side=side,
                    token_id=token_id,
                    amount=amount,
                    trade_id=trade_id,
                    reason=reason,
                )
            )
        except Exception:
            logger.debug("copy_event_publish_failed", extra={"trader_id": trader_id}, exc_info=True)
