"""Order executor: risk-checked order placement with position bookkeeping.

Every order flows through ``OrderExecutor.execute`` so that:
- the risk gate is consulted before anything reaches the exchange
- every attempt leaves exactly one TradeRecord behind (rejected trades are
  stored as CANCELLED)
- fills update the local position ledger and trader statistics

Exchange failures never escape ``execute``: the trade is marked FAILED and a
failure result is returned for the retry scheduler. Storage failures while
creating or updating the trade record do propagate.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from copytrade.api.clob_client import ClobClient
from copytrade.config import EXECUTION_TRADE_RETRY_LIMIT
from copytrade.errors import (
    ErrorCode,
    ExchangeNotConnected,
    FailureKind,
    NotFoundError,
    RetryNotAllowed,
    failure_kind,
)
from copytrade.events import EventBus, TradeUpdateEvent
from copytrade.execution.risk_gate import RiskCheckParams, RiskGate
from copytrade.models import (
    ActivityType,
    OrderFill,
    OrderType,
    PositionRecord,
    PositionStatus,
    TradeRecord,
    TradeSide,
    TradeStatus,
    utcnow,
)
from copytrade.storage.repository import Repository, log_activity

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class ExecuteParams(BaseModel):
    trader_id: str
    market_id: str
    token_id: str
    outcome: str = ""
    side: TradeSide
    amount: float = Field(..., ge=0, description="USDC notional.")
    order_type: OrderType = OrderType.MARKET
    limit_price: Optional[float] = Field(default=None, gt=0, lt=1)
    source_trade_size: Optional[float] = None
    protective: bool = Field(default=False, description="Protective close; skips exposure checks.")


class ExecutionResult(BaseModel):
    success: bool
    trade_id: str
    order_id: Optional[str] = None
    executed_amount: Optional[float] = None
    avg_price: Optional[float] = None
    shares: Optional[float] = None
    slippage: Optional[float] = Field(default=None, description="Fraction, 0-1.")
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Order Executor
# ---------------------------------------------------------------------------


class OrderExecutor:
    def __init__(
        self,
        repository: Repository,
        exchange: ClobClient,
        risk_gate: RiskGate,
        bus: Optional[EventBus] = None,
        max_retries: int = EXECUTION_TRADE_RETRY_LIMIT,
    ) -> None:
        self._repo = repository
        self._exchange = exchange
        self._risk = risk_gate
        self._bus = bus
        self.max_retries = max_retries

    async def execute(self, params: ExecuteParams) -> ExecutionResult:
        """Risk-check, record and place one order."""
        risk = await self._risk.check(self._risk_params(params, params.amount))

        if not risk.approved:
            trade = await self._repo.create_trade(
                TradeRecord(
                    trader_id=params.trader_id,
                    market_id=params.market_id,
                    token_id=params.token_id,
                    outcome=params.outcome,
                    side=params.side,
                    order_type=params.order_type,
                    requested_amount=params.amount,
                    status=TradeStatus.CANCELLED,
                    failure_reason=f"Risk check failed: {risk.rejection_reason}",
                    source_trade_size=params.source_trade_size,
                )
            )
            self._publish_trade(trade)
            return ExecutionResult(
                success=False,
                trade_id=trade.id,
                error=risk.rejection_reason,
                failure_kind=FailureKind.REJECTED,
            )

        final_amount = risk.final_amount(params.amount)
        if risk.warnings:
            logger.info(
                "trade_approved_with_warnings",
                extra={"trader_id": params.trader_id, "warnings": risk.warnings},
            )

        trade = await self._repo.create_trade(
            TradeRecord(
                trader_id=params.trader_id,
                market_id=params.market_id,
                token_id=params.token_id,
                outcome=params.outcome,
                side=params.side,
                order_type=params.order_type,
                requested_amount=final_amount,
                price=params.limit_price or 0.0,
                status=TradeStatus.PENDING,
                source_trade_size=params.source_trade_size,
            )
        )
        result = await self._place(trade)
        result.warnings = list(risk.warnings)
        return result

    async def retry_trade(self, trade_id: str) -> ExecutionResult:
        """Re-attempt a FAILED trade against the same trade record."""
        trade = await self._repo.get_trade(trade_id)
        if trade is None:
            raise NotFoundError(ErrorCode.TRADE_NOT_FOUND, f"Trade {trade_id} not found")
        if trade.status != TradeStatus.FAILED:
            raise RetryNotAllowed("Only failed trades can be retried")
        if trade.retry_count >= self.max_retries:
            raise RetryNotAllowed("Maximum retry attempts reached")

        logger.info("trade_retry", extra={"trade_id": trade.id, "retry_count": trade.retry_count})

        risk = await self._risk.check(
            RiskCheckParams(
                trader_id=trade.trader_id,
                market_id=trade.market_id,
                token_id=trade.token_id,
                side=trade.side,
                amount=trade.requested_amount,
                estimated_price=trade.price or None,
            )
        )
        if not risk.approved:
            trade = await self._repo.update_trade(
                trade.id,
                failure_reason=f"Risk check failed: {risk.rejection_reason}",
                retry_count=trade.retry_count + 1,
            )
            self._publish_trade(trade)
            return ExecutionResult(
                success=False,
                trade_id=trade.id,
                error=risk.rejection_reason,
                failure_kind=FailureKind.REJECTED,
            )

        final_amount = risk.final_amount(trade.requested_amount)
        if final_amount != trade.requested_amount:
            trade = await self._repo.update_trade(trade.id, requested_amount=final_amount)

        result = await self._place(trade)
        result.warnings = list(risk.warnings)
        return result

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _risk_params(params: ExecuteParams, amount: float) -> RiskCheckParams:
        return RiskCheckParams(
            trader_id=params.trader_id,
            market_id=params.market_id,
            token_id=params.token_id,
            side=params.side,
            amount=amount,
            estimated_price=params.limit_price,
            protective=params.protective,
        )

    async def _place(self, trade: TradeRecord) -> ExecutionResult:
        logger.info(
            "trade_executing",
            extra={
                "trade_id": trade.id,
                "trader_id": trade.trader_id,
                "side": trade.side.value,
                "amount": trade.requested_amount,
                "token_id": trade.token_id,
            },
        )

        try:
            if not self._exchange.is_connected():
                raise ExchangeNotConnected()

            price = await self._exchange.get_price(trade.token_id)
            expected_price = price.ask if trade.side == TradeSide.BUY else price.bid
            max_shares = await self._held_shares(trade) if trade.side == TradeSide.SELL else None

            if trade.order_type == OrderType.LIMIT and trade.price > 0:
                size = trade.requested_amount / trade.price
                if max_shares is not None:
                    size = min(size, max_shares)
                fill = await self._exchange.create_limit_order(
                    trade.token_id, trade.side, size, trade.price
                )
            else:
                fill = await self._exchange.create_market_order(
                    trade.token_id, trade.side, trade.requested_amount, max_shares=max_shares
                )
        except Exception as exc:
            return await self._mark_failed(trade, exc)

        return await self._record_fill(trade, fill, expected_price)

    async def _held_shares(self, trade: TradeRecord) -> Optional[float]:
        """Shares a SELL may dispose of; None when the ledger has no position."""
        position = None
        if trade.market_id:
            position = await self._repo.find_open_position(
                trade.trader_id, trade.market_id, trade.token_id
            )
        if position is None:
            position = await self._repo.find_open_position_by_token(trade.trader_id, trade.token_id)
        return position.shares if position is not None else None

    async def _record_fill(
        self, trade: TradeRecord, fill: OrderFill, expected_price: float
    ) -> ExecutionResult:
        fill_price = fill.avg_fill_price or expected_price
        slippage: Optional[float] = None
        if fill.avg_fill_price is not None and expected_price > 0:
            slippage = abs(fill.avg_fill_price - expected_price) / expected_price
        executed_amount = fill.filled_size * fill_price

        trade = await self._repo.update_trade(
            trade.id,
            order_id=fill.order_id,
            status=TradeStatus.EXECUTED if fill.is_filled else TradeStatus.PARTIALLY_FILLED,
            executed_amount=executed_amount,
            avg_fill_price=fill.avg_fill_price,
            shares=fill.filled_size,
            slippage=slippage * 100 if slippage is not None else None,
            executed_at=utcnow(),
            failure_reason="",
            next_retry_at=None,
        )

        await self.apply_fill(trade, fill.filled_size, fill_price)
        await self._update_trader_stats(trade.trader_id, trade.executed_at)
        self._publish_trade(trade)

        logger.info(
            "trade_executed",
            extra={
                "trade_id": trade.id,
                "order_id": fill.order_id,
                "status": trade.status.value,
                "shares": fill.filled_size,
                "avg_price": fill.avg_fill_price,
                "executed_amount": executed_amount,
            },
        )

        return ExecutionResult(
            success=True,
            trade_id=trade.id,
            order_id=fill.order_id,
            executed_amount=executed_amount,
            avg_price=fill.avg_fill_price,
            shares=fill.filled_size,
            slippage=slippage,
        )

    async def _mark_failed(self, trade: TradeRecord, exc: Exception) -> ExecutionResult:
        message = str(exc) or type(exc).__name__
        trade = await self._repo.update_trade(
            trade.id,
            status=TradeStatus.FAILED,
            failure_reason=message,
            retry_count=trade.retry_count + 1,
        )
        logger.error(
            "trade_execution_failed",
            extra={"trade_id": trade.id, "error": message, "retry_count": trade.retry_count},
            exc_info=True,
        )
        await log_activity(
            self._repo,
            ActivityType.ERROR,
            f"Trade execution failed: {message}",
            trader_id=trade.trader_id,
            trade_id=trade.id,
            token_id=trade.token_id,
            side=trade.side.value,
            amount=trade.requested_amount,
        )
        self._publish_trade(trade)
        return ExecutionResult(
            success=False,
            trade_id=trade.id,
            error=message,
            failure_kind=failure_kind(exc),
        )

    async def apply_fill(self, trade: TradeRecord, shares: float, price: float) -> Optional[PositionRecord]:
        """Update the position ledger for a fill.

        BUY adds shares at a volume-weighted average entry price. SELL removes
        at most the held shares, realises ``sold * (price - avg_entry)`` and
        closes the position when nothing is left.
        """
        if shares <= 0:
            return None

        position = await self._repo.find_open_position(
            trade.trader_id, trade.market_id, trade.token_id
        )

        if trade.side == TradeSide.BUY:
            if position is None:
                position = PositionRecord(
                    trader_id=trade.trader_id,
                    market_id=trade.market_id,
                    token_id=trade.token_id,
                    outcome=trade.outcome,
                    shares=shares,
                    avg_entry_price=price,
                    total_cost=shares * price,
                )
            else:
                new_shares = position.shares + shares
                position = position.model_copy(
                    update={
                        "shares": new_shares,
                        "avg_entry_price": (
                            position.shares * position.avg_entry_price + shares * price
                        ) / new_shares,
                        "total_cost": position.total_cost + shares * price,
                    }
                )
            return await self._repo.save_position(position)

        if position is None:
            logger.warning(
                "sell_without_position",
                extra={"trade_id": trade.id, "token_id": trade.token_id},
            )
            return None

        sold = min(shares, position.shares)
        remaining = position.shares - sold
        realized = sold * (price - position.avg_entry_price)
        changes = {
            "shares": remaining,
            "realized_pnl": position.realized_pnl + realized,
            "total_cost": remaining * position.avg_entry_price,
        }
        if remaining <= 1e-9:
            changes.update(shares=0.0, total_cost=0.0, status=PositionStatus.CLOSED, closed_at=utcnow())
        position = await self._repo.save_position(position.model_copy(update=changes))
        logger.info(
            "position_reduced",
            extra={
                "position_id": position.id,
                "sold": sold,
                "remaining": position.shares,
                "realized_pnl": realized,
                "status": position.status.value,
            },
        )
        return position

    async def _update_trader_stats(self, trader_id: str, traded_at: Optional[datetime]) -> None:
        try:
            trades = await self._repo.list_trades(trader_id=trader_id, status=TradeStatus.EXECUTED)
            total = len(trades)
            profitable = sum(1 for t in trades if (t.executed_amount or 0) > t.requested_amount)
            await self._repo.update_trader(
                trader_id,
                total_trades=total,
                profitable_trades=profitable,
                win_rate=profitable / total if total else 0.0,
                last_trade_at=traded_at or utcnow(),
            )
        except Exception:
            logger.warning("trader_stats_update_failed", extra={"trader_id": trader_id}, exc_info=True)

    def _publish_trade(self, trade: TradeRecord) -> None:
        if self._bus is None:
            return
        try:
            self._bus.publish(
                TradeUpdateEvent(
                    trade_id=trade.id,
                    trader_id=trade.trader_id,
                    status=trade.status,
                    side=trade.side,
                    token_id=trade.token_id,
                    requested_amount=trade.requested_amount,
                    executed_amount=trade.executed_amount,
                    failure_reason=trade.failure_reason,
                )
            )
        except Exception:
            logger.debug("trade_event_publish_failed", extra={"trade_id": trade.id}, exc_info=True)
