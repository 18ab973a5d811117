"""Risk gate: pre-trade checks for every copied order.

Every order passes through the gate before reaching the order executor.
Checks run in a fixed order and stop at the first rejection:

1. Trader exists
2. Wallet balance (BUY only; warns within a $5 buffer)
3. Max position size per (market, token), shrinking the amount to fit
4. Drawdown from the trader's peak equity
5. Daily loss limit
6. Maximum open positions
7. Estimated slippage against the live order book
8. Minimum trade amount

Check 3 applies to BUY only. Checks 4-6 apply to both sides unless the
order is a protective close (``protective=True``, used by the stop-loss /
take-profit guard), which skips them. Check 6 only counts when the order
would open a new position.

Rejections are expected outcomes and come back as a result, never raised.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, Field

from copytrade.api.clob_client import ClobClient
from copytrade.config import RISK_BALANCE_BUFFER, RISK_MIN_POSITION_HEADROOM
from copytrade.models import (
    PositionStatus,
    RiskLimits,
    TradeSide,
    TradeStatus,
    TraderProfile,
    resolve_limits,
    start_of_utc_day,
)
from copytrade.storage.repository import Repository

logger = logging.getLogger(__name__)

# Warning bands as fractions of the corresponding limit
_DRAWDOWN_WARN = 0.8
_DAILY_LOSS_WARN = 0.8
_SLIPPAGE_WARN = 0.7


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class RiskMetrics(BaseModel):
    current_drawdown: float = Field(default=0.0, description="Percent below peak equity.")
    daily_pnl: float = 0.0
    open_position_value: float = 0.0
    available_balance: float = 0.0
    estimated_slippage: float = Field(default=0.0, description="Percent.")


class RiskCheckParams(BaseModel):
    trader_id: str
    market_id: str
    token_id: str
    side: TradeSide
    amount: float = Field(..., ge=0)
    estimated_price: Optional[float] = None
    protective: bool = False


class RiskCheckResult(BaseModel):
    approved: bool
    adjusted_amount: Optional[float] = None
    warnings: list[str] = Field(default_factory=list)
    rejection_reason: Optional[str] = None
    metrics: RiskMetrics = Field(default_factory=RiskMetrics)

    def final_amount(self, requested: float) -> float:
        return self.adjusted_amount if self.adjusted_amount is not None else requested


# ---------------------------------------------------------------------------
# Risk Gate
# ---------------------------------------------------------------------------


class RiskGate:
    """Pre-trade risk controls with runtime-adjustable global limits.

    ``limits`` is held by reference: the sizer and drawdown guard built on
    the same object see every ``set_global_limits`` change.
    """

    def __init__(
        self,
        repository: Repository,
        exchange: ClobClient,
        limits: Optional[RiskLimits] = None,
    ) -> None:
        self._repo = repository
        self._exchange = exchange
        self._limits = limits if limits is not None else RiskLimits()

    def get_global_limits(self) -> RiskLimits:
        return self._limits.model_copy()

    def set_global_limits(self, **changes: Any) -> RiskLimits:
        """Update some global limits in place; unknown or invalid values raise."""
        unknown = set(changes) - set(RiskLimits.model_fields)
        if unknown:
            raise ValueError(f"Unknown risk limits: {', '.join(sorted(unknown))}")
        updated = RiskLimits(**{**self._limits.model_dump(), **changes})
        for name in RiskLimits.model_fields:
            setattr(self._limits, name, getattr(updated, name))
        logger.info("risk_limits_updated", extra={"limits": self._limits.model_dump()})
        return self.get_global_limits()

    def limits_for(self, trader: Optional[TraderProfile]) -> RiskLimits:
        return resolve_limits(trader, self._limits)

    async def check(self, params: RiskCheckParams) -> RiskCheckResult:
        """Run every check in order; stop at the first rejection."""
        warnings: list[str] = []

        # 1. Trader exists
        trader = await self._repo.get_trader(params.trader_id)
        if trader is None:
            return self._reject("Trader not found", RiskMetrics(), params)

        limits = self.limits_for(trader)
        metrics = await self.calculate_metrics(trader)
        is_buy = params.side == TradeSide.BUY
        amount = params.amount

        # 2. Balance
        if is_buy:
            balance = metrics.available_balance
            if amount > balance:
                return self._reject(
                    f"Insufficient balance: need {amount:.2f}, have {balance:.2f}",
                    metrics,
                    params,
                )
            if amount > balance - RISK_BALANCE_BUFFER:
                warnings.append(
                    f"Low balance warning: {balance - amount:.2f} remaining after trade"
                )

        position = await self._repo.find_open_position(
            trader.id, params.market_id, params.token_id
        )

        # 3. Max position size
        if is_buy:
            current_value = position.value if position else 0.0
            if current_value + amount > limits.max_position_size:
                headroom = max(0.0, limits.max_position_size - current_value)
                if headroom < RISK_MIN_POSITION_HEADROOM:
                    return self._reject(
                        f"Position size limit reached: current {current_value:.2f}, "
                        f"max {limits.max_position_size:.2f}",
                        metrics,
                        params,
                    )
                warnings.append(
                    f"Amount adjusted from {amount:.2f} to {headroom:.2f} due to position limit"
                )
                amount = headroom

        if not params.protective:
            # 4. Drawdown
            if metrics.current_drawdown >= limits.max_drawdown_percent:
                return self._reject(
                    f"Max drawdown reached: {metrics.current_drawdown:.1f}% "
                    f"(limit: {limits.max_drawdown_percent:g}%)",
                    metrics,
                    params,
                )
            if metrics.current_drawdown >= limits.max_drawdown_percent * _DRAWDOWN_WARN:
                warnings.append(
                    f"Approaching drawdown limit: {metrics.current_drawdown:.1f}% "
                    f"of {limits.max_drawdown_percent:g}%"
                )

            # 5. Daily loss
            if metrics.daily_pnl <= -limits.daily_loss_limit:
                return self._reject(
                    f"Daily loss limit reached: {metrics.daily_pnl:.2f} "
                    f"(limit: -{limits.daily_loss_limit:g})",
                    metrics,
                    params,
                )
            if metrics.daily_pnl <= -limits.daily_loss_limit * _DAILY_LOSS_WARN:
                warnings.append(
                    f"Approaching daily loss limit: {metrics.daily_pnl:.2f} "
                    f"of -{limits.daily_loss_limit:g}"
                )

            # 6. Max open positions (adding to a held position does not open a new one)
            if position is None:
                open_count = await self._repo.count_open_positions(trader.id)
                if open_count >= limits.max_open_positions:
                    return self._reject(
                        f"Max open positions reached: {open_count} "
                        f"(limit: {limits.max_open_positions})",
                        metrics,
                        params,
                    )

        # 7. Slippage
        try:
            slippage_pct = (
                await self._exchange.estimate_slippage(params.token_id, params.side, amount)
            ) * 100
        except Exception:
            logger.warning(
                "slippage_estimate_failed",
                extra={"trader_id": trader.id, "token_id": params.token_id},
                exc_info=True,
            )
            warnings.append("Could not estimate slippage")
        else:
            metrics.estimated_slippage = slippage_pct
            if slippage_pct > limits.max_slippage_percent:
                return self._reject(
                    f"Estimated slippage too high: {slippage_pct:.2f}% "
                    f"(max: {limits.max_slippage_percent:g}%)",
                    metrics,
                    params,
                )
            if slippage_pct > limits.max_slippage_percent * _SLIPPAGE_WARN:
                warnings.append(f"High slippage warning: {slippage_pct:.2f}%")

        # 8. Minimum trade amount
        if amount < limits.min_trade_amount:
            return self._reject(
                f"Trade amount {amount:.2f} below minimum {limits.min_trade_amount:g}",
                metrics,
                params,
            )

        logger.info(
            "risk_check_passed",
            extra={
                "trader_id": trader.id,
                "token_id": params.token_id,
                "side": params.side.value,
                "amount": amount,
                "warnings": warnings,
                "drawdown": metrics.current_drawdown,
            },
        )
        return RiskCheckResult(
            approved=True,
            adjusted_amount=amount if amount != params.amount else None,
            warnings=warnings,
            metrics=metrics,
        )

    async def calculate_metrics(self, trader: TraderProfile) -> RiskMetrics:
        """Balance, open exposure, today's P&L and drawdown for a trader."""
        try:
            balance = await self._exchange.get_balance()
        except Exception:
            logger.warning("risk_balance_unavailable", extra={"trader_id": trader.id}, exc_info=True)
            balance = 0.0

        positions = await self._repo.list_positions(trader.id, PositionStatus.OPEN)
        open_value = sum(p.value for p in positions)

        todays_trades = await self._repo.list_trades(
            trader_id=trader.id,
            status=TradeStatus.EXECUTED,
            since=start_of_utc_day(),
        )
        daily_pnl = sum(t.pnl for t in todays_trades)

        equity = balance + open_value
        peak = trader.peak_balance or equity
        drawdown = max(0.0, (peak - equity) / peak * 100) if peak > 0 else 0.0

        return RiskMetrics(
            current_drawdown=drawdown,
            daily_pnl=daily_pnl,
            open_position_value=open_value,
            available_balance=balance,
        )

    @staticmethod
    def _reject(reason: str, metrics: RiskMetrics, params: RiskCheckParams) -> RiskCheckResult:
        logger.warning(
            "risk_check_rejected",
            extra={
                "trader_id": params.trader_id,
                "token_id": params.token_id,
                "side": params.side.value,
                "amount": params.amount,
                "reason": reason,
            },
        )
        return RiskCheckResult(approved=False, rejection_reason=reason, metrics=metrics)
