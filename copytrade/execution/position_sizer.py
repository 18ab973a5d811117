"""Position sizing for copied trades."""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel, Field

from copytrade.api.clob_client import ClobClient
from copytrade.config import SIZING_BALANCE_BUFFER
from copytrade.models import PositionRecord, RiskLimits, TradeSide, resolve_limits
from copytrade.storage.repository import Repository

logger = logging.getLogger(__name__)


class SizingResult(BaseModel):
    recommended_size: float = 0.0
    adjusted_size: float = 0.0
    reasons: list[str] = Field(default_factory=list)
    can_execute: bool = False
    estimated_slippage: float = Field(default=0.0, description="Fraction, 0-1.")


class PositionSizer:
    """Turns a source trader's trade size into a safe copy amount (USDC).

    The copy amount is the smaller of an allocation cap (a share of our
    balance) and a proportional cap (a share of the source trade), bounded
    by the trader's max position size and by the balance minus a $1 buffer,
    then shrunk if the book cannot absorb it within slippage tolerance.
    """

    def __init__(
        self,
        repository: Repository,
        exchange: ClobClient,
        limits: Optional[RiskLimits] = None,
    ) -> None:
        self._repo = repository
        self._exchange = exchange
        self._limits = limits or RiskLimits()

    async def size(
        self,
        trader_id: str,
        source_trade_size: float,
        token_id: str,
        side: TradeSide,
    ) -> SizingResult:
        trader = await self._repo.get_trader(trader_id)
        if trader is None:
            return SizingResult(reasons=["Trader not found"])

        try:
            balance = await self._exchange.get_balance()
        except Exception:
            logger.warning("sizing_balance_unavailable", extra={"trader_id": trader_id}, exc_info=True)
            return SizingResult(reasons=["Failed to get wallet balance"])

        limits = resolve_limits(trader, self._limits)
        max_size = trader.max_position_size or None
        reasons: list[str] = []

        allocation_cap = balance * trader.allocation_percent / 100
        copy_cap = source_trade_size * trader.copy_percent / 100
        if max_size is not None:
            allocation_cap = min(allocation_cap, max_size)
            copy_cap = min(copy_cap, max_size)

        recommended = min(allocation_cap, copy_cap)

        if recommended < limits.min_trade_amount:
            if recommended > 0:
                reasons.append(
                    f"Size {recommended:.2f} below minimum {limits.min_trade_amount:g}"
                )
            recommended = 0.0

        if max_size is not None and recommended > max_size:
            reasons.append(f"Capped at max position size {max_size:g}")
            recommended = max_size

        spendable = max(0.0, balance - SIZING_BALANCE_BUFFER)
        if recommended > spendable:
            reasons.append(f"Reduced due to available balance {balance:.2f}")
            recommended = spendable

        estimated_slippage = 0.0
        if recommended > 0:
            try:
                estimated_slippage = await self._exchange.estimate_slippage(token_id, side, recommended)
            except Exception:
                logger.warning("sizing_slippage_unavailable", extra={"token_id": token_id}, exc_info=True)

        tolerance = limits.max_slippage_percent
        slippage_pct = estimated_slippage * 100
        adjusted = recommended
        if slippage_pct > tolerance and slippage_pct > 0:
            adjusted = recommended * (tolerance / slippage_pct)
            reasons.append(f"Reduced from {recommended:.2f} to {adjusted:.2f} due to slippage")

        can_execute = limits.min_trade_amount <= adjusted <= balance
        if not can_execute and adjusted > 0:
            reasons.append("Final size validation failed")

        logger.debug(
            "position_sized",
            extra={
                "trader_id": trader_id,
                "source_trade_size": source_trade_size,
                "balance": balance,
                "allocation_cap": allocation_cap,
                "copy_cap": copy_cap,
                "recommended": recommended,
                "adjusted": adjusted,
                "slippage": estimated_slippage,
                "can_execute": can_execute,
            },
        )

        return SizingResult(
            recommended_size=recommended,
            adjusted_size=adjusted,
            reasons=reasons,
            can_execute=can_execute,
            estimated_slippage=estimated_slippage,
        )

    async def existing_position(
        self, trader_id: str, market_id: str, token_id: str
    ) -> Optional[PositionRecord]:
        return await self._repo.find_open_position(trader_id, market_id, token_id)

    async def increase_size(
        self, trader_id: str, existing_value: float, additional_amount: float
    ) -> float:
        """Cap an addition to the trader's remaining max-position headroom."""
        trader = await self._repo.get_trader(trader_id)
        if trader is None or not trader.max_position_size:
            return additional_amount
        headroom = trader.max_position_size - existing_value
        return min(additional_amount, max(0.0, headroom))

    async def sell_value(self, token_id: str, shares: float) -> float:
        """USDC raised by selling ``shares`` at the current best bid."""
        price = await self._exchange.get_price(token_id)
        return shares * price.bid

    async def decrease_size(self, trader_id: str, token_id: str, requested_shares: float) -> float:
        """Shares we can actually sell: at most what we hold, 0 if nothing."""
        position = await self._repo.find_open_position_by_token(trader_id, token_id)
        if position is None:
            return 0.0
        return min(requested_shares, position.shares)
