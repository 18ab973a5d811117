"""Domain models shared across the copy-trading pipeline."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from copytrade.config import (
    RETRY_BACKOFF_MULTIPLIER,
    RETRY_BASE_DELAY,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY,
    RETRY_SWEEP_INTERVAL,
    RISK_DAILY_LOSS_LIMIT,
    RISK_MAX_DRAWDOWN_PCT,
    RISK_MAX_OPEN_POSITIONS,
    RISK_MAX_POSITION_SIZE,
    RISK_MAX_SLIPPAGE_PCT,
    RISK_MIN_TRADE_AMOUNT,
    TRADER_DEFAULT_ALLOCATION_PCT,
    TRADER_DEFAULT_COPY_PCT,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def start_of_utc_day(now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TraderStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    DISABLED = "DISABLED"


class TradeSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class TradeStatus(str, Enum):
    """Lifecycle of a copied trade.

    PENDING -> EXECUTED | PARTIALLY_FILLED | FAILED | CANCELLED, and
    FAILED -> PERMANENTLY_FAILED once retries are exhausted.
    """

    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    PERMANENTLY_FAILED = "PERMANENTLY_FAILED"


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class ChangeKind(str, Enum):
    """How a source trader's holding changed between two polls."""

    NEW = "NEW"
    INCREASED = "INCREASED"
    DECREASED = "DECREASED"
    CLOSED = "CLOSED"

    @property
    def side(self) -> TradeSide:
        if self in (ChangeKind.NEW, ChangeKind.INCREASED):
            return TradeSide.BUY
        return TradeSide.SELL


class ActivityType(str, Enum):
    INFO = "INFO"
    TRADE = "TRADE"
    WARNING = "WARNING"
    ERROR = "ERROR"
    RISK = "RISK"


# ---------------------------------------------------------------------------
# Persistent entities
# ---------------------------------------------------------------------------


class TraderProfile(BaseModel):
    """A source trader being mirrored, with per-trader risk overrides."""

    id: str = Field(default_factory=new_id)
    wallet_address: str = Field(..., description="0x-prefixed source wallet.")
    name: str = Field(default="")
    status: TraderStatus = TraderStatus.ACTIVE

    # Sizing and risk overrides (None -> global default)
    allocation_percent: float = Field(default=TRADER_DEFAULT_ALLOCATION_PCT, ge=0, le=100)
    copy_percent: float = Field(default=TRADER_DEFAULT_COPY_PCT, ge=0)
    max_position_size: Optional[float] = Field(default=None, ge=0)
    min_trade_amount: Optional[float] = Field(default=None, ge=0)
    slippage_tolerance: Optional[float] = Field(default=None, ge=0, description="Percent.")
    max_drawdown_percent: Optional[float] = Field(default=None, ge=0)
    stop_loss_percent: Optional[float] = Field(default=None, ge=0)
    take_profit_percent: Optional[float] = Field(default=None, ge=0)
    trailing_stop_percent: Optional[float] = Field(default=None, ge=0)

    # Equity tracking and statistics
    peak_balance: Optional[float] = None
    total_trades: int = 0
    profitable_trades: int = 0
    win_rate: float = 0.0
    last_trade_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == TraderStatus.ACTIVE

    @property
    def has_sltp(self) -> bool:
        return bool(self.stop_loss_percent or self.take_profit_percent)


class PositionRecord(BaseModel):
    """Local ledger of what the operator account holds for one trader."""

    id: str = Field(default_factory=new_id)
    trader_id: str
    market_id: str
    token_id: str
    outcome: str = ""
    shares: float = Field(default=0.0, ge=0)
    avg_entry_price: float = 0.0
    total_cost: float = 0.0
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    status: PositionStatus = PositionStatus.OPEN
    opened_at: datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def value(self) -> float:
        """Position value at entry price."""
        return self.shares * self.avg_entry_price


class TradeRecord(BaseModel):
    """Audit record for one copied (or attempted) trade."""

    id: str = Field(default_factory=new_id)
    trader_id: str
    market_id: str
    token_id: str
    outcome: str = ""
    side: TradeSide
    order_type: OrderType = OrderType.MARKET
    requested_amount: float = Field(..., ge=0, description="USDC notional.")
    price: float = Field(default=0.0, description="Limit price, 0 for market orders.")
    executed_amount: Optional[float] = None
    avg_fill_price: Optional[float] = None
    shares: Optional[float] = None
    slippage: Optional[float] = Field(default=None, description="Realised slippage, percent.")
    status: TradeStatus = TradeStatus.PENDING
    order_id: str = ""
    failure_reason: str = ""
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    source_trade_size: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)
    executed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def pnl(self) -> float:
        """Executed minus requested notional."""
        return (self.executed_amount or 0.0) - self.requested_amount


class ActivityEntry(BaseModel):
    """Append-only audit log line."""

    id: str = Field(default_factory=new_id)
    type: ActivityType = ActivityType.INFO
    message: str
    trader_id: Optional[str] = None
    trade_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------


class SourcePosition(BaseModel):
    """A holding of a source trader as reported by the Data API."""

    market_id: str
    token_id: str
    outcome: str = ""
    shares: float
    avg_price: float = 0.0
    current_value: float = 0.0
    title: str = ""


class MarketInfo(BaseModel):
    condition_id: str
    question: str = ""
    outcomes: list[str] = Field(default_factory=list)
    token_ids: list[str] = Field(default_factory=list)

    def outcome_for(self, token_id: str) -> Optional[str]:
        """Outcome label for a token, if the token belongs to this market."""
        for tid, outcome in zip(self.token_ids, self.outcomes):
            if tid == token_id:
                return outcome
        return None


class BookLevel(BaseModel):
    price: float
    size: float


class OrderBook(BaseModel):
    """Order book with levels sorted best-first on both sides."""

    token_id: str
    bids: list[BookLevel] = Field(default_factory=list)
    asks: list[BookLevel] = Field(default_factory=list)


class PriceInfo(BaseModel):
    bid: float
    ask: float
    mid: float
    spread: float


class OrderFill(BaseModel):
    """Outcome of an order submitted to the exchange."""

    order_id: str
    status: str = Field(..., description="'filled' or 'partial'.")
    side: TradeSide
    size: float = Field(..., description="Requested shares.")
    price: float = Field(..., description="Reference price the order was placed at.")
    filled_size: float
    avg_fill_price: Optional[float] = None

    @property
    def is_filled(self) -> bool:
        return self.status == "filled"


# ---------------------------------------------------------------------------
# Limits and policies
# ---------------------------------------------------------------------------


class RiskLimits(BaseModel):
    """Risk limits; global defaults, some overridable per trader."""

    max_position_size: float = RISK_MAX_POSITION_SIZE
    max_drawdown_percent: float = RISK_MAX_DRAWDOWN_PCT
    daily_loss_limit: float = RISK_DAILY_LOSS_LIMIT
    max_open_positions: int = RISK_MAX_OPEN_POSITIONS
    max_slippage_percent: float = RISK_MAX_SLIPPAGE_PCT
    min_trade_amount: float = RISK_MIN_TRADE_AMOUNT


class RetryPolicy(BaseModel):
    max_attempts: int = RETRY_MAX_ATTEMPTS
    base_delay: float = RETRY_BASE_DELAY
    multiplier: float = RETRY_BACKOFF_MULTIPLIER
    max_delay: float = RETRY_MAX_DELAY
    sweep_interval: float = RETRY_SWEEP_INTERVAL

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before the given (1-based) attempt."""
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)


def resolve_limits(trader: Optional[TraderProfile], global_limits: RiskLimits) -> RiskLimits:
    """Effective limits for a trader.

    max_position_size, max_drawdown_percent, min_trade_amount and
    max_slippage_percent (the trader's slippage_tolerance) come from the
    trader when set to a non-zero value. daily_loss_limit and
    max_open_positions are always global.
    """
    if trader is None:
        return global_limits.model_copy()

    def pick(override: Optional[float], fallback: float) -> float:
        return override if override else fallback

    return RiskLimits(
        max_position_size=pick(trader.max_position_size, global_limits.max_position_size),
        max_drawdown_percent=pick(trader.max_drawdown_percent, global_limits.max_drawdown_percent),
        daily_loss_limit=global_limits.daily_loss_limit,
        max_open_positions=global_limits.max_open_positions,
        max_slippage_percent=pick(trader.slippage_tolerance, global_limits.max_slippage_percent),
        min_trade_amount=pick(trader.min_trade_amount, global_limits.min_trade_amount),
    )
