"""Shared fixtures: in-memory repository, scripted exchange and market data."""

from __future__ import annotations

import asyncio
import itertools
from typing import Callable, Optional

import pytest
import pytest_asyncio

from copytrade.errors import ExchangeError
from copytrade.events import EventBus
from copytrade.execution.order_executor import OrderExecutor
from copytrade.execution.position_sizer import PositionSizer
from copytrade.execution.risk_gate import RiskGate
from copytrade.models import (
    MarketInfo,
    OrderFill,
    PositionRecord,
    PriceInfo,
    RiskLimits,
    SourcePosition,
    TradeSide,
    TraderProfile,
)
from copytrade.storage.memory import MemoryRepository

WALLET = "0x" + "ab" * 20
MARKET = "0xmarket"
TOKEN = "token-yes"


class FakeExchange:
    """Scripted stand-in for ClobClient.

    Market orders fill at the touch (ask for BUY, bid for SELL) unless
    ``fill_price`` is set. Exceptions queued in ``order_errors`` are raised
    by the next order calls, one each.
    """

    def __init__(self, balance: float = 1000.0, bid: float = 0.49, ask: float = 0.50) -> None:
        self.dry_run = True
        self.connected = True
        self.balance = balance
        self.prices: dict[str, tuple[float, float]] = {}
        self.default_bid = bid
        self.default_ask = ask
        self.slippage = 0.0
        self.fill_price: Optional[float] = None
        self.fill_ratio = 1.0
        self.order_errors: list[Exception] = []
        self.balance_error: Optional[Exception] = None
        self.slippage_error: Optional[Exception] = None
        self.price_errors: dict[str, Exception] = {}
        self.orders: list[dict] = []
        self.cancelled_all = False
        self._ids = itertools.count(1)

    def set_price(self, token_id: str, bid: float, ask: Optional[float] = None) -> None:
        self.prices[token_id] = (bid, ask if ask is not None else bid + 0.01)

    async def initialize(self) -> None:
        return None

    def is_connected(self) -> bool:
        return self.connected

    async def close(self) -> None:
        return None

    async def get_balance(self) -> float:
        if self.balance_error is not None:
            raise self.balance_error
        return self.balance

    async def get_price(self, token_id: str) -> PriceInfo:
        if token_id in self.price_errors:
            raise self.price_errors[token_id]
        bid, ask = self.prices.get(token_id, (self.default_bid, self.default_ask))
        return PriceInfo(bid=bid, ask=ask, mid=(bid + ask) / 2, spread=ask - bid)

    async def estimate_slippage(self, token_id: str, side: TradeSide, amount: float) -> float:
        if self.slippage_error is not None:
            raise self.slippage_error
        return self.slippage

    async def create_market_order(
        self, token_id: str, side: TradeSide, amount: float, max_shares: Optional[float] = None
    ) -> OrderFill:
        price = await self.get_price(token_id)
        touch = price.ask if side == TradeSide.BUY else price.bid
        size = amount / touch
        if max_shares is not None:
            size = min(size, max_shares)
        return self._fill("market", token_id, side, size, touch)

    async def create_limit_order(
        self, token_id: str, side: TradeSide, size: float, price: float
    ) -> OrderFill:
        return self._fill("limit", token_id, side, size, price)

    async def cancel_all(self) -> bool:
        self.cancelled_all = True
        return True

    def _fill(self, kind: str, token_id: str, side: TradeSide, size: float, price: float) -> OrderFill:
        self.orders.append({"kind": kind, "token_id": token_id, "side": side, "size": size, "price": price})
        if self.order_errors:
            raise self.order_errors.pop(0)
        fill_price = self.fill_price or price
        return OrderFill(
            order_id=f"fake-{next(self._ids)}",
            status="filled" if self.fill_ratio >= 1 else "partial",
            side=side,
            size=size,
            price=price,
            filled_size=size * self.fill_ratio,
            avg_fill_price=fill_price,
        )


class FakeDataClient:
    """Source-wallet holdings keyed by lowercase wallet address."""

    def __init__(self) -> None:
        self.holdings: dict[str, list[SourcePosition]] = {}
        self.error: Optional[Exception] = None
        self.calls = 0

    def set_holdings(self, wallet: str, positions: list[SourcePosition]) -> None:
        self.holdings[wallet.lower()] = list(positions)

    async def get_user_positions(self, wallet: str, *, max_pages: int = 5) -> list[SourcePosition]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.holdings.get(wallet.lower(), []))

    async def close(self) -> None:
        return None


class FakeGammaClient:
    def __init__(self) -> None:
        self.markets: dict[str, MarketInfo] = {}

    async def get_market(self, condition_id: str) -> Optional[MarketInfo]:
        return self.markets.get(condition_id)

    async def close(self) -> None:
        return None


def source_position(shares: float, price: float = 0.5, token_id: str = TOKEN, outcome: str = "Yes") -> SourcePosition:
    return SourcePosition(
        market_id=MARKET,
        token_id=token_id,
        outcome=outcome,
        shares=shares,
        avg_price=price,
        current_value=shares * price,
    )


async def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    """Poll ``predicate`` until true; fail the test on timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("condition not met before timeout")
        await asyncio.sleep(0.01)


# ---- Fixtures ----


@pytest.fixture
def repo() -> MemoryRepository:
    return MemoryRepository()


@pytest.fixture
def exchange() -> FakeExchange:
    return FakeExchange()


@pytest.fixture
def data_client() -> FakeDataClient:
    return FakeDataClient()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def limits() -> RiskLimits:
    return RiskLimits()


@pytest_asyncio.fixture
async def trader(repo: MemoryRepository) -> TraderProfile:
    return await repo.create_trader(TraderProfile(wallet_address=WALLET, name="whale"))


@pytest.fixture
def risk_gate(repo, exchange, limits) -> RiskGate:
    return RiskGate(repo, exchange, limits)


@pytest.fixture
def sizer(repo, exchange, limits) -> PositionSizer:
    return PositionSizer(repo, exchange, limits)


@pytest.fixture
def executor(repo, exchange, risk_gate, bus) -> OrderExecutor:
    return OrderExecutor(repo, exchange, risk_gate, bus)


async def open_position(
    repo: MemoryRepository,
    trader_id: str,
    shares: float,
    price: float,
    token_id: str = TOKEN,
    market_id: str = MARKET,
) -> PositionRecord:
    return await repo.save_position(
        PositionRecord(
            trader_id=trader_id,
            market_id=market_id,
            token_id=token_id,
            outcome="Yes",
            shares=shares,
            avg_entry_price=price,
            total_cost=shares * price,
        )
    )
