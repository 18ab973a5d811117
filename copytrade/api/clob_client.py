"""Exchange client for the Polymarket CLOB.

Public order-book reads go over httpx. Authenticated operations (orders,
balance, cancellation) go through py-clob-client on a worker thread.

Two modes:
- DRY_RUN: fills are simulated at the touch price against a paper balance.
- LIVE: signed orders are posted to the CLOB.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

import httpx

from copytrade.api.throttle import RateLimiter, retry_async
from copytrade.config import (
    CLOB_API_URL,
    CLOB_RATE_LIMIT,
    EXECUTION_CHAIN_ID,
    EXECUTION_DRY_RUN,
    EXECUTION_PAPER_BALANCE,
    EXECUTION_SIGNATURE_TYPE,
    HTTP_TIMEOUT,
)
from copytrade.errors import ExchangeError, ExchangeNotConnected
from copytrade.models import BookLevel, OrderBook, OrderFill, PriceInfo, TradeSide

logger = logging.getLogger(__name__)

_USDC_DECIMALS = 1_000_000


class ClobClient:
    """Order books, prices, slippage estimates and order placement."""

    def __init__(
        self,
        private_key: str = "",
        funder_address: str = "",
        dry_run: bool = EXECUTION_DRY_RUN,
        paper_balance: float = EXECUTION_PAPER_BALANCE,
        limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.dry_run = dry_run
        self._private_key = private_key
        self._funder_address = funder_address
        self._paper_balance = paper_balance
        self._limiter = limiter or RateLimiter(CLOB_RATE_LIMIT, name="clob")
        self._http = httpx.AsyncClient(base_url=CLOB_API_URL, timeout=HTTP_TIMEOUT)
        self._client: Any = None
        self._initialized = False

    async def initialize(self) -> None:
        """Set up trading credentials.

        Dry-run needs no credentials. Live mode without a private key stays
        disconnected, so order operations raise ``ExchangeNotConnected``.
        """
        if self._initialized:
            return

        if self.dry_run:
            self._initialized = True
            logger.info("clob_client_init", extra={"mode": "DRY_RUN", "paper_balance": self._paper_balance})
            return

        if not self._private_key:
            logger.warning("clob_client_no_private_key")
            return

        from py_clob_client.client import ClobClient as PyClobClient

        def _connect() -> Any:
            client = PyClobClient(
                host=CLOB_API_URL,
                key=self._private_key,
                chain_id=EXECUTION_CHAIN_ID,
                signature_type=EXECUTION_SIGNATURE_TYPE,
                funder=self._funder_address or None,
            )
            client.set_api_creds(client.create_or_derive_api_creds())
            return client

        try:
            self._client = await asyncio.to_thread(_connect)
        except Exception:
            logger.error("clob_client_init_failed", exc_info=True)
            raise
        self._initialized = True
        logger.info("clob_client_init", extra={"mode": "LIVE"})

    def is_connected(self) -> bool:
        return self._initialized

    async def close(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_order_book(self, token_id: str) -> OrderBook:
        """GET /book, levels sorted best-first."""

        async def _fetch() -> dict[str, Any]:
            await self._limiter.acquire()
            try:
                resp = await self._http.get("/book", params={"token_id": token_id})
                resp.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise ExchangeError(
                    f"Order book request failed: HTTP {exc.response.status_code}"
                ) from exc
            except httpx.TransportError as exc:
                raise ExchangeError(f"Order book network error: {exc}") from exc
            return resp.json()

        data = await retry_async(_fetch, name="get_order_book")
        return self.parse_order_book(token_id, data)

    @staticmethod
    def parse_order_book(token_id: str, data: dict[str, Any]) -> OrderBook:
        bids = [BookLevel(price=float(b["price"]), size=float(b["size"])) for b in data.get("bids") or []]
        asks = [BookLevel(price=float(a["price"]), size=float(a["size"])) for a in data.get("asks") or []]
        bids.sort(key=lambda lvl: lvl.price, reverse=True)
        asks.sort(key=lambda lvl: lvl.price)
        return OrderBook(token_id=token_id, bids=bids, asks=asks)

    async def get_price(self, token_id: str) -> PriceInfo:
        """Best bid / ask. An empty side reads as 0 (bids) or 1 (asks)."""
        book = await self.get_order_book(token_id)
        bid = book.bids[0].price if book.bids else 0.0
        ask = book.asks[0].price if book.asks else 1.0
        return PriceInfo(bid=bid, ask=ask, mid=(bid + ask) / 2, spread=ask - bid)

    async def estimate_slippage(self, token_id: str, side: TradeSide, amount: float) -> float:
        """Fractional slippage of filling ``amount`` USDC against the book.

        Returns 1.0 when the book side is empty or too thin.
        """
        book = await self.get_order_book(token_id)
        return self.slippage_from_book(book, side, amount)

    @staticmethod
    def slippage_from_book(book: OrderBook, side: TradeSide, amount: float) -> float:
        levels = book.asks if side == TradeSide.BUY else book.bids
        if not levels:
            return 1.0
        if amount <= 0:
            return 0.0

        best_price = levels[0].price
        remaining = amount
        shares = 0.0
        for level in levels:
            if level.price <= 0:
                continue
            take = min(remaining, level.size * level.price)
            shares += take / level.price
            remaining -= take
            if remaining <= 1e-9:
                break

        if remaining > 1e-9 or shares <= 0:
            return 1.0

        avg_price = amount / shares
        return abs(avg_price - best_price) / best_price

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    def _require_trading(self) -> None:
        if not self._initialized:
            raise ExchangeNotConnected()

    async def get_balance(self) -> float:
        """Available USDC collateral."""
        self._require_trading()
        if self.dry_run:
            return self._paper_balance

        from py_clob_client.clob_types import AssetType, BalanceAllowanceParams

        async def _fetch() -> float:
            await self._limiter.acquire()
            resp = await asyncio.to_thread(
                self._client.get_balance_allowance,
                BalanceAllowanceParams(asset_type=AssetType.COLLATERAL),
            )
            return float(resp.get("balance", 0)) / _USDC_DECIMALS

        return await retry_async(_fetch, name="get_balance")

    async def create_market_order(
        self,
        token_id: str,
        side: TradeSide,
        amount: float,
        max_shares: Optional[float] = None,
    ) -> OrderFill:
        """Spend (BUY) or raise (SELL) ``amount`` USDC at the touch.

        ``max_shares`` caps the order size, converted at the live touch price.
        """
        self._require_trading()
        price = await self.get_price(token_id)
        touch = price.ask if side == TradeSide.BUY else price.bid
        if touch <= 0:
            raise ExchangeError(f"No liquidity for {side.value} on {token_id}")
        size = amount / touch
        if max_shares is not None and size > max_shares:
            logger.info(
                "market_order_capped",
                extra={"token_id": token_id, "side": side.value, "size": size, "max_shares": max_shares},
            )
            size = max_shares
            amount = size * touch

        if self.dry_run:
            return self._paper_fill(side, size, touch, prefix="dry_mkt")

        from py_clob_client.clob_types import MarketOrderArgs, OrderType

        # py-clob-client takes USDC for market BUYs and shares for market SELLs
        order_amount = amount if side == TradeSide.BUY else size

        async def _post() -> dict[str, Any]:
            await self._limiter.acquire()
            start = time.monotonic()
            signed = await asyncio.to_thread(
                self._client.create_market_order,
                MarketOrderArgs(token_id=token_id, amount=order_amount, side=side.value),
            )
            resp = await asyncio.to_thread(self._client.post_order, signed, OrderType.FOK)
            logger.info(
                "market_order_placed",
                extra={
                    "token_id": token_id,
                    "side": side.value,
                    "amount": amount,
                    "latency_ms": (time.monotonic() - start) * 1000,
                },
            )
            return resp

        resp = await retry_async(_post, name="create_market_order")
        return self._parse_fill(resp, side, size, touch)

    async def create_limit_order(
        self, token_id: str, side: TradeSide, size: float, price: float
    ) -> OrderFill:
        """Rest ``size`` shares at ``price`` (GTC)."""
        self._require_trading()

        if self.dry_run:
            return self._paper_fill(side, size, price, prefix="dry_lmt")

        from py_clob_client.clob_types import OrderArgs, OrderType

        async def _post() -> dict[str, Any]:
            await self._limiter.acquire()
            signed = await asyncio.to_thread(
                self._client.create_order,
                OrderArgs(token_id=token_id, price=price, size=size, side=side.value),
            )
            return await asyncio.to_thread(self._client.post_order, signed, OrderType.GTC)

        resp = await retry_async(_post, name="create_limit_order")
        logger.info(
            "limit_order_placed",
            extra={"token_id": token_id, "side": side.value, "size": size, "price": price},
        )
        return self._parse_fill(resp, side, size, price)

    async def cancel_all(self) -> bool:
        """Cancel every resting order (shutdown kill switch)."""
        if self.dry_run or not self._initialized:
            logger.info("cancel_all_skipped", extra={"dry_run": self.dry_run})
            return True
        try:
            await self._limiter.acquire()
            resp = await asyncio.to_thread(self._client.cancel_all)
            logger.info("all_orders_cancelled", extra={"response": str(resp)})
            return True
        except Exception:
            logger.error("cancel_all_failed", exc_info=True)
            return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _paper_fill(self, side: TradeSide, size: float, price: float, prefix: str) -> OrderFill:
        notional = size * price
        if side == TradeSide.BUY:
            if notional > self._paper_balance:
                raise ExchangeError(
                    f"Insufficient paper balance: need {notional:.2f}, have {self._paper_balance:.2f}"
                )
            self._paper_balance -= notional
        else:
            self._paper_balance += notional
        order_id = f"{prefix}_{int(time.time() * 1000)}"
        logger.info(
            "order_dry_run",
            extra={"order_id": order_id, "side": side.value, "size": size, "price": price},
        )
        return OrderFill(
            order_id=order_id,
            status="filled",
            side=side,
            size=size,
            price=price,
            filled_size=size,
            avg_fill_price=price,
        )

    @staticmethod
    def _parse_fill(resp: Any, side: TradeSide, size: float, price: float) -> OrderFill:
        if not isinstance(resp, dict):
            raise ExchangeError(f"Unexpected order response type: {type(resp).__name__}")
        if not resp.get("success", False):
            raise ExchangeError(f"Order rejected: {resp.get('errorMsg') or 'unknown error'}")

        making = float(resp.get("makingAmount") or 0)
        taking = float(resp.get("takingAmount") or 0)
        # BUY makes USDC and takes shares; SELL is the reverse.
        usdc, shares = (making, taking) if side == TradeSide.BUY else (taking, making)
        matched = resp.get("status") == "matched"

        filled_size = shares if shares > 0 else (size if matched else 0.0)
        avg_fill = usdc / shares if shares > 0 and usdc > 0 else None
        return OrderFill(
            order_id=resp.get("orderID", ""),
            status="filled" if matched and filled_size >= size * 0.999 else "partial",
            side=side,
            size=size,
            price=price,
            filled_size=filled_size,
            avg_fill_price=avg_fill,
        )
