"""Typed in-process publish/subscribe.

Components publish frozen pydantic events; subscribers register per event
class. Subscribing to ``Event`` itself receives everything. Delivery is
fire-and-forget: a failing subscriber is logged and never affects the
publisher.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from copytrade.models import ChangeKind, TradeSide, TradeStatus, utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event payloads
# ---------------------------------------------------------------------------


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)


class PositionChangeEvent(Event):
    """A source trader's holding in one (market, token) changed."""

    trader_id: str
    wallet_address: str = ""
    market_id: str
    token_id: str
    outcome: str = ""
    change_kind: ChangeKind
    previous_shares: float
    current_shares: float
    delta: float = Field(..., description="current_shares - previous_shares.")
    price: float = Field(..., description="Source trader's average price.")


class MonitorErrorEvent(Event):
    trader_id: str
    error: str


class TradeUpdateEvent(Event):
    trade_id: str
    trader_id: str
    status: TradeStatus
    side: TradeSide
    token_id: str
    requested_amount: float
    executed_amount: Optional[float] = None
    failure_reason: str = ""


class CopyCompletedEvent(Event):
    """Outcome of handling one position change: executed, failed or skipped."""

    trader_id: str
    outcome: str
    side: TradeSide
    token_id: str
    amount: float = 0.0
    trade_id: Optional[str] = None
    reason: str = ""


class DrawdownAlert(Event):
    trader_id: str
    level: str
    drawdown_percent: float
    max_drawdown_percent: float
    current_equity: float
    peak_balance: float


class DrawdownRecovered(Event):
    trader_id: str
    previous_level: str
    drawdown_percent: float


class TraderPausedEvent(Event):
    trader_id: str
    reason: str


class SLTPTriggerEvent(Event):
    position_id: str
    trader_id: str
    token_id: str
    trigger: str
    trigger_price: float
    current_price: float


class SLTPCloseEvent(Event):
    position_id: str
    trader_id: str
    trigger: str
    success: bool
    trade_id: Optional[str] = None
    error: str = ""


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------

Handler = Callable[[Any], Union[Awaitable[None], None]]


class Subscription:
    """Handle returned by ``EventBus.subscribe``; ``cancel()`` is idempotent."""

    def __init__(self, bus: EventBus, event_type: type[Event], handler: Handler) -> None:
        self._bus = bus
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._bus._remove(self)


class EventBus:
    def __init__(self) -> None:
        self._subscriptions: dict[type[Event], list[Subscription]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, event_type: type[Event], handler: Handler) -> Subscription:
        sub = Subscription(self, event_type, handler)
        self._subscriptions[event_type].append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscriptions.get(sub.event_type, [])
        if sub in subs:
            subs.remove(sub)

    def publish(self, event: Event) -> None:
        """Schedule delivery to every matching subscriber without awaiting them."""
        loop = asyncio.get_running_loop()
        for cls in type(event).__mro__:
            if not (isinstance(cls, type) and issubclass(cls, Event)):
                continue
            for sub in list(self._subscriptions.get(cls, [])):
                task = loop.create_task(self._deliver(sub, event))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries, including ones they trigger."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)

    @staticmethod
    async def _deliver(sub: Subscription, event: Event) -> None:
        if not sub.active:
            return
        try:
            result = sub.handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.error(
                "event_handler_failed",
                extra={"event": type(event).__name__},
                exc_info=True,
            )
