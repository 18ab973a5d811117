"""Position monitor: polls source wallets and emits holding changes."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from copytrade.api.data_client import DataClient
from copytrade.config import MONITOR_INTERVAL
from copytrade.events import EventBus, MonitorErrorEvent, PositionChangeEvent
from copytrade.models import ChangeKind, SourcePosition, TraderStatus, utcnow
from copytrade.scheduling import JobScheduler
from copytrade.storage.repository import Repository

logger = logging.getLogger(__name__)

PositionKey = tuple[str, str]
Snapshot = dict[PositionKey, SourcePosition]


class TraderWatch:
    """Per-trader monitoring state; replaced wholesale when a trader is re-watched."""

    def __init__(self, trader_id: str, wallet_address: str, interval: float, snapshot: Snapshot) -> None:
        self.trader_id = trader_id
        self.wallet_address = wallet_address
        self.interval = interval
        self.snapshot = snapshot
        self.last_poll_at: Optional[datetime] = None
        self.consecutive_errors = 0
        self.last_error = ""


def build_snapshot(positions: list[SourcePosition]) -> Snapshot:
    return {(p.market_id, p.token_id): p for p in positions}


def diff_snapshots(
    trader_id: str,
    wallet_address: str,
    previous: Snapshot,
    current: Snapshot,
) -> list[PositionChangeEvent]:
    """One event per (market, token) pair whose share count changed."""
    events: list[PositionChangeEvent] = []

    for key, pos in current.items():
        prev = previous.get(key)
        prev_shares = prev.shares if prev is not None else 0.0
        if prev is None:
            kind = ChangeKind.NEW
        elif pos.shares > prev.shares:
            kind = ChangeKind.INCREASED
        elif pos.shares < prev.shares:
            kind = ChangeKind.DECREASED
        else:
            continue
        events.append(
            PositionChangeEvent(
                trader_id=trader_id,
                wallet_address=wallet_address,
                market_id=pos.market_id,
                token_id=pos.token_id,
                outcome=pos.outcome,
                change_kind=kind,
                previous_shares=prev_shares,
                current_shares=pos.shares,
                delta=pos.shares - prev_shares,
                price=pos.avg_price,
            )
        )

    for key, prev in previous.items():
        if key in current:
            continue
        events.append(
            PositionChangeEvent(
                trader_id=trader_id,
                wallet_address=wallet_address,
                market_id=prev.market_id,
                token_id=prev.token_id,
                outcome=prev.outcome,
                change_kind=ChangeKind.CLOSED,
                previous_shares=prev.shares,
                current_shares=0.0,
                delta=-prev.shares,
                price=prev.avg_price,
            )
        )

    return events


class PositionMonitor:
    """Watches source traders' wallets on independent polling timers.

    ``start_watching`` takes the baseline snapshot synchronously (fetch
    errors propagate), later polls diff against it and publish
    ``PositionChangeEvent``s. Poll failures publish ``MonitorErrorEvent``
    and keep the trader under watch.
    """

    def __init__(
        self,
        repository: Repository,
        data_client: DataClient,
        bus: EventBus,
        default_interval: float = MONITOR_INTERVAL,
    ) -> None:
        self._repo = repository
        self._data = data_client
        self._bus = bus
        self.default_interval = default_interval
        self._watches: dict[str, TraderWatch] = {}
        self._scheduler = JobScheduler("monitor")

    @property
    def is_running(self) -> bool:
        return bool(self._watches)

    def is_watching(self, trader_id: str) -> bool:
        return trader_id in self._watches

    async def start_watching(self, trader_id: str, interval: Optional[float] = None) -> bool:
        if trader_id in self._watches:
            logger.debug("trader_already_watched", extra={"trader_id": trader_id})
            return False

        trader = await self._repo.get_trader(trader_id)
        if trader is None:
            logger.warning("monitor_trader_not_found", extra={"trader_id": trader_id})
            return False

        positions = await self._data.get_user_positions(trader.wallet_address)
        if trader_id in self._watches:
            # Another caller won the race while we were fetching.
            return False

        every = interval or self.default_interval
        watch = TraderWatch(trader_id, trader.wallet_address, every, build_snapshot(positions))
        watch.last_poll_at = utcnow()
        self._watches[trader_id] = watch
        self._scheduler.every(every, self._poll, self._job_id(trader_id), trader_id)

        logger.info(
            "trader_watch_started",
            extra={"trader_id": trader_id, "interval": every, "positions": len(positions)},
        )
        return True

    def stop_watching(self, trader_id: str) -> bool:
        watch = self._watches.pop(trader_id, None)
        self._scheduler.cancel(self._job_id(trader_id))
        if watch is None:
            return False
        logger.info("trader_watch_stopped", extra={"trader_id": trader_id})
        return True

    def stop_all(self) -> None:
        for trader_id in list(self._watches):
            self.stop_watching(trader_id)
        self._scheduler.shutdown()
        logger.info("monitor_stopped")

    async def start_all(self) -> int:
        """Watch every ACTIVE trader; returns how many watches were started."""
        started = 0
        for trader in await self._repo.list_traders(TraderStatus.ACTIVE):
            try:
                if await self.start_watching(trader.id):
                    started += 1
            except Exception:
                logger.error("trader_watch_start_failed", extra={"trader_id": trader.id}, exc_info=True)
        logger.info("monitor_started", extra={"watched": started})
        return started

    def status(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "watched": len(self._watches),
            "traders": [
                {
                    "id": w.trader_id,
                    "wallet_address": w.wallet_address,
                    "interval": w.interval,
                    "positions": len(w.snapshot),
                    "last_poll_at": w.last_poll_at.isoformat() if w.last_poll_at else None,
                    "consecutive_errors": w.consecutive_errors,
                    "last_error": w.last_error,
                }
                for w in self._watches.values()
            ],
        }

    def snapshot(self, trader_id: str) -> list[SourcePosition]:
        watch = self._watches.get(trader_id)
        return list(watch.snapshot.values()) if watch else []

    # ------------------------------------------------------------------

    @staticmethod
    def _job_id(trader_id: str) -> str:
        return f"poll:{trader_id}"

    async def _poll(self, trader_id: str) -> None:
        watch = self._watches.get(trader_id)
        if watch is None:
            return

        try:
            positions = await self._data.get_user_positions(watch.wallet_address)
        except Exception as exc:
            if self._watches.get(trader_id) is not watch:
                return
            watch.consecutive_errors += 1
            watch.last_error = str(exc)
            logger.error(
                "position_poll_failed",
                extra={"trader_id": trader_id, "errors": watch.consecutive_errors},
                exc_info=True,
            )
            self._bus.publish(MonitorErrorEvent(trader_id=trader_id, error=str(exc)))
            return

        # Stopped or re-watched while the fetch was in flight.
        if self._watches.get(trader_id) is not watch:
            return

        current = build_snapshot(positions)
        changes = diff_snapshots(trader_id, watch.wallet_address, watch.snapshot, current)
        watch.snapshot = current
        watch.last_poll_at = utcnow()
        watch.consecutive_errors = 0
        watch.last_error = ""

        for change in changes:
            logger.info(
                "position_change_detected",
                extra={
                    "trader_id": trader_id,
                    "change": change.change_kind.value,
                    "token_id": change.token_id,
                    "delta": change.delta,
                },
            )
            self._bus.publish(change)
