"""Copy-trading service: wiring, trader registry, lifecycle and health endpoint."""

from __future__ import annotations

import asyncio
import logging
import re
import signal
from typing import Any, Optional

from aiohttp import web

from copytrade.api.clob_client import ClobClient
from copytrade.api.data_client import DataClient
from copytrade.api.gamma_client import GammaClient
from copytrade.config import (
    CLICKHOUSE_HOST,
    EXECUTION_FUNDER_ADDRESS,
    EXECUTION_PRIVATE_KEY,
    HEALTH_CHECK_PORT,
    TRADER_DEFAULT_SLIPPAGE_PCT,
)
from copytrade.errors import CopyTradeError, ErrorCode, NotFoundError, ValidationError
from copytrade.events import EventBus
from copytrade.execution.order_executor import ExecuteParams, ExecutionResult, OrderExecutor
from copytrade.execution.position_sizer import PositionSizer, SizingResult
from copytrade.execution.retry_scheduler import RetryScheduler
from copytrade.execution.risk_gate import RiskCheckParams, RiskCheckResult, RiskGate
from copytrade.guards.drawdown_guard import DrawdownGuard
from copytrade.guards.sltp_guard import StopLossTakeProfitGuard
from copytrade.models import (
    ActivityType,
    RetryPolicy,
    RiskLimits,
    TradeSide,
    TraderProfile,
    TraderStatus,
    utcnow,
)
from copytrade.monitoring.position_monitor import PositionMonitor
from copytrade.orchestrator import CopyOrchestrator, CopyResult, CopyStats
from copytrade.storage.clickhouse import ClickHouseRepository
from copytrade.storage.memory import MemoryRepository
from copytrade.storage.repository import Repository, log_activity

logger = logging.getLogger(__name__)

WALLET_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

# Fields an operator may not change through update_trader.
_IMMUTABLE_TRADER_FIELDS = {"id", "wallet_address", "created_at", "updated_at"}


def default_repository() -> Repository:
    if CLICKHOUSE_HOST:
        return ClickHouseRepository()
    logger.warning("clickhouse_not_configured", extra={"fallback": "memory"})
    return MemoryRepository()


class CopyTradingService:
    """Owns every pipeline component and starts/stops them in dependency order."""

    def __init__(
        self,
        repository: Optional[Repository] = None,
        exchange: Optional[ClobClient] = None,
        data_client: Optional[DataClient] = None,
        gamma_client: Optional[GammaClient] = None,
        bus: Optional[EventBus] = None,
        limits: Optional[RiskLimits] = None,
        retry_policy: Optional[RetryPolicy] = None,
        health_port: int = HEALTH_CHECK_PORT,
    ) -> None:
        self.repository = repository or default_repository()
        self.exchange = exchange or ClobClient(EXECUTION_PRIVATE_KEY, EXECUTION_FUNDER_ADDRESS)
        self.data_client = data_client or DataClient()
        self.gamma_client = gamma_client or GammaClient()
        self.bus = bus or EventBus()
        self.health_port = health_port

        limits = limits or RiskLimits()
        self.risk_gate = RiskGate(self.repository, self.exchange, limits)
        self.sizer = PositionSizer(self.repository, self.exchange, limits)
        self.executor = OrderExecutor(self.repository, self.exchange, self.risk_gate, self.bus)
        self.retry_scheduler = RetryScheduler(self.repository, self.executor, retry_policy)
        self.monitor = PositionMonitor(self.repository, self.data_client, self.bus)
        self.orchestrator = CopyOrchestrator(
            self.repository,
            self.bus,
            self.sizer,
            self.executor,
            self.retry_scheduler,
            self.gamma_client,
        )
        self.drawdown_guard = DrawdownGuard(self.repository, self.exchange, self.bus, limits)
        self.sltp_guard = StopLossTakeProfitGuard(self.repository, self.exchange, self.executor, self.bus)

        self._running = False
        self._started_at = None
        self._shutdown_event = asyncio.Event()
        self._health_runner: Optional[web.AppRunner] = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        logger.info("service_starting", extra={"dry_run": self.exchange.dry_run})

        await self.exchange.initialize()
        await self.retry_scheduler.start()
        self.orchestrator.start()
        await self.monitor.start_all()
        self.drawdown_guard.start()
        await self.sltp_guard.start()

        self._running = True
        self._started_at = utcnow()
        logger.info("service_started", extra={"traders": self.monitor.status()["watched"]})

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("service_stopping")
        self._running = False

        self.monitor.stop_all()
        self.orchestrator.stop()
        self.sltp_guard.stop()
        self.drawdown_guard.stop()
        await self.retry_scheduler.stop()
        await self.bus.drain()

        if not self.exchange.dry_run and self.exchange.is_connected():
            await self.exchange.cancel_all()

        await self.exchange.close()
        await self.data_client.close()
        await self.gamma_client.close()
        await self.repository.close()
        await self._stop_health_server()
        logger.info("service_stopped")

    async def run_forever(self) -> None:
        """Start everything, serve /health and block until SIGINT/SIGTERM."""
        await self.start()
        await self._start_health_server()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._signal_handler)

        await self._shutdown_event.wait()
        await self.stop()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _signal_handler(self) -> None:
        logger.info("shutdown_signal_received")
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Trader registry
    # ------------------------------------------------------------------

    async def register_trader(self, wallet_address: str, name: str = "", **settings: Any) -> TraderProfile:
        if not WALLET_ADDRESS_RE.match(wallet_address or ""):
            raise ValidationError("Invalid wallet address", ErrorCode.INVALID_WALLET_ADDRESS)
        wallet_address = wallet_address.lower()

        if await self.repository.get_trader_by_wallet(wallet_address) is not None:
            raise CopyTradeError(ErrorCode.TRADER_ALREADY_EXISTS, "Trader already exists")

        settings.setdefault("slippage_tolerance", TRADER_DEFAULT_SLIPPAGE_PCT)
        try:
            trader = TraderProfile(wallet_address=wallet_address, name=name, **settings)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        trader = await self.repository.create_trader(trader)
        await log_activity(
            self.repository,
            ActivityType.INFO,
            f"Trader registered: {name or wallet_address}",
            trader_id=trader.id,
        )
        logger.info("trader_registered", extra={"trader_id": trader.id, "wallet": wallet_address})

        if self._running and trader.is_active:
            await self._watch(trader.id)
        return trader

    async def update_trader(self, trader_id: str, **changes: Any) -> TraderProfile:
        trader = await self._require_trader(trader_id)
        blocked = _IMMUTABLE_TRADER_FIELDS.intersection(changes) | (
            set(changes) - set(TraderProfile.model_fields)
        )
        if blocked:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(blocked))}")
        try:
            TraderProfile.model_validate({**trader.model_dump(), **changes})
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        updated = await self.repository.update_trader(trader_id, **changes)
        if "status" in changes:
            await self._sync_watch(updated)
        logger.info("trader_updated", extra={"trader_id": trader_id, "fields": sorted(changes)})
        return updated

    async def pause_trader(self, trader_id: str) -> TraderProfile:
        await self._require_trader(trader_id)
        trader = await self.repository.update_trader(trader_id, status=TraderStatus.PAUSED)
        self.monitor.stop_watching(trader_id)
        await log_activity(self.repository, ActivityType.INFO, "Trader paused", trader_id=trader_id)
        return trader

    async def resume_trader(self, trader_id: str) -> TraderProfile:
        await self._require_trader(trader_id)
        trader = await self.repository.update_trader(trader_id, status=TraderStatus.ACTIVE)
        if self._running:
            await self._watch(trader_id)
        await log_activity(self.repository, ActivityType.INFO, "Trader resumed", trader_id=trader_id)
        return trader

    async def remove_trader(self, trader_id: str) -> None:
        await self._require_trader(trader_id)
        self.monitor.stop_watching(trader_id)
        await self.repository.delete_trader(trader_id)
        await log_activity(self.repository, ActivityType.INFO, "Trader removed", trader_id=trader_id)
        logger.info("trader_removed", extra={"trader_id": trader_id})

    async def get_trader(self, trader_id: str) -> TraderProfile:
        return await self._require_trader(trader_id)

    async def list_traders(self, status: Optional[TraderStatus] = None) -> list[TraderProfile]:
        return await self.repository.list_traders(status)

    # ------------------------------------------------------------------
    # Pipeline surface
    # ------------------------------------------------------------------

    async def check_trade_risk(self, params: RiskCheckParams) -> RiskCheckResult:
        return await self.risk_gate.check(params)

    async def calculate_size(
        self, trader_id: str, source_trade_size: float, token_id: str, side: TradeSide
    ) -> SizingResult:
        return await self.sizer.size(trader_id, source_trade_size, token_id, side)

    async def execute(self, params: ExecuteParams) -> ExecutionResult:
        return await self.executor.execute(params)

    async def retry_trade(self, trade_id: str) -> ExecutionResult:
        return await self.executor.retry_trade(trade_id)

    async def manual_copy(self, trader_id: str, token_id: str, side: TradeSide, amount: float) -> CopyResult:
        return await self.orchestrator.manual_copy(trader_id, token_id, side, amount)

    def get_stats(self) -> CopyStats:
        return self.orchestrator.get_stats()

    def reset_stats(self) -> None:
        self.orchestrator.reset_stats()

    def get_global_limits(self) -> RiskLimits:
        return self.risk_gate.get_global_limits()

    def set_global_limits(self, **changes: Any) -> RiskLimits:
        return self.risk_gate.set_global_limits(**changes)

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "mode": "DRY_RUN" if self.exchange.dry_run else "LIVE",
            "exchange_connected": self.exchange.is_connected(),
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "monitor": self.monitor.status(),
            "orchestrator": self.orchestrator.status(),
            "retry_scheduler": self.retry_scheduler.status(),
            "drawdown_guard": self.drawdown_guard.status(),
            "sltp_guard": self.sltp_guard.status(),
            "risk_limits": self.risk_gate.get_global_limits().model_dump(),
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _require_trader(self, trader_id: str) -> TraderProfile:
        trader = await self.repository.get_trader(trader_id)
        if trader is None:
            raise NotFoundError(ErrorCode.TRADER_NOT_FOUND, f"Trader {trader_id} not found")
        return trader

    async def _watch(self, trader_id: str) -> None:
        try:
            await self.monitor.start_watching(trader_id)
        except Exception:
            logger.error("trader_watch_start_failed", extra={"trader_id": trader_id}, exc_info=True)

    async def _sync_watch(self, trader: TraderProfile) -> None:
        if trader.is_active:
            if self._running:
                await self._watch(trader.id)
        else:
            self.monitor.stop_watching(trader.id)

    async def _start_health_server(self) -> None:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        self._health_runner = web.AppRunner(app)
        await self._health_runner.setup()
        site = web.TCPSite(self._health_runner, "0.0.0.0", self.health_port)
        await site.start()
        logger.info("health_server_started", extra={"port": self.health_port})

    async def _stop_health_server(self) -> None:
        if self._health_runner is not None:
            await self._health_runner.cleanup()
            self._health_runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        status = self.status()
        status["status"] = "ok" if self._running else "stopped"
        return web.json_response(status, status=200 if self._running else 503)
