"""Tests for the service facade: trader registry, lifecycle and health."""

import json

import pytest
import pytest_asyncio

from conftest import TOKEN, WALLET, FakeGammaClient, source_position
from copytrade.errors import CopyTradeError, ErrorCode, NotFoundError, ValidationError
from copytrade.models import RetryPolicy, TradeSide, TraderStatus
from copytrade.service import CopyTradingService


@pytest_asyncio.fixture
async def service(repo, exchange, data_client, bus):
    svc = CopyTradingService(
        repository=repo,
        exchange=exchange,
        data_client=data_client,
        gamma_client=FakeGammaClient(),
        bus=bus,
        retry_policy=RetryPolicy(base_delay=60, sweep_interval=3600),
    )
    yield svc
    await svc.stop()


class TestTraderRegistry:
    @pytest.mark.asyncio
    async def test_register_normalises_wallet(self, service):
        trader = await service.register_trader(WALLET.upper().replace("0X", "0x"), name="whale")

        assert trader.wallet_address == WALLET
        assert trader.slippage_tolerance == 2
        assert trader.status == TraderStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_register_rejects_bad_wallet(self, service):
        with pytest.raises(ValidationError) as exc_info:
            await service.register_trader("0x1234")
        assert exc_info.value.code == ErrorCode.INVALID_WALLET_ADDRESS

    @pytest.mark.asyncio
    async def test_register_rejects_duplicate(self, service):
        await service.register_trader(WALLET)

        with pytest.raises(CopyTradeError) as exc_info:
            await service.register_trader(WALLET.replace("ab", "AB"))
        assert exc_info.value.code == ErrorCode.TRADER_ALREADY_EXISTS

    @pytest.mark.asyncio
    async def test_register_rejects_invalid_settings(self, service):
        with pytest.raises(ValidationError):
            await service.register_trader(WALLET, allocation_percent=150)

    @pytest.mark.asyncio
    async def test_update_validates_fields(self, service):
        trader = await service.register_trader(WALLET)

        with pytest.raises(ValidationError, match="wallet_address"):
            await service.update_trader(trader.id, wallet_address="0x" + "cd" * 20)
        with pytest.raises(ValidationError, match="favourite_colour"):
            await service.update_trader(trader.id, favourite_colour="blue")
        with pytest.raises(ValidationError):
            await service.update_trader(trader.id, copy_percent=-5)

        updated = await service.update_trader(trader.id, copy_percent=50, stop_loss_percent=10)
        assert updated.copy_percent == 50
        assert updated.has_sltp

    @pytest.mark.asyncio
    async def test_unknown_trader(self, service):
        with pytest.raises(NotFoundError):
            await service.get_trader("missing")
        with pytest.raises(NotFoundError):
            await service.pause_trader("missing")

    @pytest.mark.asyncio
    async def test_remove_trader(self, service, repo):
        trader = await service.register_trader(WALLET)

        await service.remove_trader(trader.id)

        assert await repo.get_trader(trader.id) is None
        assert await service.list_traders() == []


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_watches_active_traders(self, service, repo):
        trader = await service.register_trader(WALLET)

        await service.start()

        assert service.is_running
        assert service.monitor.is_watching(trader.id)
        assert service.status()["retry_scheduler"]["running"]

    @pytest.mark.asyncio
    async def test_pause_and_resume_toggle_watching(self, service):
        await service.start()
        trader = await service.register_trader(WALLET)
        assert service.monitor.is_watching(trader.id)

        paused = await service.pause_trader(trader.id)
        assert paused.status == TraderStatus.PAUSED
        assert not service.monitor.is_watching(trader.id)

        await service.resume_trader(trader.id)
        assert service.monitor.is_watching(trader.id)

    @pytest.mark.asyncio
    async def test_status_update_syncs_watch(self, service):
        await service.start()
        trader = await service.register_trader(WALLET)

        await service.update_trader(trader.id, status=TraderStatus.PAUSED)

        assert not service.monitor.is_watching(trader.id)

    @pytest.mark.asyncio
    async def test_source_change_is_copied_end_to_end(self, service, repo, data_client, bus):
        trader = await service.register_trader(WALLET)
        await service.start()

        data_client.set_holdings(WALLET, [source_position(2000)])
        await service.monitor._poll(trader.id)
        await bus.drain()

        trades = await repo.list_trades(trader_id=trader.id)
        assert len(trades) == 1
        assert trades[0].requested_amount == pytest.approx(100)
        assert service.get_stats().successful_copies == 1

    @pytest.mark.asyncio
    async def test_stop_in_dry_run_does_not_cancel_orders(self, service, exchange):
        await service.start()
        await service.stop()

        assert not service.is_running
        assert not exchange.cancelled_all

    @pytest.mark.asyncio
    async def test_stop_in_live_mode_cancels_orders(self, service, exchange):
        exchange.dry_run = False
        await service.start()
        await service.stop()

        assert exchange.cancelled_all

    @pytest.mark.asyncio
    async def test_health_reflects_running_state(self, service):
        await service.start()
        resp = await service._health_handler(None)
        body = json.loads(resp.text)

        assert resp.status == 200
        assert body["status"] == "ok"
        assert body["mode"] == "DRY_RUN"

        await service.stop()
        resp = await service._health_handler(None)
        assert resp.status == 503

    @pytest.mark.asyncio
    async def test_global_limits_pass_through(self, service):
        service.set_global_limits(max_open_positions=3)
        assert service.get_global_limits().max_open_positions == 3

    @pytest.mark.asyncio
    async def test_drawdown_limit_change_reaches_guard(self, service, repo, exchange):
        trader = await service.register_trader(WALLET)
        await repo.update_trader(trader.id, peak_balance=1000)
        exchange.balance = 850

        service.set_global_limits(max_drawdown_percent=10)
        await service.drawdown_guard.check_trader(trader.id)

        assert (await repo.get_trader(trader.id)).status == TraderStatus.PAUSED

    @pytest.mark.asyncio
    async def test_minimum_change_reaches_sizer(self, service):
        trader = await service.register_trader(WALLET)

        service.set_global_limits(min_trade_amount=50)
        sizing = await service.sizer.size(trader.id, 20.0, TOKEN, TradeSide.BUY)

        assert not sizing.can_execute
        assert sizing.adjusted_size == 0

    @pytest.mark.asyncio
    async def test_unknown_limit_rejected(self, service):
        with pytest.raises(ValueError):
            service.set_global_limits(max_leverage=3)
