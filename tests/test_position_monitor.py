"""Tests for source-wallet polling and change detection."""

import pytest
import pytest_asyncio

from conftest import MARKET, TOKEN, WALLET, source_position, wait_for
from copytrade.events import MonitorErrorEvent, PositionChangeEvent
from copytrade.models import ChangeKind, TraderProfile, TraderStatus
from copytrade.monitoring import PositionMonitor, diff_snapshots
from copytrade.monitoring.position_monitor import build_snapshot


@pytest_asyncio.fixture
async def monitor(repo, data_client, bus):
    # Long interval: tests drive polls by hand.
    mon = PositionMonitor(repo, data_client, bus, default_interval=3600)
    yield mon
    mon.stop_all()


@pytest.fixture
def changes(bus):
    seen = []
    bus.subscribe(PositionChangeEvent, seen.append)
    return seen


class TestDiffSnapshots:
    def test_new_position(self):
        events = diff_snapshots("t1", WALLET, {}, build_snapshot([source_position(100)]))

        assert len(events) == 1
        assert events[0].change_kind == ChangeKind.NEW
        assert events[0].previous_shares == 0
        assert events[0].delta == 100

    def test_increase_and_decrease(self):
        before = build_snapshot([source_position(100), source_position(50, token_id="token-no")])
        after = build_snapshot([source_position(150), source_position(20, token_id="token-no")])

        events = {e.token_id: e for e in diff_snapshots("t1", WALLET, before, after)}

        assert events[TOKEN].change_kind == ChangeKind.INCREASED
        assert events[TOKEN].delta == 50
        assert events["token-no"].change_kind == ChangeKind.DECREASED
        assert events["token-no"].delta == -30

    def test_closed_uses_previous_price(self):
        before = build_snapshot([source_position(100, price=0.42)])

        events = diff_snapshots("t1", WALLET, before, {})

        assert events[0].change_kind == ChangeKind.CLOSED
        assert events[0].current_shares == 0
        assert events[0].delta == -100
        assert events[0].price == 0.42

    def test_unchanged_emits_nothing(self):
        snap = build_snapshot([source_position(100)])
        assert diff_snapshots("t1", WALLET, snap, dict(snap)) == []


class TestPositionMonitor:
    @pytest.mark.asyncio
    async def test_baseline_emits_no_events(self, monitor, data_client, bus, changes, trader):
        data_client.set_holdings(WALLET, [source_position(100)])

        assert await monitor.start_watching(trader.id)
        await bus.drain()

        assert changes == []
        assert monitor.is_watching(trader.id)
        assert len(monitor.snapshot(trader.id)) == 1

    @pytest.mark.asyncio
    async def test_poll_publishes_changes(self, monitor, data_client, bus, changes, trader):
        data_client.set_holdings(WALLET, [source_position(100)])
        await monitor.start_watching(trader.id)

        data_client.set_holdings(WALLET, [source_position(160), source_position(10, token_id="token-no")])
        await monitor._poll(trader.id)
        await bus.drain()

        kinds = {e.token_id: e.change_kind for e in changes}
        assert kinds == {TOKEN: ChangeKind.INCREASED, "token-no": ChangeKind.NEW}
        assert changes[0].trader_id == trader.id
        assert changes[0].market_id == MARKET

    @pytest.mark.asyncio
    async def test_snapshot_replaced_after_poll(self, monitor, data_client, bus, changes, trader):
        data_client.set_holdings(WALLET, [source_position(100)])
        await monitor.start_watching(trader.id)

        data_client.set_holdings(WALLET, [])
        await monitor._poll(trader.id)
        await monitor._poll(trader.id)
        await bus.drain()

        assert [e.change_kind for e in changes] == [ChangeKind.CLOSED]
        assert monitor.snapshot(trader.id) == []

    @pytest.mark.asyncio
    async def test_poll_error_keeps_watching(self, monitor, data_client, bus, trader):
        errors = []
        bus.subscribe(MonitorErrorEvent, errors.append)
        await monitor.start_watching(trader.id)

        data_client.error = ConnectionError("data api down")
        await monitor._poll(trader.id)
        await bus.drain()

        assert len(errors) == 1
        assert "data api down" in errors[0].error
        assert monitor.is_watching(trader.id)
        assert monitor.status()["traders"][0]["consecutive_errors"] == 1

        data_client.error = None
        await monitor._poll(trader.id)
        assert monitor.status()["traders"][0]["consecutive_errors"] == 0

    @pytest.mark.asyncio
    async def test_baseline_fetch_error_propagates(self, monitor, data_client, trader):
        data_client.error = ConnectionError("data api down")

        with pytest.raises(ConnectionError):
            await monitor.start_watching(trader.id)

        assert not monitor.is_watching(trader.id)

    @pytest.mark.asyncio
    async def test_already_watched_is_a_no_op(self, monitor, data_client, trader):
        await monitor.start_watching(trader.id)

        assert await monitor.start_watching(trader.id) is False
        assert data_client.calls == 1

    @pytest.mark.asyncio
    async def test_unknown_trader(self, monitor):
        assert await monitor.start_watching("missing") is False

    @pytest.mark.asyncio
    async def test_poll_after_stop_is_discarded(self, monitor, data_client, bus, changes, trader):
        await monitor.start_watching(trader.id)
        assert monitor.stop_watching(trader.id)

        data_client.set_holdings(WALLET, [source_position(100)])
        await monitor._poll(trader.id)
        await bus.drain()

        assert changes == []
        assert monitor.stop_watching(trader.id) is False

    @pytest.mark.asyncio
    async def test_rewatch_takes_fresh_baseline(self, monitor, data_client, bus, changes, trader):
        await monitor.start_watching(trader.id)
        monitor.stop_watching(trader.id)

        data_client.set_holdings(WALLET, [source_position(100)])
        assert await monitor.start_watching(trader.id)
        await monitor._poll(trader.id)
        await bus.drain()

        assert changes == []

    @pytest.mark.asyncio
    async def test_start_all_watches_active_traders(self, monitor, repo, trader):
        await repo.create_trader(
            TraderProfile(wallet_address="0x" + "cd" * 20, name="paused", status=TraderStatus.PAUSED)
        )

        assert await monitor.start_all() == 1
        assert monitor.status()["watched"] == 1
        assert monitor.is_watching(trader.id)

    @pytest.mark.asyncio
    async def test_timer_drives_polls(self, repo, data_client, bus, changes, trader):
        fast = PositionMonitor(repo, data_client, bus, default_interval=0.05)
        try:
            await fast.start_watching(trader.id)
            data_client.set_holdings(WALLET, [source_position(100)])

            await wait_for(lambda: len(changes) == 1)
            assert changes[0].change_kind == ChangeKind.NEW
        finally:
            fast.stop_all()
