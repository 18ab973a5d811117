"""Tests for backoff retries of failed trades."""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from conftest import MARKET, TOKEN, wait_for
from copytrade.errors import ExchangeError
from copytrade.execution.order_executor import ExecuteParams
from copytrade.execution.retry_scheduler import RetryScheduler
from copytrade.models import ActivityType, RetryPolicy, TradeSide, TradeStatus, utcnow

FAST = RetryPolicy(base_delay=0.01, multiplier=2, max_delay=0.05, sweep_interval=3600)


@pytest_asyncio.fixture
async def retries(repo, executor):
    scheduler = RetryScheduler(repo, executor, FAST)
    yield scheduler
    await scheduler.stop()


async def failed_trade(executor, exchange, trader_id: str, errors: int = 1) -> str:
    exchange.order_errors = [ExchangeError("network timeout") for _ in range(errors)]
    result = await executor.execute(
        ExecuteParams(
            trader_id=trader_id,
            market_id=MARKET,
            token_id=TOKEN,
            side=TradeSide.BUY,
            amount=50,
        )
    )
    assert not result.success
    return result.trade_id


class TestRetryPolicy:
    def test_delay_doubles_until_cap(self):
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [5, 10, 20]
        assert policy.delay_for(10) == 300


class TestRetryScheduler:
    @pytest.mark.asyncio
    async def test_not_running_schedules_nothing(self, retries, executor, exchange, trader):
        trade_id = await failed_trade(executor, exchange, trader.id)
        assert await retries.schedule_retry(trade_id) is False

    @pytest.mark.asyncio
    async def test_successful_retry(self, retries, repo, executor, exchange, trader):
        trade_id = await failed_trade(executor, exchange, trader.id, errors=1)
        await retries.start()

        assert await retries.schedule_retry(trade_id)
        await wait_for(
            lambda: any(a.message == "Trade retry successful on attempt 2" for a in repo._activity)
        )

        assert repo._trades[trade_id].status == TradeStatus.EXECUTED
        assert retries.status()["pending"] == 0

    @pytest.mark.asyncio
    async def test_permanently_failed_after_three_attempts(self, retries, repo, executor, exchange, trader):
        trade_id = await failed_trade(executor, exchange, trader.id, errors=10)
        await retries.start()

        await retries.schedule_retry(trade_id)
        await wait_for(
            lambda: any(a.message == "Trade permanently failed after max retries" for a in repo._activity)
        )

        trade = await repo.get_trade(trade_id)
        assert trade.retry_count == 3
        assert trade.failure_reason == "Max retry attempts exceeded"
        assert trade.next_retry_at is None
        assert len(exchange.orders) == 3
        activity = await repo.list_activity()
        assert any(
            a.type == ActivityType.ERROR and a.message == "Trade permanently failed after max retries"
            for a in activity
        )

        # Never rescheduled again
        assert await retries.schedule_retry(trade_id) is False
        assert retries.status()["pending"] == 0

    @pytest.mark.asyncio
    async def test_exhausted_trade_is_marked_permanent_immediately(self, retries, repo, executor, exchange, trader):
        trade_id = await failed_trade(executor, exchange, trader.id)
        await repo.update_trade(trade_id, retry_count=3)
        await retries.start()

        assert await retries.schedule_retry(trade_id) is False
        assert (await repo.get_trade(trade_id)).status == TradeStatus.PERMANENTLY_FAILED

    @pytest.mark.asyncio
    async def test_start_loads_failed_trades(self, retries, repo, executor, exchange, trader):
        trade_id = await failed_trade(executor, exchange, trader.id, errors=1)

        await retries.start()

        await wait_for(lambda: repo._trades[trade_id].status == TradeStatus.EXECUTED)

    @pytest.mark.asyncio
    async def test_schedule_persists_next_retry_at(self, repo, executor, exchange, trader):
        slow = RetryScheduler(repo, executor, RetryPolicy(base_delay=60, sweep_interval=3600))
        trade_id = await failed_trade(executor, exchange, trader.id)
        await slow.start()
        try:
            trade = await repo.get_trade(trade_id)
            assert trade.next_retry_at is not None
            assert trade.next_retry_at > utcnow() + timedelta(seconds=100)
            assert slow.status()["jobs"][0]["attempt"] == 2
        finally:
            await slow.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_retries(self, repo, executor, exchange, trader):
        slow = RetryScheduler(repo, executor, RetryPolicy(base_delay=0.2, sweep_interval=3600))
        trade_id = await failed_trade(executor, exchange, trader.id)
        await slow.start()
        assert slow.status()["pending"] == 1

        await slow.stop()

        assert slow.status()["pending"] == 0
        orders_before = len(exchange.orders)
        await asyncio.sleep(0.6)
        assert (await repo.get_trade(trade_id)).status == TradeStatus.FAILED
        assert len(exchange.orders) == orders_before

    @pytest.mark.asyncio
    async def test_cancel_retry(self, repo, executor, exchange, trader):
        slow = RetryScheduler(repo, executor, RetryPolicy(base_delay=60, sweep_interval=3600))
        trade_id = await failed_trade(executor, exchange, trader.id)
        await slow.start()
        try:
            assert slow.cancel_retry(trade_id) is True
            assert slow.cancel_retry(trade_id) is False
            assert slow.status()["pending"] == 0
        finally:
            await slow.stop()

    @pytest.mark.asyncio
    async def test_sweep_picks_up_overdue_untracked_trades(self, repo, executor, exchange, trader):
        slow = RetryScheduler(repo, executor, RetryPolicy(base_delay=60, sweep_interval=3600))
        await slow.start()
        try:
            trade_id = await failed_trade(executor, exchange, trader.id)
            await repo.update_trade(trade_id, next_retry_at=utcnow() - timedelta(minutes=5))

            await slow.sweep()

            assert slow.status()["pending"] == 1
            assert slow.status()["jobs"][0]["trade_id"] == trade_id
        finally:
            await slow.stop()
