"""Tests for the pre-trade risk gate."""

import pytest

from conftest import MARKET, TOKEN, open_position
from copytrade.execution.risk_gate import RiskCheckParams
from copytrade.models import TradeRecord, TradeSide, TradeStatus, utcnow


def params(trader_id: str, amount: float, side: TradeSide = TradeSide.BUY, token_id: str = TOKEN) -> RiskCheckParams:
    return RiskCheckParams(
        trader_id=trader_id,
        market_id=MARKET,
        token_id=token_id,
        side=side,
        amount=amount,
    )


class TestRiskGateChecks:
    """Each check in order, with the rejection or warning it produces."""

    @pytest.mark.asyncio
    async def test_unknown_trader_rejected(self, risk_gate):
        result = await risk_gate.check(params("missing", 10))
        assert not result.approved
        assert result.rejection_reason == "Trader not found"

    @pytest.mark.asyncio
    async def test_insufficient_balance_rejected(self, risk_gate, exchange, trader):
        exchange.balance = 50
        result = await risk_gate.check(params(trader.id, 100))
        assert not result.approved
        assert result.rejection_reason.startswith("Insufficient balance")
        assert result.metrics.available_balance == 50

    @pytest.mark.asyncio
    async def test_low_balance_warns(self, risk_gate, exchange, trader):
        exchange.balance = 12
        result = await risk_gate.check(params(trader.id, 10))
        assert result.approved
        assert any("Low balance" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_sell_skips_balance_check(self, risk_gate, exchange, trader):
        exchange.balance = 0
        result = await risk_gate.check(params(trader.id, 10, side=TradeSide.SELL))
        assert result.approved

    @pytest.mark.asyncio
    async def test_sell_is_gated_by_drawdown(self, risk_gate, repo, exchange, trader):
        await repo.update_trader(trader.id, peak_balance=1000)
        exchange.balance = 700

        result = await risk_gate.check(params(trader.id, 20, side=TradeSide.SELL))

        assert not result.approved
        assert result.metrics.current_drawdown == pytest.approx(25)
        assert result.rejection_reason.startswith("Max drawdown reached")

    @pytest.mark.asyncio
    async def test_sell_is_gated_by_daily_loss(self, risk_gate, repo, trader):
        await repo.create_trade(
            TradeRecord(
                trader_id=trader.id,
                market_id=MARKET,
                token_id=TOKEN,
                side=TradeSide.BUY,
                requested_amount=600,
                executed_amount=100,
                status=TradeStatus.EXECUTED,
                executed_at=utcnow(),
            )
        )

        result = await risk_gate.check(params(trader.id, 10, side=TradeSide.SELL))

        assert not result.approved
        assert result.rejection_reason.startswith("Daily loss limit reached")

    @pytest.mark.asyncio
    async def test_protective_close_skips_exposure_checks(self, risk_gate, repo, exchange, trader):
        await repo.update_trader(trader.id, peak_balance=1000)
        exchange.balance = 700
        protective = params(trader.id, 20, side=TradeSide.SELL).model_copy(update={"protective": True})

        result = await risk_gate.check(protective)

        assert result.approved
        assert result.metrics.current_drawdown == pytest.approx(25)

    @pytest.mark.asyncio
    async def test_protective_close_still_checks_minimum(self, risk_gate, trader):
        protective = params(trader.id, 0.5, side=TradeSide.SELL).model_copy(update={"protective": True})

        result = await risk_gate.check(protective)

        assert not result.approved
        assert "below minimum" in result.rejection_reason

    @pytest.mark.asyncio
    async def test_balance_failure_counts_as_zero(self, risk_gate, exchange, trader):
        exchange.balance_error = ConnectionError("down")
        result = await risk_gate.check(params(trader.id, 10))
        assert not result.approved
        assert result.metrics.available_balance == 0

    @pytest.mark.asyncio
    async def test_position_limit_adjusts_amount(self, risk_gate, repo, trader):
        await repo.update_trader(trader.id, max_position_size=500)
        await open_position(repo, trader.id, shares=800, price=0.5)  # value 400

        result = await risk_gate.check(params(trader.id, 150))

        assert result.approved
        assert result.adjusted_amount == pytest.approx(100)
        assert result.final_amount(150) == pytest.approx(100)
        assert any("adjusted" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_position_limit_without_headroom_rejected(self, risk_gate, repo, trader):
        await repo.update_trader(trader.id, max_position_size=500)
        await open_position(repo, trader.id, shares=999, price=0.5)  # value 499.5

        result = await risk_gate.check(params(trader.id, 50))

        assert not result.approved
        assert result.rejection_reason.startswith("Position size limit reached")

    @pytest.mark.asyncio
    async def test_drawdown_over_limit_rejected(self, risk_gate, repo, exchange, trader):
        await repo.update_trader(trader.id, peak_balance=1000)
        exchange.balance = 750

        result = await risk_gate.check(params(trader.id, 10))

        assert not result.approved
        assert result.metrics.current_drawdown == pytest.approx(25)
        assert result.rejection_reason.startswith("Max drawdown reached")

    @pytest.mark.asyncio
    async def test_drawdown_near_limit_warns(self, risk_gate, repo, exchange, trader):
        await repo.update_trader(trader.id, peak_balance=1000)
        exchange.balance = 830

        result = await risk_gate.check(params(trader.id, 10))

        assert result.approved
        assert result.metrics.current_drawdown == pytest.approx(17)
        assert any("Approaching drawdown" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_trader_drawdown_override_applies(self, risk_gate, repo, exchange, trader):
        await repo.update_trader(trader.id, peak_balance=1000, max_drawdown_percent=30)
        exchange.balance = 750

        result = await risk_gate.check(params(trader.id, 10))

        assert result.approved

    @pytest.mark.asyncio
    async def test_daily_loss_limit_rejected(self, risk_gate, repo, trader):
        await repo.create_trade(
            TradeRecord(
                trader_id=trader.id,
                market_id=MARKET,
                token_id=TOKEN,
                side=TradeSide.BUY,
                requested_amount=600,
                executed_amount=100,
                status=TradeStatus.EXECUTED,
                executed_at=utcnow(),
            )
        )

        result = await risk_gate.check(params(trader.id, 10))

        assert not result.approved
        assert result.metrics.daily_pnl == pytest.approx(-500)
        assert result.rejection_reason.startswith("Daily loss limit reached")

    @pytest.mark.asyncio
    async def test_max_open_positions_rejected(self, risk_gate, repo, trader):
        risk_gate.set_global_limits(max_open_positions=2)
        await open_position(repo, trader.id, 10, 0.5, token_id="a")
        await open_position(repo, trader.id, 10, 0.5, token_id="b")

        result = await risk_gate.check(params(trader.id, 10))

        assert not result.approved
        assert result.rejection_reason.startswith("Max open positions reached")

    @pytest.mark.asyncio
    async def test_adding_to_held_position_ignores_open_count(self, risk_gate, repo, trader):
        risk_gate.set_global_limits(max_open_positions=1)
        await open_position(repo, trader.id, 10, 0.5)

        result = await risk_gate.check(params(trader.id, 10))

        assert result.approved

    @pytest.mark.asyncio
    async def test_slippage_too_high_rejected(self, risk_gate, exchange, trader):
        exchange.slippage = 0.08

        result = await risk_gate.check(params(trader.id, 10))

        assert not result.approved
        assert result.metrics.estimated_slippage == pytest.approx(8)
        assert result.rejection_reason.startswith("Estimated slippage too high")

    @pytest.mark.asyncio
    async def test_slippage_near_tolerance_warns(self, risk_gate, exchange, trader):
        exchange.slippage = 0.04

        result = await risk_gate.check(params(trader.id, 10))

        assert result.approved
        assert any("High slippage" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_slippage_estimate_failure_is_a_warning(self, risk_gate, exchange, trader):
        exchange.slippage_error = RuntimeError("book unavailable")

        result = await risk_gate.check(params(trader.id, 10))

        assert result.approved
        assert "Could not estimate slippage" in result.warnings

    @pytest.mark.asyncio
    async def test_below_minimum_rejected(self, risk_gate, trader):
        result = await risk_gate.check(params(trader.id, 0.5))
        assert not result.approved
        assert "below minimum" in result.rejection_reason


class TestGlobalLimits:
    def test_get_returns_copy(self, risk_gate):
        limits = risk_gate.get_global_limits()
        limits.max_open_positions = 99
        assert risk_gate.get_global_limits().max_open_positions == 10

    def test_set_updates_only_given_fields(self, risk_gate):
        updated = risk_gate.set_global_limits(daily_loss_limit=250)
        assert updated.daily_loss_limit == 250
        assert updated.max_drawdown_percent == 20

    def test_invalid_value_raises(self, risk_gate):
        with pytest.raises(ValueError):
            risk_gate.set_global_limits(max_open_positions="many")
