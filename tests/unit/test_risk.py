"""
tests/unit/test_risk.py - Risk gate checks, scoring and circuit breaker.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from conftest import make_opportunity
from core.constants import BreakerState, EventType, RiskCheck
from core.exceptions import ConfigError
from core.models import RiskLimits, TradeResult
from monitoring.events import EventBus
from strategy.risk import RiskGate

E18 = 10**18


class FakeClock:
    def __init__(self, start: float):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def trade(net: str, amount: str = "100") -> TradeResult:
    value = Decimal(net)
    return TradeResult(
        success=value > 0,
        token_a="WMATIC",
        token_b="DAI",
        source_venue="venue_x",
        target_venue="venue_y",
        amount=Decimal(amount),
        profit=max(value, Decimal("0")),
        net_profit=value,
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 12, 0, 0).timestamp())


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def gate(clock, bus):
    return RiskGate(RiskLimits(), Decimal("10000"), event_bus=bus, clock=clock)


@pytest.fixture
def safe_opp(wmatic, dai):
    # 0.196% spread, $500 on a $10k portfolio
    return make_opportunity(wmatic, dai, buy_price=1020 * E18, sell_price=1022 * E18)


class TestChecks:
    @pytest.mark.asyncio
    async def test_approves_safe_opportunity(self, gate, safe_opp):
        decision = await gate.evaluate(safe_opp)
        assert decision.approved
        assert decision.risk_score == Decimal("0")
        assert decision.failed_checks == ()

    @pytest.mark.asyncio
    async def test_wide_spread_fails_slippage(self, gate, wmatic, dai):
        opp = make_opportunity(wmatic, dai)  # 1.47%
        decision = await gate.evaluate(opp)

        assert not decision.approved
        assert RiskCheck.SLIPPAGE in decision.failed_checks
        assert "Slippage" in decision.reason
        assert not gate.is_tripped

    @pytest.mark.asyncio
    async def test_position_and_gas_limits(self, gate, wmatic, dai):
        opp = make_opportunity(
            wmatic, dai,
            buy_price=1020 * E18, sell_price=1022 * E18,
            amount_in_usd=Decimal("1500"),
            gas_price_wei=150 * 10**9,
        )
        decision = await gate.evaluate(opp)
        assert set(decision.failed_checks) == {RiskCheck.POSITION_SIZE, RiskCheck.GAS_PRICE}
        assert not gate.is_tripped

    def test_eight_checks(self, gate, safe_opp):
        checks = gate.run_checks(safe_opp)
        assert len(checks) == 8
        assert all(c.passed for c in checks)
        critical = {c.check for c in checks if c.critical}
        assert critical == {RiskCheck.DAILY_LOSS, RiskCheck.CONSECUTIVE_LOSS, RiskCheck.DRAWDOWN}

    @pytest.mark.asyncio
    async def test_hourly_limit(self, clock, wmatic, dai):
        gate = RiskGate(RiskLimits(hourly_trade_limit=3), Decimal("10000"), clock=clock)
        opp = make_opportunity(wmatic, dai, buy_price=1020 * E18, sell_price=1022 * E18)
        for _ in range(3):
            await gate.record_trade(trade("1"))
        decision = await gate.evaluate(opp)
        assert RiskCheck.TRADE_FREQUENCY in decision.failed_checks

        clock.advance(3601)
        assert (await gate.evaluate(opp)).approved


class TestScoring:
    @pytest.mark.asyncio
    async def test_high_score_denied_with_checks_passing(self, clock, wmatic, dai):
        gate = RiskGate(RiskLimits(slippage_percent=Decimal("10")), Decimal("10000"), clock=clock)
        for _ in range(3):
            await gate.record_trade(trade("-1"))

        # 6% spread (+30), 9% position (+25), 1.2M gas (+15), 3 losses (+15)
        opp = make_opportunity(
            wmatic, dai,
            buy_price=1000 * E18, sell_price=1060 * E18,
            amount_in_usd=Decimal("900"),
            gas_estimate=1_200_000,
        )
        decision = await gate.evaluate(opp)

        assert not decision.approved
        assert decision.failed_checks == (RiskCheck.RISK_SCORE,)
        assert decision.risk_score >= Decimal("80")
        assert not gate.is_tripped

    def test_low_profit_scores(self, gate, wmatic, dai):
        opp = make_opportunity(wmatic, dai, buy_price=1000 * E18, sell_price=1000 * E18 + 5 * 10**17)
        assert gate.opportunity_score(opp) == Decimal("20")


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_consecutive_losses_trip(self, gate, safe_opp, bus):
        for _ in range(5):
            await gate.record_trade(trade("-10"))

        assert gate.is_tripped
        assert gate.breaker.state == BreakerState.TRIPPED
        assert "Consecutive loss limit reached: 5 >= 5" in gate.breaker.reason
        assert len(bus.history(EventType.CIRCUIT_BREAKER_TRIPPED)) == 1

        decision = await gate.evaluate(safe_opp)
        assert not decision.approved
        assert decision.reason.startswith("Circuit breaker active:")
        assert "consecutive" in decision.reason.lower()
        assert decision.failed_checks == (RiskCheck.CIRCUIT_BREAKER,)
        assert decision.risk_score == gate.opportunity_score(safe_opp)

    @pytest.mark.asyncio
    async def test_auto_reset_after_cooldown(self, gate, safe_opp, clock, bus):
        for _ in range(5):
            await gate.record_trade(trade("-10"))
        assert gate.breaker.auto_reset_at == clock.now + 86400

        clock.advance(86399)
        assert not (await gate.evaluate(safe_opp)).approved

        clock.advance(2)
        decision = await gate.evaluate(safe_opp)
        assert decision.approved
        assert not gate.is_tripped
        assert gate.metrics.consecutive_losses == 0
        assert len(bus.history(EventType.CIRCUIT_BREAKER_RESET)) == 1

    @pytest.mark.asyncio
    async def test_critical_check_in_evaluate_trips(self, clock, safe_opp):
        gate = RiskGate(RiskLimits(consecutive_loss_limit=2), Decimal("10000"), clock=clock)
        gate._metrics.consecutive_losses = 2

        decision = await gate.evaluate(safe_opp)
        assert not decision.approved
        assert RiskCheck.CONSECUTIVE_LOSS in decision.failed_checks
        assert gate.is_tripped

    @pytest.mark.asyncio
    async def test_emergency_stop_needs_force_reset(self, gate, safe_opp, clock):
        await gate.emergency_stop("operator halt")
        assert gate.breaker.auto_reset_at is None

        clock.advance(3 * 86400)
        decision = await gate.evaluate(safe_opp)
        assert not decision.approved
        assert "operator halt" in decision.reason
        assert decision.risk_score == gate.opportunity_score(safe_opp)
        assert decision.risk_score < 100

        await gate.force_reset()
        assert (await gate.evaluate(safe_opp)).approved

    @pytest.mark.asyncio
    async def test_daily_loss_trips(self, clock):
        gate = RiskGate(RiskLimits(consecutive_loss_limit=10), Decimal("10000"), clock=clock)
        await gate.record_trade(trade("-600", amount="5000"))
        assert gate.is_tripped
        assert "Daily loss limit reached" in gate.breaker.reason


class TestMetrics:
    @pytest.mark.asyncio
    async def test_drawdown_from_peak(self, clock, bus):
        gate = RiskGate(RiskLimits(daily_loss_percent=Decimal("50")), Decimal("10000"), event_bus=bus, clock=clock)
        await gate.record_trade(trade("500", amount="5000"))
        await gate.record_trade(trade("-1500", amount="5000"))

        m = gate.metrics
        assert m.peak_value == Decimal("10500")
        assert m.portfolio_value == Decimal("9000")
        assert round(m.current_drawdown, 2) == Decimal("14.29")
        assert not gate.is_tripped
        # above 90% of the 15% limit
        assert len(bus.history(EventType.RISK_WARNING)) == 1

        await gate.record_trade(trade("-100", amount="5000"))
        assert gate.is_tripped
        assert "Drawdown limit reached" in gate.breaker.reason

    @pytest.mark.asyncio
    async def test_win_resets_consecutive_losses(self, gate):
        await gate.record_trade(trade("-1"))
        await gate.record_trade(trade("-1"))
        await gate.record_trade(trade("2"))
        assert gate.metrics.consecutive_losses == 0
        assert gate.metrics.total_pnl == Decimal("0")

    @pytest.mark.asyncio
    async def test_daily_rollover(self, gate, safe_opp, clock, bus):
        await gate.record_trade(trade("-50"))
        assert gate.metrics.daily_pnl == Decimal("-50")

        clock.advance(86400)
        await gate.evaluate(safe_opp)
        assert gate.metrics.daily_pnl == Decimal("0")
        assert gate.metrics.total_pnl == Decimal("-50")
        assert len(bus.history(EventType.DAILY_RESET)) == 1

    @pytest.mark.asyncio
    async def test_volatility_needs_ten_trades(self, gate):
        for i in range(9):
            await gate.record_trade(trade("1" if i % 2 else "-1"))
        assert gate.metrics.volatility == Decimal("0")

        await gate.record_trade(trade("1"))
        assert gate.metrics.volatility > 0

    @pytest.mark.asyncio
    async def test_recent_trades(self, gate):
        for i in range(4):
            await gate.record_trade(trade(str(i + 1)))
        recent = gate.recent_trades(2)
        assert [t.net_profit for t in recent] == [Decimal("3"), Decimal("4")]
        assert gate.recent_trades(0) == []

    def test_metrics_is_a_copy(self, gate):
        snapshot = gate.metrics
        snapshot.consecutive_losses = 99
        assert gate.metrics.consecutive_losses == 0


class TestControls:
    @pytest.mark.asyncio
    async def test_update_limits(self, gate, wmatic, dai):
        opp = make_opportunity(wmatic, dai)  # 1.47%
        assert not (await gate.evaluate(opp)).approved

        limits = await gate.update_limits(slippage_percent=Decimal("2"))
        assert limits.slippage_percent == Decimal("2")
        assert (await gate.evaluate(opp)).approved

    @pytest.mark.asyncio
    async def test_update_limits_rejects_invalid(self, gate):
        with pytest.raises(ConfigError):
            await gate.update_limits(drawdown_percent=Decimal("0"))
        assert gate.limits.drawdown_percent == Decimal("15")

    @pytest.mark.asyncio
    async def test_risk_report_levels(self, clock):
        gate = RiskGate(RiskLimits(consecutive_loss_limit=30, hourly_trade_limit=100), Decimal("10000"), clock=clock)
        assert gate.risk_report()["level"] == "LOW"

        for _ in range(12):
            await gate.record_trade(trade("-1"))
        report = gate.risk_report()
        assert report["level"] == "MEDIUM"
        assert "Review trading strategy" in report["recommendations"]

        for _ in range(5):
            await gate.record_trade(trade("-1"))
        assert gate.risk_report()["level"] == "HIGH"
        assert gate.risk_report()["circuit_breaker"]["state"] == "NORMAL"
