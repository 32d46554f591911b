"""
tests/unit/test_core_models.py - Data model invariants.
"""

import pytest
from decimal import Decimal

from conftest import make_opportunity
from core.constants import BreakerState
from core.exceptions import ConfigError
from core.models import (
    ArbitrageOpportunity,
    CircuitBreakerState,
    RiskLimits,
    TokenInfo,
    TradeResult,
)


class TestTokenInfo:
    def test_equality_ignores_address_case(self, wmatic):
        other = TokenInfo(address=wmatic.address.lower(), symbol="WMATIC", decimals=18)
        assert other == wmatic
        assert hash(other) == hash(wmatic)

    def test_rejects_bad_address(self):
        with pytest.raises(ConfigError):
            TokenInfo(address="0x1234", symbol="BAD", decimals=18)

    def test_rejects_bad_decimals(self):
        with pytest.raises(ConfigError):
            TokenInfo(address="0x" + "1" * 40, symbol="BAD", decimals=40)


class TestArbitrageOpportunity:
    def test_valid_opportunity(self, wmatic, dai):
        opp = make_opportunity(wmatic, dai)
        assert opp.gross_profit == 15 * 10**18
        assert opp.net_profit == opp.gross_profit - opp.gas_cost
        assert opp.pair_key == "WMATIC/DAI"
        assert opp.is_net_positive

    def test_rejects_same_venue(self, wmatic, dai):
        with pytest.raises(ValueError):
            make_opportunity(wmatic, dai, buy_venue="venue_x", sell_venue="venue_x")

    def test_rejects_non_positive_gross(self, wmatic, dai):
        with pytest.raises(ValueError):
            make_opportunity(wmatic, dai, buy_price=1035, sell_price=1020)

    def test_rejects_inconsistent_net(self, wmatic, dai):
        with pytest.raises(ValueError):
            ArbitrageOpportunity(
                token_a=wmatic,
                token_b=dai,
                amount_in=1000,
                buy_venue="venue_x",
                sell_venue="venue_y",
                buy_price=1020,
                sell_price=1035,
                gross_profit=15,
                profit_percent=Decimal("1.47"),
                gas_estimate=0,
                gas_cost=5,
                net_profit=15,
            )

    def test_to_dict_stringifies_big_ints(self, wmatic, dai):
        data = make_opportunity(wmatic, dai).to_dict()
        assert data["gross_profit"] == str(15 * 10**18)
        assert data["buy_venue"] == "venue_x"


class TestTradeResult:
    def test_trade_return(self):
        trade = TradeResult(
            success=True, token_a="WMATIC", token_b="USDC",
            source_venue="a", target_venue="b",
            amount=Decimal("1000"), net_profit=Decimal("10"),
        )
        assert trade.trade_return == Decimal("0.01")

    def test_trade_return_zero_amount(self):
        trade = TradeResult(
            success=False, token_a="WMATIC", token_b="USDC",
            source_venue="a", target_venue="b", amount=Decimal("0"),
        )
        assert trade.trade_return == Decimal("0")


class TestRiskLimits:
    def test_defaults_are_valid(self):
        limits = RiskLimits()
        assert limits.consecutive_loss_limit == 5
        assert limits.drawdown_percent == Decimal("15")

    @pytest.mark.parametrize("field,value", [
        ("daily_loss_percent", Decimal("0")),
        ("drawdown_percent", Decimal("101")),
        ("consecutive_loss_limit", 0),
        ("hourly_trade_limit", 0),
    ])
    def test_rejects_out_of_range(self, field, value):
        with pytest.raises(ConfigError):
            RiskLimits(**{field: value})


class TestCircuitBreakerState:
    def test_default_is_normal(self):
        assert CircuitBreakerState().state == BreakerState.NORMAL

    def test_tripped_state(self):
        state = CircuitBreakerState(tripped=True, reason="x", tripped_at=1.0)
        assert state.state == BreakerState.TRIPPED
        assert state.to_dict()["state"] == "TRIPPED"
