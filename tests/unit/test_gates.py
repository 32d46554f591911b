"""
tests/unit/test_gates.py - Tests for opportunity sanity gates.
"""

import pytest
from decimal import Decimal

from conftest import make_opportunity
from core.constants import ErrorCode
from strategy.gates import (
    GateResult,
    apply_opportunity_gates,
    gate_gas_buffer,
    gate_min_profit_percent,
    gate_min_profit_usd,
    gate_net_positive,
    gate_slippage_ceiling,
)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def opp(wmatic, dai):
    # 1000 -> 1020 / 1002 -> 0.196% spread, net ~1.99 DAI
    return make_opportunity(
        wmatic, dai,
        buy_price=1020 * 10**18,
        sell_price=1022 * 10**18,
        gas_cost=10**16,
    )


# =============================================================================
# INDIVIDUAL GATES
# =============================================================================

class TestGateNetPositive:
    def test_passes_when_net_positive(self, opp):
        assert gate_net_positive(opp).passed

    def test_fails_when_gas_eats_spread(self, wmatic, dai):
        opp = make_opportunity(wmatic, dai, gas_cost=20 * 10**18, net_profit_usd=Decimal("-5"))
        result = gate_net_positive(opp)
        assert not result.passed
        assert result.reject_code == ErrorCode.GATE_NOT_NET_POSITIVE


class TestGateMinProfitUsd:
    def test_passes_above_floor(self, opp):
        assert gate_min_profit_usd(opp, Decimal("0.02")).passed

    def test_fails_below_floor(self, opp):
        result = gate_min_profit_usd(opp, Decimal("100"))
        assert not result.passed
        assert result.reject_code == ErrorCode.GATE_PROFIT_TOO_LOW
        assert result.details["min_profit_usd"] == "100"


class TestGateMinProfitPercent:
    def test_passes(self, opp):
        assert gate_min_profit_percent(opp, Decimal("0.05")).passed

    def test_fails(self, opp):
        result = gate_min_profit_percent(opp, Decimal("0.5"))
        assert result.reject_code == ErrorCode.GATE_PROFIT_PERCENT_TOO_LOW


class TestGateSlippageCeiling:
    def test_passes_under_ceiling(self, opp):
        assert gate_slippage_ceiling(opp, Decimal("0.5")).passed

    def test_rejects_implausible_spread(self, wmatic, dai):
        # 1.47% spread
        wide = make_opportunity(wmatic, dai)
        result = gate_slippage_ceiling(wide, Decimal("0.5"))
        assert not result.passed
        assert result.reject_code == ErrorCode.GATE_SLIPPAGE_TOO_HIGH


class TestGateGasBuffer:
    def test_passes_when_gross_clears_floor(self, opp):
        assert gate_gas_buffer(opp, 10**18).passed

    def test_fails_below_floor(self, opp):
        result = gate_gas_buffer(opp, 5 * 10**18)
        assert not result.passed
        assert result.reject_code == ErrorCode.GATE_BELOW_GAS_BUFFER


# =============================================================================
# COMBINED
# =============================================================================

class TestApplyOpportunityGates:
    def test_all_pass(self, opp):
        failed = apply_opportunity_gates(opp, Decimal("0.02"), Decimal("0.05"), Decimal("0.5"))
        assert failed == []

    def test_gas_buffer_only_when_floor_given(self, opp):
        without = apply_opportunity_gates(opp, Decimal("0"), Decimal("0"), Decimal("1"))
        with_floor = apply_opportunity_gates(opp, Decimal("0"), Decimal("0"), Decimal("1"), profit_floor=10 * 10**18)
        assert without == []
        assert [g.reject_code for g in with_floor] == [ErrorCode.GATE_BELOW_GAS_BUFFER]

    def test_collects_every_failure(self, wmatic, dai):
        bad = make_opportunity(wmatic, dai, gas_cost=20 * 10**18, net_profit_usd=Decimal("-5"))
        failed = apply_opportunity_gates(bad, Decimal("0.02"), Decimal("0.05"), Decimal("0.5"))
        codes = {g.reject_code for g in failed}
        assert codes == {
            ErrorCode.GATE_NOT_NET_POSITIVE,
            ErrorCode.GATE_PROFIT_TOO_LOW,
            ErrorCode.GATE_SLIPPAGE_TOO_HIGH,
        }

    def test_gate_result_defaults(self):
        result = GateResult(passed=True)
        assert result.reject_code is None
        assert result.details is None
