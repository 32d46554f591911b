"""
strategy/gates.py - Opportunity sanity gates.

Gates run before the risk gate and are independent of its state.
Each gate returns a GateResult(passed, reject_code, details).
"""

from decimal import Decimal
from typing import NamedTuple

from core.constants import ErrorCode
from core.logging import get_logger
from core.models import ArbitrageOpportunity

logger = get_logger(__name__)


# =============================================================================
# GATE RESULT
# =============================================================================

class GateResult(NamedTuple):
    """Result of a gate check."""
    passed: bool
    reject_code: ErrorCode | None = None
    details: dict | None = None


# =============================================================================
# INDIVIDUAL GATES
# =============================================================================

def gate_net_positive(opp: ArbitrageOpportunity) -> GateResult:
    """Reject if gas eats the whole spread."""
    if not opp.is_net_positive:
        return GateResult(
            passed=False,
            reject_code=ErrorCode.GATE_NOT_NET_POSITIVE,
            details={"gross_profit": str(opp.gross_profit), "gas_cost": str(opp.gas_cost)},
        )
    return GateResult(passed=True)


def gate_min_profit_usd(opp: ArbitrageOpportunity, min_profit_usd: Decimal) -> GateResult:
    """Reject if net profit in USD is under the floor."""
    if opp.net_profit_usd < min_profit_usd:
        return GateResult(
            passed=False,
            reject_code=ErrorCode.GATE_PROFIT_TOO_LOW,
            details={
                "net_profit_usd": str(opp.net_profit_usd),
                "min_profit_usd": str(min_profit_usd),
            },
        )
    return GateResult(passed=True)


def gate_min_profit_percent(opp: ArbitrageOpportunity, min_profit_percent: Decimal) -> GateResult:
    if opp.profit_percent < min_profit_percent:
        return GateResult(
            passed=False,
            reject_code=ErrorCode.GATE_PROFIT_PERCENT_TOO_LOW,
            details={
                "profit_percent": str(opp.profit_percent),
                "min_profit_percent": str(min_profit_percent),
            },
        )
    return GateResult(passed=True)


def gate_slippage_ceiling(opp: ArbitrageOpportunity, max_slippage_percent: Decimal) -> GateResult:
    """
    Reject spreads too wide to be real.

    A spread above the slippage ceiling usually means a thin pool or a
    bad quote; the trade would not fill at the quoted price.
    """
    if opp.profit_percent > max_slippage_percent:
        return GateResult(
            passed=False,
            reject_code=ErrorCode.GATE_SLIPPAGE_TOO_HIGH,
            details={
                "profit_percent": str(opp.profit_percent),
                "max_slippage_percent": str(max_slippage_percent),
            },
        )
    return GateResult(passed=True)


def gate_gas_buffer(opp: ArbitrageOpportunity, profit_floor: int) -> GateResult:
    """
    Reject if gross profit does not clear gas cost plus buffer.

    Args:
        opp: Opportunity to check
        profit_floor: Floor in 18-decimal fixed point of token_b
    """
    if opp.gross_profit < profit_floor:
        return GateResult(
            passed=False,
            reject_code=ErrorCode.GATE_BELOW_GAS_BUFFER,
            details={"gross_profit": str(opp.gross_profit), "profit_floor": str(profit_floor)},
        )
    return GateResult(passed=True)


# =============================================================================
# COMBINED GATE
# =============================================================================

def apply_opportunity_gates(
    opp: ArbitrageOpportunity,
    min_profit_usd: Decimal,
    min_profit_percent: Decimal,
    max_slippage_percent: Decimal,
    profit_floor: int | None = None,
) -> list[GateResult]:
    """
    Apply all opportunity gates.
    Returns list of failed gate results (empty if all passed).
    """
    gates = [
        gate_net_positive(opp),
        gate_min_profit_usd(opp, min_profit_usd),
        gate_min_profit_percent(opp, min_profit_percent),
        gate_slippage_ceiling(opp, max_slippage_percent),
    ]
    if profit_floor is not None:
        gates.append(gate_gas_buffer(opp, profit_floor))

    failed = [g for g in gates if not g.passed]
    if failed:
        logger.debug(
            f"Opportunity gated: {opp.pair_key} {opp.buy_venue} -> {opp.sell_venue}",
            extra={"context": {
                "pair": opp.pair_key,
                "reject_codes": [g.reject_code.value for g in failed],
            }},
        )
    return failed
