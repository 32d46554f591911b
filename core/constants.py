# PATH: core/constants.py
"""
Constants for POLYARB.

Contains enums, gas-unit tables, chain addresses and default thresholds.
"""

from decimal import Decimal
from enum import Enum
from typing import Final, List

# =============================================================================
# CHAIN
# =============================================================================

POLYGON_CHAIN_ID: Final = 137

ZERO_ADDRESS: Final = "0x0000000000000000000000000000000000000000"

# Fixed-point precision used to compare legs with different token decimals
PRICE_PRECISION: Final = 18
ONE_E18: Final = 10**18

WEI_PER_GWEI: Final = 10**9


class VenueFamily(str, Enum):
    """Venue families with distinct quoting and gas characteristics."""
    UNISWAP_V3 = "UNISWAP_V3"
    QUICKSWAP = "QUICKSWAP"
    SUSHISWAP = "SUSHISWAP"
    UNKNOWN = "UNKNOWN"


class GasUrgency(str, Enum):
    """Urgency levels mapped onto gas tiers."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class BreakerState(str, Enum):
    """Circuit breaker states."""
    NORMAL = "NORMAL"
    TRIPPED = "TRIPPED"


class RiskLevel(str, Enum):
    """Coarse risk level for reports."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class RiskCheck(str, Enum):
    """Discrete checks run by the risk gate."""
    DAILY_LOSS = "DAILY_LOSS"
    CONSECUTIVE_LOSS = "CONSECUTIVE_LOSS"
    VOLATILITY = "VOLATILITY"
    SLIPPAGE = "SLIPPAGE"
    POSITION_SIZE = "POSITION_SIZE"
    DRAWDOWN = "DRAWDOWN"
    TRADE_FREQUENCY = "TRADE_FREQUENCY"
    GAS_PRICE = "GAS_PRICE"
    RISK_SCORE = "RISK_SCORE"
    CIRCUIT_BREAKER = "CIRCUIT_BREAKER"


CRITICAL_RISK_CHECKS: Final = frozenset({
    RiskCheck.DAILY_LOSS,
    RiskCheck.CONSECUTIVE_LOSS,
    RiskCheck.DRAWDOWN,
})


class ErrorCode(str, Enum):
    """Error codes carried by every POLYARB exception."""
    # Venue / quote failures (transient)
    QUOTE_REVERT = "QUOTE_REVERT"
    QUOTE_TIMEOUT = "QUOTE_TIMEOUT"
    QUOTE_NO_POOL = "QUOTE_NO_POOL"
    QUOTE_ZERO_OUTPUT = "QUOTE_ZERO_OUTPUT"
    QUOTE_INVALID_INPUT = "QUOTE_INVALID_INPUT"
    QUOTE_MALFORMED = "QUOTE_MALFORMED"

    # Infrastructure
    INFRA_RPC_ERROR = "INFRA_RPC_ERROR"
    INFRA_TIMEOUT = "INFRA_TIMEOUT"
    INFRA_UNSUPPORTED = "INFRA_UNSUPPORTED"

    # Degraded dependencies
    GAS_ORACLE_UNAVAILABLE = "GAS_ORACLE_UNAVAILABLE"
    PRICE_FEED_UNAVAILABLE = "PRICE_FEED_UNAVAILABLE"

    # Opportunity sanity gates
    GATE_NOT_NET_POSITIVE = "GATE_NOT_NET_POSITIVE"
    GATE_PROFIT_TOO_LOW = "GATE_PROFIT_TOO_LOW"
    GATE_PROFIT_PERCENT_TOO_LOW = "GATE_PROFIT_PERCENT_TOO_LOW"
    GATE_SLIPPAGE_TOO_HIGH = "GATE_SLIPPAGE_TOO_HIGH"
    GATE_BELOW_GAS_BUFFER = "GATE_BELOW_GAS_BUFFER"

    # Execution
    EXEC_NOT_VIABLE = "EXEC_NOT_VIABLE"
    EXEC_RISK_DENIED = "EXEC_RISK_DENIED"
    EXEC_SUBMIT_FAILED = "EXEC_SUBMIT_FAILED"
    EXEC_RECEIPT_TIMEOUT = "EXEC_RECEIPT_TIMEOUT"
    EXEC_RECEIPT_UNAVAILABLE = "EXEC_RECEIPT_UNAVAILABLE"
    EXEC_REVERTED = "EXEC_REVERTED"

    # Fatal
    CONFIG_INVALID = "CONFIG_INVALID"
    SIGNER_MISSING = "SIGNER_MISSING"
    SIGNER_INVALID = "SIGNER_INVALID"

    UNKNOWN = "UNKNOWN"


class EventType(str, Enum):
    """Outbound events published on the event bus."""
    OPPORTUNITIES_FOUND = "opportunities_found"
    SCAN_COMPLETED = "scan_completed"
    TRADE_EXECUTED = "trade_executed"
    TRADE_FAILED = "trade_failed"
    CIRCUIT_BREAKER_TRIPPED = "circuit_breaker_tripped"
    CIRCUIT_BREAKER_RESET = "circuit_breaker_reset"
    RISK_WARNING = "risk_warning"
    DAILY_RESET = "daily_reset"
    TRADE_RECORDED = "trade_recorded"


# =============================================================================
# GAS UNITS (per operation)
# =============================================================================

GAS_FLASH_LOAN_BASE: Final = 150_000
GAS_UNISWAP_V3_SWAP: Final = 180_000
GAS_QUICKSWAP_SWAP: Final = 120_000
GAS_SUSHISWAP_SWAP: Final = 120_000
GAS_APPROVAL: Final = 46_000
GAS_APPROVALS_PER_ARBITRAGE: Final = 2
GAS_SAFETY_MULTIPLIER: Final = Decimal("1.2")

SWAP_GAS_BY_FAMILY: Final = {
    VenueFamily.UNISWAP_V3: GAS_UNISWAP_V3_SWAP,
    VenueFamily.QUICKSWAP: GAS_QUICKSWAP_SWAP,
    VenueFamily.SUSHISWAP: GAS_SUSHISWAP_SWAP,
}

# Fallbacks when a live estimate is unavailable
FALLBACK_TX_GAS_LIMIT: Final = 500_000
FALLBACK_UNISWAP_V3_QUOTE_GAS: Final = 300_000
FALLBACK_QUICKSWAP_QUOTE_GAS: Final = 200_000
FALLBACK_EVALUATION_GAS_PRICE_GWEI: Final = 100

# Static gas table used when the gas station is unreachable
FALLBACK_BASE_FEE_GWEI: Final = 30
FALLBACK_PRIORITY_FEE_GWEI: Final = 1

CONFIRMATION_SECONDS_BY_URGENCY: Final = {
    GasUrgency.LOW: 30,
    GasUrgency.MEDIUM: 15,
    GasUrgency.HIGH: 5,
}

# =============================================================================
# VENUE CALL SELECTORS
# =============================================================================

# keccak256("getPool(address,address,uint24)")[:4]
SELECTOR_GET_POOL: Final = "1698ee82"
# keccak256("quoteExactInputSingle(address,address,uint24,uint256,uint160)")[:4]
SELECTOR_QUOTE_EXACT_INPUT_SINGLE: Final = "f7729d43"
# keccak256("getPair(address,address)")[:4]
SELECTOR_GET_PAIR: Final = "e6a43905"
# keccak256("getAmountsOut(uint256,address[])")[:4]
SELECTOR_GET_AMOUNTS_OUT: Final = "d06ca61f"
# keccak256("getReserves()")[:4]
SELECTOR_GET_RESERVES: Final = "0902f1ac"
# keccak256("token0()")[:4]
SELECTOR_TOKEN0: Final = "0dfe1681"
# ERC-3156 flashLoan(address,address,uint256,bytes)
SELECTOR_FLASH_LOAN: Final = "5cffe9de"

# =============================================================================
# DEFAULTS
# =============================================================================

DEFAULT_FEE_TIERS: List[int] = [3000, 500, 10000]
POOL_CACHE_TTL_SECONDS: Final = 3600
POOL_LOOKUP_TIMEOUT_SECONDS: Final = 2.0
QUOTE_CALL_TIMEOUT_SECONDS: Final = 3.0

DEFAULT_PER_VENUE_TIMEOUT_SECONDS: Final = 8.0
DEFAULT_BATCH_TIMEOUT_SECONDS: Final = 15.0

# Sub-basis-point spreads are noise
MIN_PROFIT_PERCENT_NOISE: Final = Decimal("0.01")

OPPORTUNITY_HISTORY_MAX: Final = 100
OPPORTUNITY_HISTORY_KEEP: Final = 50

TRADE_HISTORY_MAX: Final = 1000
VOLATILITY_WINDOW: Final = 20
VOLATILITY_MIN_TRADES: Final = 10
CIRCUIT_BREAKER_COOLDOWN_SECONDS: Final = 24 * 60 * 60
RISK_SCORE_DENY_THRESHOLD: Final = 80

DEFAULT_NATIVE_PRICE_USD: Final = Decimal("0.5")
