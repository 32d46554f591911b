"""
core - Core utilities and models for POLYARB.

This package contains:
- models.py: Data models (TokenInfo, Quote, ArbitrageOpportunity, TradeResult, risk state)
- constants.py: Enums, selectors and defaults
- exceptions.py: Typed exceptions with error codes
- math.py: Fixed-point and unit conversions (no float)
- time.py: Injectable clock and local-day helpers
- logging.py: Structured JSON logging
"""

from core.constants import (
    BreakerState,
    ErrorCode,
    EventType,
    GasUrgency,
    RiskCheck,
    RiskLevel,
    VenueFamily,
)
from core.exceptions import (
    ConfigError,
    ExecutionError,
    GasOracleError,
    InfraError,
    PolyArbError,
    PriceFeedError,
    QuoteError,
    RPCError,
    RPCTimeoutError,
    SignerError,
)
from core.logging import get_logger, setup_logging
from core.models import (
    ArbitrageOpportunity,
    CircuitBreakerState,
    GasCostEstimate,
    GasTiers,
    Quote,
    RiskCheckResult,
    RiskDecision,
    RiskLimits,
    RiskMetrics,
    TokenInfo,
    TradeResult,
)

__all__ = [
    # Constants
    "BreakerState",
    "ErrorCode",
    "EventType",
    "GasUrgency",
    "RiskCheck",
    "RiskLevel",
    "VenueFamily",
    # Exceptions
    "ConfigError",
    "ExecutionError",
    "GasOracleError",
    "InfraError",
    "PolyArbError",
    "PriceFeedError",
    "QuoteError",
    "RPCError",
    "RPCTimeoutError",
    "SignerError",
    # Models
    "ArbitrageOpportunity",
    "CircuitBreakerState",
    "GasCostEstimate",
    "GasTiers",
    "Quote",
    "RiskCheckResult",
    "RiskDecision",
    "RiskLimits",
    "RiskMetrics",
    "TokenInfo",
    "TradeResult",
    # Logging
    "get_logger",
    "setup_logging",
]
