# PATH: core/models.py
"""
Core data models for POLYARB.

UNITS CONTRACT
==============
- Token amounts (amount_in, amount_out) are ints in the token's smallest unit.
- Opportunity prices and profits are ints in 18-decimal fixed point, in
  units of tokenB, so legs with different decimals compare directly.
- Gas prices and native costs are ints in wei.
- Portfolio money (trade PnL, risk metrics) is Decimal USD.
- Percentages are Decimal, 1.5 means 1.5%.
==============
"""

from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from core.constants import CRITICAL_RISK_CHECKS, BreakerState, RiskCheck
from core.exceptions import ConfigError
from core.time import now_timestamp


# =============================================================================
# TOKENS / QUOTES
# =============================================================================

@dataclass(frozen=True)
class TokenInfo:
    """Token identity. Two tokens are equal when their addresses match."""
    address: str
    symbol: str
    decimals: int
    name: str = ""

    def __post_init__(self):
        if not self.address.startswith("0x") or len(self.address) != 42:
            raise ConfigError(
                f"Invalid token address for {self.symbol}: {self.address}",
                details={"symbol": self.symbol},
            )
        if not 0 <= self.decimals <= 36:
            raise ConfigError(
                f"Invalid decimals for {self.symbol}: {self.decimals}",
                details={"symbol": self.symbol},
            )

    def __hash__(self) -> int:
        return hash(self.address.lower())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TokenInfo):
            return False
        return self.address.lower() == other.address.lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "name": self.name,
        }


@dataclass(frozen=True)
class Quote:
    """Output amount one venue reports for a given input, at query time."""
    venue: str
    token_in: TokenInfo
    token_out: TokenInfo
    amount_in: int
    amount_out: int
    gas_estimate: int = 0
    price_impact: Decimal = Decimal("0")
    route: Tuple[str, ...] = ()
    fee_tier: Optional[int] = None
    latency_ms: int = 0
    timestamp: float = field(default_factory=now_timestamp)

    @property
    def pair(self) -> str:
        return f"{self.token_in.symbol}/{self.token_out.symbol}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "venue": self.venue,
            "token_in": self.token_in.symbol,
            "token_out": self.token_out.symbol,
            "amount_in": str(self.amount_in),
            "amount_out": str(self.amount_out),
            "gas_estimate": self.gas_estimate,
            "price_impact": str(self.price_impact),
            "route": list(self.route),
            "fee_tier": self.fee_tier,
            "latency_ms": self.latency_ms,
        }


# =============================================================================
# GAS
# =============================================================================

@dataclass(frozen=True)
class GasTiers:
    """Network gas prices in wei."""
    low: int
    standard: int
    fast: int
    instant: int
    base_fee: int
    priority_fee: int
    source: str = "gas_station"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class GasCostEstimate:
    """Gas cost of one two-leg flash-loan arbitrage."""
    flash_loan_gas: int
    swap_gas: int
    total_gas: int
    gas_price_wei: int
    total_cost_native: int
    total_cost_usd: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flash_loan_gas": self.flash_loan_gas,
            "swap_gas": self.swap_gas,
            "total_gas": self.total_gas,
            "gas_price_wei": self.gas_price_wei,
            "total_cost_native": str(self.total_cost_native),
            "total_cost_usd": str(self.total_cost_usd),
        }


# =============================================================================
# OPPORTUNITY
# =============================================================================

@dataclass(frozen=True)
class ArbitrageOpportunity:
    """
    Buy on one venue, sell on another.

    Quotes go stale within seconds. Re-derive before acting on it.
    """
    token_a: TokenInfo
    token_b: TokenInfo
    amount_in: int
    buy_venue: str
    sell_venue: str
    buy_price: int
    sell_price: int
    gross_profit: int
    profit_percent: Decimal
    gas_estimate: int
    gas_cost: int
    net_profit: int
    gas_price_wei: int = 0
    gas_cost_usd: Decimal = Decimal("0")
    net_profit_usd: Decimal = Decimal("0")
    amount_in_usd: Decimal = Decimal("0")
    created_at: float = field(default_factory=now_timestamp)

    def __post_init__(self):
        if self.gross_profit <= 0:
            raise ValueError(f"Opportunity requires positive gross profit, got {self.gross_profit}")
        if self.buy_venue == self.sell_venue:
            raise ValueError(f"Opportunity requires distinct venues, got {self.buy_venue} twice")
        if self.net_profit != self.gross_profit - self.gas_cost:
            raise ValueError("net_profit must equal gross_profit - gas_cost")

    @property
    def pair_key(self) -> str:
        return f"{self.token_a.symbol}/{self.token_b.symbol}"

    @property
    def is_net_positive(self) -> bool:
        return self.net_profit > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pair": self.pair_key,
            "token_a": self.token_a.symbol,
            "token_b": self.token_b.symbol,
            "amount_in": str(self.amount_in),
            "buy_venue": self.buy_venue,
            "sell_venue": self.sell_venue,
            "buy_price": str(self.buy_price),
            "sell_price": str(self.sell_price),
            "gross_profit": str(self.gross_profit),
            "profit_percent": str(self.profit_percent),
            "gas_estimate": self.gas_estimate,
            "gas_cost": str(self.gas_cost),
            "net_profit": str(self.net_profit),
            "gas_price_wei": self.gas_price_wei,
            "gas_cost_usd": str(self.gas_cost_usd),
            "net_profit_usd": str(self.net_profit_usd),
            "amount_in_usd": str(self.amount_in_usd),
            "created_at": self.created_at,
        }


# =============================================================================
# TRADES
# =============================================================================

@dataclass(frozen=True)
class TradeResult:
    """Outcome of one execution attempt. Money fields are USD."""
    success: bool
    token_a: str
    token_b: str
    source_venue: str
    target_venue: str
    amount: Decimal
    profit: Decimal = Decimal("0")
    net_profit: Decimal = Decimal("0")
    gas_used: int = 0
    gas_cost: Decimal = Decimal("0")
    execution_ms: int = 0
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=now_timestamp)

    @property
    def pair_key(self) -> str:
        return f"{self.token_a}/{self.token_b}"

    @property
    def trade_return(self) -> Decimal:
        """Per-trade return as a fraction of the traded amount."""
        if self.amount == 0:
            return Decimal("0")
        return self.net_profit / self.amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "pair": self.pair_key,
            "source_venue": self.source_venue,
            "target_venue": self.target_venue,
            "amount": str(self.amount),
            "profit": str(self.profit),
            "net_profit": str(self.net_profit),
            "gas_used": self.gas_used,
            "gas_cost": str(self.gas_cost),
            "execution_ms": self.execution_ms,
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "error": self.error,
            "timestamp": self.timestamp,
        }


# =============================================================================
# RISK
# =============================================================================

@dataclass(frozen=True)
class RiskLimits:
    """Risk limits. Immutable; replaced wholesale on update."""
    daily_loss_percent: Decimal = Decimal("5")
    consecutive_loss_limit: int = 5
    volatility_limit: Decimal = Decimal("0.5")
    gas_price_limit_gwei: Decimal = Decimal("100")
    slippage_percent: Decimal = Decimal("0.5")
    position_size_percent: Decimal = Decimal("10")
    drawdown_percent: Decimal = Decimal("15")
    hourly_trade_limit: int = 20

    def __post_init__(self):
        percents = {
            "daily_loss_percent": self.daily_loss_percent,
            "slippage_percent": self.slippage_percent,
            "position_size_percent": self.position_size_percent,
            "drawdown_percent": self.drawdown_percent,
        }
        for name, value in percents.items():
            if not Decimal("0") < Decimal(value) <= Decimal("100"):
                raise ConfigError(f"Risk limit {name} must be in (0, 100], got {value}")
        if self.consecutive_loss_limit < 1:
            raise ConfigError("consecutive_loss_limit must be >= 1")
        if self.hourly_trade_limit < 1:
            raise ConfigError("hourly_trade_limit must be >= 1")
        if Decimal(self.volatility_limit) <= 0:
            raise ConfigError("volatility_limit must be positive")
        if Decimal(self.gas_price_limit_gwei) <= 0:
            raise ConfigError("gas_price_limit_gwei must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return {k: str(v) for k, v in asdict(self).items()}


@dataclass
class RiskMetrics:
    """Rolling risk metrics. Written only by the risk gate."""
    daily_pnl: Decimal = Decimal("0")
    total_pnl: Decimal = Decimal("0")
    consecutive_losses: int = 0
    current_drawdown: Decimal = Decimal("0")
    max_drawdown: Decimal = Decimal("0")
    volatility: Decimal = Decimal("0")
    trades_in_last_hour: int = 0
    last_trade_time: float = 0.0
    portfolio_value: Decimal = Decimal("0")
    peak_value: Decimal = Decimal("0")
    risk_score: Decimal = Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            k: (str(v) if isinstance(v, Decimal) else v)
            for k, v in asdict(self).items()
        }


@dataclass(frozen=True)
class CircuitBreakerState:
    """Breaker snapshot. auto_reset_at None means manual reset only."""
    tripped: bool = False
    reason: str = ""
    tripped_at: Optional[float] = None
    auto_reset_at: Optional[float] = None

    @property
    def state(self) -> BreakerState:
        return BreakerState.TRIPPED if self.tripped else BreakerState.NORMAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "tripped": self.tripped,
            "reason": self.reason,
            "tripped_at": self.tripped_at,
            "auto_reset_at": self.auto_reset_at,
        }


@dataclass(frozen=True)
class RiskCheckResult:
    """One discrete risk check. Critical failures trip the breaker."""
    check: RiskCheck
    passed: bool
    reason: str

    @property
    def critical(self) -> bool:
        return self.check in CRITICAL_RISK_CHECKS


@dataclass(frozen=True)
class RiskDecision:
    """Approve/deny outcome of a risk evaluation."""
    approved: bool
    risk_score: Decimal
    reason: Optional[str] = None
    failed_checks: Tuple[RiskCheck, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "risk_score": str(self.risk_score),
            "reason": self.reason,
            "failed_checks": [c.value for c in self.failed_checks],
        }
