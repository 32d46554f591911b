"""
strategy/config.py - Typed runtime configuration.

Sections are frozen dataclasses validated at construction. Partial
runtime updates go through dataclasses.replace so every swap yields a
fully validated object.

Load order: dataclass defaults < config/strategy.yaml < environment.
"""

import dataclasses
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type, TypeVar

from dotenv import load_dotenv

from config import load_tokens, load_venues, load_yaml
from core.constants import GasUrgency, POLYGON_CHAIN_ID, VenueFamily
from core.exceptions import ConfigError
from core.models import RiskLimits, TokenInfo

T = TypeVar("T")

DEFAULT_PRIVATE_ENDPOINTS = (
    "https://polygon.drpc.org",
    "https://rpc.ankr.com/polygon",
    "https://polygon.llamarpc.com",
)


# =============================================================================
# SECTIONS
# =============================================================================

@dataclass(frozen=True)
class ScanConfig:
    """Scheduler cadence, fan-out and the pair universe."""
    interval_seconds: float = 30.0
    scan_timeout_seconds: float = 25.0
    pair_concurrency: int = 3
    top_k: int = 5
    per_venue_timeout_seconds: float = 8.0
    batch_timeout_seconds: float = 15.0
    gas_check_timeout_seconds: float = 5.0
    max_gas_price_gwei: Decimal = Decimal("100")
    priority_pairs: Tuple[Tuple[str, str], ...] = (
        ("WMATIC", "USDC"),
        ("WETH", "USDC"),
        ("WBTC", "WETH"),
        ("DAI", "USDC"),
        ("USDC", "USDC.e"),
        ("WMATIC", "WETH"),
    )
    trade_amounts: Tuple[Decimal, ...] = (
        Decimal("1000"), Decimal("5000"), Decimal("10000"), Decimal("25000"),
    )

    def __post_init__(self):
        if self.interval_seconds <= 0 or self.scan_timeout_seconds <= 0:
            raise ConfigError("Scan interval and timeout must be positive")
        if not 1 <= self.pair_concurrency <= 16:
            raise ConfigError(f"pair_concurrency must be 1..16, got {self.pair_concurrency}")
        if self.top_k < 1:
            raise ConfigError("top_k must be >= 1")
        if self.per_venue_timeout_seconds <= 0 or self.batch_timeout_seconds <= 0:
            raise ConfigError("Quote timeouts must be positive")
        if not self.trade_amounts or any(a <= 0 for a in self.trade_amounts):
            raise ConfigError("trade_amounts must be non-empty and positive")
        for pair in self.priority_pairs:
            if len(pair) != 2 or pair[0] == pair[1]:
                raise ConfigError(f"Invalid priority pair: {pair}")


@dataclass(frozen=True)
class EvaluatorConfig:
    """Opportunity sanity thresholds (independent of the risk gate)."""
    min_profit_usd: Decimal = Decimal("0.02")
    min_profit_percent: Decimal = Decimal("0.05")
    max_slippage_percent: Decimal = Decimal("0.5")
    profit_buffer_percent: Decimal = Decimal("20")
    gas_urgency: GasUrgency = GasUrgency.MEDIUM

    def __post_init__(self):
        if self.min_profit_usd < 0:
            raise ConfigError("min_profit_usd cannot be negative")
        if self.max_slippage_percent <= 0:
            raise ConfigError("max_slippage_percent must be positive")
        if self.min_profit_percent > self.max_slippage_percent:
            raise ConfigError("min_profit_percent exceeds max_slippage_percent")
        if self.profit_buffer_percent < 0:
            raise ConfigError("profit_buffer_percent cannot be negative")


@dataclass(frozen=True)
class ProtectionConfig:
    """Front-running protection applied to every submission."""
    use_private_channel: bool = True
    private_endpoints: Tuple[str, ...] = DEFAULT_PRIVATE_ENDPOINTS
    delay_min_ms: int = 500
    delay_max_ms: int = 2500
    premium_min_percent: Decimal = Decimal("5")
    premium_max_percent: Decimal = Decimal("15")
    max_gas_price_gwei: Decimal = Decimal("200")
    gas_limit_multiplier: Decimal = Decimal("1.1")
    deadline_seconds: int = 300
    sandwich_screening: bool = True
    similar_tx_threshold: int = 2
    high_gas_multiple: Decimal = Decimal("1.5")
    sandwich_score_threshold: Decimal = Decimal("0.7")
    competing_flash_loan_multiplier: Decimal = Decimal("1.5")
    txpool_timeout_seconds: float = 3.0
    fee_data_timeout_seconds: float = 5.0

    def __post_init__(self):
        if not 0 <= self.delay_min_ms <= self.delay_max_ms:
            raise ConfigError("Require 0 <= delay_min_ms <= delay_max_ms")
        if not 0 <= self.premium_min_percent <= self.premium_max_percent:
            raise ConfigError("Require 0 <= premium_min_percent <= premium_max_percent")
        if self.max_gas_price_gwei <= 0:
            raise ConfigError("max_gas_price_gwei must be positive")
        if self.use_private_channel and not self.private_endpoints:
            raise ConfigError("Private channel enabled with no endpoints")
        if self.gas_limit_multiplier < 1:
            raise ConfigError("gas_limit_multiplier must be >= 1")


@dataclass(frozen=True)
class ExecutionConfig:
    """Submission settings."""
    dry_run: bool = True
    receipt_timeout_seconds: float = 120.0
    executor_address: str = ""
    lender_address: str = ""
    tx_gas_limit: int = 900_000
    urgency: GasUrgency = GasUrgency.HIGH

    def __post_init__(self):
        if self.receipt_timeout_seconds <= 0:
            raise ConfigError("receipt_timeout_seconds must be positive")
        if self.tx_gas_limit <= 0:
            raise ConfigError("tx_gas_limit must be positive")
        if not self.dry_run and not (self.executor_address and self.lender_address):
            raise ConfigError("Live execution requires executor_address and lender_address")


@dataclass(frozen=True)
class VenueConfig:
    """One venue from config/venues.yaml."""
    venue_id: str
    family: VenueFamily
    enabled: bool
    addresses: Dict[str, str]


@dataclass(frozen=True)
class AppConfig:
    """Everything needed to wire the pipeline."""
    chain_id: int = POLYGON_CHAIN_ID
    rpc_urls: Tuple[str, ...] = ("https://polygon-rpc.com",)
    rpc_timeout_seconds: float = 10.0
    initial_capital_usd: Decimal = Decimal("10000")
    native_symbol: str = "WMATIC"
    price_refresh_seconds: float = 60.0
    scan: ScanConfig = field(default_factory=ScanConfig)
    evaluator: EvaluatorConfig = field(default_factory=EvaluatorConfig)
    risk: RiskLimits = field(default_factory=RiskLimits)
    protection: ProtectionConfig = field(default_factory=ProtectionConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    tokens: Dict[str, TokenInfo] = field(default_factory=dict)
    coingecko_ids: Dict[str, str] = field(default_factory=dict)
    default_prices_usd: Dict[str, Decimal] = field(default_factory=dict)
    venues: Tuple[VenueConfig, ...] = ()

    def __post_init__(self):
        if not self.rpc_urls:
            raise ConfigError("At least one RPC URL is required")
        if self.initial_capital_usd <= 0:
            raise ConfigError("initial_capital_usd must be positive")
        for a, b in self.scan.priority_pairs:
            if self.tokens and (a not in self.tokens or b not in self.tokens):
                raise ConfigError(f"Priority pair {a}/{b} references an unknown token")

    def token(self, symbol: str) -> TokenInfo:
        try:
            return self.tokens[symbol]
        except KeyError as e:
            raise ConfigError(f"Unknown token: {symbol}") from e


# =============================================================================
# COERCION
# =============================================================================

def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _coerce_value(name: str, target: Any, value: Any) -> Any:
    try:
        if target is Decimal:
            return Decimal(str(value))
        if target is bool:
            return _to_bool(value)
        if target is int:
            return int(value)
        if target is float:
            return float(value)
        if target is GasUrgency:
            if isinstance(value, GasUrgency):
                return value
            return GasUrgency(str(value).lower())
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e
    return value


def build_section(cls: Type[T], data: Optional[Dict[str, Any]]) -> T:
    """
    Build a frozen config section from a plain dict.

    Unknown keys are rejected so typos do not silently fall back to defaults.
    """
    data = dict(data or {})
    known = {f.name: f for f in dataclasses.fields(cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise ConfigError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")

    kwargs = {}
    for name, value in data.items():
        target = known[name].type
        if name == "priority_pairs":
            kwargs[name] = tuple(tuple(p) for p in value)
        elif name == "trade_amounts":
            kwargs[name] = tuple(Decimal(str(v)) for v in value)
        elif name == "private_endpoints":
            kwargs[name] = tuple(value)
        else:
            kwargs[name] = _coerce_value(name, target, value)
    return cls(**kwargs)


def replace_section(section: T, **changes: Any) -> T:
    """Validated copy of a section with some fields changed."""
    current = {f.name: getattr(section, f.name) for f in dataclasses.fields(section)}
    current.update(changes)
    return build_section(type(section), current)


# =============================================================================
# ENVIRONMENT
# =============================================================================

# env var -> (section, key)
ENV_OVERRIDES = {
    "POLYARB_MIN_PROFIT_USD": ("evaluator", "min_profit_usd"),
    "MIN_PROFIT_THRESHOLD": ("evaluator", "min_profit_usd"),
    "POLYARB_MAX_SLIPPAGE": ("evaluator", "max_slippage_percent"),
    "MAX_SLIPPAGE": ("evaluator", "max_slippage_percent"),
    "POLYARB_DAILY_LOSS_LIMIT": ("risk", "daily_loss_percent"),
    "DAILY_LOSS_LIMIT": ("risk", "daily_loss_percent"),
    "POLYARB_MAX_POSITION_PERCENT": ("risk", "position_size_percent"),
    "POLYARB_SCAN_INTERVAL": ("scan", "interval_seconds"),
    "POLYARB_SCAN_TIMEOUT": ("scan", "scan_timeout_seconds"),
    "POLYARB_DRY_RUN": ("execution", "dry_run"),
    "POLYARB_EXECUTOR_ADDRESS": ("execution", "executor_address"),
    "POLYARB_LENDER_ADDRESS": ("execution", "lender_address"),
    "POLYARB_PRIVATE_CHANNEL": ("protection", "use_private_channel"),
}


def apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay environment variables onto the raw YAML dict."""
    for env_name, (section, key) in ENV_OVERRIDES.items():
        if os.environ.get(env_name):
            raw.setdefault(section, {})[key] = os.environ[env_name]

    rpc_url = os.environ.get("POLYARB_RPC_URL") or os.environ.get("POLYGON_RPC_URL")
    if rpc_url:
        chain = raw.setdefault("chain", {})
        chain["rpc_urls"] = [rpc_url] + [u for u in chain.get("rpc_urls", []) if u != rpc_url]
    if os.environ.get("INITIAL_CAPITAL"):
        raw.setdefault("portfolio", {})["initial_capital_usd"] = os.environ["INITIAL_CAPITAL"]
    return raw


# =============================================================================
# LOADING
# =============================================================================

def _build_venues(data: Dict[str, Any]) -> Tuple[VenueConfig, ...]:
    venues = []
    for venue_id, entry in data.items():
        try:
            family = VenueFamily(str(entry.get("family", "UNKNOWN")).upper())
        except ValueError as e:
            raise ConfigError(f"Unknown venue family for {venue_id}: {entry.get('family')}") from e
        venues.append(VenueConfig(
            venue_id=venue_id,
            family=family,
            enabled=_to_bool(entry.get("enabled", True)),
            addresses={k: v for k, v in entry.items() if k.endswith("address")},
        ))
    return tuple(venues)


def _build_tokens(data: Dict[str, Any]) -> Tuple[Dict[str, TokenInfo], Dict[str, str], Dict[str, Decimal]]:
    tokens, cg_ids, defaults = {}, {}, {}
    for symbol, entry in data.items():
        try:
            tokens[symbol] = TokenInfo(
                address=entry["address"],
                symbol=symbol,
                decimals=int(entry["decimals"]),
                name=entry.get("name", symbol),
            )
        except KeyError as e:
            raise ConfigError(f"Token {symbol} missing field {e}") from e
        if entry.get("coingecko_id"):
            cg_ids[symbol] = entry["coingecko_id"]
        if entry.get("default_usd") is not None:
            defaults[symbol] = Decimal(str(entry["default_usd"]))
    return tokens, cg_ids, defaults


def load_app_config(config_path: Optional[Path] = None) -> AppConfig:
    """
    Load the full application configuration.

    Args:
        config_path: strategy YAML (default: config/strategy.yaml)

    Returns:
        Validated AppConfig

    Raises:
        ConfigError: Invalid values or references
    """
    load_dotenv()

    if config_path is None:
        raw = load_yaml("strategy.yaml")
    else:
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        raw = load_yaml(config_path)
    raw = apply_env_overrides(raw)

    tokens, cg_ids, defaults = _build_tokens(load_tokens())
    chain = raw.get("chain", {})
    portfolio = raw.get("portfolio", {})
    prices = raw.get("price_feed", {})

    try:
        return AppConfig(
            chain_id=int(chain.get("chain_id", POLYGON_CHAIN_ID)),
            rpc_urls=tuple(chain.get("rpc_urls", AppConfig.rpc_urls)),
            rpc_timeout_seconds=float(chain.get("rpc_timeout_seconds", 10.0)),
            initial_capital_usd=Decimal(str(portfolio.get("initial_capital_usd", "10000"))),
            native_symbol=prices.get("native_symbol", "WMATIC"),
            price_refresh_seconds=float(prices.get("refresh_seconds", 60.0)),
            scan=build_section(ScanConfig, raw.get("scan")),
            evaluator=build_section(EvaluatorConfig, raw.get("evaluator")),
            risk=build_section(RiskLimits, raw.get("risk")),
            protection=build_section(ProtectionConfig, raw.get("protection")),
            execution=build_section(ExecutionConfig, raw.get("execution")),
            tokens=tokens,
            coingecko_ids=cg_ids,
            default_prices_usd=defaults,
            venues=_build_venues(load_venues()),
        )
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
