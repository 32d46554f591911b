# PATH: core/math.py
"""
Math utilities for POLYARB.

Token amounts are ints in smallest units. Cross-token comparisons go through
18-decimal fixed point. Money and percentages are Decimal, never float.
"""

from decimal import Decimal, InvalidOperation
from typing import Iterable, Union

from core.constants import ONE_E18, PRICE_PRECISION, WEI_PER_GWEI

Number = Union[str, int, Decimal]


def safe_decimal(value: Union[Number, float, None], default: Decimal = Decimal("0")) -> Decimal:
    """
    Safely convert value to Decimal.

    Args:
        value: Value to convert
        default: Default if conversion fails

    Returns:
        Decimal value
    """
    if value is None:
        return default

    try:
        if isinstance(value, Decimal):
            return value
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return default


# =============================================================================
# FIXED POINT
# =============================================================================

def to_fixed_point(amount: int, decimals: int) -> int:
    """
    Rescale a raw token amount to 18-decimal fixed point.

    Example: to_fixed_point(1_000_000, 6) -> 10**18  # 1 USDC
    """
    if decimals < 0 or decimals > 36:
        raise ValueError(f"Invalid decimals: {decimals}")
    if decimals <= PRICE_PRECISION:
        return amount * 10 ** (PRICE_PRECISION - decimals)
    return amount // 10 ** (decimals - PRICE_PRECISION)


def from_fixed_point(value: int, decimals: int) -> int:
    """Rescale an 18-decimal fixed-point value back to raw token units."""
    if decimals <= PRICE_PRECISION:
        return value // 10 ** (PRICE_PRECISION - decimals)
    return value * 10 ** (decimals - PRICE_PRECISION)


def raw_to_human(amount: int, decimals: int) -> Decimal:
    """
    Convert a raw token amount to a human-readable Decimal.

    Example: raw_to_human(1000000, 6) -> Decimal('1')  # 1 USDC
    """
    return Decimal(amount) / Decimal(10**decimals)


def human_to_raw(amount: Number, decimals: int) -> int:
    """Convert a human-readable amount to raw token units."""
    return int(safe_decimal(amount) * Decimal(10**decimals))


# =============================================================================
# GAS
# =============================================================================

def gwei_to_wei(gwei: Number) -> int:
    """Convert gwei to wei as int."""
    return int(safe_decimal(gwei) * WEI_PER_GWEI)


def wei_to_gwei(wei: int) -> Decimal:
    """Convert wei to gwei as Decimal."""
    return Decimal(wei) / Decimal(WEI_PER_GWEI)


def wei_to_native(wei: int) -> Decimal:
    """Convert wei to whole native units (MATIC/POL)."""
    return Decimal(wei) / Decimal(ONE_E18)


# =============================================================================
# PERCENTAGES / STATISTICS
# =============================================================================

def percent_of(part: Number, whole: Number) -> Decimal:
    """part / whole * 100, zero when whole is zero."""
    whole_d = safe_decimal(whole)
    if whole_d == 0:
        return Decimal("0")
    return safe_decimal(part) / whole_d * Decimal("100")


def sample_stdev(values: Iterable[Decimal]) -> Decimal:
    """
    Sample standard deviation (n - 1 denominator).

    Returns zero for fewer than two values.
    """
    items = [safe_decimal(v) for v in values]
    n = len(items)
    if n < 2:
        return Decimal("0")
    mean = sum(items, Decimal("0")) / n
    variance = sum(((v - mean) ** 2 for v in items), Decimal("0")) / (n - 1)
    return variance.sqrt()
