"""
strategy/gas_model.py - Gas cost model for two-leg flash-loan arbitrage.

Gas units come from fixed per-operation tables keyed by venue family:
flash loan + buy swap + sell swap + two approvals, times a 1.2 safety
multiplier. Costs convert to USD through the price feed, and from USD
into token units for netting against spreads.
"""

from decimal import Decimal
from typing import Dict, Optional

from chains.gas import PriceFeed
from chains.providers import RPCProvider
from core.constants import (
    FALLBACK_TX_GAS_LIMIT,
    GAS_APPROVAL,
    GAS_APPROVALS_PER_ARBITRAGE,
    GAS_FLASH_LOAN_BASE,
    GAS_QUICKSWAP_SWAP,
    GAS_SAFETY_MULTIPLIER,
    ONE_E18,
    SWAP_GAS_BY_FAMILY,
    VenueFamily,
)
from core.exceptions import InfraError
from core.logging import get_logger
from core.math import percent_of, safe_decimal, wei_to_native
from core.models import GasCostEstimate, TokenInfo

logger = get_logger(__name__)


def infer_family(venue_id: str) -> VenueFamily:
    """Best-effort family for venues missing from the registry."""
    name = venue_id.lower()
    if "uniswap" in name:
        return VenueFamily.UNISWAP_V3
    if "sushi" in name:
        return VenueFamily.SUSHISWAP
    if "quick" in name:
        return VenueFamily.QUICKSWAP
    return VenueFamily.UNKNOWN


class GasCostModel:
    """
    Converts gas units and a gas price into native and USD cost.

    Usage:
        model = GasCostModel(price_feed, {"uniswap_v3": VenueFamily.UNISWAP_V3})
        cost = model.estimate("uniswap_v3", "quickswap", gas_price_wei)
    """

    def __init__(
        self,
        price_feed: PriceFeed,
        venue_families: Optional[Dict[str, VenueFamily]] = None,
    ):
        self.price_feed = price_feed
        self.venue_families = dict(venue_families or {})

    def family_of(self, venue_id: str) -> VenueFamily:
        return self.venue_families.get(venue_id) or infer_family(venue_id)

    def swap_gas(self, venue_id: str) -> int:
        return SWAP_GAS_BY_FAMILY.get(self.family_of(venue_id), GAS_QUICKSWAP_SWAP)

    def native_to_usd(self, wei: int) -> Decimal:
        return wei_to_native(wei) * self.price_feed.native_price_usd

    def estimate(self, buy_venue: str, sell_venue: str, gas_price_wei: int) -> GasCostEstimate:
        """
        Gas cost of buying on buy_venue and selling on sell_venue.

        Args:
            buy_venue: Venue id of the first leg
            sell_venue: Venue id of the second leg
            gas_price_wei: Gas price to price the units at

        Returns:
            GasCostEstimate with buffered total gas
        """
        if gas_price_wei < 0:
            raise ValueError(f"Negative gas price: {gas_price_wei}")

        swap_gas = self.swap_gas(buy_venue) + self.swap_gas(sell_venue)
        approvals = GAS_APPROVAL * GAS_APPROVALS_PER_ARBITRAGE
        raw_total = GAS_FLASH_LOAN_BASE + swap_gas + approvals
        total_gas = int(Decimal(raw_total) * GAS_SAFETY_MULTIPLIER)

        total_cost_native = total_gas * gas_price_wei
        return GasCostEstimate(
            flash_loan_gas=GAS_FLASH_LOAN_BASE,
            swap_gas=swap_gas,
            total_gas=total_gas,
            gas_price_wei=gas_price_wei,
            total_cost_native=total_cost_native,
            total_cost_usd=self.native_to_usd(total_cost_native),
        )

    def token_price_usd(self, token: TokenInfo) -> Decimal:
        """USD price of one whole token; $1 when the feed has nothing."""
        price = self.price_feed.price_usd(token.symbol)
        if price is None or price <= 0:
            logger.warning(
                f"No USD price for {token.symbol}, assuming $1",
                extra={"context": {"token": token.symbol}},
            )
            return Decimal("1")
        return price

    def usd_to_token_fixed_point(self, usd: Decimal, token: TokenInfo) -> int:
        """USD amount expressed in 18-decimal fixed point of token."""
        return int(safe_decimal(usd) / self.token_price_usd(token) * ONE_E18)

    def token_fixed_point_to_usd(self, value: int, token: TokenInfo) -> Decimal:
        return Decimal(value) / Decimal(ONE_E18) * self.token_price_usd(token)

    def min_profit_threshold(
        self,
        gas_cost: GasCostEstimate,
        token: TokenInfo,
        buffer_percent: Decimal = Decimal("20"),
    ) -> int:
        """
        Profit floor, in token's smallest unit, that a venue pair must clear.

        Gas cost converted into the traded token plus buffer_percent on top.
        """
        price = self.token_price_usd(token)
        cost_in_token = gas_cost.total_cost_usd / price
        floor = cost_in_token * (Decimal("100") + safe_decimal(buffer_percent)) / Decimal("100")
        return int(floor * Decimal(10**token.decimals))

    @staticmethod
    def break_even_spread(gas_cost_usd: Decimal, trade_amount_usd: Decimal = Decimal("10000")) -> Decimal:
        """Spread (percent) a trade of trade_amount_usd needs just to pay for gas."""
        return percent_of(gas_cost_usd, trade_amount_usd)

    async def estimate_transaction_cost(
        self,
        provider: RPCProvider,
        tx: dict,
        gas_price_wei: int,
    ) -> GasCostEstimate:
        """Cost of an arbitrary transaction; 500k gas when estimation fails."""
        try:
            gas_limit = await provider.estimate_gas(tx)
        except InfraError as e:
            logger.warning(
                f"Gas estimation failed, using {FALLBACK_TX_GAS_LIMIT}: {e}",
                extra={"context": {"to": tx.get("to")}},
            )
            gas_limit = FALLBACK_TX_GAS_LIMIT

        cost = gas_limit * gas_price_wei
        return GasCostEstimate(
            flash_loan_gas=0,
            swap_gas=0,
            total_gas=gas_limit,
            gas_price_wei=gas_price_wei,
            total_cost_native=cost,
            total_cost_usd=self.native_to_usd(cost),
        )
