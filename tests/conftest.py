# PATH: tests/conftest.py
"""
Pytest configuration and fixtures for POLYARB tests.
"""

import asyncio
import sys
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional, Tuple, Union
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from chains.gas import PriceFeed  # noqa: E402
from core.constants import ErrorCode, VenueFamily  # noqa: E402
from core.exceptions import QuoteError  # noqa: E402
from core.models import ArbitrageOpportunity, Quote, TokenInfo  # noqa: E402
from dex.adapters.base import VenueAdapter  # noqa: E402


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


# =============================================================================
# TOKENS
# =============================================================================

@pytest.fixture
def wmatic():
    return TokenInfo(
        address="0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270",
        symbol="WMATIC",
        decimals=18,
        name="Wrapped Matic",
    )


@pytest.fixture
def usdc():
    return TokenInfo(
        address="0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
        symbol="USDC",
        decimals=6,
        name="USD Coin",
    )


@pytest.fixture
def weth():
    return TokenInfo(
        address="0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619",
        symbol="WETH",
        decimals=18,
        name="Wrapped Ether",
    )


@pytest.fixture
def dai():
    return TokenInfo(
        address="0x8f3Cf7ad23Cd3CaDbD9735AFf958023239c6A063",
        symbol="DAI",
        decimals=18,
        name="Dai Stablecoin",
    )


# =============================================================================
# FAKES
# =============================================================================

Output = Union[int, Exception]


class FakeVenue(VenueAdapter):
    """
    Scripted venue: fixed outputs per (token_in, token_out) symbol pair.

    A missing pair raises QUOTE_NO_POOL; an Exception value is raised as is.
    """

    family = VenueFamily.QUICKSWAP

    def __init__(
        self,
        venue_id: str,
        outputs: Dict[Tuple[str, str], Output],
        delay: float = 0.0,
        gas_estimate: int = 150_000,
        enabled: bool = True,
    ):
        super().__init__(venue_id, enabled)
        self.outputs = dict(outputs)
        self.delay = delay
        self.gas_estimate = gas_estimate
        self.calls = []

    async def quote(
        self,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
        deadline: Optional[float] = None,
    ) -> Quote:
        self.validate_request(token_in, token_out, amount_in)
        self.calls.append((token_in.symbol, token_out.symbol, amount_in))
        if self.delay:
            await asyncio.sleep(self.delay)

        out = self.outputs.get((token_in.symbol, token_out.symbol))
        if out is None:
            raise QuoteError("no pool", code=ErrorCode.QUOTE_NO_POOL, venue=self.venue_id)
        if isinstance(out, Exception):
            raise out
        return Quote(
            venue=self.venue_id,
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            amount_out=out,
            gas_estimate=self.gas_estimate,
        )

    async def estimate_gas(self, token_in: TokenInfo, token_out: TokenInfo, amount_in: int) -> int:
        return self.gas_estimate


@pytest.fixture
def price_feed():
    """Price feed serving configured defaults only (never touches the network)."""
    return PriceFeed(
        coingecko_ids={},
        defaults_usd={
            "WMATIC": Decimal("0.5"),
            "USDC": Decimal("1"),
            "DAI": Decimal("1"),
            "WETH": Decimal("2500"),
        },
        native_symbol="WMATIC",
    )


@pytest.fixture
def gas_oracle():
    """Gas oracle stub at 30 gwei."""
    oracle = MagicMock()
    oracle.optimal_gas_price = AsyncMock(return_value=30 * 10**9)
    oracle.is_gas_price_acceptable = AsyncMock(return_value=True)
    return oracle


def make_opportunity(
    token_a: TokenInfo,
    token_b: TokenInfo,
    amount_in: int = 1000 * 10**18,
    buy_price: int = 1020 * 10**18,
    sell_price: int = 1035 * 10**18,
    gas_cost: int = 10**16,
    gas_estimate: int = 600_000,
    gas_price_wei: int = 30 * 10**9,
    amount_in_usd: Decimal = Decimal("500"),
    net_profit_usd: Optional[Decimal] = None,
    buy_venue: str = "venue_x",
    sell_venue: str = "venue_y",
) -> ArbitrageOpportunity:
    """Opportunity with consistent derived fields."""
    gross = sell_price - buy_price
    net = gross - gas_cost
    return ArbitrageOpportunity(
        token_a=token_a,
        token_b=token_b,
        amount_in=amount_in,
        buy_venue=buy_venue,
        sell_venue=sell_venue,
        buy_price=buy_price,
        sell_price=sell_price,
        gross_profit=gross,
        profit_percent=Decimal(gross) * 100 / Decimal(buy_price),
        gas_estimate=gas_estimate,
        gas_cost=gas_cost,
        net_profit=net,
        gas_price_wei=gas_price_wei,
        gas_cost_usd=Decimal("0.01"),
        net_profit_usd=net_profit_usd if net_profit_usd is not None else Decimal(net) / Decimal(10**18),
        amount_in_usd=amount_in_usd,
    )
