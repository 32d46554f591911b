"""
dex/adapters/quickswap.py - QuickSwap (Uniswap V2 fork) adapter.

Quotes through Router02.getAmountsOut after confirming the pair exists via
the factory. Price impact is derived from pair reserves.
"""

import asyncio
import time
from decimal import Decimal
from typing import Optional

from chains.providers import RPCProvider
from core.constants import (
    ErrorCode,
    FALLBACK_QUICKSWAP_QUOTE_GAS,
    POOL_CACHE_TTL_SECONDS,
    POOL_LOOKUP_TIMEOUT_SECONDS,
    QUOTE_CALL_TIMEOUT_SECONDS,
    SELECTOR_GET_AMOUNTS_OUT,
    SELECTOR_GET_PAIR,
    SELECTOR_GET_RESERVES,
    SELECTOR_TOKEN0,
    VenueFamily,
    ZERO_ADDRESS,
)
from core.exceptions import InfraError, QuoteError
from core.logging import get_logger, log_quote
from core.models import Quote, TokenInfo
from core.time import Clock
from dex.adapters.base import (
    PoolCache,
    VenueAdapter,
    decode_address,
    encode_address,
    encode_uint,
    is_zero_address,
    remaining_timeout,
    split_words,
    with_timeout,
)

logger = get_logger(__name__)


# =============================================================================
# ABI ENCODING
# =============================================================================

def encode_get_pair(token_a: str, token_b: str) -> str:
    """Encode UniswapV2Factory.getPair(address,address)."""
    return f"0x{SELECTOR_GET_PAIR}{encode_address(token_a)}{encode_address(token_b)}"


def encode_get_amounts_out(amount_in: int, path: list[str]) -> str:
    """
    Encode Router02.getAmountsOut(uint256 amountIn, address[] path).

    Layout: amountIn | offset(0x40) | len(path) | path...
    """
    head = encode_uint(amount_in) + encode_uint(64)
    tail = encode_uint(len(path)) + "".join(encode_address(a) for a in path)
    return f"0x{SELECTOR_GET_AMOUNTS_OUT}{head}{tail}"


def decode_amounts_out(hex_result: Optional[str], venue: str = "quickswap") -> list[int]:
    """Decode the uint256[] returned by getAmountsOut."""
    words = split_words(hex_result, 2, venue)
    length = int(words[1], 16)
    if length < 2 or len(words) < 2 + length:
        raise QuoteError(
            f"getAmountsOut returned {length} amounts",
            code=ErrorCode.QUOTE_MALFORMED,
            details={"words": len(words)},
            venue=venue,
        )
    return [int(w, 16) for w in words[2:2 + length]]


def decode_reserves(hex_result: Optional[str], venue: str = "quickswap") -> tuple[int, int]:
    """Decode getReserves() -> (reserve0, reserve1); timestamp ignored."""
    words = split_words(hex_result, 2, venue)
    return int(words[0], 16), int(words[1], 16)


def price_impact_percent(
    amount_in: int,
    amount_out: int,
    reserve_in: int,
    reserve_out: int,
) -> Decimal:
    """
    Shortfall of amount_out versus the spot-price output, in percent.

    expected = reserve_out * amount_in / reserve_in
    impact   = (expected - amount_out) / expected * 100
    """
    if reserve_in == 0 or reserve_out == 0:
        return Decimal("0")
    expected = Decimal(reserve_out) * Decimal(amount_in) / Decimal(reserve_in)
    if expected == 0:
        return Decimal("0")
    impact = (expected - Decimal(amount_out)) / expected * Decimal("100")
    return max(impact, Decimal("0"))


# =============================================================================
# ADAPTER
# =============================================================================

class QuickSwapAdapter(VenueAdapter):
    """Adapter for QuickSwap V2 routing."""

    family = VenueFamily.QUICKSWAP

    def __init__(
        self,
        provider: RPCProvider,
        router_address: str,
        factory_address: str,
        venue_id: str = "quickswap",
        enabled: bool = True,
        pool_cache_ttl: float = POOL_CACHE_TTL_SECONDS,
        call_timeout: float = QUOTE_CALL_TIMEOUT_SECONDS,
        pool_lookup_timeout: float = POOL_LOOKUP_TIMEOUT_SECONDS,
        clock: Clock = time.time,
    ):
        super().__init__(venue_id, enabled)
        self.provider = provider
        self.router_address = router_address
        self.factory_address = factory_address
        self.call_timeout = call_timeout
        self.pool_lookup_timeout = pool_lookup_timeout
        self.pool_cache = PoolCache(pool_cache_ttl, clock=clock)

    async def _eth_call(self, to: str, data: str, timeout: float, what: str) -> Optional[str]:
        try:
            response = await with_timeout(
                self.provider.eth_call(to=to, data=data), timeout, what, self.venue_id
            )
        except InfraError as e:
            raise QuoteError(
                f"{what} failed: {e}",
                code=ErrorCode.QUOTE_REVERT,
                venue=self.venue_id,
            ) from e
        return response.result

    async def get_pair(self, token_a: str, token_b: str, deadline: Optional[float] = None) -> str:
        """Resolve the pair address via the factory, cached. ZERO_ADDRESS if absent."""
        cached = self.pool_cache.get(token_a, token_b, 0)
        if cached is not None:
            return cached

        result = await self._eth_call(
            self.factory_address,
            encode_get_pair(token_a, token_b),
            remaining_timeout(deadline, self.pool_lookup_timeout),
            "getPair",
        )
        pair = decode_address(split_words(result, 1, self.venue_id)[0])
        if is_zero_address(pair):
            pair = ZERO_ADDRESS
        self.pool_cache.put(token_a, token_b, 0, pair)
        return pair

    async def get_price_impact(
        self,
        pair: str,
        token_in: TokenInfo,
        amount_in: int,
        amount_out: int,
        deadline: Optional[float] = None,
    ) -> Decimal:
        """Price impact from reserves; 0 when reserves cannot be read."""
        try:
            timeout = remaining_timeout(deadline, self.call_timeout)
            reserves_raw, token0_raw = await asyncio.gather(
                self._eth_call(pair, f"0x{SELECTOR_GET_RESERVES}", timeout, "getReserves"),
                self._eth_call(pair, f"0x{SELECTOR_TOKEN0}", timeout, "token0"),
            )
            reserve0, reserve1 = decode_reserves(reserves_raw, self.venue_id)
            token0 = decode_address(split_words(token0_raw, 1, self.venue_id)[0])
        except QuoteError as e:
            logger.debug(
                f"Reserves unavailable for {pair}: {e}",
                extra={"context": {"venue": self.venue_id, "pair_address": pair}},
            )
            return Decimal("0")

        if token0.lower() == token_in.address.lower():
            reserve_in, reserve_out = reserve0, reserve1
        else:
            reserve_in, reserve_out = reserve1, reserve0
        return price_impact_percent(amount_in, amount_out, reserve_in, reserve_out)

    async def quote(
        self,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
        deadline: Optional[float] = None,
    ) -> Quote:
        self.validate_request(token_in, token_out, amount_in)
        start = time.monotonic()

        pair = await self.get_pair(token_in.address, token_out.address, deadline)
        if pair == ZERO_ADDRESS:
            raise QuoteError(
                f"No QuickSwap pair for {token_in.symbol}/{token_out.symbol}",
                code=ErrorCode.QUOTE_NO_POOL,
                venue=self.venue_id,
            )

        path = [token_in.address, token_out.address]
        result = await self._eth_call(
            self.router_address,
            encode_get_amounts_out(amount_in, path),
            remaining_timeout(deadline, self.call_timeout),
            "getAmountsOut",
        )
        amount_out = decode_amounts_out(result, self.venue_id)[-1]

        if amount_out == 0:
            raise QuoteError(
                f"Zero output for {token_in.symbol} -> {token_out.symbol}",
                code=ErrorCode.QUOTE_ZERO_OUTPUT,
                venue=self.venue_id,
            )

        impact = await self.get_price_impact(pair, token_in, amount_in, amount_out, deadline)
        gas_estimate = await self.estimate_gas(token_in, token_out, amount_in)
        latency_ms = int((time.monotonic() - start) * 1000)
        log_quote(
            logger, self.venue_id, f"{token_in.symbol}/{token_out.symbol}",
            amount_in, amount_out, latency_ms, price_impact=str(impact),
        )

        return Quote(
            venue=self.venue_id,
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            amount_out=amount_out,
            gas_estimate=gas_estimate,
            price_impact=impact,
            route=tuple(path),
            latency_ms=latency_ms,
        )

    async def estimate_gas(
        self,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
    ) -> int:
        data = encode_get_amounts_out(amount_in, [token_in.address, token_out.address])
        try:
            return await asyncio.wait_for(
                self.provider.estimate_gas({"to": self.router_address, "data": data}),
                timeout=self.call_timeout,
            )
        except (InfraError, asyncio.TimeoutError):
            return FALLBACK_QUICKSWAP_QUOTE_GAS
