"""
dex/adapters/uniswap_v3.py - Uniswap V3 adapter (Quoter V1).

Fee tiers are tried in order; the tier with the largest output wins.
Each tier is gated by a factory getPool lookup cached per adapter.
"""

import asyncio
import time
from typing import Optional

from chains.providers import RPCProvider
from core.constants import (
    DEFAULT_FEE_TIERS,
    ErrorCode,
    FALLBACK_UNISWAP_V3_QUOTE_GAS,
    POOL_CACHE_TTL_SECONDS,
    POOL_LOOKUP_TIMEOUT_SECONDS,
    QUOTE_CALL_TIMEOUT_SECONDS,
    SELECTOR_GET_POOL,
    SELECTOR_QUOTE_EXACT_INPUT_SINGLE,
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

def encode_get_pool(token_a: str, token_b: str, fee: int) -> str:
    """Encode UniswapV3Factory.getPool(address,address,uint24)."""
    return f"0x{SELECTOR_GET_POOL}{encode_address(token_a)}{encode_address(token_b)}{encode_uint(fee)}"


def encode_quote_exact_input_single(
    token_in: str,
    token_out: str,
    fee: int,
    amount_in: int,
    sqrt_price_limit_x96: int = 0,
) -> str:
    """
    Encode Quoter V1 quoteExactInputSingle.

    quoteExactInputSingle(address tokenIn, address tokenOut, uint24 fee,
                          uint256 amountIn, uint160 sqrtPriceLimitX96)
    returns (uint256 amountOut)
    """
    return (
        f"0x{SELECTOR_QUOTE_EXACT_INPUT_SINGLE}"
        f"{encode_address(token_in)}"
        f"{encode_address(token_out)}"
        f"{encode_uint(fee)}"
        f"{encode_uint(amount_in)}"
        f"{encode_uint(sqrt_price_limit_x96)}"
    )


def decode_amount_out(hex_result: Optional[str], venue: str = "uniswap_v3") -> int:
    """Decode the single uint256 returned by Quoter V1."""
    return int(split_words(hex_result, 1, venue)[0], 16)


# =============================================================================
# ADAPTER
# =============================================================================

class UniswapV3Adapter(VenueAdapter):
    """
    Adapter for Uniswap V3 quoting.

    Usage:
        adapter = UniswapV3Adapter(provider, quoter_address, factory_address)
        quote = await adapter.quote(usdc, wmatic, 1_000 * 10**6)
    """

    family = VenueFamily.UNISWAP_V3

    def __init__(
        self,
        provider: RPCProvider,
        quoter_address: str,
        factory_address: str,
        venue_id: str = "uniswap_v3",
        fee_tiers: Optional[list[int]] = None,
        enabled: bool = True,
        pool_cache_ttl: float = POOL_CACHE_TTL_SECONDS,
        call_timeout: float = QUOTE_CALL_TIMEOUT_SECONDS,
        pool_lookup_timeout: float = POOL_LOOKUP_TIMEOUT_SECONDS,
        clock: Clock = time.time,
    ):
        super().__init__(venue_id, enabled)
        self.provider = provider
        self.quoter_address = quoter_address
        self.factory_address = factory_address
        self.fee_tiers = list(fee_tiers or DEFAULT_FEE_TIERS)
        self.call_timeout = call_timeout
        self.pool_lookup_timeout = pool_lookup_timeout
        self.pool_cache = PoolCache(pool_cache_ttl, clock=clock)

    async def get_pool(
        self,
        token_a: str,
        token_b: str,
        fee: int,
        deadline: Optional[float] = None,
    ) -> str:
        """
        Resolve a pool address through the factory, cached.

        Returns ZERO_ADDRESS when the factory reports no pool. Transient
        lookup failures raise and are not cached.
        """
        cached = self.pool_cache.get(token_a, token_b, fee)
        if cached is not None:
            return cached

        timeout = remaining_timeout(deadline, self.pool_lookup_timeout)
        try:
            response = await with_timeout(
                self.provider.eth_call(
                    to=self.factory_address,
                    data=encode_get_pool(token_a, token_b, fee),
                ),
                timeout,
                "getPool",
                self.venue_id,
            )
        except InfraError as e:
            raise QuoteError(
                f"getPool failed: {e}",
                code=ErrorCode.QUOTE_REVERT,
                details={"fee": fee},
                venue=self.venue_id,
            ) from e

        pool = decode_address(split_words(response.result, 1, self.venue_id)[0])
        if is_zero_address(pool):
            pool = ZERO_ADDRESS
        self.pool_cache.put(token_a, token_b, fee, pool)
        return pool

    async def quote_fee_tier(
        self,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
        fee: int,
        deadline: Optional[float] = None,
    ) -> Optional[int]:
        """
        Quote one fee tier.

        Returns:
            amountOut, or None when the tier has no pool
        """
        pool = await self.get_pool(token_in.address, token_out.address, fee, deadline)
        if pool == ZERO_ADDRESS:
            return None

        call_data = encode_quote_exact_input_single(
            token_in.address, token_out.address, fee, amount_in
        )
        timeout = remaining_timeout(deadline, self.call_timeout)
        try:
            response = await with_timeout(
                self.provider.eth_call(to=self.quoter_address, data=call_data),
                timeout,
                "quoteExactInputSingle",
                self.venue_id,
            )
        except InfraError as e:
            raise QuoteError(
                f"Quoter call failed: {e}",
                code=ErrorCode.QUOTE_REVERT,
                details={"fee": fee, "call_data_prefix": call_data[:18]},
                venue=self.venue_id,
            ) from e

        return decode_amount_out(response.result, self.venue_id)

    async def quote(
        self,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
        deadline: Optional[float] = None,
    ) -> Quote:
        self.validate_request(token_in, token_out, amount_in)
        start = time.monotonic()

        best_out = 0
        best_fee: Optional[int] = None
        pools_seen = 0
        last_error: Optional[QuoteError] = None

        for fee in self.fee_tiers:
            try:
                amount_out = await self.quote_fee_tier(token_in, token_out, amount_in, fee, deadline)
            except QuoteError as e:
                # Deadline exhaustion ends the tier walk
                if e.code == ErrorCode.QUOTE_TIMEOUT and deadline is not None \
                        and asyncio.get_running_loop().time() >= deadline:
                    raise
                last_error = e
                logger.debug(
                    f"Uniswap V3 tier {fee} failed for {token_in.symbol}/{token_out.symbol}: {e}",
                    extra={"context": {"venue": self.venue_id, "fee": fee}},
                )
                continue

            if amount_out is None:
                continue
            pools_seen += 1
            if amount_out > best_out:
                best_out = amount_out
                best_fee = fee

        if best_fee is None:
            if pools_seen == 0 and last_error is not None:
                raise last_error
            code = ErrorCode.QUOTE_ZERO_OUTPUT if pools_seen else ErrorCode.QUOTE_NO_POOL
            raise QuoteError(
                f"No Uniswap V3 quote for {token_in.symbol} -> {token_out.symbol}",
                code=code,
                details={"fee_tiers": self.fee_tiers, "pools_seen": pools_seen},
                venue=self.venue_id,
            )

        gas_estimate = await self._estimate_quote_gas(token_in, token_out, amount_in, best_fee)
        latency_ms = int((time.monotonic() - start) * 1000)
        log_quote(
            logger, self.venue_id, f"{token_in.symbol}/{token_out.symbol}",
            amount_in, best_out, latency_ms, fee_tier=best_fee,
        )

        return Quote(
            venue=self.venue_id,
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            amount_out=best_out,
            gas_estimate=gas_estimate,
            route=(token_in.address, token_out.address),
            fee_tier=best_fee,
            latency_ms=latency_ms,
        )

    async def _estimate_quote_gas(
        self,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
        fee: int,
    ) -> int:
        call_data = encode_quote_exact_input_single(
            token_in.address, token_out.address, fee, amount_in
        )
        try:
            return await asyncio.wait_for(
                self.provider.estimate_gas({"to": self.quoter_address, "data": call_data}),
                timeout=self.call_timeout,
            )
        except (InfraError, asyncio.TimeoutError):
            return FALLBACK_UNISWAP_V3_QUOTE_GAS

    async def estimate_gas(
        self,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
    ) -> int:
        fee = self.fee_tiers[0]
        return await self._estimate_quote_gas(token_in, token_out, amount_in, fee)
