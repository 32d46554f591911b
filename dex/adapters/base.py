"""
dex/adapters/base.py - Shared venue adapter plumbing.

- ABI word encoding/decoding for hand-built eth_call payloads
- PoolCache: per-adapter (tokenA, tokenB, fee) -> pool address cache with TTL
- VenueAdapter: the capability every venue exposes to the aggregator
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Dict, Optional, Tuple, TypeVar

from core.constants import ErrorCode, VenueFamily, ZERO_ADDRESS
from core.exceptions import QuoteError
from core.models import Quote, TokenInfo
from core.time import Clock

T = TypeVar("T")


# =============================================================================
# ABI ENCODING
# =============================================================================

def encode_address(address: str) -> str:
    """Left-pad an address to one 32-byte word (no 0x)."""
    return address.lower().replace("0x", "").zfill(64)


def encode_uint(value: int) -> str:
    """Encode an unsigned int as one 32-byte word (no 0x)."""
    if value < 0:
        raise ValueError(f"uint cannot be negative: {value}")
    return hex(value)[2:].zfill(64)


def split_words(hex_result: Optional[str], min_words: int, venue: str) -> list[str]:
    """
    Split an eth_call result into 32-byte words.

    Raises:
        QuoteError: Empty or short response (reverted call)
    """
    if not hex_result or hex_result == "0x":
        raise QuoteError(
            "Empty call response",
            code=ErrorCode.QUOTE_REVERT,
            venue=venue,
        )

    data = hex_result[2:] if hex_result.startswith("0x") else hex_result
    if len(data) < 64 * min_words:
        raise QuoteError(
            f"Call response too short: {len(data)} chars",
            code=ErrorCode.QUOTE_MALFORMED,
            details={"data_length": len(data), "raw": hex_result[:100]},
            venue=venue,
        )

    return [data[i:i + 64] for i in range(0, len(data) - len(data) % 64, 64)]


def decode_address(word: str) -> str:
    return "0x" + word[-40:]


# =============================================================================
# POOL CACHE
# =============================================================================

class PoolCache:
    """
    Pool-existence cache owned by one adapter.

    Maps (tokenA, tokenB, fee) to a pool address, or ZERO_ADDRESS for pools
    known to be absent. The whole cache is dropped once its TTL elapses.
    Writes are idempotent upserts so concurrent resolvers are harmless.
    """

    def __init__(self, ttl_seconds: float, clock: Clock = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Tuple[str, str, int], str] = {}
        self._last_clear = clock()

    @staticmethod
    def _key(token_a: str, token_b: str, fee: int) -> Tuple[str, str, int]:
        return (token_a.lower(), token_b.lower(), fee)

    def _expire(self) -> None:
        now = self._clock()
        if now - self._last_clear > self.ttl_seconds:
            self._entries.clear()
            self._last_clear = now

    def get(self, token_a: str, token_b: str, fee: int = 0) -> Optional[str]:
        self._expire()
        return self._entries.get(self._key(token_a, token_b, fee))

    def put(self, token_a: str, token_b: str, fee: int, pool: str) -> None:
        self._expire()
        self._entries[self._key(token_a, token_b, fee)] = pool

    def __len__(self) -> int:
        return len(self._entries)


# =============================================================================
# DEADLINES
# =============================================================================

def remaining_timeout(deadline: Optional[float], cap: float) -> float:
    """
    Time left before an absolute loop-time deadline, capped per call.

    Raises:
        QuoteError: Deadline already passed
    """
    if deadline is None:
        return cap
    left = deadline - asyncio.get_running_loop().time()
    if left <= 0:
        raise QuoteError("Quote deadline exceeded", code=ErrorCode.QUOTE_TIMEOUT)
    return min(cap, left)


async def with_timeout(aw: Awaitable[T], timeout: float, what: str, venue: str) -> T:
    """Await with a timeout, mapping expiry onto QuoteError(QUOTE_TIMEOUT)."""
    try:
        return await asyncio.wait_for(aw, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise QuoteError(
            f"{what} timed out after {timeout:.1f}s",
            code=ErrorCode.QUOTE_TIMEOUT,
            venue=venue,
        ) from e


# =============================================================================
# ADAPTER
# =============================================================================

class VenueAdapter(ABC):
    """
    Uniform quoting capability for one venue.

    Implementations must be safe to call concurrently and repeatedly.
    """

    family: VenueFamily = VenueFamily.UNKNOWN

    def __init__(self, venue_id: str, enabled: bool = True):
        self.venue_id = venue_id
        self.enabled = enabled

    def validate_request(self, token_in: TokenInfo, token_out: TokenInfo, amount_in: int) -> None:
        """Reject malformed requests before touching the network."""
        if amount_in <= 0:
            raise QuoteError(
                f"Invalid amount_in: {amount_in}",
                code=ErrorCode.QUOTE_INVALID_INPUT,
                venue=self.venue_id,
            )
        if token_in == token_out:
            raise QuoteError(
                f"Cannot quote {token_in.symbol} against itself",
                code=ErrorCode.QUOTE_INVALID_INPUT,
                venue=self.venue_id,
            )

    @abstractmethod
    async def quote(
        self,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
        deadline: Optional[float] = None,
    ) -> Quote:
        """
        Quote token_in -> token_out.

        Args:
            deadline: Absolute event-loop time by which the quote must finish

        Raises:
            QuoteError: timeout, missing pool, zero output, malformed response
        """

    @abstractmethod
    async def estimate_gas(
        self,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
    ) -> int:
        """Gas units for a swap; falls back to a venue constant."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(venue_id={self.venue_id!r}, enabled={self.enabled})"


def is_zero_address(address: Optional[str]) -> bool:
    return not address or address.lower() == ZERO_ADDRESS
