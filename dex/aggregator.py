"""
dex/aggregator.py - Concurrent multi-venue quote aggregation.

Fans one (token_in, token_out, amount_in) request out to every enabled
venue adapter. Each venue call races a per-venue timeout and the whole
batch races a batch timeout. Venue failures are recorded and excluded;
they never abort the batch.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from core.constants import (
    DEFAULT_BATCH_TIMEOUT_SECONDS,
    DEFAULT_PER_VENUE_TIMEOUT_SECONDS,
    ErrorCode,
)
from core.exceptions import PolyArbError
from core.logging import get_logger
from core.models import Quote, TokenInfo
from core.time import now_timestamp
from dex.adapters.base import VenueAdapter

logger = get_logger(__name__)


@dataclass
class VenueFailure:
    """One excluded venue in one batch."""
    venue: str
    pair: str
    code: ErrorCode
    message: str
    timestamp: float = field(default_factory=now_timestamp)

    def to_dict(self) -> dict:
        return {
            "venue": self.venue,
            "pair": self.pair,
            "code": self.code.value,
            "message": self.message,
        }


@dataclass
class VenueStats:
    """Per-venue success/failure counters."""
    venue: str
    successes: int = 0
    failures: int = 0
    timeouts: int = 0

    @property
    def success_rate(self) -> float:
        total = self.successes + self.failures
        return self.successes / total if total else 0.0


@dataclass
class QuoteBatch:
    """Ranked quotes plus the venues excluded from this one request."""
    quotes: List[Quote] = field(default_factory=list)
    failures: List[VenueFailure] = field(default_factory=list)


def rank_quotes(quotes: Sequence[Quote]) -> List[Quote]:
    """Best first: amount_out descending, lower gas estimate breaks ties."""
    return sorted(quotes, key=lambda q: (-q.amount_out, q.gas_estimate))


class QuoteAggregator:
    """
    Batch quote engine over a fixed set of venue adapters.

    Usage:
        aggregator = QuoteAggregator([uniswap, quickswap])
        quotes = await aggregator.get_quotes(usdc, wmatic, 1_000 * 10**6)
        best = quotes[0] if quotes else None
    """

    def __init__(
        self,
        adapters: Sequence[VenueAdapter],
        per_venue_timeout: float = DEFAULT_PER_VENUE_TIMEOUT_SECONDS,
        batch_timeout: float = DEFAULT_BATCH_TIMEOUT_SECONDS,
    ):
        self.adapters = list(adapters)
        self.per_venue_timeout = per_venue_timeout
        self.batch_timeout = batch_timeout
        self.stats: Dict[str, VenueStats] = {
            a.venue_id: VenueStats(venue=a.venue_id) for a in self.adapters
        }

    @property
    def enabled_adapters(self) -> List[VenueAdapter]:
        return [a for a in self.adapters if a.enabled]

    def get_adapter(self, venue_id: str) -> Optional[VenueAdapter]:
        for adapter in self.adapters:
            if adapter.venue_id == venue_id:
                return adapter
        return None

    def effective_venue_timeout(
        self,
        venue_count: int,
        per_venue_timeout: Optional[float] = None,
        batch_timeout: Optional[float] = None,
    ) -> float:
        """min(batch / venues, per-venue cap)."""
        cap = per_venue_timeout if per_venue_timeout is not None else self.per_venue_timeout
        batch = batch_timeout if batch_timeout is not None else self.batch_timeout
        if venue_count <= 0:
            return cap
        return min(batch / venue_count, cap)

    def _record_failure(self, failure: VenueFailure, failures: List[VenueFailure]) -> None:
        failures.append(failure)
        stats = self.stats.setdefault(failure.venue, VenueStats(venue=failure.venue))
        stats.failures += 1
        if failure.code == ErrorCode.QUOTE_TIMEOUT:
            stats.timeouts += 1
        logger.warning(
            f"Venue quote failed: {failure.venue} {failure.pair}",
            extra={"context": failure.to_dict()},
        )

    async def _quote_one(
        self,
        adapter: VenueAdapter,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
        timeout: float,
        failures: List[VenueFailure],
    ) -> Optional[Quote]:
        pair = f"{token_in.symbol}/{token_out.symbol}"
        deadline = asyncio.get_running_loop().time() + timeout
        try:
            quote = await asyncio.wait_for(
                adapter.quote(token_in, token_out, amount_in, deadline=deadline),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            self._record_failure(
                VenueFailure(adapter.venue_id, pair, ErrorCode.QUOTE_TIMEOUT,
                             f"No quote within {timeout:.1f}s"),
                failures,
            )
            return None
        except PolyArbError as e:
            self._record_failure(
                VenueFailure(adapter.venue_id, pair, e.code, e.message),
                failures,
            )
            return None
        except Exception as e:
            # Unexpected venue behaviour is treated as a malformed response
            self._record_failure(
                VenueFailure(adapter.venue_id, pair, ErrorCode.QUOTE_MALFORMED,
                             f"{type(e).__name__}: {e}"),
                failures,
            )
            return None

        self.stats.setdefault(adapter.venue_id, VenueStats(venue=adapter.venue_id)).successes += 1
        return quote

    async def quote_batch(
        self,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
        per_venue_timeout: Optional[float] = None,
        batch_timeout: Optional[float] = None,
    ) -> QuoteBatch:
        """
        Quote every enabled venue concurrently.

        Failures are returned with the batch, so concurrent requests (the
        forward and reverse legs of one pair) never see each other's.

        Args:
            token_in: Input token
            token_out: Output token
            amount_in: Input amount in token_in's smallest unit
            per_venue_timeout: Cap for each venue call (default from init)
            batch_timeout: Cap for the whole batch (default from init)

        Returns:
            QuoteBatch with quotes best-first; empty when every venue fails
        """
        adapters = self.enabled_adapters
        if not adapters:
            return QuoteBatch()

        batch = batch_timeout if batch_timeout is not None else self.batch_timeout
        venue_timeout = self.effective_venue_timeout(len(adapters), per_venue_timeout, batch)
        failures: List[VenueFailure] = []

        tasks = {
            asyncio.ensure_future(
                self._quote_one(adapter, token_in, token_out, amount_in, venue_timeout, failures)
            ): adapter
            for adapter in adapters
        }

        try:
            done, pending = await asyncio.wait(tasks.keys(), timeout=batch)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        pair = f"{token_in.symbol}/{token_out.symbol}"
        for task in pending:
            task.cancel()
            self._record_failure(
                VenueFailure(tasks[task].venue_id, pair, ErrorCode.QUOTE_TIMEOUT,
                             f"Batch timeout after {batch:.1f}s"),
                failures,
            )
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        quotes = [task.result() for task in done if task.result() is not None]
        return QuoteBatch(quotes=rank_quotes(quotes), failures=failures)

    async def get_quotes(
        self,
        token_in: TokenInfo,
        token_out: TokenInfo,
        amount_in: int,
        per_venue_timeout: Optional[float] = None,
        batch_timeout: Optional[float] = None,
    ) -> List[Quote]:
        """Quotes best-first for one request; see quote_batch."""
        batch = await self.quote_batch(token_in, token_out, amount_in, per_venue_timeout, batch_timeout)
        return batch.quotes

    def get_stats_summary(self) -> dict:
        return {
            venue: {
                "successes": s.successes,
                "failures": s.failures,
                "timeouts": s.timeouts,
                "success_rate": round(s.success_rate, 3),
            }
            for venue, s in self.stats.items()
        }
