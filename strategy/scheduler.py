"""
strategy/scheduler.py - Periodic scan driver.

One scan:
1. Gas acceptability check (timeout-bounded; a timeout proceeds)
2. Evaluate every priority pair at every trade size, at most
   pair_concurrency pairs at a time
3. Sanity gates, rank by net profit, keep top_k
4. Publish opportunities_found / scan_completed

At most one scan is in flight. A tick that finds a scan still running
is skipped, not queued. A scan that hits scan_timeout returns what it
has so far.
"""

import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from chains.gas import GasOracle
from core.constants import EventType
from core.exceptions import ConfigError, PolyArbError, SignerError
from core.logging import get_logger
from core.math import human_to_raw
from core.models import ArbitrageOpportunity, TokenInfo
from core.time import now_timestamp
from monitoring.events import EventBus
from strategy.config import ScanConfig
from strategy.evaluator import OpportunityEvaluator
from strategy.gates import apply_opportunity_gates

logger = get_logger(__name__)


@dataclass
class ScanResult:
    """Outcome of one scan."""
    opportunities: List[ArbitrageOpportunity] = field(default_factory=list)
    candidates: int = 0
    evaluations: int = 0
    skipped: bool = False
    timed_out: bool = False
    gas_acceptable: Optional[bool] = None
    duration_ms: int = 0
    started_at: float = field(default_factory=now_timestamp)

    def to_dict(self) -> dict:
        return {
            "opportunities": [o.to_dict() for o in self.opportunities],
            "candidates": self.candidates,
            "evaluations": self.evaluations,
            "skipped": self.skipped,
            "timed_out": self.timed_out,
            "gas_acceptable": self.gas_acceptable,
            "duration_ms": self.duration_ms,
            "started_at": self.started_at,
        }


def rank_opportunities(opps: List[ArbitrageOpportunity]) -> List[ArbitrageOpportunity]:
    """Net profit descending. sorted() is stable, so ties keep discovery order."""
    return sorted(opps, key=lambda o: o.net_profit, reverse=True)


class Scheduler:
    """
    Drives discovery on a timer.

    Usage:
        scheduler = Scheduler(evaluator, gas_oracle, tokens, ScanConfig(), event_bus=bus)
        result = await scheduler.scan()          # one scan
        await scheduler.run(stop_event)          # until stop_event is set
    """

    def __init__(
        self,
        evaluator: OpportunityEvaluator,
        gas_oracle: GasOracle,
        tokens: Dict[str, TokenInfo],
        config: Optional[ScanConfig] = None,
        event_bus: Optional[EventBus] = None,
        executor=None,
    ):
        self.evaluator = evaluator
        self.gas_oracle = gas_oracle
        self.tokens = tokens
        self.config = config or ScanConfig()
        self.event_bus = event_bus
        self.executor = executor

        self._in_flight = False
        self._current: Optional[asyncio.Task] = None
        self.consecutive_empty_scans = 0
        self.scans = 0
        self.skipped_scans = 0
        self.timed_out_scans = 0
        self.last_result: Optional[ScanResult] = None

    @property
    def is_scanning(self) -> bool:
        return self._in_flight

    def _publish(self, event_type: EventType, **data) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(event_type, "scheduler", **data)

    # =========================================================================
    # JOBS
    # =========================================================================

    def pairs(self) -> List[Tuple[TokenInfo, TokenInfo]]:
        resolved = []
        for a, b in self.config.priority_pairs:
            if a in self.tokens and b in self.tokens:
                resolved.append((self.tokens[a], self.tokens[b]))
            else:
                logger.warning(f"Skipping pair with unknown token: {a}/{b}")
        return resolved

    def trade_amount(self, token: TokenInfo, notional_usd: Decimal) -> int:
        """USD notional as a raw amount of token at the feed price."""
        price = self.evaluator.gas_model.token_price_usd(token)
        return human_to_raw(notional_usd / price, token.decimals)

    async def _gas_acceptable(self) -> bool:
        try:
            return await asyncio.wait_for(
                self.gas_oracle.is_gas_price_acceptable(self.config.max_gas_price_gwei),
                timeout=self.config.gas_check_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Gas check timed out, scanning anyway",
                extra={"context": {"timeout_seconds": self.config.gas_check_timeout_seconds}},
            )
            return True

    async def _scan_pair(
        self,
        token_a: TokenInfo,
        token_b: TokenInfo,
        semaphore: asyncio.Semaphore,
        found: List[ArbitrageOpportunity],
        counter: Dict[str, int],
    ) -> None:
        async with semaphore:
            for notional in self.config.trade_amounts:
                amount_in = self.trade_amount(token_a, notional)
                if amount_in <= 0:
                    continue
                counter["evaluations"] += 1
                try:
                    opp = await self.evaluator.evaluate(token_a, token_b, amount_in)
                except PolyArbError as e:
                    logger.warning(
                        f"Evaluation failed for {token_a.symbol}/{token_b.symbol}: {e}",
                        extra={"context": {"error_code": e.code.value, "notional_usd": str(notional)}},
                    )
                    continue
                if opp is not None:
                    found.append(opp)

    # =========================================================================
    # SCAN
    # =========================================================================

    async def scan(self) -> ScanResult:
        """Run one scan unless one is already in flight."""
        if self._in_flight:
            self.skipped_scans += 1
            logger.info("Scan already in progress, skipping tick")
            return ScanResult(skipped=True)

        self._in_flight = True
        try:
            return await self._scan()
        finally:
            self._in_flight = False

    async def _scan(self) -> ScanResult:
        started = time.monotonic()
        result = ScanResult()
        self.scans += 1

        result.gas_acceptable = await self._gas_acceptable()
        if not result.gas_acceptable:
            logger.info("Gas price too high, skipping scan")
            result.duration_ms = int((time.monotonic() - started) * 1000)
            self.last_result = result
            return result

        semaphore = asyncio.Semaphore(self.config.pair_concurrency)
        found: List[ArbitrageOpportunity] = []
        counter = {"evaluations": 0}
        tasks = [
            asyncio.ensure_future(self._scan_pair(a, b, semaphore, found, counter))
            for a, b in self.pairs()
        ]

        if tasks:
            try:
                done, pending = await asyncio.wait(tasks, timeout=self.config.scan_timeout_seconds)
            except asyncio.CancelledError:
                for task in tasks:
                    task.cancel()
                raise

            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                result.timed_out = True
                self.timed_out_scans += 1
                logger.warning(
                    f"Scan timed out after {self.config.scan_timeout_seconds}s, using partial results",
                    extra={"context": {"pending_pairs": len(pending), "found": len(found)}},
                )
            for task in done:
                if task.exception() is not None:
                    logger.error(
                        f"Pair scan crashed: {task.exception()!r}",
                        exc_info=task.exception(),
                    )

        cfg = self.evaluator.config
        viable = [
            opp for opp in found
            if not apply_opportunity_gates(
                opp,
                cfg.min_profit_usd,
                cfg.min_profit_percent,
                cfg.max_slippage_percent,
                profit_floor=self.evaluator.profit_floor(opp),
            )
        ]
        result.candidates = len(found)
        result.evaluations = counter["evaluations"]
        result.opportunities = rank_opportunities(viable)[: self.config.top_k]
        result.duration_ms = int((time.monotonic() - started) * 1000)

        if result.opportunities:
            self.consecutive_empty_scans = 0
            self._publish(
                EventType.OPPORTUNITIES_FOUND,
                opportunities=[o.to_dict() for o in result.opportunities],
            )
        else:
            self.consecutive_empty_scans += 1

        self._publish(
            EventType.SCAN_COMPLETED,
            duration_ms=result.duration_ms,
            opportunities_found=result.candidates,
            viable_opportunities=len(result.opportunities),
            timed_out=result.timed_out,
        )
        logger.info(
            f"Scan complete: {len(result.opportunities)} viable of {result.candidates}",
            extra={"context": {
                "duration_ms": result.duration_ms,
                "evaluations": result.evaluations,
                "consecutive_empty_scans": self.consecutive_empty_scans,
            }},
        )
        self.last_result = result
        return result

    # =========================================================================
    # LOOP
    # =========================================================================

    async def _cycle(self) -> None:
        result = await self.scan()
        if self.executor is not None and result.opportunities:
            await self.executor.execute(result.opportunities[0])

    def _settle(self, task: asyncio.Task) -> None:
        """Surface a finished cycle's error. Only config and signer errors stop the loop."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, (ConfigError, SignerError)):
            raise exc
        logger.error(
            f"Scan cycle failed: {exc}",
            exc_info=exc,
            extra={"context": {
                "error_type": type(exc).__name__,
                "error_code": getattr(getattr(exc, "code", None), "value", None),
            }},
        )

    async def run(self, stop_event: asyncio.Event, once: bool = False) -> None:
        """
        Tick every interval_seconds until stop_event is set.

        Each tick starts a cycle task; a tick that lands while the previous
        cycle is still scanning is skipped by scan().
        """
        logger.info(
            f"Scheduler started: interval {self.config.interval_seconds}s",
            extra={"context": {"pairs": len(self.config.priority_pairs), "once": once}},
        )
        try:
            while not stop_event.is_set():
                previous = self._current
                if previous is not None and previous.done():
                    self._settle(previous)
                if previous is None or previous.done():
                    self._current = asyncio.ensure_future(self._cycle())
                else:
                    self.skipped_scans += 1
                    logger.info("Previous cycle still running, skipping tick")

                if once:
                    await asyncio.wait({self._current})
                    self._settle(self._current)
                    break
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.config.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Cancel the in-flight cycle, if any."""
        task, self._current = self._current, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("In-flight scan cancelled")

    def stats(self) -> dict:
        return {
            "scans": self.scans,
            "skipped_scans": self.skipped_scans,
            "timed_out_scans": self.timed_out_scans,
            "consecutive_empty_scans": self.consecutive_empty_scans,
            "is_scanning": self.is_scanning,
            "last_scan": self.last_result.to_dict() if self.last_result else None,
        }
