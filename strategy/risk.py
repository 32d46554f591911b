"""
strategy/risk.py - Risk gate and circuit breaker.

RiskGate is the only writer of RiskMetrics and CircuitBreakerState.
Every mutation happens under one asyncio.Lock; readers get copies.

States:
    NORMAL  -> TRIPPED  on a critical check failure (daily loss,
                        consecutive losses, drawdown) in evaluate() or
                        after record_trade(), or on emergency_stop()
    TRIPPED -> NORMAL   when an evaluate() observes auto_reset_at has
                        passed, or on force_reset()

There is no background timer. Day rollover and breaker cooldown are
checked lazily against the injected clock.
"""

import asyncio
import dataclasses
import time
from collections import deque
from decimal import Decimal
from typing import Deque, List, Optional

from core.constants import (
    CIRCUIT_BREAKER_COOLDOWN_SECONDS,
    RISK_SCORE_DENY_THRESHOLD,
    TRADE_HISTORY_MAX,
    VOLATILITY_MIN_TRADES,
    VOLATILITY_WINDOW,
    EventType,
    RiskCheck,
    RiskLevel,
)
from core.logging import get_logger
from core.math import percent_of, sample_stdev, wei_to_gwei
from core.models import (
    ArbitrageOpportunity,
    CircuitBreakerState,
    RiskCheckResult,
    RiskDecision,
    RiskLimits,
    RiskMetrics,
    TradeResult,
)
from core.time import SECONDS_PER_HOUR, Clock, local_day
from monitoring.events import EventBus
from strategy.config import replace_section

logger = get_logger(__name__)

MAX_RISK_SCORE = Decimal("100")
HIGH_PROFIT_PERCENT = Decimal("5")
LOW_PROFIT_PERCENT = Decimal("0.1")
HIGH_GAS_ESTIMATE = 1_000_000
MEDIUM_RISK_SCORE = Decimal("60")


class RiskGate:
    """
    Stateful approve/deny gate over opportunities and trade history.

    Usage:
        gate = RiskGate(RiskLimits(), Decimal("10000"), event_bus=bus)
        decision = await gate.evaluate(opp)
        if decision.approved:
            ...
            await gate.record_trade(result)
    """

    def __init__(
        self,
        limits: Optional[RiskLimits] = None,
        initial_portfolio_usd: Decimal = Decimal("10000"),
        event_bus: Optional[EventBus] = None,
        clock: Clock = time.time,
    ):
        self._limits = limits or RiskLimits()
        self._event_bus = event_bus
        self._clock = clock
        self._lock = asyncio.Lock()

        start = Decimal(initial_portfolio_usd)
        self._start_value = start
        self._daily_start_value = start
        self._day = local_day(clock())

        self._metrics = RiskMetrics(portfolio_value=start, peak_value=start)
        self._breaker = CircuitBreakerState()
        self._trades: Deque[TradeResult] = deque(maxlen=TRADE_HISTORY_MAX)
        self._trade_times: Deque[float] = deque()

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    @property
    def limits(self) -> RiskLimits:
        return self._limits

    @property
    def metrics(self) -> RiskMetrics:
        """Copy of the current metrics."""
        return dataclasses.replace(self._metrics)

    @property
    def breaker(self) -> CircuitBreakerState:
        return self._breaker

    @property
    def is_tripped(self) -> bool:
        return self._breaker.tripped

    def recent_trades(self, count: int = 10) -> List[TradeResult]:
        if count <= 0:
            return []
        return list(self._trades)[-count:]

    # =========================================================================
    # EVENTS
    # =========================================================================

    def _publish(self, event_type: EventType, **data) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event_type, "risk_gate", **data)

    # =========================================================================
    # LAZY CLOCK-DRIVEN TRANSITIONS
    # =========================================================================

    def _roll_day(self, now: float) -> None:
        today = local_day(now)
        if today == self._day:
            return
        self._day = today
        self._daily_start_value = self._metrics.portfolio_value
        self._metrics.daily_pnl = Decimal("0")
        logger.info(
            "Daily risk metrics reset",
            extra={"context": {"day": today.isoformat(), "start_value": str(self._daily_start_value)}},
        )
        self._publish(EventType.DAILY_RESET, day=today.isoformat(), start_value=str(self._daily_start_value))

    def _refresh_hour_window(self, now: float) -> None:
        cutoff = now - SECONDS_PER_HOUR
        while self._trade_times and self._trade_times[0] <= cutoff:
            self._trade_times.popleft()
        self._metrics.trades_in_last_hour = len(self._trade_times)

    def _trip(self, reason: str, now: float, auto_reset: bool = True) -> None:
        self._breaker = CircuitBreakerState(
            tripped=True,
            reason=reason,
            tripped_at=now,
            auto_reset_at=now + CIRCUIT_BREAKER_COOLDOWN_SECONDS if auto_reset else None,
        )
        logger.error(
            f"Circuit breaker tripped: {reason}",
            extra={"context": {"metrics": self._metrics.to_dict(), "auto_reset_at": self._breaker.auto_reset_at}},
        )
        self._publish(EventType.CIRCUIT_BREAKER_TRIPPED, reason=reason, metrics=self._metrics.to_dict())

    def _reset_breaker(self, why: str) -> None:
        self._breaker = CircuitBreakerState()
        self._metrics.consecutive_losses = 0
        # Re-baseline so a standing drawdown does not trip again immediately
        self._metrics.peak_value = self._metrics.portfolio_value
        self._metrics.current_drawdown = Decimal("0")
        logger.info(f"Circuit breaker reset: {why}")
        self._publish(EventType.CIRCUIT_BREAKER_RESET, reason=why)

    # =========================================================================
    # SCORING
    # =========================================================================

    def _daily_loss_percent(self) -> Decimal:
        loss = abs(min(self._metrics.daily_pnl, Decimal("0")))
        return percent_of(loss, self._daily_start_value)

    def _position_percent(self, opp: ArbitrageOpportunity) -> Decimal:
        return percent_of(opp.amount_in_usd, self._metrics.portfolio_value)

    def opportunity_score(self, opp: ArbitrageOpportunity) -> Decimal:
        """0-100, higher is riskier."""
        score = Decimal("0")
        if opp.profit_percent > HIGH_PROFIT_PERCENT:
            score += 30
        elif opp.profit_percent < LOW_PROFIT_PERCENT:
            score += 20

        if self._position_percent(opp) > self._limits.position_size_percent * Decimal("0.8"):
            score += 25

        if opp.gas_estimate > HIGH_GAS_ESTIMATE:
            score += 15

        score += min(self._metrics.volatility * 10, Decimal("20"))

        if self._metrics.consecutive_losses > 2:
            score += self._metrics.consecutive_losses * 5

        score += self._metrics.current_drawdown * 2
        return min(score, MAX_RISK_SCORE)

    def _portfolio_score(self) -> Decimal:
        m = self._metrics
        score = m.current_drawdown * 2 + m.consecutive_losses * 5 + m.volatility
        score += self._daily_loss_percent() * 3
        if m.trades_in_last_hour > self._limits.hourly_trade_limit * Decimal("0.8"):
            score += 20
        return min(score, MAX_RISK_SCORE)

    # =========================================================================
    # CHECKS
    # =========================================================================

    def run_checks(self, opp: ArbitrageOpportunity) -> List[RiskCheckResult]:
        limits = self._limits
        m = self._metrics
        daily_loss = self._daily_loss_percent()
        position = self._position_percent(opp)
        gas_gwei = wei_to_gwei(opp.gas_price_wei)

        return [
            RiskCheckResult(
                RiskCheck.DAILY_LOSS,
                daily_loss < limits.daily_loss_percent,
                f"Daily loss limit exceeded: {daily_loss:.2f}% >= {limits.daily_loss_percent}%",
            ),
            RiskCheckResult(
                RiskCheck.CONSECUTIVE_LOSS,
                m.consecutive_losses < limits.consecutive_loss_limit,
                f"Consecutive loss limit exceeded: {m.consecutive_losses} >= {limits.consecutive_loss_limit}",
            ),
            RiskCheckResult(
                RiskCheck.VOLATILITY,
                m.volatility < limits.volatility_limit,
                f"Volatility too high: {m.volatility:.2f} >= {limits.volatility_limit}",
            ),
            RiskCheckResult(
                RiskCheck.SLIPPAGE,
                opp.profit_percent <= limits.slippage_percent,
                f"Slippage risk too high: {opp.profit_percent:.2f}% > {limits.slippage_percent}%",
            ),
            RiskCheckResult(
                RiskCheck.POSITION_SIZE,
                position <= limits.position_size_percent,
                f"Position size too large: {position:.2f}% > {limits.position_size_percent}%",
            ),
            RiskCheckResult(
                RiskCheck.DRAWDOWN,
                m.current_drawdown < limits.drawdown_percent,
                f"Drawdown limit exceeded: {m.current_drawdown:.2f}% >= {limits.drawdown_percent}%",
            ),
            RiskCheckResult(
                RiskCheck.TRADE_FREQUENCY,
                m.trades_in_last_hour < limits.hourly_trade_limit,
                f"Hourly trade limit exceeded: {m.trades_in_last_hour} >= {limits.hourly_trade_limit}",
            ),
            RiskCheckResult(
                RiskCheck.GAS_PRICE,
                gas_gwei < limits.gas_price_limit_gwei,
                f"Gas price too high: {gas_gwei:.1f} >= {limits.gas_price_limit_gwei} gwei",
            ),
        ]

    # =========================================================================
    # EVALUATE
    # =========================================================================

    async def evaluate(self, opp: ArbitrageOpportunity) -> RiskDecision:
        """
        Approve or deny an opportunity.

        Denials are values, never exceptions. A failing critical check
        also trips the breaker.
        """
        async with self._lock:
            now = self._clock()
            self._roll_day(now)
            self._refresh_hour_window(now)
            self._metrics.risk_score = self._portfolio_score()

            if self._breaker.tripped:
                auto_reset_at = self._breaker.auto_reset_at
                if auto_reset_at is not None and now >= auto_reset_at:
                    self._reset_breaker("cooldown elapsed")
                else:
                    return RiskDecision(
                        approved=False,
                        risk_score=self.opportunity_score(opp),
                        reason=f"Circuit breaker active: {self._breaker.reason}",
                        failed_checks=(RiskCheck.CIRCUIT_BREAKER,),
                    )

            score = self.opportunity_score(opp)
            failed = [c for c in self.run_checks(opp) if not c.passed]

            if failed:
                reasons = ", ".join(c.reason for c in failed)
                if any(c.critical for c in failed):
                    self._trip(reasons, now)
                logger.info(
                    f"Risk denied {opp.pair_key}: {reasons}",
                    extra={"context": {"pair": opp.pair_key, "risk_score": str(score)}},
                )
                return RiskDecision(
                    approved=False,
                    risk_score=score,
                    reason=reasons,
                    failed_checks=tuple(c.check for c in failed),
                )

            if score >= RISK_SCORE_DENY_THRESHOLD:
                return RiskDecision(
                    approved=False,
                    risk_score=score,
                    reason=f"Overall risk score too high: {score:.1f}",
                    failed_checks=(RiskCheck.RISK_SCORE,),
                )

            return RiskDecision(approved=True, risk_score=score)

    # =========================================================================
    # RECORD
    # =========================================================================

    async def record_trade(self, trade: TradeResult) -> None:
        """Fold one execution outcome into the rolling metrics."""
        async with self._lock:
            now = self._clock()
            self._roll_day(now)
            self._trades.append(trade)
            self._trade_times.append(now)

            m = self._metrics
            m.total_pnl += trade.net_profit
            m.daily_pnl += trade.net_profit
            m.portfolio_value = self._start_value + m.total_pnl
            m.peak_value = max(m.peak_value, m.portfolio_value)
            if m.peak_value > 0:
                m.current_drawdown = (m.peak_value - m.portfolio_value) / m.peak_value * 100
            m.max_drawdown = max(m.max_drawdown, m.current_drawdown)

            if len(self._trades) < VOLATILITY_MIN_TRADES:
                m.volatility = Decimal("0")
            else:
                recent = list(self._trades)[-VOLATILITY_WINDOW:]
                m.volatility = sample_stdev(t.trade_return for t in recent) * 100

            if trade.net_profit < 0:
                m.consecutive_losses += 1
            elif trade.net_profit > 0:
                m.consecutive_losses = 0

            m.last_trade_time = now
            self._refresh_hour_window(now)
            m.risk_score = self._portfolio_score()

            self._check_post_trade(now)
            self._publish(EventType.TRADE_RECORDED, trade=trade.to_dict(), metrics=m.to_dict())

    def _check_post_trade(self, now: float) -> None:
        limits = self._limits
        m = self._metrics
        daily_loss = self._daily_loss_percent()

        critical = []
        if m.consecutive_losses >= limits.consecutive_loss_limit:
            critical.append(f"Consecutive loss limit reached: {m.consecutive_losses} >= {limits.consecutive_loss_limit}")
        if daily_loss >= limits.daily_loss_percent:
            critical.append(f"Daily loss limit reached: {daily_loss:.2f}% >= {limits.daily_loss_percent}%")
        if m.current_drawdown >= limits.drawdown_percent:
            critical.append(f"Drawdown limit reached: {m.current_drawdown:.2f}% >= {limits.drawdown_percent}%")

        if critical:
            if not self._breaker.tripped:
                self._trip(", ".join(critical), now)
            return

        warnings = []
        if daily_loss > limits.daily_loss_percent * Decimal("0.8"):
            warnings.append(f"Approaching daily loss limit: {daily_loss:.2f}%")
        if m.current_drawdown > limits.drawdown_percent * Decimal("0.9"):
            warnings.append(f"Approaching maximum drawdown: {m.current_drawdown:.2f}%")
        if warnings:
            logger.warning(
                f"Risk warning: {', '.join(warnings)}",
                extra={"context": {"warnings": warnings}},
            )
            self._publish(EventType.RISK_WARNING, risks=warnings, metrics=m.to_dict())

    # =========================================================================
    # CONTROLS
    # =========================================================================

    async def update_limits(self, **changes) -> RiskLimits:
        """Replace limits atomically with a validated copy."""
        async with self._lock:
            self._limits = replace_section(self._limits, **changes)
        logger.info("Risk limits updated", extra={"context": self._limits.to_dict()})
        return self._limits

    async def emergency_stop(self, reason: str = "Emergency stop requested") -> None:
        """Trip with no auto-reset. Only force_reset() clears it."""
        async with self._lock:
            self._trip(reason, self._clock(), auto_reset=False)

    async def force_reset(self) -> None:
        async with self._lock:
            self._reset_breaker("forced")

    def risk_report(self) -> dict:
        m = self._metrics
        limits = self._limits
        recommendations = []
        if m.current_drawdown > limits.drawdown_percent * Decimal("0.7"):
            recommendations.append("Consider reducing position sizes")
        if m.consecutive_losses > 3:
            recommendations.append("Review trading strategy")
        if m.volatility > limits.volatility_limit * Decimal("0.8"):
            recommendations.append("Monitor market conditions closely")
        if m.risk_score >= MEDIUM_RISK_SCORE:
            recommendations.append("High risk detected, consider pausing operations")

        if m.risk_score >= RISK_SCORE_DENY_THRESHOLD:
            level = RiskLevel.HIGH
        elif m.risk_score >= MEDIUM_RISK_SCORE:
            level = RiskLevel.MEDIUM
        else:
            level = RiskLevel.LOW

        return {
            "level": level.value,
            "metrics": m.to_dict(),
            "limits": limits.to_dict(),
            "circuit_breaker": self._breaker.to_dict(),
            "recommendations": recommendations,
        }
