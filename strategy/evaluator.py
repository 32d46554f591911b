"""
strategy/evaluator.py - Two-venue opportunity evaluation.

Quotes token_a -> token_b on every venue, then quotes the best buy leg's
output back to token_a on every venue. The round trip is valued in
18-decimal fixed point of token_b at the buy leg's own rate, so pairs that
do not trade near 1:1 compare like with like. Gas is netted in token_b.

Evaluation never raises for missing quotes: no opportunity is None.
"""

import asyncio
from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from chains.gas import GasOracle
from core.constants import (
    FALLBACK_EVALUATION_GAS_PRICE_GWEI,
    FALLBACK_TX_GAS_LIMIT,
    MIN_PROFIT_PERCENT_NOISE,
    OPPORTUNITY_HISTORY_KEEP,
    OPPORTUNITY_HISTORY_MAX,
)
from core.exceptions import PolyArbError
from core.logging import get_logger, log_opportunity
from core.math import gwei_to_wei, raw_to_human, to_fixed_point
from core.models import ArbitrageOpportunity, GasCostEstimate, Quote, TokenInfo
from dex.aggregator import QuoteAggregator
from strategy.config import EvaluatorConfig, replace_section
from strategy.gas_model import GasCostModel

logger = get_logger(__name__)


def round_trip_prices(
    amount_in: int,
    bought: int,
    returned: int,
    token_a: TokenInfo,
    token_b: TokenInfo,
) -> Tuple[int, int]:
    """
    Both legs of token_a -> token_b -> token_a in fixed point of token_b.

    buy_price is the token_b the buy leg pays out. sell_price is the token_a
    the sell leg returns, valued at the buy leg's rate (bought / amount_in),
    so sell_price - buy_price is the round-trip profit in token_b.

    Example: 1000 DAI -> 1020 USDC -> 1035 DAI gives (1020e18, 1055.7e18).
    """
    buy_price = to_fixed_point(bought, token_b.decimals)
    spent = to_fixed_point(amount_in, token_a.decimals)
    if spent <= 0:
        return buy_price, 0
    sell_price = to_fixed_point(returned, token_a.decimals) * buy_price // spent
    return buy_price, sell_price


class OpportunityEvaluator:
    """
    Turns forward/reverse quote batches into at most one opportunity.

    Usage:
        evaluator = OpportunityEvaluator(aggregator, gas_model, gas_oracle)
        opp = await evaluator.evaluate(wmatic, usdc, 1000 * 10**18)
    """

    def __init__(
        self,
        aggregator: QuoteAggregator,
        gas_model: GasCostModel,
        gas_oracle: GasOracle,
        config: Optional[EvaluatorConfig] = None,
    ):
        self.aggregator = aggregator
        self.gas_model = gas_model
        self.gas_oracle = gas_oracle
        self.config = config or EvaluatorConfig()
        self._lock = asyncio.Lock()
        self._history: Dict[str, List[ArbitrageOpportunity]] = defaultdict(list)
        self._stats = {
            "evaluations": 0,
            "opportunities": 0,
            "insufficient_venues": 0,
            "same_venue": 0,
            "no_spread": 0,
            "below_noise": 0,
            "gas_fallbacks": 0,
        }

    # =========================================================================
    # CONFIG
    # =========================================================================

    async def update_config(self, **changes) -> EvaluatorConfig:
        """Swap in a validated copy of the config with changes applied."""
        async with self._lock:
            self.config = replace_section(self.config, **changes)
        logger.info("Evaluator config updated", extra={"context": {k: str(v) for k, v in changes.items()}})
        return self.config

    # =========================================================================
    # GAS
    # =========================================================================

    async def _gas_cost(self, buy_venue: str, sell_venue: str) -> GasCostEstimate:
        try:
            gas_price = await self.gas_oracle.optimal_gas_price(self.config.gas_urgency)
            return self.gas_model.estimate(buy_venue, sell_venue, gas_price)
        except (PolyArbError, ValueError, ArithmeticError) as e:
            self._stats["gas_fallbacks"] += 1
            gas_price = gwei_to_wei(FALLBACK_EVALUATION_GAS_PRICE_GWEI)
            cost = FALLBACK_TX_GAS_LIMIT * gas_price
            logger.warning(
                f"Gas model failed, using {FALLBACK_TX_GAS_LIMIT} gas at "
                f"{FALLBACK_EVALUATION_GAS_PRICE_GWEI} gwei: {e}",
                extra={"context": {"buy_venue": buy_venue, "sell_venue": sell_venue}},
            )
            return GasCostEstimate(
                flash_loan_gas=0,
                swap_gas=0,
                total_gas=FALLBACK_TX_GAS_LIMIT,
                gas_price_wei=gas_price,
                total_cost_native=cost,
                total_cost_usd=self.gas_model.native_to_usd(cost),
            )

    def profit_floor(self, opp: ArbitrageOpportunity) -> int:
        """Gas cost plus the configured buffer, in 18-decimal fixed point of token_b."""
        estimate = self.gas_model.estimate(opp.buy_venue, opp.sell_venue, opp.gas_price_wei)
        floor_raw = self.gas_model.min_profit_threshold(
            estimate, opp.token_b, self.config.profit_buffer_percent
        )
        return to_fixed_point(floor_raw, opp.token_b.decimals)

    # =========================================================================
    # EVALUATION
    # =========================================================================

    async def evaluate(
        self,
        token_a: TokenInfo,
        token_b: TokenInfo,
        amount_in: int,
    ) -> Optional[ArbitrageOpportunity]:
        """
        Evaluate one pair at one size.

        Args:
            token_a: Token borrowed and sold on the buy leg
            token_b: Token the spread is measured in
            amount_in: Size in token_a's smallest unit

        Returns:
            ArbitrageOpportunity, or None when there is nothing to exploit
        """
        self._stats["evaluations"] += 1
        pair = f"{token_a.symbol}/{token_b.symbol}"

        forward = await self.aggregator.get_quotes(token_a, token_b, amount_in)
        if not forward:
            self._stats["insufficient_venues"] += 1
            logger.debug(f"No forward quotes for {pair}", extra={"context": {"pair": pair}})
            return None
        best_buy: Quote = forward[0]

        # The sell leg swaps exactly what the buy leg returns
        reverse = await self.aggregator.get_quotes(token_b, token_a, best_buy.amount_out)

        venues = {q.venue for q in forward} | {q.venue for q in reverse}
        if not reverse or len(venues) < 2:
            self._stats["insufficient_venues"] += 1
            logger.debug(
                f"Not enough venues for {pair}",
                extra={"context": {"pair": pair, "forward": len(forward), "reverse": len(reverse)}},
            )
            return None

        best_sell: Quote = reverse[0]
        if best_buy.venue == best_sell.venue:
            self._stats["same_venue"] += 1
            return None

        buy_price, sell_price = round_trip_prices(
            amount_in, best_buy.amount_out, best_sell.amount_out, token_a, token_b
        )
        gross_profit = sell_price - buy_price
        if gross_profit <= 0 or buy_price <= 0:
            self._stats["no_spread"] += 1
            return None

        profit_percent = Decimal(gross_profit) * Decimal("100") / Decimal(buy_price)
        if profit_percent < MIN_PROFIT_PERCENT_NOISE:
            self._stats["below_noise"] += 1
            return None

        gas = await self._gas_cost(best_buy.venue, best_sell.venue)
        gas_cost = self.gas_model.usd_to_token_fixed_point(gas.total_cost_usd, token_b)
        net_profit = gross_profit - gas_cost

        opp = ArbitrageOpportunity(
            token_a=token_a,
            token_b=token_b,
            amount_in=amount_in,
            buy_venue=best_buy.venue,
            sell_venue=best_sell.venue,
            buy_price=buy_price,
            sell_price=sell_price,
            gross_profit=gross_profit,
            profit_percent=profit_percent,
            gas_estimate=gas.total_gas,
            gas_cost=gas_cost,
            net_profit=net_profit,
            gas_price_wei=gas.gas_price_wei,
            gas_cost_usd=gas.total_cost_usd,
            net_profit_usd=self.gas_model.token_fixed_point_to_usd(net_profit, token_b),
            amount_in_usd=raw_to_human(amount_in, token_a.decimals) * self.gas_model.token_price_usd(token_a),
        )

        self._stats["opportunities"] += 1
        self._remember(opp)
        log_opportunity(
            logger,
            pair=pair,
            buy_venue=opp.buy_venue,
            sell_venue=opp.sell_venue,
            profit_percent=f"{profit_percent:.4f}",
            net_profit_usd=f"{opp.net_profit_usd:.4f}",
            gas_cost_usd=f"{opp.gas_cost_usd:.4f}",
        )
        return opp

    # =========================================================================
    # HISTORY / STATS
    # =========================================================================

    def _remember(self, opp: ArbitrageOpportunity) -> None:
        history = self._history[opp.pair_key]
        history.append(opp)
        if len(history) > OPPORTUNITY_HISTORY_MAX:
            del history[:-OPPORTUNITY_HISTORY_KEEP]

    def opportunity_history(self, pair: Optional[str] = None) -> List[ArbitrageOpportunity]:
        """Opportunities for one pair (e.g. "WMATIC/USDC"), or all pairs by age."""
        if pair is not None:
            return list(self._history.get(pair, []))
        merged = [opp for items in self._history.values() for opp in items]
        return sorted(merged, key=lambda o: o.created_at)

    def stats(self) -> dict:
        all_opps = self.opportunity_history()
        avg_profit = (
            sum((o.profit_percent for o in all_opps), Decimal("0")) / len(all_opps)
            if all_opps else Decimal("0")
        )
        return {
            **self._stats,
            "pairs_tracked": len(self._history),
            "history_size": len(all_opps),
            "avg_profit_percent": str(avg_profit),
        }
