"""
execution/protector.py - Front-running protection for submissions.

protect() shapes a candidate transaction, in order:
1. Random delay in [delay_min_ms, delay_max_ms]
2. Pending-pool screen (advisory, never blocks)
3. Gas premium of 5-15% over network fee data, capped
4. Nonce = max(pending nonce, local counter), serialized per sender
5. Private channel chosen at random from the endpoint pool

All protective measures are heuristics. None of them is a guarantee.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from eth_utils import to_checksum_address

from chains.providers import RPCProvider
from core.constants import POLYGON_CHAIN_ID, SELECTOR_FLASH_LOAN
from core.exceptions import InfraError
from core.logging import get_logger
from core.math import gwei_to_wei
from core.time import Clock
from strategy.config import ProtectionConfig

logger = get_logger(__name__)

SIMILAR_TX_WEIGHT = Decimal("0.3")
HIGH_GAS_WEIGHT = Decimal("0.4")


# =============================================================================
# TRANSACTIONS
# =============================================================================

@dataclass(frozen=True)
class CandidateTransaction:
    """Unsigned call as produced by a transaction builder. Prices in wei."""
    sender: str
    to: str
    data: str
    gas_limit: int
    gas_price: int
    value: int = 0
    chain_id: int = POLYGON_CHAIN_ID
    deadline: Optional[int] = None

    @property
    def selector(self) -> str:
        return self.data[:10].lower()


@dataclass(frozen=True)
class SandwichSignal:
    """Advisory result of the pending-pool screen."""
    is_sandwich: bool = False
    confidence: Decimal = Decimal("0")
    reasons: Tuple[str, ...] = ()
    competing_flash_loans: int = 0
    available: bool = True

    @classmethod
    def unavailable(cls, reason: str) -> "SandwichSignal":
        return cls(reasons=(reason,), available=False)


@dataclass(frozen=True)
class ProtectedTransaction:
    """Submittable EIP-1559 transaction plus the channel to send it on."""
    sender: str
    to: str
    data: str
    value: int
    gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    nonce: int
    chain_id: int
    deadline: int
    channel_url: Optional[str] = None
    premium_percent: Decimal = Decimal("0")
    sandwich: SandwichSignal = field(default_factory=SandwichSignal)

    def to_tx_dict(self) -> dict:
        """Fields in the shape eth-account signs."""
        return {
            "type": 2,
            "chainId": self.chain_id,
            "nonce": self.nonce,
            "to": to_checksum_address(self.to),
            "value": self.value,
            "data": self.data,
            "gas": self.gas_limit,
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
        }


# =============================================================================
# NONCES
# =============================================================================

class NonceManager:
    """
    Single authoritative next-nonce counter per sender.

    Assignment reads the chain's pending count and the local counter
    under a per-sender lock, so concurrent callers never share a nonce.
    """

    def __init__(self, provider: RPCProvider):
        self.provider = provider
        self._next: Dict[str, int] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def assign(self, sender: str) -> int:
        key = sender.lower()
        async with self._lock_for(key):
            pending = await self.provider.get_transaction_count(sender, "pending")
            nonce = max(pending, self._next.get(key, 0))
            self._next[key] = nonce + 1
            return nonce

    def reset(self, sender: str) -> None:
        """Forget the local counter, e.g. after a submission that never reached the pool."""
        self._next.pop(sender.lower(), None)

    def peek(self, sender: str) -> Optional[int]:
        return self._next.get(sender.lower())


# =============================================================================
# PENDING-POOL HEURISTICS
# =============================================================================

def flatten_txpool(content: dict) -> List[dict]:
    """txpool_content -> flat list of pending transactions."""
    txs = []
    for by_nonce in (content.get("pending") or {}).values():
        if isinstance(by_nonce, dict):
            txs.extend(tx for tx in by_nonce.values() if isinstance(tx, dict))
    return txs


def _hex_int(value: Optional[str]) -> int:
    if not value:
        return 0
    try:
        return int(value, 16)
    except (TypeError, ValueError):
        return 0


def analyze_pending(
    pending: Iterable[dict],
    candidate: CandidateTransaction,
    config: ProtectionConfig,
) -> SandwichSignal:
    """
    Score pending transactions for sandwich setups around candidate.

    Heuristics:
    - more than similar_tx_threshold pending calls with the same target
      and function selector (+0.3)
    - any pending gas price above high_gas_multiple x the pool average (+0.4)
    """
    txs = list(pending)
    if not txs:
        return SandwichSignal()

    target = candidate.to.lower()
    selector = candidate.selector
    score = Decimal("0")
    reasons = []

    similar = [
        tx for tx in txs
        if (tx.get("to") or "").lower() == target
        and (tx.get("input") or "").lower().startswith(selector)
    ]
    if len(similar) > config.similar_tx_threshold:
        score += SIMILAR_TX_WEIGHT
        reasons.append(f"{len(similar)} similar pending transactions")

    prices = [_hex_int(tx.get("gasPrice") or tx.get("maxFeePerGas")) for tx in txs]
    average = Decimal(sum(prices)) / Decimal(len(prices))
    high = [p for p in prices if Decimal(p) > average * config.high_gas_multiple]
    if high:
        score += HIGH_GAS_WEIGHT
        reasons.append(f"{len(high)} high gas price pending transactions")

    flash_prefix = "0x" + SELECTOR_FLASH_LOAN
    competing = sum(1 for tx in txs if (tx.get("input") or "").lower().startswith(flash_prefix))

    score = min(score, Decimal("1"))
    return SandwichSignal(
        is_sandwich=score >= config.sandwich_score_threshold,
        confidence=score,
        reasons=tuple(reasons),
        competing_flash_loans=competing,
    )


# =============================================================================
# PROTECTOR
# =============================================================================

class ExecutionProtector:
    """
    Shapes candidate transactions before signing.

    Usage:
        protector = ExecutionProtector(provider, ProtectionConfig())
        protected = await protector.protect(candidate)
    """

    def __init__(
        self,
        provider: RPCProvider,
        config: Optional[ProtectionConfig] = None,
        nonce_manager: Optional[NonceManager] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Clock = time.time,
    ):
        self.provider = provider
        self.config = config or ProtectionConfig()
        self.nonces = nonce_manager or NonceManager(provider)
        self._rng = rng or random.SystemRandom()
        self._sleep = sleep
        self._clock = clock

    async def random_delay(self) -> float:
        delay_ms = self._rng.uniform(self.config.delay_min_ms, self.config.delay_max_ms)
        await self._sleep(delay_ms / 1000)
        return delay_ms

    async def screen_pending_pool(self, candidate: CandidateTransaction) -> SandwichSignal:
        """Advisory screen. Query failure means no signal, never an error."""
        try:
            content = await asyncio.wait_for(
                self.provider.get_txpool_content(),
                timeout=self.config.txpool_timeout_seconds,
            )
        except (InfraError, asyncio.TimeoutError) as e:
            logger.warning(
                f"Pending-pool screen unavailable: {e}",
                extra={"context": {"fallback": "no_signal"}},
            )
            return SandwichSignal.unavailable(str(e))

        signal = analyze_pending(flatten_txpool(content), candidate, self.config)
        if signal.is_sandwich:
            logger.warning(
                f"Possible sandwich setup around {candidate.to}",
                extra={"context": {"confidence": str(signal.confidence), "reasons": list(signal.reasons)}},
            )
        return signal

    async def protected_gas_price(
        self,
        fallback_price: int,
        competing_flash_loans: int = 0,
    ) -> Tuple[int, Decimal]:
        """
        Network gas price plus a random premium, capped.

        Returns:
            (gas price in wei, premium percent applied)
        """
        try:
            fee_data = await asyncio.wait_for(
                self.provider.get_fee_data(),
                timeout=self.config.fee_data_timeout_seconds,
            )
            base = fee_data.gas_price or fallback_price
        except (InfraError, asyncio.TimeoutError) as e:
            logger.warning(
                f"Fee data unavailable, using candidate gas price: {e}",
                extra={"context": {"fallback_wei": fallback_price}},
            )
            base = fallback_price

        premium = Decimal(str(round(self._rng.uniform(
            float(self.config.premium_min_percent),
            float(self.config.premium_max_percent),
        ), 4)))
        price = Decimal(base) * (Decimal("100") + premium) / Decimal("100")
        if competing_flash_loans:
            price *= self.config.competing_flash_loan_multiplier
            logger.warning(
                f"{competing_flash_loans} competing flash loans pending, raising gas",
                extra={"context": {"multiplier": str(self.config.competing_flash_loan_multiplier)}},
            )

        cap = gwei_to_wei(self.config.max_gas_price_gwei)
        return min(int(price), cap), premium

    def deadline(self) -> int:
        """Unix time after which the contract rejects the call."""
        return int(self._clock()) + self.config.deadline_seconds

    def select_channel(self) -> Optional[str]:
        if not self.config.use_private_channel or not self.config.private_endpoints:
            return None
        return self._rng.choice(list(self.config.private_endpoints))

    async def protect(self, candidate: CandidateTransaction) -> ProtectedTransaction:
        """
        Apply every protective measure to candidate.

        Raises:
            InfraError: The pending nonce could not be read
        """
        await self.random_delay()

        if self.config.sandwich_screening:
            signal = await self.screen_pending_pool(candidate)
        else:
            signal = SandwichSignal.unavailable("screening disabled")

        gas_price, premium = await self.protected_gas_price(
            candidate.gas_price, signal.competing_flash_loans
        )
        nonce = await self.nonces.assign(candidate.sender)
        channel = self.select_channel()

        protected = ProtectedTransaction(
            sender=candidate.sender,
            to=candidate.to,
            data=candidate.data,
            value=candidate.value,
            gas_limit=int(Decimal(candidate.gas_limit) * self.config.gas_limit_multiplier),
            max_fee_per_gas=gas_price,
            max_priority_fee_per_gas=gas_price // 10,
            nonce=nonce,
            chain_id=candidate.chain_id,
            deadline=candidate.deadline if candidate.deadline is not None else self.deadline(),
            channel_url=channel,
            premium_percent=premium,
            sandwich=signal,
        )
        logger.info(
            f"Transaction protected: nonce {nonce}",
            extra={"context": {
                "sender": candidate.sender,
                "nonce": nonce,
                "max_fee_per_gas": gas_price,
                "premium_percent": str(premium),
                "private_channel": channel is not None,
                "sandwich_confidence": str(signal.confidence),
            }},
        )
        return protected
