"""
execution/executor.py - Re-derive, gate, protect, sign, submit.

TradeExecutor never trusts an opportunity handed to it: quotes go stale
within seconds, so it re-evaluates the pair, re-applies the sanity gates
and asks the risk gate before anything is signed.

Dry-run mode stops after the risk gate. Nothing is signed, submitted or
recorded.
"""

import os
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional, Sequence

from eth_account import Account

from chains.providers import RPCProvider
from core.constants import SELECTOR_FLASH_LOAN, ErrorCode, EventType
from core.exceptions import ExecutionError, InfraError, RPCTimeoutError, SignerError
from core.logging import get_logger, log_trade
from core.math import from_fixed_point, to_fixed_point
from core.models import ArbitrageOpportunity, TradeResult
from dex.adapters.base import encode_address, encode_uint
from execution.protector import CandidateTransaction, ExecutionProtector, ProtectedTransaction
from monitoring.events import EventBus
from strategy.config import ExecutionConfig
from strategy.evaluator import OpportunityEvaluator
from strategy.gates import apply_opportunity_gates
from strategy.risk import RiskGate

logger = get_logger(__name__)


def min_profit_in_token_a(opp: ArbitrageOpportunity) -> int:
    """Net profit (fixed point of token_b) at the buy leg's rate, in raw token_a."""
    if opp.net_profit <= 0 or opp.buy_price <= 0:
        return 0
    spent = to_fixed_point(opp.amount_in, opp.token_a.decimals)
    return from_fixed_point(opp.net_profit * spent // opp.buy_price, opp.token_a.decimals)


# =============================================================================
# SIGNER
# =============================================================================

class LocalSigner:
    """Local private-key signer backed by eth-account."""

    def __init__(self, private_key: str):
        if not private_key:
            raise SignerError("Private key is empty")
        try:
            self._account = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise SignerError("Private key is not a valid secp256k1 key", code=ErrorCode.SIGNER_INVALID) from e

    @classmethod
    def from_env(cls, var: str = "PRIVATE_KEY") -> "LocalSigner":
        key = os.environ.get(var, "")
        if not key:
            raise SignerError(f"{var} is not set", details={"env": var})
        return cls(key)

    @property
    def address(self) -> str:
        return self._account.address

    def sign(self, tx: ProtectedTransaction) -> str:
        """Sign and return the 0x-prefixed raw transaction."""
        if tx.sender.lower() != self.address.lower():
            raise SignerError(
                f"Transaction sender {tx.sender} does not match signer {self.address}",
                code=ErrorCode.SIGNER_INVALID,
            )
        signed = self._account.sign_transaction(tx.to_tx_dict())
        return "0x" + bytes(signed.raw_transaction).hex()

    def __repr__(self) -> str:
        return f"LocalSigner({self.address})"


# =============================================================================
# TRANSACTION BUILDERS
# =============================================================================

class TransactionBuilder(ABC):
    """Turns an opportunity into a call on the settlement contract."""

    @abstractmethod
    def build(
        self, opp: ArbitrageOpportunity, sender: str, min_profit: int, deadline: int
    ) -> CandidateTransaction:
        ...


class FlashLoanTransactionBuilder(TransactionBuilder):
    """
    ERC-3156 flashLoan(receiver, token, amount, data) on the lender.

    The receiver is the settlement contract. data carries
    (token_b, min_profit, buy_venue_index, sell_venue_index, deadline), five
    static ABI words. min_profit is in token_a, the borrowed token; the
    receiver reverts when the round trip returns less or when the block
    timestamp is past deadline.
    """

    def __init__(
        self,
        lender_address: str,
        receiver_address: str,
        venue_ids: Sequence[str],
        gas_limit: int = 900_000,
        chain_id: int = 137,
    ):
        self.lender_address = lender_address
        self.receiver_address = receiver_address
        self.venue_ids = list(venue_ids)
        self.gas_limit = gas_limit
        self.chain_id = chain_id

    def venue_index(self, venue_id: str) -> int:
        try:
            return self.venue_ids.index(venue_id)
        except ValueError as e:
            raise ExecutionError(
                f"Venue {venue_id} has no settlement index",
                code=ErrorCode.EXEC_NOT_VIABLE,
            ) from e

    def encode_user_data(self, opp: ArbitrageOpportunity, min_profit: int, deadline: int) -> str:
        return (
            encode_address(opp.token_b.address)
            + encode_uint(min_profit)
            + encode_uint(self.venue_index(opp.buy_venue))
            + encode_uint(self.venue_index(opp.sell_venue))
            + encode_uint(deadline)
        )

    def encode_flash_loan(self, opp: ArbitrageOpportunity, min_profit: int, deadline: int) -> str:
        user_data = self.encode_user_data(opp, min_profit, deadline)
        return (
            "0x"
            + SELECTOR_FLASH_LOAN
            + encode_address(self.receiver_address)
            + encode_address(opp.token_a.address)
            + encode_uint(opp.amount_in)
            + encode_uint(4 * 32)  # offset of bytes data
            + encode_uint(len(user_data) // 2)
            + user_data
        )

    def build(
        self, opp: ArbitrageOpportunity, sender: str, min_profit: int, deadline: int
    ) -> CandidateTransaction:
        return CandidateTransaction(
            sender=sender,
            to=self.lender_address,
            data=self.encode_flash_loan(opp, min_profit, deadline),
            gas_limit=self.gas_limit,
            gas_price=opp.gas_price_wei,
            chain_id=self.chain_id,
            deadline=deadline,
        )


# =============================================================================
# EXECUTOR
# =============================================================================

class TradeExecutor:
    """
    Executes approved opportunities.

    Usage:
        executor = TradeExecutor(evaluator, risk_gate, protector, provider, builder, signer)
        result = await executor.execute(opp)
    """

    def __init__(
        self,
        evaluator: OpportunityEvaluator,
        risk_gate: RiskGate,
        protector: ExecutionProtector,
        provider: RPCProvider,
        builder: TransactionBuilder,
        signer: Optional[LocalSigner] = None,
        config: Optional[ExecutionConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.evaluator = evaluator
        self.risk_gate = risk_gate
        self.protector = protector
        self.provider = provider
        self.builder = builder
        self.signer = signer
        self.config = config or ExecutionConfig()
        self.event_bus = event_bus

        if not self.config.dry_run and signer is None:
            raise SignerError("Live execution requires a signer")

    def _publish(self, event_type: EventType, **data) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(event_type, "executor", **data)

    def _failed(self, opp: ArbitrageOpportunity, code: ErrorCode, message: str, started: float, **fields) -> TradeResult:
        result = TradeResult(
            success=False,
            token_a=opp.token_a.symbol,
            token_b=opp.token_b.symbol,
            source_venue=opp.buy_venue,
            target_venue=opp.sell_venue,
            amount=opp.amount_in_usd,
            execution_ms=int((time.monotonic() - started) * 1000),
            error=f"[{code.value}] {message}",
            **fields,
        )
        log_trade(logger, opp.pair_key, success=False, tx_hash=result.tx_hash, error=result.error)
        self._publish(EventType.TRADE_FAILED, result=result.to_dict(), error_code=code.value)
        return result

    async def rederive(self, opp: ArbitrageOpportunity) -> Optional[ArbitrageOpportunity]:
        """Fresh opportunity for the same pair and size, if it still passes the gates."""
        current = await self.evaluator.evaluate(opp.token_a, opp.token_b, opp.amount_in)
        if current is None:
            return None
        cfg = self.evaluator.config
        failed = apply_opportunity_gates(
            current,
            cfg.min_profit_usd,
            cfg.min_profit_percent,
            cfg.max_slippage_percent,
            profit_floor=self.evaluator.profit_floor(current),
        )
        return None if failed else current

    async def execute(self, opp: ArbitrageOpportunity) -> TradeResult:
        """
        Attempt one arbitrage.

        Returns:
            TradeResult. Failures are results, not exceptions, except for
            SignerError which is fatal.
        """
        started = time.monotonic()

        current = await self.rederive(opp)
        if current is None:
            return self._failed(opp, ErrorCode.EXEC_NOT_VIABLE, "Opportunity no longer viable", started)

        decision = await self.risk_gate.evaluate(current)
        if not decision.approved:
            return self._failed(current, ErrorCode.EXEC_RISK_DENIED, decision.reason or "denied", started)

        gross_usd = self.evaluator.gas_model.token_fixed_point_to_usd(current.gross_profit, current.token_b)

        if self.config.dry_run:
            logger.info(
                f"DRY RUN: would execute {current.pair_key} {current.buy_venue} -> {current.sell_venue}",
                extra={"context": current.to_dict()},
            )
            return TradeResult(
                success=True,
                token_a=current.token_a.symbol,
                token_b=current.token_b.symbol,
                source_venue=current.buy_venue,
                target_venue=current.sell_venue,
                amount=current.amount_in_usd,
                profit=gross_usd,
                net_profit=current.net_profit_usd,
                gas_used=current.gas_estimate,
                gas_cost=current.gas_cost_usd,
                execution_ms=int((time.monotonic() - started) * 1000),
                error="dry run",
            )

        return await self._submit(current, gross_usd, started)

    async def _submit(self, opp: ArbitrageOpportunity, gross_usd: Decimal, started: float) -> TradeResult:
        sender = self.signer.address
        deadline = self.protector.deadline()
        try:
            candidate = self.builder.build(opp, sender, min_profit_in_token_a(opp), deadline)
        except ExecutionError as e:
            return self._failed(opp, e.code, e.message, started)

        try:
            protected = await self.protector.protect(candidate)
        except InfraError as e:
            return self._failed(opp, ErrorCode.EXEC_SUBMIT_FAILED, f"Protection failed: {e}", started)

        raw_tx = self.signer.sign(protected)
        try:
            tx_hash = await self.provider.send_raw_transaction(raw_tx, url=protected.channel_url)
        except InfraError as e:
            self.protector.nonces.reset(sender)
            return self._failed(opp, ErrorCode.EXEC_SUBMIT_FAILED, str(e), started)

        try:
            receipt = await self.provider.wait_for_receipt(
                tx_hash, timeout_seconds=self.config.receipt_timeout_seconds
            )
        except RPCTimeoutError as e:
            return self._failed(opp, ErrorCode.EXEC_RECEIPT_TIMEOUT, str(e), started, tx_hash=tx_hash)
        except InfraError as e:
            # Submitted, outcome unknown; the nonce stays consumed
            return self._failed(opp, ErrorCode.EXEC_RECEIPT_UNAVAILABLE, str(e), started, tx_hash=tx_hash)

        status = int(receipt.get("status", "0x0"), 16)
        gas_used = int(receipt.get("gasUsed", "0x0"), 16)
        effective_price = int(receipt.get("effectiveGasPrice") or hex(protected.max_fee_per_gas), 16)
        gas_cost_usd = self.evaluator.gas_model.native_to_usd(gas_used * effective_price)
        block_number = int(receipt["blockNumber"], 16) if receipt.get("blockNumber") else None

        success = status == 1
        profit = gross_usd if success else Decimal("0")
        result = TradeResult(
            success=success,
            token_a=opp.token_a.symbol,
            token_b=opp.token_b.symbol,
            source_venue=opp.buy_venue,
            target_venue=opp.sell_venue,
            amount=opp.amount_in_usd,
            profit=profit,
            net_profit=profit - gas_cost_usd,
            gas_used=gas_used,
            gas_cost=gas_cost_usd,
            execution_ms=int((time.monotonic() - started) * 1000),
            tx_hash=tx_hash,
            block_number=block_number,
            error=None if success else f"[{ErrorCode.EXEC_REVERTED.value}] Transaction reverted",
        )

        await self.risk_gate.record_trade(result)
        log_trade(logger, opp.pair_key, success=success, tx_hash=tx_hash, gas_used=gas_used,
                  net_profit_usd=str(result.net_profit))
        self._publish(
            EventType.TRADE_EXECUTED if success else EventType.TRADE_FAILED,
            result=result.to_dict(),
        )
        return result
