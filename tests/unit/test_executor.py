"""
tests/unit/test_executor.py - Re-derivation, risk gating, signing, submission.
"""

import random
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from chains.providers import FeeData
from conftest import FakeVenue, make_opportunity
from core.constants import ErrorCode, EventType
from core.exceptions import ExecutionError, RPCError, RPCTimeoutError, SignerError
from dex.aggregator import QuoteAggregator
from execution.executor import (
    FlashLoanTransactionBuilder,
    LocalSigner,
    TradeExecutor,
    min_profit_in_token_a,
)
from execution.protector import ExecutionProtector
from monitoring.events import EventBus
from strategy.config import DEFAULT_PRIVATE_ENDPOINTS, ExecutionConfig
from strategy.evaluator import OpportunityEvaluator
from strategy.gas_model import GasCostModel
from strategy.risk import RiskGate

E18 = 10**18
E6 = 10**6
GWEI = 10**9
# Well-known development key; never holds funds
TEST_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
LENDER = "0x794a61358D6845594F94dc1DB02A252b5b4814aD"
RECEIVER = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


@pytest.fixture
def venues():
    # 0.2% round trip: 1000 DAI -> 1000 USDC on venue_x -> 1002 DAI on venue_y
    return [
        FakeVenue("venue_x", {("DAI", "USDC"): 1000 * E6, ("USDC", "DAI"): 999 * E18}),
        FakeVenue("venue_y", {("DAI", "USDC"): 999 * E6, ("USDC", "DAI"): 1002 * E18}),
    ]


@pytest.fixture
def evaluator(venues, price_feed, gas_oracle):
    aggregator = QuoteAggregator(venues, per_venue_timeout=1, batch_timeout=2)
    return OpportunityEvaluator(aggregator, GasCostModel(price_feed), gas_oracle)


@pytest.fixture
def provider():
    p = MagicMock()
    p.get_transaction_count = AsyncMock(return_value=4)
    p.get_fee_data = AsyncMock(return_value=FeeData(gas_price=30 * GWEI, max_priority_fee=GWEI))
    p.get_txpool_content = AsyncMock(return_value={"pending": {}})
    p.send_raw_transaction = AsyncMock(return_value="0xfeed")
    p.wait_for_receipt = AsyncMock(return_value={
        "status": "0x1",
        "gasUsed": hex(400_000),
        "effectiveGasPrice": hex(33 * GWEI),
        "blockNumber": "0x10",
    })
    return p


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def risk_gate(bus):
    return RiskGate(initial_portfolio_usd=Decimal("10000"), event_bus=bus)


@pytest.fixture
def builder():
    return FlashLoanTransactionBuilder(LENDER, RECEIVER, ["venue_x", "venue_y"])


def make_executor(evaluator, risk_gate, provider, builder, bus, live=False):
    protector = ExecutionProtector(provider, rng=random.Random(11), sleep=AsyncMock(), clock=lambda: 1000.0)
    if live:
        config = ExecutionConfig(dry_run=False, executor_address=RECEIVER, lender_address=LENDER)
        signer = LocalSigner(TEST_KEY)
    else:
        config = ExecutionConfig()
        signer = None
    return TradeExecutor(
        evaluator, risk_gate, protector, provider, builder,
        signer=signer, config=config, event_bus=bus,
    )


async def fresh_opportunity(evaluator, dai, usdc):
    opp = await evaluator.evaluate(dai, usdc, 1000 * E18)
    assert opp is not None
    return opp


class TestSigner:
    def test_address_from_key(self):
        assert LocalSigner(TEST_KEY).address == TEST_ADDRESS

    def test_empty_key(self):
        with pytest.raises(SignerError) as exc:
            LocalSigner("")
        assert exc.value.code == ErrorCode.SIGNER_MISSING

    def test_invalid_key(self):
        with pytest.raises(SignerError) as exc:
            LocalSigner("0x1234")
        assert exc.value.code == ErrorCode.SIGNER_INVALID

    def test_from_env_missing(self, monkeypatch):
        monkeypatch.delenv("PRIVATE_KEY", raising=False)
        with pytest.raises(SignerError):
            LocalSigner.from_env()

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PRIVATE_KEY", TEST_KEY)
        assert LocalSigner.from_env().address == TEST_ADDRESS

    def test_repr_hides_key(self):
        assert TEST_KEY[2:] not in repr(LocalSigner(TEST_KEY))


class TestBuilder:
    def test_flash_loan_calldata(self, builder, wmatic, usdc):
        opp = make_opportunity(wmatic, usdc)
        data = builder.encode_flash_loan(opp, min_profit=5, deadline=1300)

        assert data.startswith("0x5cffe9de")
        words = [data[10 + i * 64: 10 + (i + 1) * 64] for i in range((len(data) - 10) // 64)]
        assert len(words) == 10
        assert words[0].endswith(RECEIVER.lower()[2:])
        assert words[1].endswith(wmatic.address.lower()[2:])
        assert int(words[2], 16) == opp.amount_in
        assert int(words[3], 16) == 128
        assert int(words[4], 16) == 160
        assert words[5].endswith(usdc.address.lower()[2:])
        assert int(words[6], 16) == 5
        assert int(words[7], 16) == 0
        assert int(words[8], 16) == 1
        assert int(words[9], 16) == 1300

    def test_unknown_venue(self, builder, wmatic, dai):
        opp = make_opportunity(wmatic, dai, sell_venue="venue_z")
        with pytest.raises(ExecutionError) as exc:
            builder.build(opp, TEST_ADDRESS, 0, 1300)
        assert exc.value.code == ErrorCode.EXEC_NOT_VIABLE

    def test_build_targets_lender(self, builder, wmatic, dai):
        tx = builder.build(make_opportunity(wmatic, dai), TEST_ADDRESS, 0, 1300)
        assert tx.to == LENDER
        assert tx.gas_limit == 900_000
        assert tx.gas_price == 30 * GWEI
        assert tx.deadline == 1300
        assert tx.selector == "0x5cffe9de"


class TestMinProfit:
    def test_par_pair(self, dai, usdc):
        opp = make_opportunity(dai, usdc, buy_price=1000 * E18, sell_price=1002 * E18, gas_cost=0)
        assert min_profit_in_token_a(opp) == 2 * E18

    def test_converted_at_buy_rate(self, wmatic, usdc):
        # 2 USDC net at 0.505 USDC per WMATIC
        opp = make_opportunity(
            wmatic, usdc, buy_price=505 * E18, sell_price=507_525 * 10**15, gas_cost=525 * 10**15
        )
        assert min_profit_in_token_a(opp) == 2 * E18 * 1000 // 505

    def test_token_a_decimals(self, usdc, dai):
        opp = make_opportunity(usdc, dai, amount_in=1000 * E6, buy_price=1000 * E18, sell_price=1003 * E18, gas_cost=E18)
        assert min_profit_in_token_a(opp) == 2 * E6

    def test_unprofitable_is_zero(self, dai, usdc):
        opp = make_opportunity(dai, usdc, gas_cost=20 * E18)
        assert min_profit_in_token_a(opp) == 0


class TestDryRun:
    @pytest.mark.asyncio
    async def test_dry_run_stops_after_risk_gate(self, evaluator, risk_gate, provider, builder, bus, dai, usdc):
        executor = make_executor(evaluator, risk_gate, provider, builder, bus)
        result = await executor.execute(await fresh_opportunity(evaluator, dai, usdc))

        assert result.success
        assert result.error == "dry run"
        assert result.tx_hash is None
        assert result.profit == Decimal("2")
        provider.send_raw_transaction.assert_not_awaited()
        assert risk_gate.recent_trades() == []

    @pytest.mark.asyncio
    async def test_not_viable_after_rederive(self, evaluator, venues, risk_gate, provider, builder, bus, dai, usdc):
        executor = make_executor(evaluator, risk_gate, provider, builder, bus)
        opp = await fresh_opportunity(evaluator, dai, usdc)
        venues[1].outputs[("USDC", "DAI")] = 990 * E18

        result = await executor.execute(opp)
        assert not result.success
        assert ErrorCode.EXEC_NOT_VIABLE.value in result.error
        assert len(bus.history(EventType.TRADE_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_risk_denied(self, evaluator, risk_gate, provider, builder, bus, dai, usdc):
        executor = make_executor(evaluator, risk_gate, provider, builder, bus)
        await risk_gate.emergency_stop("maintenance")

        result = await executor.execute(await fresh_opportunity(evaluator, dai, usdc))
        assert not result.success
        assert ErrorCode.EXEC_RISK_DENIED.value in result.error
        assert "Circuit breaker active" in result.error

    def test_live_requires_signer(self, evaluator, risk_gate, provider, builder):
        protector = ExecutionProtector(provider)
        config = ExecutionConfig(dry_run=False, executor_address=RECEIVER, lender_address=LENDER)
        with pytest.raises(SignerError):
            TradeExecutor(evaluator, risk_gate, protector, provider, builder, config=config)


class TestLive:
    @pytest.mark.asyncio
    async def test_successful_trade(self, evaluator, risk_gate, provider, builder, bus, dai, usdc):
        executor = make_executor(evaluator, risk_gate, provider, builder, bus, live=True)
        result = await executor.execute(await fresh_opportunity(evaluator, dai, usdc))

        assert result.success
        assert result.tx_hash == "0xfeed"
        assert result.block_number == 16
        assert result.gas_used == 400_000
        # 400k gas at 33 gwei, MATIC at $0.5
        assert result.gas_cost == Decimal("0.0066")
        assert result.net_profit == Decimal("2") - Decimal("0.0066")

        raw_tx = provider.send_raw_transaction.await_args.args[0]
        assert raw_tx.startswith("0x02")
        assert provider.send_raw_transaction.await_args.kwargs["url"] in DEFAULT_PRIVATE_ENDPOINTS
        assert len(risk_gate.recent_trades()) == 1
        assert len(bus.history(EventType.TRADE_EXECUTED)) == 1

    @pytest.mark.asyncio
    async def test_reverted_trade_is_recorded(self, evaluator, risk_gate, provider, builder, bus, dai, usdc):
        provider.wait_for_receipt.return_value = {
            "status": "0x0", "gasUsed": hex(400_000), "effectiveGasPrice": hex(33 * GWEI), "blockNumber": "0x10",
        }
        executor = make_executor(evaluator, risk_gate, provider, builder, bus, live=True)
        result = await executor.execute(await fresh_opportunity(evaluator, dai, usdc))

        assert not result.success
        assert ErrorCode.EXEC_REVERTED.value in result.error
        assert result.net_profit == Decimal("-0.0066")
        assert risk_gate.metrics.consecutive_losses == 1
        assert len(bus.history(EventType.TRADE_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_submit_failure_resets_nonce(self, evaluator, risk_gate, provider, builder, bus, dai, usdc):
        provider.send_raw_transaction.side_effect = RPCError("nonce too low")
        executor = make_executor(evaluator, risk_gate, provider, builder, bus, live=True)
        result = await executor.execute(await fresh_opportunity(evaluator, dai, usdc))

        assert not result.success
        assert ErrorCode.EXEC_SUBMIT_FAILED.value in result.error
        assert executor.protector.nonces.peek(TEST_ADDRESS) is None
        assert risk_gate.recent_trades() == []

    @pytest.mark.asyncio
    async def test_receipt_timeout(self, evaluator, risk_gate, provider, builder, bus, dai, usdc):
        provider.wait_for_receipt.side_effect = RPCTimeoutError("no receipt")
        executor = make_executor(evaluator, risk_gate, provider, builder, bus, live=True)
        result = await executor.execute(await fresh_opportunity(evaluator, dai, usdc))

        assert not result.success
        assert ErrorCode.EXEC_RECEIPT_TIMEOUT.value in result.error
        assert result.tx_hash == "0xfeed"
        assert risk_gate.recent_trades() == []
        # nonce was consumed by a transaction that reached the pool
        assert executor.protector.nonces.peek(TEST_ADDRESS) == 5

    @pytest.mark.asyncio
    async def test_receipt_lookup_error_is_a_result(self, evaluator, risk_gate, provider, builder, bus, dai, usdc):
        provider.wait_for_receipt.side_effect = RPCError("receipt lookup failed on every endpoint")
        executor = make_executor(evaluator, risk_gate, provider, builder, bus, live=True)
        result = await executor.execute(await fresh_opportunity(evaluator, dai, usdc))

        assert not result.success
        assert ErrorCode.EXEC_RECEIPT_UNAVAILABLE.value in result.error
        assert result.tx_hash == "0xfeed"
        assert risk_gate.recent_trades() == []
        assert executor.protector.nonces.peek(TEST_ADDRESS) == 5
        assert len(bus.history(EventType.TRADE_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_calldata_carries_min_profit_and_deadline(self, evaluator, risk_gate, provider, builder, bus, dai, usdc):
        builder.build = MagicMock(wraps=builder.build)
        executor = make_executor(evaluator, risk_gate, provider, builder, bus, live=True)
        executor.protector.protect = AsyncMock(wraps=executor.protector.protect)
        await executor.execute(await fresh_opportunity(evaluator, dai, usdc))

        _, sender, min_profit, deadline = builder.build.call_args.args
        assert sender == TEST_ADDRESS
        # 2 USDC gross less $0.008676 gas, back in DAI at 1 USDC per DAI
        assert min_profit == 1_991_324 * 10**12
        assert deadline == 1300
        candidate = executor.protector.protect.await_args.args[0]
        assert candidate.deadline == 1300
        assert candidate.data.endswith(f"{1300:064x}")
