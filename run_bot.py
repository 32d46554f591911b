#!/usr/bin/env python3
"""
run_bot.py - CLI entrypoint for the POLYARB scanner/executor.

Usage:
    python run_bot.py --once
    python run_bot.py --interval 15 --log-level DEBUG
    python run_bot.py --live            # requires PRIVATE_KEY
"""

import asyncio
import dataclasses
import signal
import sys
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Optional

import click

from chains.gas import GasOracle, PriceFeed
from chains.providers import RPCProvider
from core.constants import VenueFamily
from core.exceptions import ConfigError, InfraError, SignerError
from core.logging import get_logger, set_global_context, setup_logging
from core.math import wei_to_native
from dex.adapters import QuickSwapAdapter, UniswapV3Adapter, VenueAdapter
from dex.aggregator import QuoteAggregator
from execution.executor import FlashLoanTransactionBuilder, LocalSigner, TradeExecutor
from execution.protector import ExecutionProtector
from monitoring.events import EventBus
from strategy.config import AppConfig, VenueConfig, load_app_config, replace_section
from strategy.evaluator import OpportunityEvaluator
from strategy.gas_model import GasCostModel
from strategy.risk import RiskGate
from strategy.scheduler import Scheduler

logger = get_logger("polyarb.bot")

LOW_BALANCE_NATIVE = Decimal("0.1")


# =============================================================================
# WIRING
# =============================================================================

@dataclass
class Pipeline:
    """Every long-lived component of one bot process."""
    config: AppConfig
    provider: RPCProvider
    gas_oracle: GasOracle
    price_feed: PriceFeed
    event_bus: EventBus
    aggregator: QuoteAggregator
    evaluator: OpportunityEvaluator
    risk_gate: RiskGate
    protector: ExecutionProtector
    executor: TradeExecutor
    scheduler: Scheduler
    signer: Optional[LocalSigner] = None

    async def close(self) -> None:
        await self.price_feed.stop()
        await self.gas_oracle.close()
        await self.provider.close()


def build_adapter(provider: RPCProvider, venue: VenueConfig) -> VenueAdapter:
    addresses = venue.addresses
    try:
        if venue.family == VenueFamily.UNISWAP_V3:
            return UniswapV3Adapter(
                provider,
                quoter_address=addresses["quoter_address"],
                factory_address=addresses["factory_address"],
                venue_id=venue.venue_id,
                enabled=venue.enabled,
            )
        if venue.family in (VenueFamily.QUICKSWAP, VenueFamily.SUSHISWAP):
            return QuickSwapAdapter(
                provider,
                router_address=addresses["router_address"],
                factory_address=addresses["factory_address"],
                venue_id=venue.venue_id,
                enabled=venue.enabled,
            )
    except KeyError as e:
        raise ConfigError(f"Venue {venue.venue_id} missing {e}") from e
    raise ConfigError(f"No adapter for venue family {venue.family.value}")


def build_pipeline(config: AppConfig, signer: Optional[LocalSigner] = None) -> Pipeline:
    provider = RPCProvider(config.chain_id, list(config.rpc_urls), config.rpc_timeout_seconds)
    event_bus = EventBus()
    gas_oracle = GasOracle()
    price_feed = PriceFeed(
        coingecko_ids=config.coingecko_ids,
        defaults_usd=config.default_prices_usd,
        native_symbol=config.native_symbol,
        refresh_seconds=config.price_refresh_seconds,
    )

    adapters = [build_adapter(provider, v) for v in config.venues]
    aggregator = QuoteAggregator(
        adapters,
        per_venue_timeout=config.scan.per_venue_timeout_seconds,
        batch_timeout=config.scan.batch_timeout_seconds,
    )
    gas_model = GasCostModel(price_feed, {v.venue_id: v.family for v in config.venues})
    evaluator = OpportunityEvaluator(aggregator, gas_model, gas_oracle, config.evaluator)
    risk_gate = RiskGate(config.risk, config.initial_capital_usd, event_bus=event_bus)
    protector = ExecutionProtector(provider, config.protection)
    builder = FlashLoanTransactionBuilder(
        lender_address=config.execution.lender_address,
        receiver_address=config.execution.executor_address,
        venue_ids=[v.venue_id for v in config.venues],
        gas_limit=config.execution.tx_gas_limit,
        chain_id=config.chain_id,
    )
    executor = TradeExecutor(
        evaluator, risk_gate, protector, provider, builder,
        signer=signer, config=config.execution, event_bus=event_bus,
    )
    scheduler = Scheduler(
        evaluator, gas_oracle, config.tokens, config.scan,
        event_bus=event_bus, executor=executor,
    )
    return Pipeline(
        config=config,
        provider=provider,
        gas_oracle=gas_oracle,
        price_feed=price_feed,
        event_bus=event_bus,
        aggregator=aggregator,
        evaluator=evaluator,
        risk_gate=risk_gate,
        protector=protector,
        executor=executor,
        scheduler=scheduler,
        signer=signer,
    )


# =============================================================================
# STARTUP
# =============================================================================

async def validate_startup(pipeline: Pipeline) -> None:
    """
    Fatal checks before the first scan.

    Raises:
        InfraError: No RPC endpoint answers eth_chainId
        ConfigError: Endpoint serves a different chain
    """
    chain_id = await pipeline.provider.get_chain_id()
    if chain_id != pipeline.config.chain_id:
        raise ConfigError(
            f"RPC serves chain {chain_id}, expected {pipeline.config.chain_id}",
            details={"rpc_urls": list(pipeline.config.rpc_urls)},
        )

    if pipeline.signer is not None:
        balance = wei_to_native(await pipeline.provider.get_balance(pipeline.signer.address))
        if balance < LOW_BALANCE_NATIVE:
            logger.warning(
                f"Low native balance: {balance:.4f}",
                extra={"context": {"address": pipeline.signer.address, "balance": str(balance)}},
            )

    logger.info(
        "Startup validation passed",
        extra={"context": {
            "chain_id": chain_id,
            "venues": [a.venue_id for a in pipeline.aggregator.enabled_adapters],
            "dry_run": pipeline.config.execution.dry_run,
        }},
    )


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def handle_shutdown(signum: int, frame: object) -> None:
        logger.info("Shutdown requested", extra={"context": {"signal": signum}})
        loop.call_soon_threadsafe(stop_event.set)

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)


async def run(config: AppConfig, once: bool, signer: Optional[LocalSigner]) -> None:
    pipeline = build_pipeline(config, signer)
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)
    try:
        await validate_startup(pipeline)
        await pipeline.price_feed.refresh()
        pipeline.price_feed.start()
        await pipeline.scheduler.run(stop_event, once=once)
    finally:
        await pipeline.close()
        logger.info(
            "Bot stopped",
            extra={"context": {
                "scheduler": pipeline.scheduler.stats(),
                "evaluator": pipeline.evaluator.stats(),
                "risk": pipeline.risk_gate.risk_report()["level"],
            }},
        )


# =============================================================================
# CLI
# =============================================================================

def apply_cli_overrides(config: AppConfig, dry_run: Optional[bool], interval: Optional[float]) -> AppConfig:
    changes = {}
    if dry_run is not None:
        changes["execution"] = replace_section(config.execution, dry_run=dry_run)
    if interval is not None:
        changes["scan"] = replace_section(config.scan, interval_seconds=interval)
    return dataclasses.replace(config, **changes) if changes else config


@click.command()
@click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None,
              help="Strategy YAML (default: config/strategy.yaml)")
@click.option("--once", is_flag=True, help="Run a single scan cycle and exit")
@click.option("--dry-run/--live", "dry_run", default=None, help="Override execution.dry_run")
@click.option("--interval", "-i", type=float, default=None, help="Scan interval in seconds")
@click.option("--log-level", "-l", default="INFO", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]))
@click.option("--json-logs/--no-json-logs", default=True)
def main(
    config_path: Optional[Path],
    once: bool,
    dry_run: Optional[bool],
    interval: Optional[float],
    log_level: str,
    json_logs: bool,
) -> None:
    """POLYARB - Polygon cross-venue arbitrage scanner."""
    setup_logging(level=log_level, json_output=json_logs)
    set_global_context(service="polyarb", version="0.1.0")

    try:
        config = apply_cli_overrides(load_app_config(config_path), dry_run, interval)
        signer = None if config.execution.dry_run else LocalSigner.from_env()
        asyncio.run(run(config, once, signer))
    except (ConfigError, SignerError, InfraError) as e:
        logger.error(f"Fatal: {e}", extra={"context": e.to_dict()})
        sys.exit(1)


if __name__ == "__main__":
    main()
