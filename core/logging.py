"""
core/logging.py - One JSON object per log line.

Every line carries timestamp, level, logger and message. Anything passed
through extra={"context": {...}} lands under "context", merged over the
process-wide fields installed with set_global_context().
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_global_context: Dict[str, Any] = {}

_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")
_TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """
    Renders a record as:

        {"timestamp": "2026-03-02T12:00:00.000+00:00", "level": "INFO",
         "logger": "strategy.evaluator", "message": "Opportunity: ...",
         "context": {"pair": "WMATIC/USDC", "net_profit_usd": "1.84"}}
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        merged = {**_global_context, **(getattr(record, "context", None) or {})}
        if record.exc_info:
            merged["exception"] = self.formatException(record.exc_info)
        if merged:
            payload["context"] = merged

        return json.dumps(payload, default=str)


class ContextAdapter(logging.LoggerAdapter):
    """Adds per-logger default fields underneath the per-call context."""

    def process(self, msg: str, kwargs: Dict[str, Any]):
        call_context = kwargs.get("extra", {}).get("context", {})
        kwargs["extra"] = {"context": {**self.extra, **call_context}}
        return msg, kwargs


def set_global_context(**fields: Any) -> None:
    """Attach fields (service, chain_id, ...) to every subsequent line."""
    _global_context.update(fields)


def clear_global_context() -> None:
    _global_context.clear()


def get_logger(name: str, **defaults: Any) -> ContextAdapter:
    return ContextAdapter(logging.getLogger(name), defaults)


def setup_logging(
    level: str = "INFO",
    json_output: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Replace the root handlers with a stdout handler (and a file handler
    when log_file is given). json_output=False gives one-line text.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers.clear()

    formatter = JSONFormatter() if json_output else logging.Formatter(_TEXT_FORMAT)
    handlers: list = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# =============================================================================
# DOMAIN HELPERS
# =============================================================================

def log_quote(
    logger: ContextAdapter,
    venue: str,
    pair: str,
    amount_in: int,
    amount_out: int,
    latency_ms: int,
    **fields: Any,
) -> None:
    logger.debug(
        f"Quote {venue} {pair}: {amount_in} -> {amount_out}",
        extra={"context": {
            "venue": venue,
            "pair": pair,
            "amount_in": amount_in,
            "amount_out": amount_out,
            "latency_ms": latency_ms,
            **fields,
        }},
    )


def log_opportunity(
    logger: ContextAdapter,
    pair: str,
    buy_venue: str,
    sell_venue: str,
    profit_percent: str,
    net_profit_usd: str,
    **fields: Any,
) -> None:
    logger.info(
        f"Opportunity {pair}: buy {buy_venue}, sell {sell_venue} ({profit_percent}%)",
        extra={"context": {
            "pair": pair,
            "buy_venue": buy_venue,
            "sell_venue": sell_venue,
            "profit_percent": profit_percent,
            "net_profit_usd": net_profit_usd,
            **fields,
        }},
    )


def log_trade(
    logger: ContextAdapter,
    pair: str,
    success: bool,
    tx_hash: Optional[str] = None,
    gas_used: Optional[int] = None,
    **fields: Any,
) -> None:
    """Successful trades log at INFO, failed ones at WARNING."""
    outcome = "EXECUTED" if success else "FAILED"
    log = logger.info if success else logger.warning
    log(
        f"Trade {pair} {outcome}",
        extra={"context": {
            "pair": pair,
            "status": outcome,
            "tx_hash": tx_hash,
            "gas_used": gas_used,
            **fields,
        }},
    )
