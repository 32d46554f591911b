"""
chains/gas.py - Gas price oracle and USD price feed for Polygon.

GasOracle reads the Polygon gas station and falls back to a static table.
PriceFeed pulls USD prices from CoinGecko on a timer and serves the last
known (or configured default) value without blocking callers.
"""

import asyncio
import time
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

import httpx

from core.constants import (
    CONFIRMATION_SECONDS_BY_URGENCY,
    DEFAULT_NATIVE_PRICE_USD,
    FALLBACK_BASE_FEE_GWEI,
    FALLBACK_PRIORITY_FEE_GWEI,
    GasUrgency,
)
from core.exceptions import GasOracleError, PriceFeedError
from core.logging import get_logger
from core.math import gwei_to_wei, safe_decimal, wei_to_gwei
from core.models import GasTiers
from core.time import Clock

logger = get_logger(__name__)

GAS_STATION_URL = "https://gasstation.polygon.technology/v2"
COINGECKO_SIMPLE_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"
HTTP_TIMEOUT_SECONDS = 5.0


def fallback_gas_tiers() -> GasTiers:
    """Static table used when the gas station is unreachable."""
    base = gwei_to_wei(FALLBACK_BASE_FEE_GWEI)
    priority = gwei_to_wei(FALLBACK_PRIORITY_FEE_GWEI)
    return GasTiers(
        low=base + priority,
        standard=base + priority * 2,
        fast=base + priority * 3,
        instant=base + priority * 5,
        base_fee=base,
        priority_fee=priority,
        source="fallback",
    )


def parse_gas_station(payload: dict) -> GasTiers:
    """
    Parse a gas station v2 payload (values in gwei).

    Raises:
        GasOracleError: Missing or non-numeric fields
    """
    try:
        low = gwei_to_wei(Decimal(str(payload["safeLow"]["maxFee"])))
        standard = gwei_to_wei(Decimal(str(payload["standard"]["maxFee"])))
        fast = gwei_to_wei(Decimal(str(payload["fast"]["maxFee"])))
        base_fee = gwei_to_wei(Decimal(str(payload["estimatedBaseFee"])))
        priority = gwei_to_wei(Decimal(str(payload["standard"]["maxPriorityFee"])))
    except (KeyError, TypeError, InvalidOperation) as e:
        raise GasOracleError(f"Malformed gas station payload: {e}") from e

    instant_raw = payload.get("instant", {}).get("maxFee") if isinstance(payload.get("instant"), dict) else None
    instant = gwei_to_wei(safe_decimal(instant_raw)) if instant_raw is not None else fast * 6 // 5

    return GasTiers(
        low=low,
        standard=standard,
        fast=fast,
        instant=instant,
        base_fee=base_fee,
        priority_fee=priority,
    )


class GasOracle:
    """
    Cached gas tiers with a static fallback.

    current_gas_tiers() never raises; failures are logged and the fallback
    table is returned.
    """

    def __init__(
        self,
        url: str = GAS_STATION_URL,
        cache_seconds: float = 10.0,
        timeout_seconds: float = HTTP_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        clock: Clock = time.time,
    ):
        self.url = url
        self.cache_seconds = cache_seconds
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._cached: Optional[GasTiers] = None
        self._cached_at = 0.0

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch_gas_tiers(self) -> GasTiers:
        """
        Query the gas station.

        Raises:
            GasOracleError: Network failure or malformed payload
        """
        client = await self._get_client()
        try:
            resp = await client.get(self.url, timeout=self.timeout_seconds)
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GasOracleError(f"Gas station unreachable: {e}", details={"url": self.url}) from e
        return parse_gas_station(payload)

    async def current_gas_tiers(self) -> GasTiers:
        now = self._clock()
        if self._cached is not None and now - self._cached_at < self.cache_seconds:
            return self._cached

        try:
            tiers = await self.fetch_gas_tiers()
        except GasOracleError as e:
            logger.warning(
                f"Gas oracle degraded, using fallback table: {e}",
                extra={"context": {"error_code": e.code.value}},
            )
            return fallback_gas_tiers()

        self._cached = tiers
        self._cached_at = now
        return tiers

    async def optimal_gas_price(self, urgency: GasUrgency = GasUrgency.MEDIUM) -> int:
        """low -> safeLow, medium -> standard, high -> fast (wei)."""
        tiers = await self.current_gas_tiers()
        if urgency == GasUrgency.LOW:
            return tiers.low
        if urgency == GasUrgency.HIGH:
            return tiers.fast
        return tiers.standard

    async def is_gas_price_acceptable(
        self,
        max_gas_price_gwei: Decimal = Decimal("100"),
        urgency: GasUrgency = GasUrgency.MEDIUM,
    ) -> bool:
        price = await self.optimal_gas_price(urgency)
        return wei_to_gwei(price) <= safe_decimal(max_gas_price_gwei)

    async def gas_strategy(
        self,
        urgency: GasUrgency,
        profit_margin_percent: Decimal,
    ) -> dict:
        """Gas price, the highest price the margin tolerates, and expected confirmation."""
        price = await self.optimal_gas_price(urgency)
        max_acceptable = int(Decimal(price) * (Decimal("100") + safe_decimal(profit_margin_percent)) / Decimal("100"))
        return {
            "gas_price": price,
            "max_acceptable_gas_price": max_acceptable,
            "estimated_confirmation_seconds": CONFIRMATION_SECONDS_BY_URGENCY[urgency],
        }


class PriceFeed:
    """
    USD price feed with periodic refresh.

    Reads never block on the network: they return the last fetched value,
    or the configured default when nothing was ever fetched.
    """

    def __init__(
        self,
        coingecko_ids: Dict[str, str],
        defaults_usd: Dict[str, Decimal],
        native_symbol: str = "WMATIC",
        refresh_seconds: float = 60.0,
        url: str = COINGECKO_SIMPLE_PRICE_URL,
        timeout_seconds: float = HTTP_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        clock: Clock = time.time,
    ):
        self.coingecko_ids = dict(coingecko_ids)
        self.defaults_usd = {k: safe_decimal(v) for k, v in defaults_usd.items()}
        self.native_symbol = native_symbol
        self.refresh_seconds = refresh_seconds
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._prices: Dict[str, Decimal] = {}
        self.last_refresh: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    async def fetch_prices(self) -> Dict[str, Decimal]:
        """
        One CoinGecko pull.

        Raises:
            PriceFeedError: Network failure or malformed payload
        """
        if not self.coingecko_ids:
            return {}
        client = await self._get_client()
        ids = ",".join(sorted(set(self.coingecko_ids.values())))
        try:
            resp = await client.get(
                self.url,
                params={"ids": ids, "vs_currencies": "usd"},
                timeout=self.timeout_seconds,
            )
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PriceFeedError(f"Price feed unreachable: {e}") from e

        prices = {}
        for symbol, cg_id in self.coingecko_ids.items():
            entry = payload.get(cg_id)
            if isinstance(entry, dict) and entry.get("usd") is not None:
                price = safe_decimal(entry["usd"])
                if price > 0:
                    prices[symbol] = price
        if not prices:
            raise PriceFeedError("Price feed returned no usable prices", details={"ids": ids})
        return prices

    async def refresh(self) -> bool:
        """Refresh cached prices. Keeps stale values on failure."""
        try:
            prices = await self.fetch_prices()
        except PriceFeedError as e:
            logger.warning(
                f"Price feed degraded, keeping last known prices: {e}",
                extra={"context": {"error_code": e.code.value, "cached": len(self._prices)}},
            )
            return False
        self._prices.update(prices)
        self.last_refresh = self._clock()
        return True

    def price_usd(self, symbol: str) -> Optional[Decimal]:
        """Last known USD price, the configured default, or None."""
        if symbol in self._prices:
            return self._prices[symbol]
        return self.defaults_usd.get(symbol)

    @property
    def native_price_usd(self) -> Decimal:
        price = self.price_usd(self.native_symbol)
        return price if price is not None else DEFAULT_NATIVE_PRICE_USD

    async def _run(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self.refresh_seconds)

    def start(self) -> None:
        """Start the background refresh timer."""
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
