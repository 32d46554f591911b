# PATH: chains/providers.py
"""
chains/providers.py - Polygon JSON-RPC client.

Endpoints are tried in configured order; the first one that answers wins.
Transport failures and JSON-RPC errors both move on to the next endpoint.
When every endpoint fails the last error's code is kept, so a method the
providers don't serve (txpool_content on public RPCs) surfaces as
INFRA_UNSUPPORTED and callers can degrade.

URLs may embed ${VAR} placeholders. An URL whose placeholder has no value
in the environment is dropped at construction.
"""

import asyncio
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from core.constants import ErrorCode
from core.exceptions import InfraError, RPCError, RPCTimeoutError
from core.logging import get_logger

logger = get_logger(__name__)

_PLACEHOLDER = re.compile(r"\$\{(\w+)\}")

# -32601 method not found, -32004 method not supported
_UNSUPPORTED_RPC_CODES = {-32601, -32004}


@dataclass
class EndpointHealth:
    """Counters for one endpoint."""
    url: str
    requests: int = 0
    failures: int = 0
    latency_ms_total: int = 0
    last_error: Optional[str] = None

    @property
    def successes(self) -> int:
        return self.requests - self.failures

    @property
    def avg_latency_ms(self) -> int:
        return self.latency_ms_total // self.successes if self.successes else 0

    def to_dict(self) -> dict:
        return {
            "requests": self.requests,
            "failures": self.failures,
            "avg_latency_ms": self.avg_latency_ms,
            "last_error": self.last_error,
        }


@dataclass
class RPCResponse:
    result: Any
    latency_ms: int
    endpoint_used: str


@dataclass
class FeeData:
    """Fee snapshot, all values in wei."""
    gas_price: int
    max_priority_fee: int
    base_fee: Optional[int] = None


def expand_endpoint_urls(urls: List[str], env: Optional[Dict[str, str]] = None) -> List[str]:
    """Substitute ${VAR} from env; URLs with an unset variable are skipped."""
    env = os.environ if env is None else env
    expanded = []
    for url in urls:
        names = _PLACEHOLDER.findall(url)
        if any(not env.get(name) for name in names):
            logger.debug(f"Skipping RPC URL with unset placeholder: {url}")
            continue
        expanded.append(_PLACEHOLDER.sub(lambda m: env[m.group(1)], url))
    return expanded


class RPCProvider:
    """
    Failover JSON-RPC provider for one chain.

    Usage:
        provider = RPCProvider(137, ["https://polygon-rpc.com"])
        nonce = await provider.get_transaction_count(address)
        await provider.close()
    """

    def __init__(
        self,
        chain_id: int,
        rpc_urls: List[str],
        timeout_seconds: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.chain_id = chain_id
        self.timeout_seconds = timeout_seconds
        self.rpc_urls = expand_endpoint_urls(rpc_urls)
        self.health: Dict[str, EndpointHealth] = {u: EndpointHealth(u) for u in self.rpc_urls}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = 0

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                limits=httpx.Limits(max_connections=10),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    async def request_endpoint(self, url: str, method: str, params: Optional[list] = None) -> RPCResponse:
        """
        One JSON-RPC request against exactly one endpoint (no failover).

        Raises:
            RPCTimeoutError: The endpoint did not answer in time
            RPCError: Transport failure or a JSON-RPC error object
        """
        health = self.health.setdefault(url, EndpointHealth(url))
        health.requests += 1
        self._ids += 1
        context = {"url": url, "method": method}
        started = time.monotonic()

        try:
            resp = await self.client.post(
                url, json={"jsonrpc": "2.0", "id": self._ids, "method": method, "params": params or []}
            )
            resp.raise_for_status()
            body = resp.json()
        except httpx.TimeoutException as e:
            health.failures += 1
            health.last_error = "timeout"
            raise RPCTimeoutError(f"RPC timeout: {method}", details=context) from e
        except (httpx.HTTPError, ValueError) as e:
            health.failures += 1
            health.last_error = str(e)
            raise RPCError(f"RPC transport error: {e}", details=context) from e

        error = body.get("error")
        if error is not None:
            health.failures += 1
            rpc_code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            health.last_error = message
            raise RPCError(
                f"RPC error: {message}",
                code=ErrorCode.INFRA_UNSUPPORTED if rpc_code in _UNSUPPORTED_RPC_CODES else ErrorCode.INFRA_RPC_ERROR,
                details={**context, "rpc_error": error},
            )

        latency_ms = int((time.monotonic() - started) * 1000)
        health.latency_ms_total += latency_ms
        return RPCResponse(result=body.get("result"), latency_ms=latency_ms, endpoint_used=url)

    async def call(self, method: str, params: Optional[list] = None) -> RPCResponse:
        """
        JSON-RPC call with failover across rpc_urls.

        Raises:
            RPCError: No endpoint configured, or every endpoint failed
        """
        if not self.rpc_urls:
            raise RPCError("No RPC endpoints configured", details={"chain_id": self.chain_id})

        failure: Optional[InfraError] = None
        for url in self.rpc_urls:
            try:
                return await self.request_endpoint(url, method, params)
            except InfraError as e:
                failure = e
                logger.debug(
                    f"RPC endpoint failed, trying next: {e}",
                    extra={"context": {"url": url, "method": method, "error_code": e.code.value}},
                )

        raise RPCError(
            f"All RPC endpoints failed for {method} on chain {self.chain_id}",
            code=failure.code,
            details={
                "chain_id": self.chain_id,
                "method": method,
                "endpoints_tried": len(self.rpc_urls),
                "last_error": str(failure),
            },
        )

    async def _call_int(self, method: str, params: Optional[list] = None) -> int:
        return int((await self.call(method, params)).result, 16)

    # =========================================================================
    # STATE
    # =========================================================================

    async def get_chain_id(self) -> int:
        return await self._call_int("eth_chainId")

    async def eth_call(self, to: str, data: str, block: str = "latest") -> RPCResponse:
        return await self.call("eth_call", [{"to": to, "data": data}, block])

    async def estimate_gas(self, tx: dict) -> int:
        return await self._call_int("eth_estimateGas", [tx])

    async def get_balance(self, address: str) -> int:
        """Native balance in wei."""
        return await self._call_int("eth_getBalance", [address, "latest"])

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return await self._call_int("eth_getTransactionCount", [address, block])

    async def get_fee_data(self) -> FeeData:
        """
        eth_gasPrice plus priority fee and the latest base fee.

        Providers without eth_maxPriorityFeePerGas get a tip of a tenth
        of the gas price.
        """
        gas_price = await self._call_int("eth_gasPrice")
        try:
            tip = await self._call_int("eth_maxPriorityFeePerGas")
        except InfraError:
            tip = gas_price // 10

        latest = (await self.call("eth_getBlockByNumber", ["latest", False])).result or {}
        base_fee = int(latest["baseFeePerGas"], 16) if latest.get("baseFeePerGas") else None
        return FeeData(gas_price=gas_price, max_priority_fee=tip, base_fee=base_fee)

    async def get_txpool_content(self) -> dict:
        """txpool_content; most public endpoints answer INFRA_UNSUPPORTED."""
        return (await self.call("txpool_content")).result or {}

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    async def send_raw_transaction(self, raw_tx: str, url: Optional[str] = None) -> str:
        """
        Broadcast a signed transaction and return its hash.

        url pins the request to one endpoint (a private channel); without
        it the failover pool is used.
        """
        if url:
            response = await self.request_endpoint(url, "eth_sendRawTransaction", [raw_tx])
        else:
            response = await self.call("eth_sendRawTransaction", [raw_tx])
        return response.result

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        return (await self.call("eth_getTransactionReceipt", [tx_hash])).result

    async def wait_for_receipt(
        self,
        tx_hash: str,
        timeout_seconds: float = 120,
        poll_interval_seconds: float = 2.0,
    ) -> dict:
        """
        Poll until the receipt exists.

        Raises:
            RPCTimeoutError: Still no receipt after timeout_seconds
        """
        deadline = time.monotonic() + timeout_seconds
        while True:
            receipt = await self.get_transaction_receipt(tx_hash)
            if receipt:
                return receipt
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RPCTimeoutError(
                    f"No receipt for {tx_hash} after {timeout_seconds}s",
                    details={"tx_hash": tx_hash},
                )
            await asyncio.sleep(min(poll_interval_seconds, remaining))

    def get_stats_summary(self) -> dict:
        return {url: h.to_dict() for url, h in self.health.items()}
