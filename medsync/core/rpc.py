"""
Chain RPC Adapter

Wraps one JSON-RPC endpoint and exposes the three calls the synchronizer
needs:

- head_block()                       -> eth_blockNumber
- logs(address, topics, from, to)    -> eth_getLogs (inclusive range)
- tx_receipt(tx_hash)                -> eth_getTransactionReceipt

Failures are classified before they leave this module:

    TransientRpcError  timeouts, connection resets, HTTP 429 / 5xx,
                       JSON-RPC server errors (-32000..-32099)
    FatalRpcError      other HTTP 4xx, malformed request, unknown method,
                       invalid params, or transient retries exhausted

Transient failures are retried here with exponential backoff and full
jitter; callers only ever see FatalRpcError (or a successful result).

Range handling:
    A log query may be narrowed before it is sent (max_window) or after the
    node refuses it as too large (halving). Either way the LogBatch carries
    the effective upper bound so the caller continues from there.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import httpx

from ..errors import FatalRpcError, RateLimitedError, RpcError, TransientRpcError
from ..observability import SyncMetrics, get_logger
from ..schemas import LogBatch, RawLog, Receipt

logger = get_logger(__name__)


# JSON-RPC error codes that will never succeed on retry
FATAL_RPC_CODES = frozenset((
    -32700,  # parse error
    -32600,  # invalid request
    -32601,  # method not found
    -32602,  # invalid params
))

# Node messages meaning "ask for fewer blocks"
_RANGE_TOO_LARGE_HINTS = (
    "query returned more than",
    "block range",
    "range too large",
    "too many results",
    "response size exceeded",
    "exceed maximum block range",
)


class RpcClient(Protocol):
    """Port defining the contract for a chain JSON-RPC client."""

    async def head_block(self) -> int:
        """Return the latest block number."""

    async def logs(
        self,
        address: str,
        topics: Sequence[str],
        from_block: int,
        to_block: int,
    ) -> LogBatch:
        """Return logs for [from_block, batch.to_block] ordered by (block, log_index)."""

    async def tx_receipt(self, tx_hash: str) -> Optional[Receipt]:
        """Return the receipt, or None if the node does not know the transaction."""

    async def close(self) -> None:
        """Release network resources."""


# ============================================================
# RETRY POLICY
# ============================================================

@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with full jitter."""
    max_attempts: int = 6
    base_ms: int = 500
    cap_ms: int = 30000

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_attempts=config.rpc_max_attempts,
            base_ms=config.backoff_base_ms,
            cap_ms=config.backoff_cap_ms,
        )

    def ceiling(self, attempt: int) -> float:
        """Upper bound (seconds) of the wait after the given 0-based attempt."""
        return min(self.cap_ms, self.base_ms * (2 ** attempt)) / 1000

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Seconds to wait after the given 0-based attempt."""
        return (rng or random).uniform(0, self.ceiling(attempt))


class _RangeTooLarge(RpcError):
    """The node refused a log query because the range was too wide."""
    pass


def _to_hex_block(n: int) -> str:
    return hex(int(n))


def _hex_to_int(value) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


# ============================================================
# HTTPX IMPLEMENTATION
# ============================================================

class HttpxRpcClient:
    """
    JSON-RPC client over httpx.AsyncClient.

    Usage:
        rpc = HttpxRpcClient.from_config(config, metrics=metrics)
        head = await rpc.head_block()
        batch = await rpc.logs(address, topics, 101, 150)
        await rpc.close()
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout_s: float = 20.0,
        max_window: Optional[int] = None,
        retry: Optional[RetryPolicy] = None,
        metrics: Optional[SyncMetrics] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            rpc_url: JSON-RPC endpoint
            timeout_s: per-call timeout
            max_window: cap on blocks per eth_getLogs call (None = no cap)
            retry: backoff policy for transient failures
            metrics: counts retries when given
            client: pre-built httpx client (tests inject a MockTransport here)
            sleep: awaitable used for backoff waits
        """
        self.rpc_url = rpc_url
        self.max_window = max_window
        self.retry = retry or RetryPolicy()
        self.metrics = metrics
        self._sleep = sleep
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=8, max_keepalive_connections=4),
        )
        self._request_id = 0

    @classmethod
    def from_config(cls, config, metrics: Optional[SyncMetrics] = None) -> "HttpxRpcClient":
        return cls(
            config.rpc_url,
            timeout_s=config.rpc_call_timeout,
            max_window=config.max_window_blocks,
            retry=RetryPolicy.from_config(config),
            metrics=metrics,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # ------------------------------------------------------------------
    # Public calls
    # ------------------------------------------------------------------

    async def head_block(self) -> int:
        result = await self._call("eth_blockNumber", [])
        return _hex_to_int(result)

    async def logs(
        self,
        address: str,
        topics: Sequence[str],
        from_block: int,
        to_block: int,
    ) -> LogBatch:
        if from_block > to_block:
            raise FatalRpcError(
                f"Invalid log range: from_block={from_block} > to_block={to_block}",
                method="eth_getLogs",
            )

        effective_to = to_block
        if self.max_window is not None:
            effective_to = min(effective_to, from_block + self.max_window - 1)

        while True:
            params = [{
                "address": address,
                "fromBlock": _to_hex_block(from_block),
                "toBlock": _to_hex_block(effective_to),
                "topics": [[t.lower() for t in topics]] if topics else [],
            }]
            try:
                result = await self._call("eth_getLogs", params)
                break
            except _RangeTooLarge as e:
                if effective_to == from_block:
                    raise FatalRpcError(
                        f"Node refuses a single-block log query at {from_block}: {e}",
                        code=e.code,
                        method="eth_getLogs",
                    ) from e
                effective_to = from_block + (effective_to - from_block) // 2
                logger.info(
                    "Log range too large, narrowing",
                    from_block=from_block,
                    to_block=effective_to,
                )

        logs = [log for log in (self._parse_log(raw) for raw in result or []) if log is not None]
        logs.sort(key=lambda log: (log.block_number, log.log_index))
        return LogBatch(from_block=from_block, to_block=effective_to, logs=logs)

    async def tx_receipt(self, tx_hash: str) -> Optional[Receipt]:
        result = await self._call("eth_getTransactionReceipt", [tx_hash])
        if result is None:
            return None
        return Receipt(
            tx_hash=result["transactionHash"].lower(),
            block_number=_hex_to_int(result["blockNumber"]),
            block_hash=result.get("blockHash"),
            status=_hex_to_int(result.get("status", "0x1")),
            log_count=len(result.get("logs") or []),
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(self, method: str, params: list) -> Any:
        """Send one JSON-RPC call, retrying transient failures."""
        attempts = self.retry.max_attempts
        for attempt in range(attempts):
            try:
                return await self._call_once(method, params)
            except TransientRpcError as e:
                if attempt + 1 >= attempts:
                    raise FatalRpcError(
                        f"{method} failed after {attempts} attempts: {e}",
                        code=e.code,
                        method=method,
                    ) from e

                wait = self.retry.delay(attempt)
                if isinstance(e, RateLimitedError) and e.retry_after is not None:
                    wait = max(wait, min(e.retry_after, self.retry.cap_ms / 1000))

                if self.metrics is not None:
                    self.metrics.rpc_retries += 1
                logger.warning(
                    "Transient RPC failure, retrying",
                    method=method,
                    attempt=attempt + 1,
                    wait_s=round(wait, 3),
                    error=str(e),
                )
                await self._sleep(wait)
        raise FatalRpcError(f"{method}: no attempts configured", method=method)

    async def _call_once(self, method: str, params: list) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        try:
            r = await self.client.post(self.rpc_url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientRpcError(f"Timeout: {e!r}", method=method) from e
        except httpx.TransportError as e:
            raise TransientRpcError(f"Transport error: {e!r}", method=method) from e

        if r.status_code == 429:
            ra = r.headers.get("Retry-After")
            retry_after = float(ra) if ra and ra.isdigit() else None
            raise RateLimitedError("Rate limited (HTTP 429)", retry_after=retry_after, method=method)
        if r.status_code >= 500:
            raise TransientRpcError(f"HTTP {r.status_code}", code=r.status_code, method=method)
        if r.status_code >= 400:
            raise FatalRpcError(f"HTTP {r.status_code}", code=r.status_code, method=method)

        try:
            data = r.json()
        except ValueError as e:
            raise TransientRpcError(f"Malformed JSON response: {e}", method=method) from e

        if not isinstance(data, dict):
            raise TransientRpcError(f"Unexpected response shape: {type(data).__name__}", method=method)

        if data.get("error") is not None:
            self._raise_rpc_error(method, data["error"])

        return data.get("result")

    @staticmethod
    def _raise_rpc_error(method: str, err) -> None:
        if isinstance(err, dict):
            code = err.get("code")
            msg = str(err.get("message", ""))
        else:
            code, msg = None, str(err)

        if method == "eth_getLogs" and any(hint in msg.lower() for hint in _RANGE_TOO_LARGE_HINTS):
            raise _RangeTooLarge(msg, code=code, method=method)
        if code in FATAL_RPC_CODES:
            raise FatalRpcError(f"RPC error code={code} message={msg}", code=code, method=method)
        if isinstance(code, int) and -32099 <= code <= -32000:
            raise TransientRpcError(f"RPC error code={code} message={msg}", code=code, method=method)
        raise FatalRpcError(f"RPC error code={code} message={msg}", code=code, method=method)

    @staticmethod
    def _parse_log(raw: dict) -> Optional[RawLog]:
        if raw.get("removed"):
            # Dropped by a reorg; the canonical replacement arrives separately
            return None
        if raw.get("blockNumber") is None or raw.get("logIndex") is None:
            # Pending log
            return None
        return RawLog(
            address=raw["address"].lower(),
            topics=tuple(t.lower() for t in raw.get("topics") or ()),
            data=raw.get("data") or "0x",
            block_number=_hex_to_int(raw["blockNumber"]),
            log_index=_hex_to_int(raw["logIndex"]),
            tx_hash=raw["transactionHash"].lower(),
            block_hash=raw.get("blockHash"),
        )
