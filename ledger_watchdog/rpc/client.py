"""
Solana JSON-RPC transport over httpx.

Responsibilities:
- POST JSON-RPC 2.0 requests to one RPC endpoint with a per-call timeout.
- Classify every failure into the taxonomy in core.exceptions
  (rate limited, transport, oversized, protocol, not found).
- Provide typed helpers for the methods the ingestion engine consumes.

No retries happen here; callers pick a RetryPolicy per call site.
"""

from __future__ import annotations

import itertools
import json
from typing import Any

import httpx

from ledger_watchdog.core.exceptions import (
    NotFoundError,
    OversizedResponseError,
    RateLimitedError,
    RpcProtocolError,
    TransportError,
)


JSONRPC_HEADERS = {"content-type": "application/json"}

# Solana RPC error codes for blocks/transactions that do not exist or were pruned
BLOCK_NOT_AVAILABLE = -32004
SLOT_SKIPPED = -32007
LONG_TERM_STORAGE_SLOT_SKIPPED = -32009
TRANSACTION_HISTORY_NOT_AVAILABLE = -32011
NOT_FOUND_CODES = frozenset(
    {
        BLOCK_NOT_AVAILABLE,
        SLOT_SKIPPED,
        LONG_TERM_STORAGE_SLOT_SKIPPED,
        TRANSACTION_HISTORY_NOT_AVAILABLE,
    }
)
RATE_LIMIT_CODES = frozenset({429, -32429})
_RATE_LIMIT_MARKERS = ("rate limit", "too many requests")


def _retry_after(resp: httpx.Response) -> float | None:
    raw = resp.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def classify_rpc_error(method: str, err: Any) -> Exception:
    """Map a JSON-RPC error object to the matching exception (returned, not raised)."""
    if not isinstance(err, dict):
        return RpcProtocolError(f"{method} RPC error: {err}", method=method)
    code = err.get("code")
    message = str(err.get("message", err))
    text = f"{method} RPC error {code}: {message}"
    if code in RATE_LIMIT_CODES or any(m in message.lower() for m in _RATE_LIMIT_MARKERS):
        return RateLimitedError(text, method=method)
    if code in NOT_FOUND_CODES:
        return NotFoundError(text, method=method, code=code)
    return RpcProtocolError(text, method=method, code=code, data=err.get("data"))


class SolanaRpcClient:
    """
    Async Solana JSON-RPC client.

    Usage:
        async with SolanaRpcClient(rpc_url, timeout_sec=30.0) as rpc:
            head = await rpc.get_slot()

    `transport` is forwarded to httpx.AsyncClient (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout_sec: float = 30.0,
        commitment: str = "confirmed",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not rpc_url.strip():
            raise ValueError("rpc_url must be non-empty")
        if timeout_sec <= 0:
            raise ValueError("timeout_sec must be positive")
        self._rpc_url = rpc_url.strip()
        self._timeout_sec = timeout_sec
        self._commitment = commitment
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._ids = itertools.count(1)

    @property
    def commitment(self) -> str:
        return self._commitment

    async def __aenter__(self) -> "SolanaRpcClient":
        self._ensure_client()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout_sec),
                headers=JSONRPC_HEADERS,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _build_body(self, method: str, params: list[Any]) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        """
        Perform one JSON-RPC call and return its `result`.

        Raises RateLimitedError, TransportError, OversizedResponseError,
        NotFoundError or RpcProtocolError; never retries.
        """
        client = self._ensure_client()
        body = self._build_body(method, params or [])
        try:
            resp = await client.post(self._rpc_url, json=body)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} timed out: {e}", method=method) from e
        except httpx.TransportError as e:
            raise TransportError(f"{method} transport failure: {e}", method=method) from e

        if resp.status_code == 429:
            raise RateLimitedError(
                f"{method} rate limited (HTTP 429)",
                method=method,
                retry_after_sec=_retry_after(resp),
            )
        try:
            data = json.loads(resp.content)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            if resp.status_code >= 400:
                raise TransportError(
                    f"{method} HTTP {resp.status_code}: {resp.text[:200]}",
                    method=method,
                    status_code=resp.status_code,
                ) from e
            raise OversizedResponseError(
                f"{method} failed: response too large or corrupted JSON - {e}",
                method=method,
            ) from e

        if not isinstance(data, dict):
            raise RpcProtocolError(f"{method} returned a non-object envelope", method=method)
        if data.get("error") is not None:
            raise classify_rpc_error(method, data["error"])
        if resp.status_code >= 400:
            raise TransportError(
                f"{method} HTTP {resp.status_code}",
                method=method,
                status_code=resp.status_code,
            )
        return data.get("result")

    # --- typed helpers ---

    async def get_slot(self) -> int:
        """Current chain head slot at the configured commitment."""
        result = await self.call("getSlot", [{"commitment": self._commitment}])
        if not isinstance(result, int):
            raise RpcProtocolError(f"getSlot returned {result!r}", method="getSlot")
        return result

    async def get_block_time(self, slot: int) -> int | None:
        """Unix block time for slot, or None when the node has no time for it."""
        result = await self.call("getBlockTime", [slot])
        return int(result) if result is not None else None

    async def get_blocks(self, start_slot: int, end_slot: int) -> list[int]:
        """Produced (non-skipped) slots in [start_slot, end_slot]."""
        result = await self.call(
            "getBlocks", [start_slot, end_slot, {"commitment": self._commitment}]
        )
        if not isinstance(result, list):
            raise RpcProtocolError(f"getBlocks returned {type(result).__name__}", method="getBlocks")
        return [int(s) for s in result]

    async def get_block_signatures(self, slot: int) -> dict[str, Any]:
        """
        Block with signatures only (no transaction bodies) to bound response size.
        Returns the raw block object: blockTime, blockhash, signatures, ...
        """
        result = await self.call(
            "getBlock",
            [
                slot,
                {
                    "encoding": "json",
                    "transactionDetails": "signatures",
                    "rewards": False,
                    "maxSupportedTransactionVersion": 0,
                    "commitment": self._commitment,
                },
            ],
        )
        if result is None:
            raise NotFoundError(f"getBlock returned no block for slot {slot}", method="getBlock")
        return result

    async def get_transaction(self, signature: str) -> dict[str, Any] | None:
        """Parsed transaction (jsonParsed) with meta and inner instructions; None if unknown."""
        return await self.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": self._commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
