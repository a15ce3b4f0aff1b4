"""
Application-level exceptions.

RPC failures are classified by the transport so callers can pick a retry
policy per call site:

- TransientRpcError (RateLimitedError, TransportError): retry with backoff.
- OversizedResponseError: response truncated / unparseable; skip, never retry.
- RpcProtocolError: upstream returned a JSON-RPC error object; skip and log.
- NotFoundError: block or transaction absent (skipped slot, pruned history); skip silently.

IngestionError subclasses abort a whole scan cycle; the cursor is not advanced.
"""

from __future__ import annotations

from typing import Any


class RpcError(Exception):
    """Base class for all Solana JSON-RPC failures."""

    def __init__(self, message: str, *, method: str | None = None) -> None:
        super().__init__(message)
        self.method = method


class TransientRpcError(RpcError):
    """Failure that may succeed on a later attempt."""


class RateLimitedError(TransientRpcError):
    """Upstream returned HTTP 429 or an equivalent RPC error."""

    def __init__(
        self,
        message: str,
        *,
        method: str | None = None,
        retry_after_sec: float | None = None,
    ) -> None:
        super().__init__(message, method=method)
        self.retry_after_sec = retry_after_sec


class TransportError(TransientRpcError):
    """Network-level failure: connect error, timeout, or HTTP error without a JSON body."""

    def __init__(
        self,
        message: str,
        *,
        method: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, method=method)
        self.status_code = status_code


class OversizedResponseError(RpcError):
    """Response body could not be parsed as JSON (typically a truncated large block)."""


class RpcProtocolError(RpcError):
    """JSON-RPC envelope carried an error object."""

    def __init__(
        self,
        message: str,
        *,
        method: str | None = None,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message, method=method)
        self.code = code
        self.data = data


class NotFoundError(RpcError):
    """Requested block or transaction is not available (skipped slot, pruned ledger)."""

    def __init__(
        self,
        message: str,
        *,
        method: str | None = None,
        code: int | None = None,
    ) -> None:
        super().__init__(message, method=method)
        self.code = code


class IngestionError(Exception):
    """A scan cycle could not complete; the cursor stays where it was."""


class SlotWindowError(IngestionError):
    """No candidate slots could be located for the scan window."""


class ConfigError(ValueError):
    """Invalid or missing configuration value."""
