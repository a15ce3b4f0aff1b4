"""
Core utilities: error taxonomy and cross-cutting concerns shared by the
RPC transport, ingestion engine, storage layer, and scheduler.
"""

from ledger_watchdog.core.exceptions import (
    ConfigError,
    IngestionError,
    NotFoundError,
    OversizedResponseError,
    RateLimitedError,
    RpcError,
    RpcProtocolError,
    SlotWindowError,
    TransientRpcError,
    TransportError,
)

__all__ = [
    "ConfigError",
    "IngestionError",
    "NotFoundError",
    "OversizedResponseError",
    "RateLimitedError",
    "RpcError",
    "RpcProtocolError",
    "SlotWindowError",
    "TransientRpcError",
    "TransportError",
]
