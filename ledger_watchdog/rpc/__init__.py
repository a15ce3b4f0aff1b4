"""
Solana JSON-RPC transport package.

SolanaRpcClient issues calls and classifies failures; RetryPolicy and
call_with_retry let each call site choose how to retry.
"""

from ledger_watchdog.rpc.client import SolanaRpcClient, classify_rpc_error
from ledger_watchdog.rpc.retry import NO_RETRY, RetryPolicy, call_with_retry

__all__ = [
    "NO_RETRY",
    "RetryPolicy",
    "SolanaRpcClient",
    "call_with_retry",
    "classify_rpc_error",
]
