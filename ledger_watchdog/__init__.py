"""
Ledger Watchdog: Solana token transfer ingestion core.

Runs 24/7 to scan recent Solana slots for transfers of one tracked SPL token,
normalize them into flat records, and upsert them idempotently while keeping
a resumable per-source cursor. Modular architecture with clear separation
between RPC transport, ingestion engine, storage, scheduler, and API server.
"""

__version__ = "0.1.0"
