"""
Pytest fixtures for Ledger Watchdog tests: fake chain over httpx.MockTransport,
temporary SQLite database, recorded sleeps, and a wired IngestionEngine.
"""

from __future__ import annotations

import pytest

from fakes import RPC_URL, USDT_MINT, FakeChain, RecordingSleep


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep developer env (.env, DATABASE_URL, RPC keys) out of tests."""
    for name in ("DATABASE_URL", "SOLANA_RPC_URL", "HELIUS_API_KEY", "TRACKED_MINT", "USDT_MINT", "SOLANA_NETWORK"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def chain():
    return FakeChain(head=0, now=1_700_000_000)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def rpc(chain):
    from ledger_watchdog.rpc import SolanaRpcClient

    return SolanaRpcClient(RPC_URL, timeout_sec=5.0, transport=chain.transport())


@pytest.fixture
def db(tmp_path):
    from ledger_watchdog.database import get_database

    return get_database(tmp_path / "watchdog.db")


@pytest.fixture
def settings(tmp_path):
    from ledger_watchdog.config import Settings

    return Settings(
        rpc_url=RPC_URL,
        tracked_mint=USDT_MINT,
        db_path=tmp_path / "watchdog.db",
        ingestion_enabled=False,
        interval_sec=15.0,
        lookback_sec=600.0,
        block_batch_delay_sec=0.2,
        tx_batch_delay_sec=0.05,
    )


@pytest.fixture
def engine(settings, rpc, db, chain, sleep):
    """IngestionEngine over the fake chain; clock reads chain.now."""
    from ledger_watchdog.ingestion import build_engine

    return build_engine(settings, rpc=rpc, db=db, sleep=sleep, clock=lambda: chain.now)
