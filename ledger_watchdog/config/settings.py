"""
Application settings and environment configuration.

Responsibilities:
- Load configuration from environment variables and .env files.
- Validate required settings and provide defaults for optional ones.
- Expose typed settings (Solana RPC URL, tracked mint, DB location, scan pacing,
  concurrency and retry knobs, API host/port) for the transport, ingestion
  engine, scheduler, and API server.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from solders.pubkey import Pubkey

from ledger_watchdog.config.env import (
    env_bool,
    env_float,
    env_int,
    env_str,
    get_solana_rpc_url,
    get_tracked_mint,
)
from ledger_watchdog.core.exceptions import ConfigError

DEFAULT_SOURCE = "rpc_polling"
DEFAULT_INTERVAL_SEC = 600.0
MIN_INTERVAL_SEC = 15.0
# Lookback is one interval plus a one-minute buffer
LOOKBACK_BUFFER_SEC = 60.0
DEFAULT_DB_PATH = "ledger_watchdog.db"
# Stay gentle on free public RPC
MAX_BLOCK_CONCURRENCY = 3
VALID_COMMITMENTS = ("processed", "confirmed", "finalized")


def validate_mint(mint: str) -> str:
    """Return mint if it parses as a base58 Solana public key; raise ConfigError otherwise."""
    mint = (mint or "").strip()
    if not mint:
        raise ConfigError("tracked mint must be non-empty")
    try:
        Pubkey.from_string(mint)
    except Exception as e:
        raise ConfigError(f"Invalid tracked mint {mint!r}: {e}") from e
    return mint


@dataclass(frozen=True)
class Settings:
    """Validated runtime configuration. Build with get_settings() or directly in tests."""

    rpc_url: str
    tracked_mint: str
    db_path: Path = Path(DEFAULT_DB_PATH)
    database_url: str | None = None
    ingestion_enabled: bool = True
    source: str = DEFAULT_SOURCE
    interval_sec: float = DEFAULT_INTERVAL_SEC
    lookback_sec: float = DEFAULT_INTERVAL_SEC + LOOKBACK_BUFFER_SEC
    rpc_timeout_sec: float = 30.0
    commitment: str = "confirmed"
    cycle_timeout_sec: float = 900.0
    block_concurrency: int = MAX_BLOCK_CONCURRENCY
    block_batch_delay_sec: float = 0.2
    block_max_retries: int = 2
    tx_batch_size: int = 10
    tx_batch_delay_sec: float = 0.05
    max_signatures_per_block: int = 100
    max_slots_per_cycle: int = 2000
    token_decimals: int = 6
    dedup_max_size: int = 50_000
    emit_all_matches: bool = False
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    def __post_init__(self) -> None:
        if not self.rpc_url.strip():
            raise ConfigError("rpc_url must be non-empty")
        validate_mint(self.tracked_mint)
        if not self.source.strip():
            raise ConfigError("source must be non-empty")
        if self.interval_sec < MIN_INTERVAL_SEC:
            raise ConfigError(f"interval_sec must be >= {MIN_INTERVAL_SEC}")
        if self.lookback_sec <= 0:
            raise ConfigError("lookback_sec must be positive")
        if self.commitment not in VALID_COMMITMENTS:
            raise ConfigError(f"commitment must be one of {VALID_COMMITMENTS}")
        if not (1 <= self.block_concurrency <= MAX_BLOCK_CONCURRENCY):
            raise ConfigError(f"block_concurrency must be between 1 and {MAX_BLOCK_CONCURRENCY}")
        if self.block_max_retries < 0:
            raise ConfigError("block_max_retries must be >= 0")
        if self.tx_batch_size < 1 or self.max_signatures_per_block < 1:
            raise ConfigError("tx_batch_size and max_signatures_per_block must be positive")
        if self.max_slots_per_cycle < 1:
            raise ConfigError("max_slots_per_cycle must be positive")
        if not (0 <= self.token_decimals <= 18):
            raise ConfigError("token_decimals must be between 0 and 18")
        if self.dedup_max_size < 1:
            raise ConfigError("dedup_max_size must be positive")


def get_settings() -> Settings:
    """
    Return the current application settings built from env (.env loaded first).

    Raises ConfigError for malformed values (non-numeric intervals, invalid mint, ...).
    """
    # INGESTION_INTERVAL_MS is accepted for older deployments
    default_interval = env_float("INGESTION_INTERVAL_MS", DEFAULT_INTERVAL_SEC * 1000) / 1000
    interval = max(MIN_INTERVAL_SEC, env_float("INGESTION_INTERVAL_SEC", default_interval))
    database_url = env_str("DATABASE_URL", "") or None
    return Settings(
        rpc_url=get_solana_rpc_url(),
        tracked_mint=get_tracked_mint(),
        db_path=Path(env_str("DB_PATH", DEFAULT_DB_PATH)),
        database_url=database_url,
        ingestion_enabled=env_bool("INGESTION_ENABLED", True),
        source=env_str("INGESTION_SOURCE", DEFAULT_SOURCE),
        interval_sec=interval,
        lookback_sec=env_float("INGESTION_LOOKBACK_SEC", interval + LOOKBACK_BUFFER_SEC),
        rpc_timeout_sec=env_float("RPC_TIMEOUT_SEC", 30.0),
        commitment=env_str("RPC_COMMITMENT", "confirmed").lower(),
        cycle_timeout_sec=env_float("CYCLE_TIMEOUT_SEC", 900.0),
        block_concurrency=max(1, min(MAX_BLOCK_CONCURRENCY, env_int("BLOCK_CONCURRENCY", MAX_BLOCK_CONCURRENCY))),
        block_batch_delay_sec=env_float("BLOCK_BATCH_DELAY_SEC", 0.2),
        block_max_retries=env_int("BLOCK_MAX_RETRIES", 2),
        tx_batch_size=env_int("TX_BATCH_SIZE", 10),
        tx_batch_delay_sec=env_float("TX_BATCH_DELAY_SEC", 0.05),
        max_signatures_per_block=env_int("MAX_SIGNATURES_PER_BLOCK", 100),
        max_slots_per_cycle=env_int("MAX_SLOTS_PER_CYCLE", 2000),
        token_decimals=env_int("TOKEN_DECIMALS", 6),
        dedup_max_size=env_int("DEDUP_MAX_SIZE", 50_000),
        emit_all_matches=env_bool("EMIT_ALL_MATCHES", False),
        api_host=env_str("API_HOST", "0.0.0.0"),
        api_port=env_int("API_PORT", 8000),
    )
