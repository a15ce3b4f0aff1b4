"""
Environment variable loading and validation for Ledger Watchdog.

- SOLANA_NETWORK: devnet | mainnet (default: mainnet)
- SOLANA_RPC_URL: RPC endpoint (read from .env)
- HELIUS_API_KEY: Helius API key (fallback for RPC URL when SOLANA_RPC_URL is unset)
- USDT_MINT / TRACKED_MINT: SPL token mint whose transfers are ingested
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

from ledger_watchdog.core.exceptions import ConfigError

# Project root: config is ledger_watchdog/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_PACKAGE_DIR = _CONFIG_DIR.parent
_ROOT = _PACKAGE_DIR.parent
_ENV_PATH = _ROOT / ".env"

# Tether USD on Solana (EPjF... is USDC, not USDT)
DEFAULT_USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"

DEVNET_RPC_URL = "https://api.devnet.solana.com"
MAINNET_RPC_URL = "https://api.mainnet-beta.solana.com"
HELIUS_MAINNET_URL_TEMPLATE = "https://mainnet.helius-rpc.com/?api-key={key}"
HELIUS_DEVNET_URL_TEMPLATE = "https://devnet.helius-rpc.com/?api-key={key}"

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


def load_watchdog_env() -> None:
    """Load .env from project root. Safe to call multiple times; never overrides real env vars."""
    load_dotenv(_ENV_PATH, override=False)


def get_solana_network() -> str:
    """
    Return SOLANA_NETWORK from env: devnet | mainnet.
    Default: mainnet (the tracked asset lives on mainnet).
    """
    load_watchdog_env()
    raw = (os.getenv("SOLANA_NETWORK") or os.getenv("SOLANA_CLUSTER") or "mainnet").strip().lower()
    if raw == "devnet":
        return "devnet"
    if raw in ("mainnet", "mainnet-beta"):
        return "mainnet"
    raise ConfigError(f"SOLANA_NETWORK must be devnet or mainnet, got {raw!r}")


def get_solana_rpc_url() -> str:
    """
    Resolve Solana RPC URL from env.
    Order: SOLANA_RPC_URL > HELIUS_API_KEY (network-specific) > devnet/mainnet default.
    """
    load_watchdog_env()
    url = (os.getenv("SOLANA_RPC_URL") or "").strip()
    if url:
        return url
    key = (os.getenv("HELIUS_API_KEY") or "").strip()
    network = get_solana_network()
    if key:
        if network == "devnet":
            return HELIUS_DEVNET_URL_TEMPLATE.format(key=key)
        return HELIUS_MAINNET_URL_TEMPLATE.format(key=key)
    return DEVNET_RPC_URL if network == "devnet" else MAINNET_RPC_URL


def get_tracked_mint() -> str:
    """Return the tracked SPL token mint (USDT_MINT, TRACKED_MINT, or the USDT default)."""
    load_watchdog_env()
    return (
        (os.getenv("TRACKED_MINT") or "").strip()
        or (os.getenv("USDT_MINT") or "").strip()
        or DEFAULT_USDT_MINT
    )


def redact_rpc_url(url: str) -> str:
    """Mask API key in URL if present; safe to log."""
    if "api-key=" in url:
        return url.split("api-key=")[0] + "api-key=***"
    return url


def env_str(name: str, default: str) -> str:
    load_watchdog_env()
    return (os.getenv(name) or "").strip() or default


def env_int(name: str, default: int) -> int:
    raw = env_str(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def env_float(name: str, default: float) -> float:
    raw = env_str(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


def env_bool(name: str, default: bool) -> bool:
    raw = env_str(name, "").lower()
    if not raw:
        return default
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")
