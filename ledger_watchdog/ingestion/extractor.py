"""
Event extractor: parsed transactions -> TransferEvent for the tracked mint.

parse_transfers() is pure and works on one jsonParsed getTransaction result.
TransferExtractor wraps it with batched transaction fetches for a SlotBlock
and isolates failures per transaction.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Iterator

from ledger_watchdog.core.exceptions import NotFoundError, RpcError
from ledger_watchdog.ingestion.models import (
    KIND_TRANSFER,
    KIND_TRANSFER_CHECKED,
    SlotBlock,
    TransferEvent,
)
from ledger_watchdog.ingestion.pool import map_bounded
from ledger_watchdog.logging import get_logger
from ledger_watchdog.rpc.client import SolanaRpcClient
from ledger_watchdog.rpc.retry import NO_RETRY, RetryPolicy, call_with_retry

logger = get_logger(__name__)

TOKEN_PROGRAMS = frozenset({"spl-token", "spl-token-2022"})
TOKEN_PROGRAM_IDS = frozenset(
    {
        "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA",
        "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb",
    }
)
DEFAULT_DECIMALS = 6
DEFAULT_MAX_SIGNATURES = 100
DEFAULT_TX_BATCH_SIZE = 10
DEFAULT_TX_BATCH_DELAY_SEC = 0.05


def _iter_instructions(tx: dict[str, Any]) -> Iterator[tuple[str, dict[str, Any]]]:
    """Yield (instruction_index, instruction): top-level "i", then inner "i.j"."""
    message = (tx.get("transaction") or {}).get("message") or {}
    for i, ins in enumerate(message.get("instructions") or []):
        if isinstance(ins, dict):
            yield str(i), ins
    meta = tx.get("meta") or {}
    for group in meta.get("innerInstructions") or []:
        if not isinstance(group, dict):
            continue
        parent = group.get("index", 0)
        for j, ins in enumerate(group.get("instructions") or []):
            if isinstance(ins, dict):
                yield f"{parent}.{j}", ins


def _is_token_program(ins: dict[str, Any]) -> bool:
    return ins.get("program") in TOKEN_PROGRAMS or ins.get("programId") in TOKEN_PROGRAM_IDS


def _touches_mint(meta: dict[str, Any], mint: str) -> bool:
    for key in ("preTokenBalances", "postTokenBalances"):
        for bal in meta.get(key) or []:
            if isinstance(bal, dict) and bal.get("mint") == mint:
                return True
    return False


def _to_decimal(raw: str, decimals: int) -> Decimal | None:
    try:
        value = Decimal(raw)
    except (InvalidOperation, TypeError, ValueError):
        return None
    if value != value.to_integral_value() or value < 0:
        return None
    return value / (Decimal(10) ** decimals)


def parse_transfers(
    tx: dict[str, Any] | None,
    mint: str,
    *,
    signature: str | None = None,
    slot: int | None = None,
    block_time: int | None = None,
    default_decimals: int = DEFAULT_DECIMALS,
    emit_all: bool = False,
) -> list[TransferEvent]:
    """
    Extract transfers of `mint` from one jsonParsed transaction.

    Qualifying instructions (spl-token / spl-token-2022):
    - transferChecked with info.mint == mint;
    - untyped transfer with an amount, when pre/post token balances show the mint.

    Returns the first match only unless emit_all is set, in which case every
    match is returned keyed "signature#instruction_index".
    """
    if not tx:
        return []
    meta = tx.get("meta") or {}
    if signature is None:
        sigs = (tx.get("transaction") or {}).get("signatures") or []
        signature = sigs[0] if sigs else None
    if not signature:
        return []
    if slot is None:
        slot = int(tx.get("slot") or 0)
    if block_time is None:
        block_time = tx.get("blockTime")

    touched: bool | None = None
    events: list[TransferEvent] = []
    for index, ins in _iter_instructions(tx):
        parsed = ins.get("parsed")
        if not isinstance(parsed, dict) or not _is_token_program(ins):
            continue
        kind = parsed.get("type")
        info = parsed.get("info") or {}

        if kind == KIND_TRANSFER_CHECKED and info.get("mint") == mint:
            token_amount = info.get("tokenAmount") or {}
            raw = str(token_amount.get("amount") or info.get("amount") or "0")
            decimals = token_amount.get("decimals")
            decimals = default_decimals if decimals is None else int(decimals)
        elif kind == KIND_TRANSFER and info.get("amount"):
            if touched is None:
                touched = _touches_mint(meta, mint)
            if not touched:
                continue
            raw = str(info.get("amount"))
            decimals = default_decimals
        else:
            continue

        amount = _to_decimal(raw, decimals)
        if amount is None:
            logger.debug("transfer_amount_unparseable", signature=signature, raw_amount=raw)
            continue
        events.append(
            TransferEvent(
                signature=signature,
                slot=slot,
                block_time=block_time,
                source=info.get("source"),
                destination=info.get("destination"),
                raw_amount=raw,
                decimal_amount=amount,
                decimals=decimals,
                instruction_kind=kind,
                instruction_index=index,
                record_key=f"{signature}#{index}" if emit_all else signature,
            )
        )
        if not emit_all:
            break
    return events


@dataclass
class ExtractStats:
    fetched: int = 0
    failed: int = 0
    missing: int = 0
    events: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "fetched": self.fetched,
            "failed": self.failed,
            "missing": self.missing,
            "events": self.events,
        }


class TransferExtractor:
    """Fetches transactions for blocks and extracts tracked-mint transfers."""

    def __init__(
        self,
        rpc: SolanaRpcClient,
        mint: str,
        *,
        decimals: int = DEFAULT_DECIMALS,
        max_signatures_per_block: int = DEFAULT_MAX_SIGNATURES,
        batch_size: int = DEFAULT_TX_BATCH_SIZE,
        batch_delay_sec: float = DEFAULT_TX_BATCH_DELAY_SEC,
        emit_all_matches: bool = False,
        retry_policy: RetryPolicy = NO_RETRY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._rpc = rpc
        self._mint = mint
        self._decimals = decimals
        self._max_signatures = max_signatures_per_block
        self._batch_size = batch_size
        self._batch_delay_sec = batch_delay_sec
        self._emit_all = emit_all_matches
        self._policy = retry_policy
        self._sleep = sleep
        self.stats = ExtractStats()

    def reset_stats(self) -> None:
        self.stats = ExtractStats()

    async def _fetch(self, signature: str) -> dict[str, Any] | None:
        try:
            tx, _ = await call_with_retry(
                lambda: self._rpc.get_transaction(signature), self._policy, sleep=self._sleep
            )
        except NotFoundError:
            self.stats.missing += 1
            return None
        except RpcError as e:
            self.stats.failed += 1
            logger.debug("transaction_fetch_failed", signature=signature, error=str(e))
            return None
        if tx is None:
            self.stats.missing += 1
            return None
        self.stats.fetched += 1
        return tx

    async def _extract_one(self, signature: str, slot: int, block_time: int | None) -> list[TransferEvent]:
        tx = await self._fetch(signature)
        if tx is None:
            return []
        try:
            events = parse_transfers(
                tx,
                self._mint,
                signature=signature,
                slot=slot,
                block_time=block_time if block_time is not None else tx.get("blockTime"),
                default_decimals=self._decimals,
                emit_all=self._emit_all,
            )
        except (TypeError, ValueError, AttributeError) as e:
            self.stats.failed += 1
            logger.warning("transaction_parse_failed", signature=signature, slot=slot, error=str(e))
            return []
        self.stats.events += len(events)
        return events

    async def extract_block(self, block: SlotBlock) -> list[TransferEvent]:
        """Events for the first max_signatures_per_block signatures of a block, in order."""
        signatures = list(block.signatures[: self._max_signatures])
        results = await map_bounded(
            signatures,
            self._batch_size,
            lambda sig: self._extract_one(sig, block.slot, block.block_time),
            batch_delay_sec=self._batch_delay_sec,
            sleep=self._sleep,
        )
        return [event for found in results for event in found]

    async def extract_signature(self, signature: str) -> list[TransferEvent]:
        """Events for one signature; slot and block time come from the transaction itself."""
        tx = await self._fetch(signature)
        if tx is None:
            return []
        events = parse_transfers(
            tx,
            self._mint,
            signature=signature,
            default_decimals=self._decimals,
            emit_all=self._emit_all,
        )
        self.stats.events += len(events)
        return events
