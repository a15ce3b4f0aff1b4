"""
Ingestion engine: one scan cycle, the live recent-transfers query, and
single-signature lookup.

A cycle runs: cursor -> head slot -> window start (slot locator only when the
cursor is missing or older than the lookback bound) -> candidate slots ->
block scan -> extraction -> dedup -> sink -> cursor advance. The cursor moves
only after the window's records are written; a crash in between means the
window is re-scanned and re-upserted, which is harmless.
"""

from __future__ import annotations

import asyncio
import functools
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable

from ledger_watchdog.config.settings import Settings
from ledger_watchdog.database import Database, TransferRecord, get_database
from ledger_watchdog.ingestion.block_scanner import BlockScanner
from ledger_watchdog.ingestion.dedup import DedupGuard
from ledger_watchdog.ingestion.extractor import TransferExtractor
from ledger_watchdog.ingestion.models import TransferEvent
from ledger_watchdog.ingestion.slot_locator import SlotLocator
from ledger_watchdog.logging import bind_source, get_logger
from ledger_watchdog.rpc.client import SolanaRpcClient

logger = get_logger(__name__)

STATUS_COMPLETED = "completed"
STATUS_CAUGHT_UP = "caught_up"
STATUS_SKIPPED = "skipped"

# Approximate Solana slot time
SLOT_DURATION_SEC = 0.4
LIVE_MAX_SLOTS = 100
LIVE_TAIL_SLOTS = 10


@dataclass
class CycleResult:
    """Outcome of one run_cycle()."""

    status: str
    head_slot: int | None = None
    window_start: int | None = None
    window_end: int | None = None
    slots_scanned: int = 0
    blocks_fetched: int = 0
    events: int = 0
    duplicates: int = 0
    records_written: int = 0
    truncated: bool = False
    duration_sec: float = 0.0
    scan: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "head_slot": self.head_slot,
            "window_start": self.window_start,
            "window_end": self.window_end,
            "slots_scanned": self.slots_scanned,
            "blocks_fetched": self.blocks_fetched,
            "events": self.events,
            "duplicates": self.duplicates,
            "records_written": self.records_written,
            "truncated": self.truncated,
            "duration_sec": round(self.duration_sec, 3),
            "scan": dict(self.scan),
        }


def event_to_record(event: TransferEvent, mint: str) -> TransferRecord | None:
    """Sink record for an event, or None when it lacks block time, endpoints, or a non-zero amount."""
    if event.block_time is None or not event.source or not event.destination:
        return None
    if event.decimal_amount == Decimal(0):
        return None
    return TransferRecord(
        signature=event.record_key,
        timestamp=int(event.block_time),
        slot=event.slot,
        source=event.source,
        destination=event.destination,
        amount=event.decimal_amount,
        raw_amount=event.raw_amount,
        mint=mint,
    )


class IngestionEngine:
    """Owns the RPC client, database, scanner, extractor and dedup guard for one source."""

    def __init__(
        self,
        rpc: SolanaRpcClient,
        db: Database,
        *,
        mint: str,
        scanner: BlockScanner,
        extractor: TransferExtractor,
        source: str = "rpc_polling",
        lookback_sec: float = 660.0,
        max_slots_per_cycle: int = 2000,
        dedup: DedupGuard | None = None,
        live_scanner: BlockScanner | None = None,
        live_extractor: TransferExtractor | None = None,
        live_max_slots: int = LIVE_MAX_SLOTS,
        live_tail_slots: int = LIVE_TAIL_SLOTS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_slots_per_cycle < 1:
            raise ValueError("max_slots_per_cycle must be >= 1")
        self.rpc = rpc
        self.db = db
        self.mint = mint
        self.source = source
        self.scanner = scanner
        self.extractor = extractor
        self.dedup = dedup if dedup is not None else DedupGuard()
        self._lookback_sec = lookback_sec
        self._max_slots = max_slots_per_cycle
        self._live_scanner = live_scanner or scanner
        self._live_extractor = live_extractor or extractor
        self._live_max_slots = live_max_slots
        self._live_tail_slots = live_tail_slots
        self._clock = clock
        self._sleep = sleep
        self._log = bind_source(source)

    async def aclose(self) -> None:
        await self.rpc.aclose()

    async def _db_call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        # sqlite3 and SQLAlchemy sessions block; keep them off the event loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def get_stored_transfer(self, signature: str) -> TransferRecord | None:
        """Stored record for a signature; per-instruction records match their base signature."""
        records = await self._db_call(self.db.get_transfers_for_signature, signature)
        return records[0] if records else None

    async def _window_start(self, last_slot: int | None, head: int, since: int) -> int:
        locator = SlotLocator(self.rpc, sleep=self._sleep)
        if last_slot is not None:
            cursor_time = await locator.block_time(last_slot)
            if cursor_time is not None and cursor_time >= since:
                return last_slot + 1
        floor = await locator.find(since, head)
        self._log.info(
            "window_floor_located",
            since=since,
            floor_slot=floor,
            cursor_slot=last_slot,
            probes=locator.probes,
        )
        if last_slot is None:
            return floor
        return max(last_slot + 1, floor)

    async def run_cycle(self) -> CycleResult:
        """
        One scan cycle. Raises on head-slot, candidate-slot, or sink/cursor
        failures; the cursor is untouched in every failure path.
        """
        started = time.monotonic()
        cursor = await self._db_call(self.db.get_cursor, self.source)
        if cursor is not None and not cursor.active:
            self._log.info("ingestion_source_inactive")
            return CycleResult(status=STATUS_SKIPPED)

        head = await self.rpc.get_slot()
        since = int(self._clock() - self._lookback_sec)
        last_slot = cursor.last_slot if cursor is not None and cursor.last_slot > 0 else None
        start = await self._window_start(last_slot, head, since)

        if start > head:
            await self._db_call(self.db.touch_cursor, self.source)
            self._log.info("ingestion_caught_up", head_slot=head, cursor_slot=last_slot)
            return CycleResult(
                status=STATUS_CAUGHT_UP,
                head_slot=head,
                window_start=start,
                duration_sec=time.monotonic() - started,
            )

        slots = await self.scanner.candidate_slots(start, head)
        truncated = len(slots) > self._max_slots
        if truncated:
            slots = slots[: self._max_slots]
        window_end = slots[-1] if truncated else head
        self._log.info(
            "window_scan_start",
            window_start=start,
            window_end=window_end,
            head_slot=head,
            candidate_slots=len(slots),
            truncated=truncated,
        )

        blocks = await self.scanner.scan(slots)
        scan_stats = self.scanner.stats.to_dict()
        self.extractor.reset_stats()
        events: list[TransferEvent] = []
        for block in blocks:
            if block is None:
                continue
            events.extend(await self.extractor.extract_block(block))

        records: list[TransferRecord] = []
        keys: list[str] = []
        duplicates = 0
        batch_keys: set[str] = set()
        for event in events:
            if self.dedup.seen(event.record_key) or event.record_key in batch_keys:
                duplicates += 1
                continue
            record = event_to_record(event, self.mint)
            if record is None:
                self._log.debug("transfer_incomplete_skipped", signature=event.signature, slot=event.slot)
                continue
            batch_keys.add(event.record_key)
            keys.append(event.record_key)
            records.append(record)

        written = await self._db_call(self.db.upsert_transfers, records)
        last_signature = records[-1].signature if records else None
        await self._db_call(self.db.advance_cursor, self.source, window_end, last_signature)
        for key in keys:
            self.dedup.mark(key)

        result = CycleResult(
            status=STATUS_COMPLETED,
            head_slot=head,
            window_start=start,
            window_end=window_end,
            slots_scanned=len(slots),
            blocks_fetched=sum(1 for b in blocks if b is not None),
            events=len(events),
            duplicates=duplicates,
            records_written=written,
            truncated=truncated,
            duration_sec=time.monotonic() - started,
            scan=scan_stats,
        )
        self._log.info(
            "ingestion_cycle_done",
            window_start=start,
            window_end=window_end,
            slots_scanned=result.slots_scanned,
            blocks_fetched=result.blocks_fetched,
            events=result.events,
            duplicates=duplicates,
            records_written=written,
            tx_failed=self.extractor.stats.failed,
            dedup_size=len(self.dedup),
            dedup_resets=self.dedup.resets,
        )
        return result

    async def fetch_recent(self, limit: int = 50, lookback_sec: float = 86_400) -> list[TransferEvent]:
        """
        Live query, no persistence: recent tracked-mint transfers near the head,
        newest first. Returns [] on any failure.
        """
        if limit < 1:
            return []
        try:
            head = await self.rpc.get_slot()
            span = max(1, int(min(self._live_max_slots, lookback_sec / SLOT_DURATION_SEC)))
            start = max(1, head - span + 1)
            slots = await self._live_scanner.candidate_slots(start, head)
            slots = slots[-self._live_tail_slots :]
            blocks = await self._live_scanner.scan(slots)
            events: list[TransferEvent] = []
            for block in reversed(blocks):
                if block is None:
                    continue
                events.extend(await self._live_extractor.extract_block(block))
                if len(events) >= limit:
                    break
        except Exception as e:
            logger.warning("live_query_failed", limit=limit, lookback_sec=lookback_sec, error=str(e))
            return []
        events.sort(key=lambda ev: ev.slot, reverse=True)
        logger.info("live_query_done", head_slot=head, slots_checked=len(slots), events=len(events[:limit]))
        return events[:limit]

    async def fetch_transfer(self, signature: str) -> TransferEvent | None:
        """First tracked-mint transfer in one transaction, fetched live; None if absent or on failure."""
        try:
            events = await self._live_extractor.extract_signature(signature)
        except Exception as e:
            logger.warning("transfer_lookup_failed", signature=signature, error=str(e))
            return None
        return events[0] if events else None


def build_engine(
    settings: Settings,
    *,
    rpc: SolanaRpcClient | None = None,
    db: Database | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.time,
) -> IngestionEngine:
    """Wire an IngestionEngine from Settings; rpc and db may be injected (tests)."""
    if rpc is None:
        rpc = SolanaRpcClient(
            settings.rpc_url,
            timeout_sec=settings.rpc_timeout_sec,
            commitment=settings.commitment,
        )
    if db is None:
        db = get_database(settings.db_path, url=settings.database_url)

    def make_scanner() -> BlockScanner:
        return BlockScanner(
            rpc,
            concurrency=settings.block_concurrency,
            batch_delay_sec=settings.block_batch_delay_sec,
            max_retries=settings.block_max_retries,
            sleep=sleep,
        )

    def make_extractor() -> TransferExtractor:
        return TransferExtractor(
            rpc,
            settings.tracked_mint,
            decimals=settings.token_decimals,
            max_signatures_per_block=settings.max_signatures_per_block,
            batch_size=settings.tx_batch_size,
            batch_delay_sec=settings.tx_batch_delay_sec,
            emit_all_matches=settings.emit_all_matches,
            sleep=sleep,
        )

    return IngestionEngine(
        rpc,
        db,
        mint=settings.tracked_mint,
        scanner=make_scanner(),
        extractor=make_extractor(),
        source=settings.source,
        lookback_sec=settings.lookback_sec,
        max_slots_per_cycle=settings.max_slots_per_cycle,
        dedup=DedupGuard(settings.dedup_max_size),
        live_scanner=make_scanner(),
        live_extractor=make_extractor(),
        clock=clock,
        sleep=sleep,
    )
