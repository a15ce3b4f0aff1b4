"""
Ingestion pipeline: slot locator, block scanner, transfer extractor, dedup
guard, and the engine that runs one cycle end to end.
"""

from ledger_watchdog.ingestion.block_scanner import BlockScanner, ScanStats
from ledger_watchdog.ingestion.dedup import DedupGuard
from ledger_watchdog.ingestion.engine import CycleResult, IngestionEngine, build_engine
from ledger_watchdog.ingestion.extractor import ExtractStats, TransferExtractor, parse_transfers
from ledger_watchdog.ingestion.models import SlotBlock, TransferEvent
from ledger_watchdog.ingestion.slot_locator import SlotLocator, find_slot_at_or_before

__all__ = [
    "BlockScanner",
    "CycleResult",
    "DedupGuard",
    "ExtractStats",
    "IngestionEngine",
    "ScanStats",
    "SlotBlock",
    "SlotLocator",
    "TransferEvent",
    "TransferExtractor",
    "build_engine",
    "find_slot_at_or_before",
    "parse_transfers",
]
