"""
Block scanner: candidate slots for a window and bounded-concurrency block fetch.

- candidate_slots(start, end): produced slots via getBlocks, with tail fallbacks
  when the node rate-limits or rejects the range.
- scan(slots): getBlock (signatures only) per slot through map_bounded; each
  slot retries transient failures under its own RetryPolicy and yields None
  when it cannot be fetched. One bad slot never fails the scan.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ledger_watchdog.core.exceptions import (
    NotFoundError,
    OversizedResponseError,
    RateLimitedError,
    RpcError,
    RpcProtocolError,
    SlotWindowError,
    TransientRpcError,
)
from ledger_watchdog.ingestion.models import SlotBlock
from ledger_watchdog.ingestion.pool import map_bounded
from ledger_watchdog.logging import get_logger
from ledger_watchdog.rpc.client import SolanaRpcClient
from ledger_watchdog.rpc.retry import RetryPolicy, call_with_retry

logger = get_logger(__name__)

DEFAULT_CONCURRENCY = 3
DEFAULT_BATCH_DELAY_SEC = 0.2
DEFAULT_MAX_RETRIES = 2
DEFAULT_TAIL_SLOTS = 10


@dataclass
class ScanStats:
    """Per-scan counters; reset at the start of every scan()."""

    requested: int = 0
    fetched: int = 0
    skipped: int = 0
    oversized: int = 0
    not_found: int = 0
    retries: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "requested": self.requested,
            "fetched": self.fetched,
            "skipped": self.skipped,
            "oversized": self.oversized,
            "not_found": self.not_found,
            "retries": self.retries,
        }


class BlockScanner:
    """Fetches signature-only blocks for a slot window."""

    def __init__(
        self,
        rpc: SolanaRpcClient,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        batch_delay_sec: float = DEFAULT_BATCH_DELAY_SEC,
        max_retries: int = DEFAULT_MAX_RETRIES,
        tail_slots: int = DEFAULT_TAIL_SLOTS,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if tail_slots < 1:
            raise ValueError("tail_slots must be >= 1")
        self._rpc = rpc
        self._concurrency = concurrency
        self._batch_delay_sec = batch_delay_sec
        self._tail_slots = tail_slots
        self._policy = retry_policy or RetryPolicy(max_attempts=max_retries + 1)
        self._sleep = sleep
        self.stats = ScanStats()

    def _tail(self, start: int, end: int) -> list[int]:
        return list(range(max(start, end - self._tail_slots + 1), end + 1))

    async def candidate_slots(self, start: int, end: int) -> list[int]:
        """
        Produced slots in [start, end], ascending.

        Rate limited: retry getBlocks once over the tail range; if that fails
        too, raise SlotWindowError. Any other RPC failure: synthetic tail.
        """
        if start > end:
            return []
        try:
            return sorted(await self._rpc.get_blocks(start, end))
        except RateLimitedError as e:
            tail_start = max(start, end - self._tail_slots + 1)
            logger.warning(
                "get_blocks_rate_limited",
                window_start=start,
                window_end=end,
                tail_start=tail_start,
                error=str(e),
            )
            try:
                return sorted(await self._rpc.get_blocks(tail_start, end))
            except RpcError as e2:
                logger.error(
                    "get_blocks_tail_failed",
                    window_start=tail_start,
                    window_end=end,
                    error=str(e2),
                )
                raise SlotWindowError(
                    f"getBlocks failed for [{start}, {end}] and tail [{tail_start}, {end}]: {e2}"
                ) from e2
        except RpcError as e:
            tail = self._tail(start, end)
            logger.warning(
                "get_blocks_failed_using_tail",
                window_start=start,
                window_end=end,
                tail_size=len(tail),
                error=str(e),
            )
            return tail

    async def fetch_block(self, slot: int) -> SlotBlock | None:
        """Fetch one slot; None when skipped, oversized, rejected, or out of retries."""
        retries = 0

        def count_retry(attempt: int, error: BaseException, delay: float) -> None:
            nonlocal retries
            retries += 1
            event = "slot_rate_limited" if isinstance(error, RateLimitedError) else "slot_fetch_retry"
            logger.warning(event, slot=slot, attempt=attempt, delay_sec=delay, error=str(error))

        try:
            block, retries = await call_with_retry(
                lambda: self._rpc.get_block_signatures(slot),
                self._policy,
                sleep=self._sleep,
                on_retry=count_retry,
            )
        except OversizedResponseError as e:
            self.stats.oversized += 1
            self.stats.skipped += 1
            logger.warning("block_too_large_skipped", slot=slot, error=str(e))
            return None
        except NotFoundError:
            self.stats.not_found += 1
            self.stats.skipped += 1
            logger.debug("slot_not_available", slot=slot)
            return None
        except TransientRpcError as e:
            self.stats.retries += retries
            self.stats.skipped += 1
            logger.warning("slot_fetch_exhausted", slot=slot, retries=retries, error=str(e))
            return None
        except RpcProtocolError as e:
            self.stats.skipped += 1
            logger.warning("slot_fetch_rejected", slot=slot, code=e.code, error=str(e))
            return None
        self.stats.retries += retries
        self.stats.fetched += 1
        return SlotBlock.from_rpc(slot, block, retries)

    async def scan(self, slots: list[int]) -> list[SlotBlock | None]:
        """Fetch every slot with bounded concurrency; results align with `slots`."""
        self.stats = ScanStats(requested=len(slots))
        if not slots:
            return []
        results = await map_bounded(
            slots,
            self._concurrency,
            self.fetch_block,
            batch_delay_sec=self._batch_delay_sec,
            sleep=self._sleep,
        )
        logger.info("block_scan_done", **self.stats.to_dict())
        return results
