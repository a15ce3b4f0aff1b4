"""
Slot-at-timestamp locator.

Maps a wall-clock target to the highest slot whose block time is <= target,
without a chain index for that mapping: bracket the target by probing
backward from the head with exponentially growing steps, then binary search
inside the bracket. Relies on block time being non-decreasing in slot.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from ledger_watchdog.core.exceptions import NotFoundError
from ledger_watchdog.logging import get_logger
from ledger_watchdog.rpc.client import SolanaRpcClient
from ledger_watchdog.rpc.retry import RetryPolicy, call_with_retry

logger = get_logger(__name__)

INITIAL_SPAN = 64
# Max slots walked left from a skipped midpoint before giving up on that half
MAX_SKIP_PROBES = 32

PROBE_RETRY_POLICY = RetryPolicy(max_attempts=3, base_delay_sec=0.25, rate_limit_delay_sec=1.0)


class SlotLocator:
    """Caches block times for the duration of one lookup."""

    def __init__(
        self,
        rpc: SolanaRpcClient,
        *,
        retry_policy: RetryPolicy = PROBE_RETRY_POLICY,
        initial_span: int = INITIAL_SPAN,
        max_skip_probes: int = MAX_SKIP_PROBES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if initial_span < 1:
            raise ValueError("initial_span must be >= 1")
        self._rpc = rpc
        self._policy = retry_policy
        self._initial_span = initial_span
        self._max_skip_probes = max(0, max_skip_probes)
        self._sleep = sleep
        self._times: dict[int, int | None] = {}
        self.probes = 0

    async def block_time(self, slot: int) -> int | None:
        """Block time for slot; None for skipped or unavailable slots."""
        if slot in self._times:
            return self._times[slot]
        self.probes += 1
        try:
            ts, _ = await call_with_retry(
                lambda: self._rpc.get_block_time(slot), self._policy, sleep=self._sleep
            )
        except NotFoundError:
            ts = None
        self._times[slot] = ts
        return ts

    async def _at_or_before(self, slot: int, target_ts: int) -> bool:
        ts = await self.block_time(slot)
        return ts is not None and ts <= target_ts

    async def _nearest_produced(self, mid: int, lo: int) -> tuple[int | None, int | None, bool]:
        """
        Walk left from a skipped mid to the nearest slot with a block time, not below lo.
        Returns (slot, time, exhausted) where exhausted means the probe limit was hit.
        """
        probes = 0
        slot = mid - 1
        while slot >= lo:
            if probes >= self._max_skip_probes:
                return None, None, True
            ts = await self.block_time(slot)
            probes += 1
            if ts is not None:
                return slot, ts, False
            slot -= 1
        return None, None, False

    async def find(self, target_ts: int, end_slot: int) -> int:
        """Highest slot in [1, end_slot] whose block time is <= target_ts (clamped to >= 1)."""
        if end_slot <= 1:
            return 1
        hi = end_slot
        lo = max(1, hi - self._initial_span)

        if await self._at_or_before(hi, target_ts):
            return hi

        step = self._initial_span
        while lo > 1:
            ts = await self.block_time(lo)
            probe = lo
            if ts is None:
                probe, ts, _ = await self._nearest_produced(lo, 1)
                if probe is None:
                    # No produced slot within reach below lo; widen without moving hi
                    step *= 2
                    lo = max(1, lo - step)
                    continue
            if ts <= target_ts:
                lo = probe
                break
            hi = probe
            step *= 2
            lo = max(1, probe - step)

        best = lo
        while lo <= hi:
            mid = (lo + hi) // 2
            ts = await self.block_time(mid)
            probe = mid
            if ts is None:
                probe, ts, exhausted = await self._nearest_produced(mid, lo)
                if probe is None:
                    if exhausted:
                        hi = mid - 1
                    else:
                        # Every slot in [lo, mid] is skipped
                        lo = mid + 1
                    continue
            if ts <= target_ts:
                best = max(best, probe)
                lo = mid + 1
            else:
                hi = probe - 1

        result = max(1, best)
        logger.debug(
            "slot_locator_done",
            target_ts=target_ts,
            end_slot=end_slot,
            slot=result,
            probes=self.probes,
        )
        return result


async def find_slot_at_or_before(
    rpc: SolanaRpcClient,
    target_ts: int,
    end_slot: int,
    **kwargs: Any,
) -> int:
    """Convenience wrapper: one-shot SlotLocator(rpc, **kwargs).find(target_ts, end_slot)."""
    return await SlotLocator(rpc, **kwargs).find(target_ts, end_slot)
