"""
Bounded-concurrency mapping for RPC fan-out.

Items are processed in fixed-size batches; each batch runs concurrently and
a short fixed delay separates batches to stay under public RPC rate limits.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def map_bounded(
    items: Sequence[T],
    limit: int,
    fn: Callable[[T], Awaitable[R]],
    *,
    batch_delay_sec: float = 0.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> list[R]:
    """
    Apply fn to every item with at most `limit` calls in flight; results keep input order.

    fn is expected to contain its own failures; an exception escaping fn
    propagates and aborts the remaining batches.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")
    results: list[R] = []
    for i in range(0, len(items), limit):
        batch = items[i : i + limit]
        results.extend(await asyncio.gather(*(fn(item) for item in batch)))
        if batch_delay_sec > 0 and i + limit < len(items):
            await sleep(batch_delay_sec)
    return results
