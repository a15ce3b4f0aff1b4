"""
Retry policy for RPC call sites.

The transport never retries; each caller (block fetch, slot-time probe,
transaction fetch) passes its own RetryPolicy to call_with_retry. The sleep
function is injectable so policies are tested without real timers.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from ledger_watchdog.core.exceptions import RateLimitedError, TransientRpcError

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]
RetryHook = Callable[[int, BaseException, float], None]


@dataclass(frozen=True)
class RetryPolicy:
    """
    max_attempts: total attempts including the first (3 = up to 2 retries).
    base_delay_sec: generic transient failures wait base_delay * attempt (increasing).
    rate_limit_delay_sec: rate limits wait rate_limit_delay * 2 ** (attempt - 1).
    max_delay_sec: cap for any single wait.
    retry_on: exception types worth another attempt; everything else propagates at once.
    """

    max_attempts: int = 3
    base_delay_sec: float = 0.5
    rate_limit_delay_sec: float = 1.0
    max_delay_sec: float = 30.0
    retry_on: tuple[type[BaseException], ...] = (TransientRpcError,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_sec < 0 or self.rate_limit_delay_sec < 0:
            raise ValueError("delays must be non-negative")

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        return attempt < self.max_attempts and isinstance(error, self.retry_on)

    def backoff(self, attempt: int, error: BaseException | None = None) -> float:
        """Delay before attempt + 1, given that `attempt` (1-based) just failed with `error`."""
        if isinstance(error, RateLimitedError):
            delay = self.rate_limit_delay_sec * (2 ** (attempt - 1))
            if error.retry_after_sec is not None:
                delay = max(delay, error.retry_after_sec)
        else:
            delay = self.base_delay_sec * attempt
        return min(delay, self.max_delay_sec)


NO_RETRY = RetryPolicy(max_attempts=1)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: SleepFn = asyncio.sleep,
    on_retry: RetryHook | None = None,
) -> tuple[T, int]:
    """
    Await fn() under policy. Returns (result, retries_used).

    Non-retryable errors and the last retryable error propagate unchanged.
    on_retry(attempt, error, delay) is called before each backoff sleep.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn(), attempt - 1
        except Exception as e:
            if not policy.should_retry(attempt, e):
                raise
            delay = policy.backoff(attempt, e)
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await sleep(delay)
