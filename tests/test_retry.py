"""
Tests for RetryPolicy backoff and call_with_retry.
"""

from __future__ import annotations

import asyncio

import pytest

from fakes import RecordingSleep
from ledger_watchdog.core.exceptions import (
    NotFoundError,
    OversizedResponseError,
    RateLimitedError,
    TransportError,
)
from ledger_watchdog.rpc import NO_RETRY, RetryPolicy, call_with_retry


class Flaky:
    """Raises the queued errors in order, then returns value."""

    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


def test_backoff_generic_is_linear():
    policy = RetryPolicy(base_delay_sec=0.5)
    err = TransportError("boom")
    assert policy.backoff(1, err) == 0.5
    assert policy.backoff(2, err) == 1.0
    assert policy.backoff(3, err) == 1.5


def test_backoff_rate_limit_is_exponential_and_capped():
    policy = RetryPolicy(rate_limit_delay_sec=1.0, max_delay_sec=5.0)
    err = RateLimitedError("429")
    assert policy.backoff(1, err) == 1.0
    assert policy.backoff(2, err) == 2.0
    assert policy.backoff(3, err) == 4.0
    assert policy.backoff(4, err) == 5.0


def test_backoff_honors_retry_after():
    policy = RetryPolicy(rate_limit_delay_sec=1.0)
    assert policy.backoff(1, RateLimitedError("429", retry_after_sec=7.0)) == 7.0


def test_retries_transient_then_succeeds():
    sleep = RecordingSleep()
    fn = Flaky([RateLimitedError("429"), TransportError("reset")])
    result, retries = asyncio.run(call_with_retry(fn, RetryPolicy(max_attempts=3), sleep=sleep))
    assert result == "ok"
    assert retries == 2
    assert fn.calls == 3
    # rate limit after attempt 1 -> 1.0; generic after attempt 2 -> 0.5 * 2
    assert sleep.delays == [1.0, 1.0]


def test_gives_up_after_max_attempts():
    sleep = RecordingSleep()
    fn = Flaky([TransportError("a"), TransportError("b"), TransportError("c")])
    with pytest.raises(TransportError, match="c"):
        asyncio.run(call_with_retry(fn, RetryPolicy(max_attempts=3), sleep=sleep))
    assert fn.calls == 3
    assert len(sleep.delays) == 2


@pytest.mark.parametrize("error", [OversizedResponseError("big"), NotFoundError("gone")])
def test_non_retryable_propagates_immediately(error):
    sleep = RecordingSleep()
    fn = Flaky([error])
    with pytest.raises(type(error)):
        asyncio.run(call_with_retry(fn, RetryPolicy(max_attempts=5), sleep=sleep))
    assert fn.calls == 1
    assert sleep.delays == []


def test_no_retry_policy_single_attempt():
    fn = Flaky([TransportError("x")])
    with pytest.raises(TransportError):
        asyncio.run(call_with_retry(fn, NO_RETRY, sleep=RecordingSleep()))
    assert fn.calls == 1


def test_on_retry_hook_receives_attempt_and_delay():
    seen = []
    fn = Flaky([TransportError("x")])
    asyncio.run(
        call_with_retry(
            fn,
            RetryPolicy(max_attempts=2, base_delay_sec=0.25),
            sleep=RecordingSleep(),
            on_retry=lambda attempt, err, delay: seen.append((attempt, delay)),
        )
    )
    assert seen == [(1, 0.25)]


def test_policy_validation():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
