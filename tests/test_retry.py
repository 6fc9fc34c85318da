"""
Tests for revshare/retry.py

Tests cover:
- Success after transient failures
- Bounded attempts
- Non-retryable errors propagate immediately
- Rate-limit Retry-After respected
"""

import pytest

from revshare.errors import ConfigurationError, RetryExhaustedError, RpcError, RpcRateLimitError
from revshare.retry import RetryPolicy, RetryStrategy, retry_async


class _Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _flaky(failures, error):
    state = {"calls": 0}

    async def operation():
        state["calls"] += 1
        if state["calls"] <= failures:
            raise error
        return "ok"

    return operation, state


class TestRetryAsync:

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        operation, state = _flaky(2, RpcError("boom", method="getSlot"))
        sleeps = _Sleeps()

        result = await retry_async(operation, RetryPolicy(max_attempts=3, jitter=0), sleep=sleeps)

        assert result == "ok"
        assert state["calls"] == 3
        assert sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_after_max_attempts(self):
        operation, state = _flaky(10, ConnectionError("refused"))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry_async(operation, RetryPolicy(max_attempts=3, jitter=0), name="rpc", sleep=_Sleeps())

        assert state["calls"] == 3
        assert exc_info.value.details["attempts"] == 3

    @pytest.mark.asyncio
    async def test_non_retryable_propagates(self):
        operation, state = _flaky(1, ConfigurationError("bad api key"))

        with pytest.raises(ConfigurationError):
            await retry_async(operation, RetryPolicy(max_attempts=5), sleep=_Sleeps())
        assert state["calls"] == 1

    @pytest.mark.asyncio
    async def test_rate_limit_retry_after(self):
        operation, _ = _flaky(1, RpcRateLimitError(retry_after=7, method="getTokenAccounts"))
        sleeps = _Sleeps()

        await retry_async(operation, RetryPolicy(max_attempts=2, jitter=0), sleep=sleeps)

        assert sleeps.delays == [7.0]


class TestRetryPolicy:

    def test_exponential_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0)
        assert [policy.calculate_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_fixed(self):
        policy = RetryPolicy(strategy=RetryStrategy.FIXED, base_delay=2.0, jitter=0)
        assert policy.calculate_delay(5) == 2.0
