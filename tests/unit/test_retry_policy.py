"""Tests for broker replay retries."""

import asyncio

import pytest

from dlqops.execution.retry_policy import RetryConfig, RetryPolicy, RetryStrategy
from dlqops.utils.exceptions import BrokerTimeoutError, BrokerUnavailableError


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def scripted(*outcomes):
    remaining = list(outcomes)
    calls = []

    async def func():
        calls.append(1)
        outcome = remaining.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    func.calls = calls
    return func


class TestRetryPolicy:
    """Attempt counting and backoff."""

    @pytest.mark.asyncio
    async def test_first_attempt_success(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(RetryConfig(max_retries=3), sleep=sleep)

        result = await policy.execute(scripted(True), retry_if_result=lambda ok: not ok)

        assert result.success is True
        assert result.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_exponential_backoff_on_unavailable(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(RetryConfig(max_retries=3, base_delay=1.0, max_delay=30.0), sleep=sleep)
        func = scripted(BrokerUnavailableError(), BrokerTimeoutError(), True)

        result = await policy.execute(func)

        assert result.success is True
        assert result.attempts == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_delay_is_capped(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(RetryConfig(max_retries=4, base_delay=10.0, max_delay=15.0), sleep=sleep)

        await policy.execute(scripted(False, False, False, False), retry_if_result=lambda ok: not ok)

        assert sleep.delays == [10.0, 15.0, 15.0]

    @pytest.mark.asyncio
    async def test_constant_strategy(self):
        sleep = RecordingSleep()
        config = RetryConfig(max_retries=3, base_delay=2.0, strategy=RetryStrategy.CONSTANT)
        policy = RetryPolicy(config, sleep=sleep)

        result = await policy.execute(scripted(False, False, False), retry_if_result=lambda ok: not ok)

        assert result.success is False
        assert result.attempts == 3
        assert result.error is None
        assert sleep.delays == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_stops_immediately(self):
        sleep = RecordingSleep()
        policy = RetryPolicy(RetryConfig(max_retries=5), sleep=sleep)
        func = scripted(ValueError("bad payload"), True)

        result = await policy.execute(func)

        assert result.success is False
        assert result.attempts == 1
        assert isinstance(result.error, ValueError)
        assert len(func.calls) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_keep_last_error(self):
        policy = RetryPolicy(RetryConfig(max_retries=2, base_delay=0.0), sleep=RecordingSleep())

        result = await policy.execute(scripted(BrokerUnavailableError(), BrokerTimeoutError()))

        assert result.success is False
        assert result.attempts == 2
        assert isinstance(result.error, BrokerTimeoutError)

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        policy = RetryPolicy(RetryConfig(max_retries=3), sleep=RecordingSleep())

        with pytest.raises(asyncio.CancelledError):
            await policy.execute(scripted(asyncio.CancelledError(), True))
