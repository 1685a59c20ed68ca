"""Retry policy for broker replay calls.

An attempt fails when it raises a retryable broker error or when its result
is rejected by ``retry_if_result``. Any other exception ends the attempts at
once. Cancellation always propagates.

Usage:
    policy = RetryPolicy(RetryConfig(max_retries=3, strategy=RetryStrategy.EXPONENTIAL))

    async def replay():
        return await broker.replay(entity, subscription, sequence_number)

    result = await policy.execute(replay, retry_if_result=lambda ok: not ok)
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog

from dlqops.utils.exceptions import BrokerTimeoutError, BrokerUnavailableError

logger = structlog.get_logger()


class RetryStrategy(str, Enum):
    """How the wait between attempts grows."""

    EXPONENTIAL = "exponential"  # base, 2x base, 4x base, ...
    CONSTANT = "constant"


@dataclass
class RetryConfig:
    """Attempt budget and backoff settings."""

    max_retries: int = 3  # Total attempts, including the first
    base_delay: float = 1.0
    max_delay: float = 30.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    retry_on: tuple[type[Exception], ...] = field(
        default_factory=lambda: (BrokerUnavailableError, BrokerTimeoutError, asyncio.TimeoutError)
    )

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait after the given 1-based attempt fails."""
        if self.strategy == RetryStrategy.EXPONENTIAL:
            delay = self.base_delay * 2 ** (attempt - 1)
        else:
            delay = self.base_delay
        return max(min(delay, self.max_delay), 0.0)


@dataclass
class RetryResult:
    """Outcome of all attempts.

    ``error`` is the last exception raised, or None when the last attempt
    returned a rejected result.
    """

    success: bool
    value: Any = None
    error: Exception | None = None
    attempts: int = 0
    total_delay: float = 0.0


class RetryPolicy:
    """Runs an async operation until it succeeds or the attempt budget is spent."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or RetryConfig()
        self.sleep = sleep
        self.logger = logger.bind(service="retry_policy")

    async def execute(
        self,
        func: Callable[[], Awaitable[Any]],
        retry_if_result: Callable[[Any], bool] | None = None,
        context: dict[str, Any] | None = None,
    ) -> RetryResult:
        """Run ``func`` with retries.

        Args:
            func: Zero-argument coroutine function.
            retry_if_result: Returns True when a returned value is a failure.
            context: Extra key/values for log events.

        Returns:
            RetryResult describing the final attempt.
        """
        context = context or {}
        result = RetryResult(success=False)

        for attempt in range(1, self.config.max_retries + 1):
            result.attempts = attempt
            try:
                value = await func()
            except Exception as e:
                result.error, result.value = e, None
                if not isinstance(e, self.config.retry_on):
                    self.logger.warning(
                        "Replay attempt failed permanently", error=str(e), attempts=attempt, **context
                    )
                    return result
            else:
                if retry_if_result is None or not retry_if_result(value):
                    result.success, result.value, result.error = True, value, None
                    return result
                result.error, result.value = None, value

            if attempt == self.config.max_retries:
                break

            delay = self.config.delay_after(attempt)
            result.total_delay += delay
            self.logger.info(
                "Retrying replay attempt",
                error=str(result.error) if result.error else None,
                attempt=attempt,
                next_delay=delay,
                **context,
            )
            await self.sleep(delay)

        self.logger.warning(
            "Replay attempts exhausted",
            error=str(result.error) if result.error else None,
            attempts=result.attempts,
            total_delay=result.total_delay,
            **context,
        )
        return result
