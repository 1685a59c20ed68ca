"""Execution infrastructure for fault-tolerant replays.

- RetryPolicy: Backoff between broker replay attempts
- RuleCircuitBreaker: Disables rules whose replays keep failing
"""

from dlqops.execution.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitCheck,
    CircuitState,
    RuleCircuitBreaker,
)
from dlqops.execution.retry_policy import (
    RetryConfig,
    RetryPolicy,
    RetryResult,
    RetryStrategy,
)

__all__ = [
    # Circuit breaker
    "CircuitBreakerConfig",
    "CircuitCheck",
    "CircuitState",
    "RuleCircuitBreaker",
    # Retry policy
    "RetryConfig",
    "RetryPolicy",
    "RetryResult",
    "RetryStrategy",
]
