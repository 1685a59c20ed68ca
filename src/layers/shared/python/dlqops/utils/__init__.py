"""Utility functions and helpers."""

from dlqops.utils.responses import success, created, error, validation_error, not_found
from dlqops.utils.exceptions import (
    DlqOpsError,
    NotFoundError,
    ValidationError,
    ConflictError,
    BusinessRuleError,
    AlreadyReplayedError,
    RateLimitedError,
    BrokerError,
    BrokerUnavailableError,
    BrokerTimeoutError,
)

__all__ = [
    # Response helpers
    "success",
    "created",
    "error",
    "validation_error",
    "not_found",
    # Exceptions
    "DlqOpsError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "BusinessRuleError",
    "AlreadyReplayedError",
    "RateLimitedError",
    "BrokerError",
    "BrokerUnavailableError",
    "BrokerTimeoutError",
]
