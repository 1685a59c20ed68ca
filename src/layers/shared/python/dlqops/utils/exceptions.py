"""Custom exception classes for dlqops."""


class DlqOpsError(Exception):
    """Base exception for all dlqops errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 500,
        details: dict | None = None,
    ):
        """Initialize DlqOpsError.

        Args:
            message: Human-readable error message.
            error_code: Machine-readable error code.
            status_code: HTTP status code for API responses.
            details: Additional error details.
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "INTERNAL_ERROR"
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API response."""
        result = {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class NotFoundError(DlqOpsError):
    """Raised when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        message: str | None = None,
    ):
        """Initialize NotFoundError.

        Args:
            resource_type: Type of resource (e.g., "AutoReplayRule", "DlqMessage").
            resource_id: ID of the resource that was not found.
            message: Optional custom message.
        """
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(
            message=message or f"{resource_type} with ID '{resource_id}' not found",
            error_code="NOT_FOUND",
            status_code=404,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class ValidationError(DlqOpsError):
    """Raised when input validation fails."""

    def __init__(
        self,
        message: str = "Validation failed",
        errors: list[dict] | None = None,
    ):
        """Initialize ValidationError.

        Args:
            message: Error message.
            errors: List of validation errors with field and message.
        """
        self.errors = errors or []
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            status_code=400,
            details={"errors": self.errors},
        )

    @classmethod
    def from_pydantic(cls, exc: Exception) -> "ValidationError":
        """Create ValidationError from Pydantic ValidationError."""
        errors = []
        if hasattr(exc, "errors"):
            for error in exc.errors():
                errors.append(
                    {
                        "field": ".".join(str(loc) for loc in error.get("loc", [])),
                        "message": error.get("msg", "Invalid value"),
                        "type": error.get("type", "unknown"),
                    }
                )
        return cls(message="Validation failed", errors=errors)


class ConflictError(DlqOpsError):
    """Raised when there's a conflict (e.g., duplicate, optimistic lock failure)."""

    def __init__(
        self,
        message: str = "Resource conflict",
        conflict_type: str | None = None,
    ):
        """Initialize ConflictError."""
        super().__init__(
            message=message,
            error_code="CONFLICT",
            status_code=409,
            details={"conflict_type": conflict_type} if conflict_type else None,
        )


class BusinessRuleError(DlqOpsError):
    """Raised when an operation violates a business rule and must not be retried."""

    def __init__(
        self,
        message: str,
        rule: str | None = None,
        error_code: str = "BUSINESS_RULE_VIOLATION",
        status_code: int = 422,
    ):
        """Initialize BusinessRuleError."""
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details={"rule": rule} if rule else None,
        )


class AlreadyReplayedError(BusinessRuleError):
    """Raised when a replay targets a message that is no longer Active."""

    def __init__(self, dlq_message_id: str, status: str | None = None):
        """Initialize AlreadyReplayedError."""
        self.dlq_message_id = dlq_message_id
        self.status = status
        super().__init__(
            message=(
                f"DLQ message '{dlq_message_id}' is not Active"
                + (f" (status: {status})" if status else "")
            ),
            rule="message_must_be_active",
            error_code="ALREADY_REPLAYED",
            status_code=409,
        )


class RateLimitedError(DlqOpsError):
    """Raised when a rule has exhausted its hourly replay budget."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: int | None = None,
    ):
        """Initialize RateLimitedError."""
        self.retry_after = retry_after
        details = {}
        if retry_after:
            details["retry_after_seconds"] = retry_after

        super().__init__(
            message=message,
            error_code="RATE_LIMITED",
            status_code=429,
            details=details if details else None,
        )


class BrokerError(DlqOpsError):
    """Raised when the message broker call fails."""

    def __init__(
        self,
        message: str | None = None,
        operation: str | None = None,
        original_error: str | None = None,
        error_code: str = "BROKER_ERROR",
        status_code: int = 502,
    ):
        """Initialize BrokerError."""
        super().__init__(
            message=message or f"Message broker operation '{operation}' failed",
            error_code=error_code,
            status_code=status_code,
            details={
                "operation": operation,
                "original_error": original_error,
            },
        )


class BrokerUnavailableError(BrokerError):
    """Raised when the message broker cannot be reached."""

    def __init__(self, message: str | None = None, operation: str | None = None):
        """Initialize BrokerUnavailableError."""
        super().__init__(
            message=message or "Message broker unavailable",
            operation=operation,
            error_code="BROKER_UNAVAILABLE",
            status_code=503,
        )


class BrokerTimeoutError(BrokerError):
    """Raised when a message broker call times out."""

    def __init__(self, message: str | None = None, operation: str | None = None):
        """Initialize BrokerTimeoutError."""
        super().__init__(
            message=message or "Message broker call timed out",
            operation=operation,
            error_code="BROKER_TIMEOUT",
            status_code=504,
        )
