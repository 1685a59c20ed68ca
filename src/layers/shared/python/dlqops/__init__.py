"""dlqops: dead-letter queue monitoring and auto-remediation."""

__version__ = "0.1.0"
