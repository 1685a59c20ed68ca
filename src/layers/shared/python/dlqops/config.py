"""Runtime settings for the DLQ engine.

All thresholds are tunable through environment variables so the monitor,
rate limiter and circuit breaker can be adjusted per stage without a deploy.
"""

import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


@dataclass
class DlqSettings:
    """Settings for scanning, replay and safety policies."""

    table_name: str = "dlqops-dev"

    # Monitor
    peek_batch_size: int = 100
    body_preview_length: int = 500
    max_delivery_threshold: int = 10  # Delivery count implying MaxDelivery
    max_parallel_scans: int = 10
    scan_interval_seconds: float = 10.0

    # Circuit breaker
    circuit_breaker_window: int = 50  # Most recent attempts considered
    circuit_breaker_min_success_rate: float = 0.30
    circuit_breaker_min_samples: int = 10

    # Rate limiting
    rate_limit_window_seconds: float = 3600.0
    rate_limit_max_rules: int = 1000

    # Replay
    replay_base_delay: float = 1.0
    replay_max_delay: float = 30.0
    claim_ttl_seconds: float = 300.0

    # "module:callable" returning a MessageBroker for a namespace id
    broker_factory: str | None = None

    # Worker
    namespace_ids: list[str] = field(default_factory=list)
    drain_timeout_seconds: float = 600.0

    @classmethod
    def from_env(cls) -> "DlqSettings":
        """Build settings from environment variables.

        Returns:
            DlqSettings populated from the environment, defaults elsewhere.
        """
        return cls(
            table_name=os.environ.get("TABLE_NAME", "dlqops-dev"),
            peek_batch_size=_env_int("DLQ_PEEK_BATCH_SIZE", 100),
            body_preview_length=_env_int("DLQ_BODY_PREVIEW_LENGTH", 500),
            max_delivery_threshold=_env_int("DLQ_MAX_DELIVERY_THRESHOLD", 10),
            max_parallel_scans=_env_int("DLQ_MAX_PARALLEL_SCANS", 10),
            scan_interval_seconds=_env_float("DLQ_SCAN_INTERVAL_SECONDS", 10.0),
            circuit_breaker_window=_env_int("DLQ_CIRCUIT_BREAKER_WINDOW", 50),
            circuit_breaker_min_success_rate=_env_float(
                "DLQ_CIRCUIT_BREAKER_MIN_SUCCESS_RATE", 0.30
            ),
            circuit_breaker_min_samples=_env_int("DLQ_CIRCUIT_BREAKER_MIN_SAMPLES", 10),
            rate_limit_window_seconds=_env_float("DLQ_RATE_LIMIT_WINDOW_SECONDS", 3600.0),
            rate_limit_max_rules=_env_int("DLQ_RATE_LIMIT_MAX_RULES", 1000),
            replay_base_delay=_env_float("DLQ_REPLAY_BASE_DELAY", 1.0),
            replay_max_delay=_env_float("DLQ_REPLAY_MAX_DELAY", 30.0),
            claim_ttl_seconds=_env_float("DLQ_CLAIM_TTL_SECONDS", 300.0),
            broker_factory=os.environ.get("DLQ_BROKER_FACTORY") or None,
            namespace_ids=[
                ns.strip() for ns in os.environ.get("DLQ_NAMESPACE_IDS", "").split(",") if ns.strip()
            ],
            drain_timeout_seconds=_env_float("DLQ_DRAIN_TIMEOUT_SECONDS", 600.0),
        )


# Singleton instance
_settings: DlqSettings | None = None


def get_settings() -> DlqSettings:
    """Get the global DlqSettings instance.

    Returns:
        DlqSettings instance.
    """
    global _settings
    if _settings is None:
        _settings = DlqSettings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
