"""Circuit breaker for auto-replay rules.

A rule whose recent replays mostly fail is doing more harm than good, so it
is switched off. The breaker looks at the rule's most recent replay attempts
in persisted history since it was last enabled:

- Fewer than ``min_samples`` attempts: CLOSED, never trips.
- Success rate below ``min_success_rate``: OPEN, the rule is disabled.

Opening is a conditional update on the rule's ``enabled`` flag, so when
several workers trip at once exactly one records the disablement.
"""

from dataclasses import dataclass
from enum import Enum

import structlog

from dlqops.config import DlqSettings
from dlqops.models.replay_history import (
    CIRCUIT_BREAKER_ACTOR,
    OutcomeStatus,
    ReplayHistory,
    ReplayStrategy,
)
from dlqops.models.replay_rule import AutoReplayRule
from dlqops.repositories.replay_history import ReplayHistoryRepository
from dlqops.repositories.replay_rule import ReplayRuleRepository

logger = structlog.get_logger()


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"


@dataclass
class CircuitBreakerConfig:
    """Configuration for the rule circuit breaker."""

    window: int = 50  # Most recent attempts considered
    min_success_rate: float = 0.30  # Below this the rule is disabled
    min_samples: int = 10  # Attempts needed before tripping

    @classmethod
    def from_settings(cls, settings: DlqSettings) -> "CircuitBreakerConfig":
        """Build config from engine settings."""
        return cls(
            window=settings.circuit_breaker_window,
            min_success_rate=settings.circuit_breaker_min_success_rate,
            min_samples=settings.circuit_breaker_min_samples,
        )


@dataclass
class CircuitCheck:
    """Result of evaluating a rule's recent replays."""

    state: CircuitState
    samples: int
    successes: int
    success_rate: float | None
    tripped_now: bool = False


class RuleCircuitBreaker:
    """Disables rules whose recent replay success rate is too low."""

    def __init__(
        self,
        rule_repo: ReplayRuleRepository,
        history_repo: ReplayHistoryRepository,
        config: CircuitBreakerConfig | None = None,
    ):
        """Initialize the breaker.

        Args:
            rule_repo: Rule repository used to disable rules.
            history_repo: History repository holding replay attempts.
            config: Breaker thresholds.
        """
        self.rule_repo = rule_repo
        self.history_repo = history_repo
        self.config = config or CircuitBreakerConfig()
        self.logger = logger.bind(service="circuit_breaker")

    def evaluate(self, rule: AutoReplayRule) -> CircuitCheck:
        """Compute the breaker state from the rule's recent attempts.

        Attempts made before the rule was last switched back on are ignored,
        so re-enabling a tripped rule gives it a fresh window.
        """
        recent = self.history_repo.list_recent_for_rule(
            rule.id, self.config.window, since=rule.enabled_at
        )
        samples = len(recent)
        successes = sum(1 for row in recent if row.outcome_status == OutcomeStatus.SUCCESS)
        rate = successes / samples if samples else None

        if samples >= self.config.min_samples and rate is not None and rate < self.config.min_success_rate:
            state = CircuitState.OPEN
        else:
            state = CircuitState.CLOSED

        return CircuitCheck(state=state, samples=samples, successes=successes, success_rate=rate)

    def check_and_trip(self, rule: AutoReplayRule, dlq_message_id: str) -> CircuitCheck:
        """Evaluate the rule and disable it if the circuit is open.

        Only the caller whose conditional update wins appends the
        RuleDisabled history row, attached to the message whose replay
        triggered the check.

        Returns:
            CircuitCheck, with ``tripped_now`` set for the winning caller.
        """
        check = self.evaluate(rule)
        if check.state != CircuitState.OPEN:
            return check

        if not self.rule_repo.disable_if_enabled(rule.id):
            return check

        check.tripped_now = True
        rate_pct = round((check.success_rate or 0.0) * 100, 1)
        self.history_repo.append(
            ReplayHistory(
                dlq_message_id=dlq_message_id,
                rule_id=rule.id,
                replayed_by=CIRCUIT_BREAKER_ACTOR,
                replay_strategy=ReplayStrategy.CIRCUIT_BREAKER,
                replayed_to_entity="",
                outcome_status=OutcomeStatus.RULE_DISABLED,
                error_details=(
                    f"Rule disabled: success rate {rate_pct}% over the last "
                    f"{check.samples} replays is below "
                    f"{round(self.config.min_success_rate * 100, 1)}%"
                ),
            )
        )
        self.logger.warning(
            "Rule auto-disabled by circuit breaker",
            rule_id=rule.id,
            rule_name=rule.name,
            samples=check.samples,
            success_rate=rate_pct,
        )
        return check
