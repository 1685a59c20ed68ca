"""Replay audit history model."""

from datetime import datetime
from enum import Enum

from pydantic import Field

from dlqops.models.base import BaseModel, sort_key_time, utc_now


class OutcomeStatus(str, Enum):
    """Result recorded for a replay history row."""

    SUCCESS = "Success"
    FAILED = "Failed"
    RULE_DISABLED = "RuleDisabled"


class ReplayStrategy(str, Enum):
    """Where a replay was sent, or why the row exists."""

    ORIGINAL_ENTITY = "original-entity"
    ALTERNATE_ENTITY = "alternate-entity"
    CIRCUIT_BREAKER = "circuit-breaker"


CIRCUIT_BREAKER_ACTOR = "circuit-breaker"


class ReplayHistory(BaseModel):
    """Append-only audit row for a replay attempt or a rule disablement.

    RuleDisabled rows record a circuit breaker trip. They are not replay
    attempts and are ignored by rate limiting and success rates.

    Key Pattern:
        PK: HIST#{dlq_message_id}
        SK: {replayed_at}#{id}
        GSI1PK: RULEHIST#{rule_id}
        GSI1SK: {replayed_at}#{id}
        GSI2PK: HISTORY
        GSI2SK: {replayed_at}#{id}
    """

    dlq_message_id: str = Field(..., description="Tracked DlqMessage id")
    rule_id: str | None = Field(None, description="None for manual replays")
    replayed_at: datetime = Field(default_factory=utc_now)
    replayed_by: str = Field(..., description="auto-rule:{name}, a user, or circuit-breaker")
    replay_strategy: ReplayStrategy = Field(default=ReplayStrategy.ORIGINAL_ENTITY)
    replayed_to_entity: str = Field(default="")
    outcome_status: OutcomeStatus
    new_dead_letter_reason: str | None = None
    error_details: str | None = Field(None, max_length=4000)
    attempts: int = Field(default=0, ge=0)

    @property
    def is_attempt(self) -> bool:
        """True for real replay attempts, False for disablement events."""
        return self.outcome_status != OutcomeStatus.RULE_DISABLED

    def _sort_suffix(self) -> str:
        return f"{sort_key_time(self.replayed_at)}#{self.id}"

    def get_pk(self) -> str:
        """Get partition key: HIST#{dlq_message_id}."""
        return f"HIST#{self.dlq_message_id}"

    def get_sk(self) -> str:
        """Get sort key: {replayed_at}#{id}."""
        return self._sort_suffix()

    def get_gsi_keys(self) -> dict[str, str]:
        """Get GSI keys for per-rule and global listing by time."""
        keys = {
            "GSI2PK": "HISTORY",
            "GSI2SK": self._sort_suffix(),
        }
        if self.rule_id:
            keys["GSI1PK"] = f"RULEHIST#{self.rule_id}"
            keys["GSI1SK"] = self._sort_suffix()
        return keys
