"""Pydantic models for dlqops entities."""

from dlqops.models.base import BaseModel, TimestampMixin
from dlqops.models.dlq_message import (
    DlqMessage,
    DlqMessageStatus,
    EntityType,
    FailureCategory,
)
from dlqops.models.replay_history import OutcomeStatus, ReplayHistory, ReplayStrategy
from dlqops.models.replay_rule import (
    AutoReplayRule,
    ConditionField,
    ConditionOperator,
    CreateRuleRequest,
    RuleAction,
    RuleCondition,
    TestRuleRequest,
    UpdateRuleRequest,
)

__all__ = [
    "AutoReplayRule",
    "BaseModel",
    "ConditionField",
    "ConditionOperator",
    "CreateRuleRequest",
    "DlqMessage",
    "DlqMessageStatus",
    "EntityType",
    "FailureCategory",
    "OutcomeStatus",
    "ReplayHistory",
    "ReplayStrategy",
    "RuleAction",
    "RuleCondition",
    "TestRuleRequest",
    "TimestampMixin",
    "UpdateRuleRequest",
]
