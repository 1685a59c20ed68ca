"""Auto-replay rule models."""

from datetime import datetime
from enum import Enum

from pydantic import AliasChoices, BaseModel as PydanticBaseModel, ConfigDict, Field, model_validator

from dlqops.models.base import BaseModel, sort_key_time


class ConditionField(str, Enum):
    """Message field a rule condition inspects."""

    DEAD_LETTER_REASON = "DeadLetterReason"
    DEAD_LETTER_ERROR_DESCRIPTION = "DeadLetterErrorDescription"
    FAILURE_CATEGORY = "FailureCategory"
    ENTITY_NAME = "EntityName"
    DELIVERY_COUNT = "DeliveryCount"
    CONTENT_TYPE = "ContentType"
    TOPIC_NAME = "TopicName"
    CORRELATION_ID = "CorrelationId"
    BODY_PREVIEW = "BodyPreview"
    APPLICATION_PROPERTY = "ApplicationProperty"


class ConditionOperator(str, Enum):
    """Comparison applied by a rule condition."""

    CONTAINS = "Contains"
    NOT_CONTAINS = "NotContains"
    EQUALS = "Equals"
    NOT_EQUALS = "NotEquals"
    STARTS_WITH = "StartsWith"
    ENDS_WITH = "EndsWith"
    REGEX = "Regex"
    GREATER_THAN = "GreaterThan"
    LESS_THAN = "LessThan"
    IN = "In"


NUMERIC_OPERATORS = frozenset({ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN})
NUMERIC_FIELDS = frozenset({ConditionField.DELIVERY_COUNT})


class RuleCondition(PydanticBaseModel):
    """A single predicate over a DLQ message. Conditions of a rule are ANDed."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    field: ConditionField
    operator: ConditionOperator
    value: str = Field(default="", max_length=1000)
    case_sensitive: bool = False
    property_key: str | None = Field(None, max_length=256)


class RuleAction(PydanticBaseModel):
    """What to do with a message once a rule matches."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    auto_replay: bool = True
    delay_seconds: int = Field(default=60, ge=0, le=86400)
    max_retries: int = Field(default=3, ge=1, le=10)
    exponential_backoff: bool = True
    target_entity: str | None = Field(None, description="Defaults to the original entity")


class AutoReplayRule(BaseModel):
    """User-defined remediation rule.

    Key Pattern:
        PK: RULE#{id}
        SK: META
        GSI1PK: RULES
        GSI1SK: {created_at}#{id}
    """

    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=1000)
    enabled: bool = True
    conditions: list[RuleCondition] = Field(default_factory=list)
    action: RuleAction = Field(default_factory=RuleAction)
    max_replays_per_hour: int = Field(default=100, ge=1, le=10000)
    enabled_at: datetime | None = Field(
        None, description="Last switch from disabled to enabled, None if never re-enabled"
    )

    # Monotonic counters, only changed through atomic ADD
    match_count: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)

    @property
    def success_rate(self) -> float:
        """Percentage of matched replays that succeeded."""
        if self.match_count == 0:
            return 0.0
        return round(self.success_count / self.match_count * 100, 2)

    def get_pk(self) -> str:
        """Get partition key: RULE#{id}."""
        return f"RULE#{self.id}"

    def get_sk(self) -> str:
        """Get sort key: META."""
        return "META"

    def get_gsi_keys(self) -> dict[str, str]:
        """Get GSI1 keys for listing rules in creation order."""
        return {
            "GSI1PK": "RULES",
            "GSI1SK": f"{sort_key_time(self.created_at)}#{self.id}",
        }

    def to_response(self) -> dict:
        """Serialize for API responses, including the derived success rate."""
        data = self.model_dump(mode="json")
        data["success_rate"] = self.success_rate
        return data


class CreateRuleRequest(PydanticBaseModel):
    """Request model for creating a rule."""

    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=1000)
    enabled: bool = True
    conditions: list[RuleCondition] = Field(..., min_length=1)
    action: RuleAction = Field(default_factory=RuleAction)
    max_replays_per_hour: int = Field(default=100, ge=1, le=10000)


class UpdateRuleRequest(PydanticBaseModel):
    """Request model for updating a rule. Omitted fields are left unchanged."""

    name: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = Field(None, max_length=1000)
    enabled: bool | None = None
    conditions: list[RuleCondition] | None = Field(None, min_length=1)
    action: RuleAction | None = None
    max_replays_per_hour: int | None = Field(None, ge=1, le=10000)


class TestRuleRequest(PydanticBaseModel):
    """Request model for dry-running conditions against Active messages."""

    __test__ = False

    conditions: list[RuleCondition] | None = None
    rule_id: str | None = None
    max_messages: int = Field(
        default=100,
        ge=1,
        le=1000,
        validation_alias=AliasChoices("max_messages", "sample_size"),
    )
    namespace_id: str | None = None

    @model_validator(mode="after")
    def require_conditions_or_rule(self) -> "TestRuleRequest":
        """Either inline conditions or a stored rule id must be given."""
        if not self.conditions and not self.rule_id:
            raise ValueError("Either conditions or rule_id is required")
        return self
