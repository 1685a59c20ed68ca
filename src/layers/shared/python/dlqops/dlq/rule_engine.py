"""Rule evaluation against DLQ messages.

The engine is stateless. Conditions are ANDed and evaluation stops at the
first condition that fails. A rule without conditions never matches.
"""

from dataclasses import dataclass
from typing import Any

import regex
import structlog

from dlqops.models.dlq_message import DlqMessage
from dlqops.models.replay_rule import (
    NUMERIC_FIELDS,
    NUMERIC_OPERATORS,
    AutoReplayRule,
    ConditionField,
    ConditionOperator,
    RuleAction,
    RuleCondition,
)
from dlqops.utils.exceptions import ValidationError

logger = structlog.get_logger()

# Regex conditions that run longer than this are a non-match
REGEX_TIMEOUT_SECONDS = 0.1


@dataclass
class RuleMatchResult:
    """Outcome of evaluating a condition list against one message."""

    is_match: bool
    matched_condition_count: int = 0
    reason: str | None = None


def _field_value(message: DlqMessage, condition: RuleCondition) -> Any:
    """Resolve the message value a condition inspects."""
    field = ConditionField(condition.field)
    if field == ConditionField.DEAD_LETTER_REASON:
        return message.dead_letter_reason
    if field == ConditionField.DEAD_LETTER_ERROR_DESCRIPTION:
        return message.dead_letter_error_description
    if field == ConditionField.FAILURE_CATEGORY:
        return message.failure_category
    if field == ConditionField.ENTITY_NAME:
        return message.entity_name
    if field == ConditionField.DELIVERY_COUNT:
        return message.delivery_count
    if field == ConditionField.CONTENT_TYPE:
        return message.content_type
    if field == ConditionField.TOPIC_NAME:
        return message.topic_name
    if field == ConditionField.CORRELATION_ID:
        return message.correlation_id
    if field == ConditionField.BODY_PREVIEW:
        return message.body_preview
    if field == ConditionField.APPLICATION_PROPERTY:
        if not condition.property_key:
            return None
        return message.application_properties.get(condition.property_key)
    return None


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def evaluate_condition(message: DlqMessage, condition: RuleCondition) -> bool:
    """Evaluate a single condition against a message.

    Never raises: an invalid or slow regex, or a non-numeric comparison, is a
    non-match.
    """
    operator = ConditionOperator(condition.operator)
    raw = _field_value(message, condition)

    if raw is None:
        # Absent values only satisfy negative operators
        return operator in (ConditionOperator.NOT_CONTAINS, ConditionOperator.NOT_EQUALS)

    if operator in NUMERIC_OPERATORS:
        if ConditionField(condition.field) not in NUMERIC_FIELDS:
            return False
        actual = _as_number(raw)
        expected = _as_number(condition.value)
        if actual is None or expected is None:
            return False
        if operator == ConditionOperator.GREATER_THAN:
            return actual > expected
        return actual < expected

    actual_text = str(raw.value if hasattr(raw, "value") else raw)
    expected_text = condition.value or ""

    if operator == ConditionOperator.REGEX:
        flags = 0 if condition.case_sensitive else regex.IGNORECASE
        try:
            return regex.search(
                expected_text, actual_text, flags=flags, timeout=REGEX_TIMEOUT_SECONDS
            ) is not None
        except regex.error:
            return False
        except TimeoutError:
            logger.warning(
                "Regex condition timed out",
                pattern=expected_text[:200],
                timeout=REGEX_TIMEOUT_SECONDS,
            )
            return False

    if not condition.case_sensitive:
        actual_text = actual_text.lower()
        expected_text = expected_text.lower()

    if operator == ConditionOperator.CONTAINS:
        return expected_text in actual_text
    if operator == ConditionOperator.NOT_CONTAINS:
        return expected_text not in actual_text
    if operator == ConditionOperator.EQUALS:
        return actual_text == expected_text
    if operator == ConditionOperator.NOT_EQUALS:
        return actual_text != expected_text
    if operator == ConditionOperator.STARTS_WITH:
        return actual_text.startswith(expected_text)
    if operator == ConditionOperator.ENDS_WITH:
        return actual_text.endswith(expected_text)
    if operator == ConditionOperator.IN:
        allowed = {token.strip() for token in expected_text.split(",") if token.strip()}
        return actual_text.strip() in allowed

    return False


def evaluate(message: DlqMessage, conditions: list[RuleCondition]) -> RuleMatchResult:
    """Evaluate ANDed conditions against a message.

    Args:
        message: Message to test.
        conditions: Ordered conditions of a rule.

    Returns:
        RuleMatchResult. ``matched_condition_count`` counts the conditions
        that passed before evaluation stopped.
    """
    if not conditions:
        return RuleMatchResult(is_match=False, reason="Rule has no conditions")

    for index, condition in enumerate(conditions):
        if not evaluate_condition(message, condition):
            return RuleMatchResult(
                is_match=False,
                matched_condition_count=index,
                reason=f"Condition {index + 1} ({condition.field} {condition.operator}) did not match",
            )

    return RuleMatchResult(is_match=True, matched_condition_count=len(conditions))


def find_matching_rules(
    message: DlqMessage,
    rules: list[AutoReplayRule],
) -> list[tuple[AutoReplayRule, RuleAction]]:
    """Select enabled rules matching a message, preserving rule order."""
    matches = []
    for rule in rules:
        if not rule.enabled:
            continue
        if evaluate(message, rule.conditions).is_match:
            matches.append((rule, rule.action))

    if matches:
        logger.debug(
            "Rules matched message",
            dlq_message_id=message.id,
            rule_ids=[rule.id for rule, _ in matches],
        )
    return matches


def validate_conditions(conditions: list[RuleCondition]) -> None:
    """Reject conditions that could never be evaluated meaningfully.

    Raises:
        ValidationError: Listing every invalid condition.
    """
    errors: list[dict] = []
    for index, condition in enumerate(conditions):
        field = ConditionField(condition.field)
        operator = ConditionOperator(condition.operator)
        location = f"conditions.{index}"

        if field == ConditionField.APPLICATION_PROPERTY and not condition.property_key:
            errors.append({
                "field": f"{location}.property_key",
                "message": "property_key is required for ApplicationProperty conditions",
            })

        if operator == ConditionOperator.REGEX:
            try:
                regex.compile(condition.value)
            except regex.error as e:
                errors.append({
                    "field": f"{location}.value",
                    "message": f"Invalid regular expression: {e}",
                })

        if operator in NUMERIC_OPERATORS:
            if field not in NUMERIC_FIELDS:
                errors.append({
                    "field": f"{location}.operator",
                    "message": f"{operator.value} is only valid for numeric fields",
                })
            elif _as_number(condition.value) is None:
                errors.append({
                    "field": f"{location}.value",
                    "message": f"{operator.value} requires a numeric value",
                })

    if errors:
        raise ValidationError("Invalid rule conditions", errors=errors)
