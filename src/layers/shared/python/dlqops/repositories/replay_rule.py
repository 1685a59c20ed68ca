"""Repository for auto-replay rules."""

import structlog
from botocore.exceptions import ClientError

from dlqops.models.base import utc_now
from dlqops.models.replay_rule import AutoReplayRule
from dlqops.repositories.base import BaseRepository, is_conditional_check_failure
from dlqops.utils.exceptions import ConflictError, NotFoundError

logger = structlog.get_logger()

# Attributes a definition update writes. Counters and keys are never touched.
DEFINITION_ATTRIBUTES = (
    "name",
    "description",
    "enabled",
    "enabled_at",
    "conditions",
    "action",
    "max_replays_per_hour",
)


class ReplayRuleRepository(BaseRepository[AutoReplayRule]):
    """Repository for AutoReplayRule records."""

    def __init__(self, table_name: str | None = None):
        """Initialize rule repository.

        Args:
            table_name: DynamoDB table name.
        """
        super().__init__(AutoReplayRule, table_name)

    def get_by_id(self, rule_id: str, consistent: bool = False) -> AutoReplayRule | None:
        """Get a rule by id."""
        return self.get(pk=f"RULE#{rule_id}", sk="META", consistent=consistent)

    def get_by_id_or_raise(self, rule_id: str) -> AutoReplayRule:
        """Get a rule by id or raise NotFoundError."""
        return self.get_or_raise(f"RULE#{rule_id}", "META", "AutoReplayRule", rule_id)

    def list_rules(self, enabled_only: bool = False) -> list[AutoReplayRule]:
        """List rules in creation order.

        Args:
            enabled_only: Only return enabled rules.

        Returns:
            List of rules, oldest first.
        """
        if enabled_only:
            return self.query_all(
                pk="RULES",
                index_name="GSI1",
                filter_expression="enabled = :enabled",
                expression_values={":enabled": True},
            )
        return self.query_all(pk="RULES", index_name="GSI1")

    def find_by_name(self, name: str) -> AutoReplayRule | None:
        """Find a rule by case-insensitive name."""
        wanted = name.strip().lower()
        for rule in self.list_rules():
            if rule.name.strip().lower() == wanted:
                return rule
        return None

    def create_rule(self, rule: AutoReplayRule) -> AutoReplayRule:
        """Create a new rule."""
        return self.create(rule)

    def update_rule(self, rule: AutoReplayRule) -> AutoReplayRule:
        """Write a rule's definition, guarded by the version it was read at.

        Only definition attributes are SET, so counters ADDed concurrently by
        ``increment_counters`` are kept.

        Raises:
            NotFoundError: If the rule does not exist.
            ConflictError: If the rule was modified since it was read.
        """
        item = rule.to_dynamodb()
        names: dict[str, str] = {}
        values: dict = {":expected": rule.version, ":now": utc_now().isoformat(), ":one": 1}
        sets = ["updated_at = :now"]
        removes = []

        for attr in DEFINITION_ATTRIBUTES:
            names[f"#{attr}"] = attr
            if attr in item:
                sets.append(f"#{attr} = :{attr}")
                values[f":{attr}"] = item[attr]
            else:
                removes.append(f"#{attr}")

        update = "SET " + ", ".join(sets)
        if removes:
            update += " REMOVE " + ", ".join(removes)
        update += " ADD version :one"

        try:
            response = self.table.update_item(
                Key={"PK": rule.get_pk(), "SK": rule.get_sk()},
                UpdateExpression=update,
                ConditionExpression="attribute_exists(PK) AND version = :expected",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if is_conditional_check_failure(e):
                if self.get_by_id(rule.id, consistent=True) is None:
                    raise NotFoundError("AutoReplayRule", rule.id)
                raise ConflictError("Rule was modified by another process", conflict_type="version")
            logger.error("Failed to update rule", rule_id=rule.id, error=str(e))
            raise
        return AutoReplayRule.from_dynamodb(response["Attributes"])

    def delete_rule(self, rule_id: str) -> bool:
        """Delete a rule."""
        return self.delete(pk=f"RULE#{rule_id}", sk="META")

    def set_enabled(self, rule_id: str, enabled: bool) -> AutoReplayRule:
        """Set the enabled flag without touching the rest of the definition.

        Switching a disabled rule on stamps ``enabled_at``. Setting the flag
        it already has is a no-op.

        Raises:
            NotFoundError: If the rule does not exist.
        """
        now = utc_now().isoformat()
        if enabled:
            update = "SET enabled = :enabled, enabled_at = :now, updated_at = :now ADD version :one"
        else:
            update = "SET enabled = :enabled, updated_at = :now ADD version :one"

        try:
            response = self.table.update_item(
                Key={"PK": f"RULE#{rule_id}", "SK": "META"},
                UpdateExpression=update,
                ConditionExpression="attribute_exists(PK) AND enabled <> :enabled",
                ExpressionAttributeValues={":enabled": enabled, ":now": now, ":one": 1},
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if is_conditional_check_failure(e):
                current = self.get_by_id(rule_id, consistent=True)
                if current is None:
                    raise NotFoundError("AutoReplayRule", rule_id)
                return current
            logger.error("Failed to toggle rule", rule_id=rule_id, error=str(e))
            raise
        return AutoReplayRule.from_dynamodb(response["Attributes"])

    def disable_if_enabled(self, rule_id: str) -> bool:
        """Atomically disable a rule only if it is currently enabled.

        Exactly one of several concurrent callers gets True.
        """
        try:
            self.table.update_item(
                Key={"PK": f"RULE#{rule_id}", "SK": "META"},
                UpdateExpression="SET enabled = :disabled, updated_at = :now ADD version :one",
                ConditionExpression="enabled = :enabled",
                ExpressionAttributeValues={
                    ":disabled": False,
                    ":enabled": True,
                    ":now": utc_now().isoformat(),
                    ":one": 1,
                },
            )
            return True
        except ClientError as e:
            if is_conditional_check_failure(e):
                return False
            logger.error("Failed to disable rule", rule_id=rule_id, error=str(e))
            raise

    def increment_counters(self, rule_id: str, success: bool) -> None:
        """Atomically count one replay attempt, and one success if it succeeded."""
        update = "ADD match_count :one, success_count :one" if success else "ADD match_count :one"
        try:
            self.table.update_item(
                Key={"PK": f"RULE#{rule_id}", "SK": "META"},
                UpdateExpression=update,
                ConditionExpression="attribute_exists(PK)",
                ExpressionAttributeValues={":one": 1},
            )
        except ClientError as e:
            if is_conditional_check_failure(e):
                logger.warning("Rule deleted before counters updated", rule_id=rule_id)
                return
            logger.error("Failed to increment rule counters", rule_id=rule_id, error=str(e))
            raise
