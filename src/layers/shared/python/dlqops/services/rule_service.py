"""Auto-replay rule management.

CRUD for rules plus dry-run testing against Active messages and an
operator-triggered replay of everything a rule currently matches.
"""

from dataclasses import dataclass, field

import structlog

from dlqops.dlq.replay_executor import AutoReplayExecutor, ReplayOutcome
from dlqops.dlq.rule_engine import evaluate, validate_conditions
from dlqops.models.base import utc_now
from dlqops.models.dlq_message import DlqMessage, FailureCategory
from dlqops.models.replay_rule import (
    AutoReplayRule,
    CreateRuleRequest,
    RuleCondition,
    TestRuleRequest,
    UpdateRuleRequest,
)
from dlqops.repositories.dlq_message import DlqMessageRepository
from dlqops.repositories.replay_rule import ReplayRuleRepository
from dlqops.services.rule_templates import get_templates
from dlqops.utils.exceptions import (
    AlreadyReplayedError,
    BusinessRuleError,
    ConflictError,
    RateLimitedError,
)

logger = structlog.get_logger()

# Categories where a replay is likely to succeed
REPLAYABLE_CATEGORIES = frozenset({
    FailureCategory.TRANSIENT.value,
    FailureCategory.MAX_DELIVERY.value,
    FailureCategory.EXPIRED.value,
})

SAMPLE_MATCH_LIMIT = 10


@dataclass
class ReplayAllResult:
    """Outcome of replaying every Active message a rule matches."""

    total_matched: int = 0
    replayed: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Serialize for API responses."""
        return {
            "total_matched": self.total_matched,
            "replayed": self.replayed,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": self.results,
        }


def _item(message: DlqMessage, outcome: str, error: str | None = None) -> dict:
    return {
        "dlq_message_id": message.id,
        "message_id": message.message_id,
        "entity_name": message.entity_name,
        "outcome": outcome,
        "error": error,
    }


class RuleService:
    """Service for managing auto-replay rules."""

    def __init__(
        self,
        rule_repo: ReplayRuleRepository | None = None,
        message_repo: DlqMessageRepository | None = None,
        executor: AutoReplayExecutor | None = None,
    ):
        """Initialize rule service.

        Args:
            rule_repo: Rule repository.
            message_repo: DLQ message repository.
            executor: Replay executor, needed only for replay_all.
        """
        self.rule_repo = rule_repo or ReplayRuleRepository()
        self.message_repo = message_repo or DlqMessageRepository()
        self.executor = executor
        self.logger = logger.bind(service="rule_service")

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def _ensure_unique_name(self, name: str, rule_id: str | None = None) -> None:
        existing = self.rule_repo.find_by_name(name)
        if existing and existing.id != rule_id:
            raise ConflictError(f"A rule named '{name}' already exists", conflict_type="duplicate_name")

    def create_rule(self, request: CreateRuleRequest) -> AutoReplayRule:
        """Create a rule after validating its conditions.

        Raises:
            ValidationError: If a condition is invalid.
            ConflictError: If the name is taken.
        """
        validate_conditions(request.conditions)
        self._ensure_unique_name(request.name)

        rule = AutoReplayRule(
            name=request.name.strip(),
            description=request.description,
            enabled=request.enabled,
            conditions=request.conditions,
            action=request.action,
            max_replays_per_hour=request.max_replays_per_hour,
        )
        self.rule_repo.create_rule(rule)
        self.logger.info("Rule created", rule_id=rule.id, rule_name=rule.name)
        return rule

    def update_rule(self, rule_id: str, request: UpdateRuleRequest) -> AutoReplayRule:
        """Apply a partial update to a rule.

        Raises:
            NotFoundError: If the rule does not exist.
            ValidationError: If new conditions are invalid.
            ConflictError: If the new name is taken or the rule changed concurrently.
        """
        rule = self.rule_repo.get_by_id_or_raise(rule_id)
        changes = request.model_dump(exclude_unset=True)

        if request.conditions is not None:
            validate_conditions(request.conditions)
        if request.name is not None:
            self._ensure_unique_name(request.name, rule_id)

        if "name" in changes:
            rule.name = request.name.strip()
        if "description" in changes:
            rule.description = request.description
        if request.enabled is not None:
            if request.enabled and not rule.enabled:
                rule.enabled_at = utc_now()
            rule.enabled = request.enabled
        if request.conditions is not None:
            rule.conditions = request.conditions
        if request.action is not None:
            rule.action = request.action
        if request.max_replays_per_hour is not None:
            rule.max_replays_per_hour = request.max_replays_per_hour

        rule = self.rule_repo.update_rule(rule)
        self.logger.info("Rule updated", rule_id=rule.id, fields=sorted(changes))
        return rule

    def delete_rule(self, rule_id: str) -> None:
        """Delete a rule. History rows referencing it are kept.

        Raises:
            NotFoundError: If the rule does not exist.
        """
        self.rule_repo.get_by_id_or_raise(rule_id)
        self.rule_repo.delete_rule(rule_id)
        if self.executor is not None:
            self.executor.rate_limiter.forget(rule_id)
        self.logger.info("Rule deleted", rule_id=rule_id)

    def toggle_rule(self, rule_id: str, enabled: bool | None = None) -> AutoReplayRule:
        """Enable or disable a rule, flipping it when ``enabled`` is None."""
        if enabled is None:
            enabled = not self.rule_repo.get_by_id_or_raise(rule_id).enabled
        rule = self.rule_repo.set_enabled(rule_id, enabled)
        self.logger.info("Rule toggled", rule_id=rule_id, enabled=enabled)
        return rule

    def get_rule(self, rule_id: str) -> AutoReplayRule:
        """Get a rule or raise NotFoundError."""
        return self.rule_repo.get_by_id_or_raise(rule_id)

    def list_rules(self, enabled_only: bool = False) -> list[dict]:
        """List rules in creation order with their live pending match count.

        The pending count is how many Active messages each rule matches now.
        """
        rules = self.rule_repo.list_rules(enabled_only=enabled_only)
        active = self.message_repo.list_active() if rules else []

        items = []
        for rule in rules:
            data = rule.to_response()
            data["pending_match_count"] = sum(
                1 for message in active if evaluate(message, rule.conditions).is_match
            )
            items.append(data)
        return items

    def get_templates(self) -> list[dict]:
        """List built-in rule templates."""
        return get_templates()

    # -------------------------------------------------------------------------
    # Test and replay-all
    # -------------------------------------------------------------------------

    def _conditions_for(self, request: TestRuleRequest) -> list[RuleCondition]:
        if request.rule_id:
            return self.rule_repo.get_by_id_or_raise(request.rule_id).conditions
        validate_conditions(request.conditions or [])
        return list(request.conditions or [])

    def test_rule(self, request: TestRuleRequest) -> dict:
        """Dry-run conditions against the newest Active messages.

        Returns:
            Dict with total_tested, matched_count, estimated_success_rate
            (percent of matches in replayable categories) and up to ten
            sample matches.
        """
        conditions = self._conditions_for(request)
        messages = self.message_repo.list_active(request.namespace_id)
        messages.sort(key=lambda m: m.detected_at_utc, reverse=True)
        messages = messages[: request.max_messages]

        matched = []
        for message in messages:
            result = evaluate(message, conditions)
            if result.is_match:
                matched.append(message)

        replayable = sum(1 for m in matched if m.failure_category in REPLAYABLE_CATEGORIES)
        estimated = round(replayable / len(matched) * 100, 1) if matched else 0.0

        return {
            "total_tested": len(messages),
            "matched_count": len(matched),
            "estimated_success_rate": estimated,
            "sample_matches": [
                {
                    "dlq_message_id": m.id,
                    "message_id": m.message_id,
                    "entity_name": m.entity_name,
                    "dead_letter_reason": m.dead_letter_reason,
                    "failure_category": m.failure_category,
                }
                for m in matched[:SAMPLE_MATCH_LIMIT]
            ],
        }

    async def replay_all(self, rule_id: str) -> ReplayAllResult:
        """Replay every Active message the rule currently matches, immediately.

        The rule's hourly limit still applies. When the budget is already
        spent every match is reported as skipped without contacting the broker.

        Raises:
            NotFoundError: If the rule does not exist.
            BusinessRuleError: If no executor is configured.
        """
        if self.executor is None:
            raise BusinessRuleError("Replay is not available without a broker", rule="broker_required")

        rule = self.rule_repo.get_by_id_or_raise(rule_id)
        matched = [
            m for m in self.message_repo.list_active()
            if evaluate(m, rule.conditions).is_match
        ]
        outcome = ReplayAllResult(total_matched=len(matched))
        if not matched:
            return outcome

        budget = await self.executor.rate_limiter.can_replay(rule.id, rule.max_replays_per_hour)
        if not budget.allowed:
            reason = f"Rule '{rule.name}' has exceeded its hourly replay limit"
            outcome.skipped = len(matched)
            outcome.results = [_item(m, "Skipped", reason) for m in matched]
            return outcome

        action = rule.action.model_copy(update={"delay_seconds": 0})
        actor = f"manual-replay-all:{rule.name}"

        for message in matched:
            try:
                result = await self.executor.execute(message, rule, action, replayed_by=actor)
            except (RateLimitedError, AlreadyReplayedError, BusinessRuleError) as e:
                outcome.skipped += 1
                outcome.results.append(_item(message, "Skipped", e.message))
                continue

            if result.outcome == ReplayOutcome.SUCCESS:
                outcome.replayed += 1
                outcome.results.append(_item(message, "Success"))
            else:
                outcome.failed += 1
                outcome.results.append(_item(message, "Failed", result.error))

        self.logger.info(
            "Replay-all completed",
            rule_id=rule.id,
            rule_name=rule.name,
            matched=outcome.total_matched,
            replayed=outcome.replayed,
            failed=outcome.failed,
            skipped=outcome.skipped,
        )
        return outcome
