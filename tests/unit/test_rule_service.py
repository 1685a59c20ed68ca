"""Tests for rule management."""

import pytest

from dlqops.models.replay_rule import CreateRuleRequest, TestRuleRequest, UpdateRuleRequest
from dlqops.services.rule_service import RuleService
from dlqops.utils.exceptions import BusinessRuleError, ConflictError, NotFoundError, ValidationError


@pytest.fixture
def service(rule_repo, message_repo, executor):
    return RuleService(rule_repo, message_repo, executor)


@pytest.fixture
def stored(message_repo, tracked):
    def _store(sequence_number: int = 1, **kwargs):
        message = tracked(sequence_number, **kwargs)
        message_repo.create_if_absent(message)
        return message

    return _store


def create_request(name="Lock lost", **kwargs):
    data = {
        "name": name,
        "conditions": [{"field": "DeadLetterReason", "operator": "Contains", "value": "Lock"}],
        "action": {"delay_seconds": 0, "max_retries": 1},
    }
    data.update(kwargs)
    return CreateRuleRequest.model_validate(data)


class TestRuleCrud:
    """Create, update, toggle and delete."""

    def test_create_and_get(self, service):
        rule = service.create_rule(create_request())

        fetched = service.get_rule(rule.id)
        assert fetched.name == "Lock lost"
        assert fetched.enabled is True
        assert fetched.conditions[0].value == "Lock"

    def test_duplicate_name_conflicts(self, service):
        service.create_rule(create_request())

        with pytest.raises(ConflictError):
            service.create_rule(create_request(name="lock LOST"))

    def test_invalid_regex_rejected_at_save(self, service):
        request = create_request(
            conditions=[{"field": "DeadLetterReason", "operator": "Regex", "value": "([bad"}]
        )
        with pytest.raises(ValidationError):
            service.create_rule(request)

    def test_empty_conditions_rejected_by_request_model(self):
        from pydantic import ValidationError as PydanticValidationError

        with pytest.raises(PydanticValidationError):
            create_request(conditions=[])

    def test_partial_update(self, service):
        rule = service.create_rule(create_request())

        updated = service.update_rule(rule.id, UpdateRuleRequest(max_replays_per_hour=5))

        assert updated.max_replays_per_hour == 5
        assert updated.name == "Lock lost"
        assert service.get_rule(rule.id).max_replays_per_hour == 5

    def test_update_that_enables_stamps_enabled_at(self, service):
        rule = service.create_rule(create_request(enabled=False))

        updated = service.update_rule(rule.id, UpdateRuleRequest(enabled=True))

        assert updated.enabled is True
        assert updated.enabled_at is not None
        assert service.get_rule(rule.id).enabled_at == updated.enabled_at

    def test_update_unknown_rule(self, service):
        with pytest.raises(NotFoundError):
            service.update_rule("missing", UpdateRuleRequest(enabled=False))

    def test_toggle_flips_and_sets(self, service):
        rule = service.create_rule(create_request())

        assert service.toggle_rule(rule.id).enabled is False
        assert service.toggle_rule(rule.id).enabled is True
        assert service.toggle_rule(rule.id, enabled=True).enabled is True

    def test_delete(self, service):
        rule = service.create_rule(create_request())

        service.delete_rule(rule.id)

        with pytest.raises(NotFoundError):
            service.get_rule(rule.id)

    def test_list_includes_pending_match_count(self, service, stored):
        stored(1, dead_letter_reason="MessageLockLost")
        stored(2, dead_letter_reason="TTLExpiredException")
        service.create_rule(create_request())

        items = service.list_rules()

        assert len(items) == 1
        assert items[0]["pending_match_count"] == 1
        assert items[0]["success_rate"] == 0.0

    def test_templates(self, service):
        templates = service.get_templates()
        ids = {t["id"] for t in templates}
        assert {"database-timeouts", "max-delivery-exceeded", "quota-exceeded"} <= ids


class TestTestRule:
    """Dry runs."""

    def test_inline_conditions(self, service, stored):
        stored(1, dead_letter_reason="MessageLockLost", failure_category="Transient")
        stored(2, dead_letter_reason="MessageLockLost", failure_category="DataQuality")
        stored(3, dead_letter_reason="TTLExpiredException", failure_category="Expired")

        result = service.test_rule(TestRuleRequest(
            conditions=[{"field": "DeadLetterReason", "operator": "Contains", "value": "Lock"}],
        ))

        assert result["total_tested"] == 3
        assert result["matched_count"] == 2
        assert result["estimated_success_rate"] == 50.0
        assert len(result["sample_matches"]) == 2

    def test_stored_rule_and_sample_size(self, service, stored):
        for i in range(1, 6):
            stored(i, dead_letter_reason="MessageLockLost")
        rule = service.create_rule(create_request())

        result = service.test_rule(TestRuleRequest.model_validate({"rule_id": rule.id, "sample_size": 2}))

        assert result["total_tested"] == 2
        assert result["matched_count"] == 2

    def test_requires_conditions_or_rule(self):
        from pydantic import ValidationError as PydanticValidationError

        with pytest.raises(PydanticValidationError):
            TestRuleRequest()


class TestReplayAll:
    """Immediate replay of every current match."""

    @pytest.mark.asyncio
    async def test_replays_matches_with_no_delay(self, service, stored, fake_broker):
        stored(1, dead_letter_reason="MessageLockLost")
        stored(2, dead_letter_reason="MessageLockLost")
        stored(3, dead_letter_reason="TTLExpiredException")
        rule = service.create_rule(create_request(action={"delay_seconds": 3600, "max_retries": 1}))

        result = await service.replay_all(rule.id)

        assert result.total_matched == 2
        assert result.replayed == 2
        assert result.skipped == 0
        assert len(fake_broker.replay_calls) == 2

    @pytest.mark.asyncio
    async def test_exhausted_budget_skips_everything(self, service, executor, stored, fake_broker):
        stored(1, dead_letter_reason="MessageLockLost")
        rule = service.create_rule(create_request(max_replays_per_hour=1))
        await executor.rate_limiter.reserve(rule.id, 1)

        result = await service.replay_all(rule.id)

        assert result.skipped == 1
        assert result.results[0]["outcome"] == "Skipped"
        assert fake_broker.replay_calls == []

    @pytest.mark.asyncio
    async def test_failures_are_counted(self, service, stored, fake_broker):
        stored(1, dead_letter_reason="MessageLockLost")
        rule = service.create_rule(create_request())
        fake_broker.replay_script = [False]

        result = await service.replay_all(rule.id)

        assert result.failed == 1
        assert result.results[0]["outcome"] == "Failed"

    @pytest.mark.asyncio
    async def test_requires_executor(self, rule_repo, message_repo):
        service = RuleService(rule_repo, message_repo)

        with pytest.raises(BusinessRuleError):
            await service.replay_all("any")
