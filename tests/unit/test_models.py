"""Tests for models and their DynamoDB keys."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from dlqops.models.base import sort_key_time
from dlqops.models.dlq_message import DlqMessage, DlqMessageStatus, EntityType
from dlqops.models.replay_history import OutcomeStatus, ReplayHistory
from dlqops.models.replay_rule import AutoReplayRule, RuleAction, RuleCondition


class TestDlqMessage:
    """DlqMessage keys and serialization."""

    def test_keys(self, tracked):
        message = tracked(42, detected_at_utc=datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc))

        assert message.get_pk() == "DLQ#ns-test#orders"
        assert message.get_sk() == "SEQ#00000000000000000042"
        keys = message.get_gsi_keys()
        assert keys["GSI1PK"] == "DLQSTATUS#Active"
        assert keys["GSI1SK"] == f"2026-01-02T03:04:05.000000Z#{message.id}"
        assert keys["GSI2PK"] == f"DLQMSG#{message.id}"

    def test_round_trip_keeps_free_text(self, tracked):
        message = tracked(
            1,
            dead_letter_error_description="2026-01-01T00:00:00 is not a valid date",
            category_confidence=0.95,
        )

        item = message.to_dynamodb()
        assert item["category_confidence"] == Decimal("0.95")
        assert "replay_claim_id" not in item

        restored = DlqMessage.from_dynamodb(item)
        assert restored.dead_letter_error_description == "2026-01-01T00:00:00 is not a valid date"
        assert restored.category_confidence == 0.95
        assert restored.detected_at_utc == message.detected_at_utc

    def test_subscription_name(self, tracked):
        message = tracked(
            entity_name="events/subscriptions/billing",
            entity_type=EntityType.SUBSCRIPTION,
            topic_name="events",
        )
        assert message.subscription_name == "billing"
        assert tracked().subscription_name is None

    def test_is_active(self, tracked):
        assert tracked().is_active
        assert not tracked(status=DlqMessageStatus.ARCHIVED).is_active

    def test_default_enums_are_stored_as_values(self):
        message = DlqMessage(
            message_id="m",
            sequence_number=7,
            body_hash="empty",
            namespace_id="ns-test",
            entity_name="orders",
        )

        assert message.status == "Active"
        assert message.get_gsi_keys()["GSI1PK"] == "DLQSTATUS#Active"
        item = message.to_dynamodb()
        assert item["status"] == "Active"
        assert item["failure_category"] == "Unknown"
        assert item["entity_type"] == "queue"


class TestReplayRule:
    """Rule validation and counters."""

    def test_defaults(self):
        rule = AutoReplayRule(name="r")
        assert rule.enabled is True
        assert rule.max_replays_per_hour == 100
        assert rule.action.delay_seconds == 60
        assert rule.action.max_retries == 3

    @pytest.mark.parametrize(
        "kwargs",
        [{"delay_seconds": -1}, {"delay_seconds": 86401}, {"max_retries": 0}, {"max_retries": 11}],
    )
    def test_action_bounds(self, kwargs):
        with pytest.raises(PydanticValidationError):
            RuleAction(**kwargs)

    def test_rate_limit_bounds(self):
        with pytest.raises(PydanticValidationError):
            AutoReplayRule(name="r", max_replays_per_hour=0)

    def test_success_rate(self):
        assert AutoReplayRule(name="r").success_rate == 0.0
        assert AutoReplayRule(name="r", match_count=3, success_count=2).success_rate == 66.67

    def test_unknown_operator_rejected(self):
        with pytest.raises(PydanticValidationError):
            RuleCondition(field="DeadLetterReason", operator="Like", value="x")

    def test_gsi_keys_in_creation_order(self):
        rule = AutoReplayRule(name="r")
        assert rule.get_gsi_keys()["GSI1SK"].startswith(sort_key_time(rule.created_at))


class TestReplayHistory:
    """History keys."""

    def test_manual_replay_has_no_rule_index(self):
        row = ReplayHistory(
            dlq_message_id="m1",
            replayed_by="operator",
            outcome_status=OutcomeStatus.SUCCESS,
        )
        keys = row.get_gsi_keys()
        assert "GSI1PK" not in keys
        assert keys["GSI2PK"] == "HISTORY"
        assert row.get_pk() == "HIST#m1"

    def test_rule_disabled_is_not_an_attempt(self):
        row = ReplayHistory(
            dlq_message_id="m1",
            rule_id="r1",
            replayed_by="circuit-breaker",
            outcome_status=OutcomeStatus.RULE_DISABLED,
        )
        assert row.get_gsi_keys()["GSI1PK"] == "RULEHIST#r1"
        assert row.is_attempt is False
