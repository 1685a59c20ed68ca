"""Tests for DLQ history queries and operator actions."""

import csv
import io
from datetime import datetime, timedelta, timezone

import pytest

from dlqops.models.dlq_message import DlqMessageStatus
from dlqops.models.replay_history import OutcomeStatus, ReplayHistory
from dlqops.services.history_service import HistoryFilters, HistoryService
from dlqops.utils.exceptions import AlreadyReplayedError, BusinessRuleError, NotFoundError, ValidationError

NAMESPACE = "ns-test"


@pytest.fixture
def service(message_repo, history_repo, executor):
    return HistoryService(message_repo, history_repo, executor)


@pytest.fixture
def stored(message_repo, tracked):
    def _store(sequence_number: int = 1, **kwargs):
        message = tracked(sequence_number, **kwargs)
        message_repo.create_if_absent(message)
        return message

    return _store


def hours_ago(hours: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours)


class TestGetHistory:
    """Filtered listing."""

    def test_newest_first_with_pagination(self, service, stored):
        for i in range(1, 6):
            stored(i, detected_at_utc=hours_ago(10 - i))

        page, total = service.get_history(page=1, page_size=2)

        assert total == 5
        assert [m.sequence_number for m in page] == [5, 4]

        page, _ = service.get_history(page=3, page_size=2)
        assert [m.sequence_number for m in page] == [1]

    def test_filters(self, service, stored, message_repo):
        stored(1, entity_name="orders-eu", failure_category="Transient")
        stored(2, entity_name="payments", failure_category="Transient")
        archived = stored(3, entity_name="orders-us", failure_category="Expired")
        message_repo.archive(archived)

        by_entity, _ = service.get_history(HistoryFilters(entity_name="ORDERS"))
        assert {m.sequence_number for m in by_entity} == {1, 3}

        by_category, _ = service.get_history(HistoryFilters(category="Transient"))
        assert {m.sequence_number for m in by_category} == {1, 2}

        by_status, _ = service.get_history(HistoryFilters(status=DlqMessageStatus.ARCHIVED))
        assert [m.sequence_number for m in by_status] == [3]

    def test_time_range(self, service, stored):
        stored(1, detected_at_utc=hours_ago(48))
        stored(2, detected_at_utc=hours_ago(1))

        recent, total = service.get_history(HistoryFilters(from_time=hours_ago(24)))

        assert total == 1
        assert recent[0].sequence_number == 2

    def test_invalid_page_size(self, service):
        with pytest.raises(ValidationError):
            service.get_history(page_size=0)


class TestMessageAndTimeline:
    """Per-message detail."""

    def test_get_message_includes_history(self, service, stored, history_repo):
        message = stored(1)
        history_repo.append(ReplayHistory(
            dlq_message_id=message.id,
            replayed_by="operator",
            replayed_to_entity="orders",
            outcome_status=OutcomeStatus.FAILED,
            error_details="broker rejected",
            attempts=2,
        ))

        data = service.get_message(message.id)

        assert data["id"] == message.id
        assert "replay_claim_id" not in data
        assert len(data["replay_history"]) == 1
        assert data["replay_history"][0]["outcome_status"] == "Failed"

    def test_unknown_message(self, service, dynamodb_table):
        with pytest.raises(NotFoundError):
            service.get_message("missing")

    @pytest.mark.asyncio
    async def test_timeline_is_ordered(self, service, stored):
        message = stored(
            1,
            enqueued_time_utc=hours_ago(3),
            dead_letter_time_utc=hours_ago(2),
            detected_at_utc=hours_ago(1),
        )
        await service.replay_message(message.id, "operator")

        events = service.get_timeline(message.id)

        types = [e.event_type for e in events]
        assert types[:3] == ["Enqueued", "DeadLettered", "Detected"]
        assert sorted(types[3:]) == ["ReplayedSuccess", "StatusChanged"]
        assert events[1].details["reason"] == "MaxDeliveryCountExceeded"

    def test_timeline_includes_archive(self, service, stored):
        message = stored(1, enqueued_time_utc=hours_ago(2), detected_at_utc=hours_ago(1))
        service.archive(message.id)

        events = service.get_timeline(message.id)

        assert events[-1].event_type == "Archived"


class TestSummary:
    """Dashboard aggregation."""

    def test_counts_and_trend(self, service, stored, message_repo):
        stored(1, entity_name="orders", failure_category="Transient")
        stored(2, entity_name="orders", failure_category="Expired")
        stored(3, entity_name="payments", failure_category="Transient")
        archived = stored(4, entity_name="payments")
        message_repo.archive(archived)
        stored(5, entity_name="orders", detected_at_utc=hours_ago(24 * 45))

        summary = service.get_summary()

        assert summary["total_messages"] == 5
        assert summary["active_messages"] == 4
        assert summary["archived_messages"] == 1
        assert summary["by_category"] == {"Transient": 2, "Expired": 1, "MaxDelivery": 1}
        assert summary["by_entity"] == {"orders": 3, "payments": 1}
        assert sum(day["new_messages"] for day in summary["daily_trend"]) == 4
        assert summary["oldest_message"] < summary["newest_message"]

    def test_namespace_filter(self, service, stored):
        stored(1)
        stored(2, namespace_id="other")

        assert service.get_summary(NAMESPACE)["total_messages"] == 1

    def test_empty(self, service, dynamodb_table):
        summary = service.get_summary()

        assert summary["total_messages"] == 0
        assert summary["oldest_message"] is None
        assert summary["daily_trend"] == []


class TestExport:
    """Bulk export."""

    def test_json(self, service, stored):
        stored(1)
        stored(2)

        rows = service.export()

        assert len(rows) == 2
        assert "replay_claim_id" not in rows[0]

    def test_csv(self, service, stored):
        stored(1, user_notes="check, with comma")

        text = service.export(fmt="csv")

        rows = list(csv.DictReader(io.StringIO(text)))
        assert len(rows) == 1
        assert rows[0]["message_id"] == "msg-1"
        assert rows[0]["user_notes"] == "check, with comma"

    def test_unknown_format(self, service):
        with pytest.raises(ValidationError):
            service.export(fmt="xml")


class TestOperatorActions:
    """Notes, archive, replay and purge."""

    def test_notes(self, service, stored):
        message = stored(1)

        assert service.update_notes(message.id, "investigating").user_notes == "investigating"
        assert service.update_notes(message.id, None).user_notes is None

    def test_archive_twice_is_rejected(self, service, stored):
        message = stored(1)
        service.archive(message.id)

        with pytest.raises(AlreadyReplayedError):
            service.archive(message.id)

    @pytest.mark.asyncio
    async def test_replay_to_alternate_entity(self, service, stored, fake_broker):
        message = stored(1)

        result = await service.replay_message(message.id, "operator", target_entity="orders-retry")

        assert result.success
        assert fake_broker.replay_calls == [("orders-retry", None, 1)]

    @pytest.mark.asyncio
    async def test_replay_without_broker(self, message_repo, history_repo, stored):
        message = stored(1)
        service = HistoryService(message_repo, history_repo)

        with pytest.raises(BusinessRuleError):
            await service.replay_message(message.id, "operator")

    @pytest.mark.asyncio
    async def test_purge_resolves_active_rows(self, service, stored, fake_broker, peeked, message_repo):
        fake_broker.add_queue("orders", [peeked(1), peeked(2)])
        first = stored(1)
        stored(2)
        stored(3, entity_name="payments")

        result = await service.purge_dead_letters(NAMESPACE, "orders")

        assert result == {"purged": 2, "resolved": 2}
        assert fake_broker.purge_calls == [("orders", None)]
        assert message_repo.get_by_id(first.id).status == DlqMessageStatus.RESOLVED.value
        assert len(message_repo.list_active()) == 1

    @pytest.mark.asyncio
    async def test_purge_subscription(self, service, fake_broker):
        result = await service.purge_dead_letters(NAMESPACE, "events/subscriptions/billing")

        assert fake_broker.purge_calls == [("events", "billing")]
        assert result["resolved"] == 0
