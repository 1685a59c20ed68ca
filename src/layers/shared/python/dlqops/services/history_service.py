"""DLQ history queries and operator actions.

Read side over tracked messages and replay history (filtered listing,
per-message timeline, dashboard summary, export) plus the operator actions
that change a message: notes, archive, manual replay and DLQ purge.
"""

import csv
import io
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog

from dlqops.dlq.broker import BrokerFactory
from dlqops.dlq.replay_executor import AutoReplayExecutor, ReplayResult
from dlqops.models.base import utc_now
from dlqops.models.dlq_message import DlqMessage, DlqMessageStatus
from dlqops.models.replay_history import OutcomeStatus, ReplayHistory
from dlqops.repositories.dlq_message import DlqMessageRepository
from dlqops.repositories.replay_history import ReplayHistoryRepository
from dlqops.utils.exceptions import AlreadyReplayedError, BusinessRuleError, ValidationError

logger = structlog.get_logger()

TOP_ENTITY_LIMIT = 20
TREND_DAYS = 30
EXPORT_LIMIT = 10000

EXPORT_COLUMNS = [
    "id",
    "message_id",
    "sequence_number",
    "namespace_id",
    "entity_name",
    "status",
    "failure_category",
    "category_confidence",
    "dead_letter_reason",
    "dead_letter_error_description",
    "delivery_count",
    "enqueued_time_utc",
    "dead_letter_time_utc",
    "detected_at_utc",
    "replayed_at",
    "archived_at",
    "resolved_at",
    "user_notes",
]


@dataclass
class HistoryFilters:
    """Filters for listing and exporting tracked messages."""

    namespace_id: str | None = None
    entity_name: str | None = None
    status: DlqMessageStatus | None = None
    category: str | None = None
    from_time: datetime | None = None
    to_time: datetime | None = None

    def matches(self, message: DlqMessage) -> bool:
        """Check a message against every set filter."""
        if self.namespace_id and message.namespace_id != self.namespace_id:
            return False
        if self.entity_name and self.entity_name.lower() not in message.entity_name.lower():
            return False
        if self.category and message.failure_category != self.category:
            return False
        if self.from_time and message.detected_at_utc < self.from_time:
            return False
        if self.to_time and message.detected_at_utc > self.to_time:
            return False
        return True


@dataclass
class TimelineEvent:
    """One entry in a message's lifecycle timeline."""

    event_type: str
    description: str
    timestamp: datetime
    details: dict | None = None

    def to_dict(self) -> dict:
        """Serialize for API responses."""
        return {
            "event_type": self.event_type,
            "description": self.description,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details or {},
        }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class HistoryService:
    """Service for DLQ history, summaries and operator actions."""

    def __init__(
        self,
        message_repo: DlqMessageRepository | None = None,
        history_repo: ReplayHistoryRepository | None = None,
        executor: AutoReplayExecutor | None = None,
        broker_factory: BrokerFactory | None = None,
    ):
        """Initialize history service.

        Args:
            message_repo: DLQ message repository.
            history_repo: Replay history repository.
            executor: Replay executor, needed for manual replay.
            broker_factory: Broker factory, needed for purge.
        """
        self.message_repo = message_repo or DlqMessageRepository()
        self.history_repo = history_repo or ReplayHistoryRepository()
        self.executor = executor
        self.broker_factory = broker_factory or (executor.broker_factory if executor else None)
        self.logger = logger.bind(service="history_service")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _query(self, filters: HistoryFilters) -> list[DlqMessage]:
        if filters.status:
            messages = self.message_repo.list_by_status(filters.status, newest_first=True)
        else:
            messages = self.message_repo.list_all()
        return [m for m in messages if filters.matches(m)]

    def get_history(
        self,
        filters: HistoryFilters | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[DlqMessage], int]:
        """List tracked messages newest first.

        Args:
            filters: Optional filters.
            page: 1-indexed page number.
            page_size: Items per page (1..500).

        Returns:
            Tuple of (page items, total matching).
        """
        if page < 1 or not 1 <= page_size <= 500:
            raise ValidationError(
                "Invalid pagination",
                errors=[{"field": "page_size", "message": "page must be >= 1 and page_size 1..500"}],
            )
        messages = self._query(filters or HistoryFilters())
        start = (page - 1) * page_size
        return messages[start : start + page_size], len(messages)

    def get_message(self, dlq_message_id: str) -> dict:
        """Get a message with its replay history.

        Raises:
            NotFoundError: If the message is unknown.
        """
        message = self.message_repo.get_by_id_or_raise(dlq_message_id)
        history = self.history_repo.list_for_message(dlq_message_id)
        data = message.model_dump(mode="json", exclude={"replay_claim_id", "replay_claimed_at"})
        data["replay_history"] = [h.model_dump(mode="json") for h in history]
        return data

    def get_timeline(self, dlq_message_id: str) -> list[TimelineEvent]:
        """Build a message's lifecycle timeline ordered by time.

        Raises:
            NotFoundError: If the message is unknown.
        """
        message = self.message_repo.get_by_id_or_raise(dlq_message_id)
        history = self.history_repo.list_for_message(dlq_message_id)

        events = [
            TimelineEvent(
                "Enqueued",
                "Message was enqueued to the entity",
                message.enqueued_time_utc,
                {"entity": message.entity_name, "message_id": message.message_id},
            )
        ]

        if message.dead_letter_time_utc:
            details = {
                "reason": message.dead_letter_reason or "Unknown",
                "delivery_count": str(message.delivery_count),
            }
            if message.dead_letter_error_description:
                details["error_description"] = message.dead_letter_error_description
            events.append(TimelineEvent(
                "DeadLettered",
                f"Message moved to DLQ: {message.dead_letter_reason or 'Unknown reason'}",
                message.dead_letter_time_utc,
                details,
            ))

        events.append(TimelineEvent(
            "Detected",
            "Message detected by DLQ monitor",
            message.detected_at_utc,
            {
                "category": str(message.failure_category),
                "confidence": f"{message.category_confidence:.0%}",
            },
        ))

        for row in history:
            events.append(self._history_event(row))

        if message.replayed_at:
            events.append(TimelineEvent(
                "StatusChanged",
                f"Status changed to {message.status}",
                message.replayed_at,
            ))
        if message.archived_at:
            events.append(TimelineEvent("Archived", "Message archived", message.archived_at))
        if message.resolved_at:
            events.append(TimelineEvent(
                "Resolved",
                "Message no longer present in the dead-letter queue",
                message.resolved_at,
            ))

        events.sort(key=lambda e: _as_utc(e.timestamp))
        return events

    def _history_event(self, row: ReplayHistory) -> TimelineEvent:
        if row.outcome_status == OutcomeStatus.RULE_DISABLED:
            return TimelineEvent(
                "RuleDisabled",
                row.error_details or "Rule disabled by circuit breaker",
                row.replayed_at,
                {"rule_id": row.rule_id or "", "replayed_by": row.replayed_by},
            )
        event_type = "ReplayedSuccess" if row.outcome_status == OutcomeStatus.SUCCESS else "ReplayedFailed"
        details = {
            "strategy": str(row.replay_strategy),
            "replayed_by": row.replayed_by,
            "outcome": str(row.outcome_status),
            "attempts": str(row.attempts),
        }
        if row.error_details:
            details["error"] = row.error_details
        return TimelineEvent(
            event_type,
            f"Replay to {row.replayed_to_entity}: {row.outcome_status}",
            row.replayed_at,
            details,
        )

    def get_summary(self, namespace_id: str | None = None) -> dict:
        """Dashboard summary of tracked messages.

        Returns:
            Totals by status, Active counts by category, top entities by
            Active count, oldest and newest detection times and a 30-day
            daily trend of new versus resolved messages.
        """
        messages = self._query(HistoryFilters(namespace_id=namespace_id))
        by_status = Counter(str(m.status) for m in messages)
        active = [m for m in messages if m.is_active]

        by_category = Counter(str(m.failure_category) for m in active)
        by_entity = Counter(m.entity_name for m in active).most_common(TOP_ENTITY_LIMIT)

        detected_times = [_as_utc(m.detected_at_utc) for m in messages]
        since = utc_now() - timedelta(days=TREND_DAYS)

        new_per_day: Counter = Counter()
        resolved_per_day: Counter = Counter()
        for message in messages:
            detected = _as_utc(message.detected_at_utc)
            if detected >= since:
                new_per_day[detected.date()] += 1
            closed_at = message.replayed_at or message.resolved_at
            if closed_at and _as_utc(closed_at) >= since:
                resolved_per_day[_as_utc(closed_at).date()] += 1

        trend = [
            {
                "date": day.isoformat(),
                "new_messages": new_per_day.get(day, 0),
                "resolved_messages": resolved_per_day.get(day, 0),
            }
            for day in sorted(set(new_per_day) | set(resolved_per_day))
        ]

        return {
            "total_messages": len(messages),
            "active_messages": by_status.get(DlqMessageStatus.ACTIVE.value, 0),
            "replayed_messages": by_status.get(DlqMessageStatus.REPLAYED.value, 0),
            "archived_messages": by_status.get(DlqMessageStatus.ARCHIVED.value, 0),
            "resolved_messages": by_status.get(DlqMessageStatus.RESOLVED.value, 0),
            "by_category": dict(by_category),
            "by_entity": dict(by_entity),
            "oldest_message": min(detected_times).isoformat() if detected_times else None,
            "newest_message": max(detected_times).isoformat() if detected_times else None,
            "daily_trend": trend,
        }

    def export(self, filters: HistoryFilters | None = None, fmt: str = "json") -> list[dict] | str:
        """Export matching messages, newest first, as dicts or CSV text.

        Raises:
            ValidationError: If the format is not json or csv.
        """
        if fmt not in ("json", "csv"):
            raise ValidationError(
                "Unsupported export format",
                errors=[{"field": "format", "message": "format must be 'json' or 'csv'"}],
            )

        messages = self._query(filters or HistoryFilters())[:EXPORT_LIMIT]
        rows = [
            m.model_dump(mode="json", exclude={"replay_claim_id", "replay_claimed_at"})
            for m in messages
        ]
        if fmt == "json":
            return rows

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
        return buffer.getvalue()

    # -------------------------------------------------------------------------
    # Operator actions
    # -------------------------------------------------------------------------

    def update_notes(self, dlq_message_id: str, notes: str | None) -> DlqMessage:
        """Set or clear operator notes on a message."""
        message = self.message_repo.get_by_id_or_raise(dlq_message_id)
        self.message_repo.update_notes(message, notes)
        self.logger.info("Message notes updated", dlq_message_id=dlq_message_id)
        return self.message_repo.refresh(message) or message

    def archive(self, dlq_message_id: str) -> DlqMessage:
        """Archive an Active message so rules stop evaluating it.

        Raises:
            NotFoundError: If the message is unknown.
            AlreadyReplayedError: If the message is not Active.
        """
        message = self.message_repo.get_by_id_or_raise(dlq_message_id)
        if not self.message_repo.archive(message):
            latest = self.message_repo.refresh(message)
            raise AlreadyReplayedError(dlq_message_id, latest.status if latest else None)
        self.logger.info("Message archived", dlq_message_id=dlq_message_id)
        return self.message_repo.refresh(message) or message

    async def replay_message(
        self,
        dlq_message_id: str,
        replayed_by: str,
        target_entity: str | None = None,
    ) -> ReplayResult:
        """Replay one message on an operator's request.

        Raises:
            NotFoundError: If the message is unknown.
            AlreadyReplayedError: If it is not Active.
        """
        if self.executor is None:
            raise BusinessRuleError("Replay is not available without a broker", rule="broker_required")
        message = self.message_repo.get_by_id_or_raise(dlq_message_id)
        return await self.executor.replay_manual(message, replayed_by, target_entity)

    async def purge_dead_letters(self, namespace_id: str, entity_name: str) -> dict:
        """Purge an entity's dead-letter queue and resolve its Active rows.

        Args:
            namespace_id: Namespace id.
            entity_name: Queue name or topic/subscriptions/name.

        Returns:
            Dict with the broker's purged count and rows resolved.
        """
        if self.broker_factory is None:
            raise BusinessRuleError("Purge is not available without a broker", rule="broker_required")

        topic, sep, subscription = entity_name.partition("/subscriptions/")
        broker = self.broker_factory(namespace_id)
        if sep:
            purged = await broker.purge(topic, subscription=subscription, from_dead_letter=True)
        else:
            purged = await broker.purge(entity_name, from_dead_letter=True)

        resolved = 0
        for message in self.message_repo.list_by_entity(namespace_id, entity_name):
            if message.is_active and self.message_repo.mark_resolved(message):
                resolved += 1

        self.logger.info(
            "Dead-letter queue purged",
            namespace_id=namespace_id,
            entity_name=entity_name,
            purged=purged,
            resolved=resolved,
        )
        return {"purged": purged, "resolved": resolved}
