"""Repository for replay audit history."""

from datetime import datetime

import structlog

from dlqops.models.base import sort_key_time
from dlqops.models.replay_history import OutcomeStatus, ReplayHistory
from dlqops.repositories.base import BaseRepository

logger = structlog.get_logger()


class ReplayHistoryRepository(BaseRepository[ReplayHistory]):
    """Append-only store of ReplayHistory rows."""

    def __init__(self, table_name: str | None = None):
        """Initialize history repository.

        Args:
            table_name: DynamoDB table name.
        """
        super().__init__(ReplayHistory, table_name)

    def append(self, entry: ReplayHistory) -> ReplayHistory:
        """Append a history row. Existing rows are never overwritten."""
        return self.create(entry)

    def list_for_message(self, dlq_message_id: str) -> list[ReplayHistory]:
        """List history for one message, oldest first."""
        return self.query_all(pk=f"HIST#{dlq_message_id}")

    def list_recent_for_rule(
        self, rule_id: str, limit: int, since: datetime | None = None
    ) -> list[ReplayHistory]:
        """List the most recent replay attempts of a rule, newest first.

        RuleDisabled rows are not attempts and are skipped. With ``since``,
        only attempts at or after that time are listed.
        """
        rows = self.query_all(
            pk=f"RULEHIST#{rule_id}",
            index_name="GSI1",
            sk_gte=sort_key_time(since) if since else None,
            scan_forward=False,
            filter_expression="outcome_status <> :disabled",
            expression_values={":disabled": OutcomeStatus.RULE_DISABLED.value},
            max_items=limit,
        )
        return rows

    def list_attempt_times_since(self, rule_id: str, since: datetime) -> list[datetime]:
        """Timestamps of a rule's replay attempts at or after ``since``."""
        rows = self.query_all(
            pk=f"RULEHIST#{rule_id}",
            index_name="GSI1",
            sk_gte=sort_key_time(since),
            filter_expression="outcome_status <> :disabled",
            expression_values={":disabled": OutcomeStatus.RULE_DISABLED.value},
        )
        return [row.replayed_at for row in rows]

    def list_all(self, since: datetime | None = None) -> list[ReplayHistory]:
        """List every history row, newest first."""
        if since is not None:
            return self.query_all(
                pk="HISTORY",
                index_name="GSI2",
                sk_gte=sort_key_time(since),
                scan_forward=False,
            )
        return self.query_all(pk="HISTORY", index_name="GSI2", scan_forward=False)
