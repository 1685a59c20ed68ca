"""Repository for tracked DLQ messages."""

from datetime import datetime, timedelta
from typing import Any

import structlog
from botocore.exceptions import ClientError

from dlqops.models.base import utc_now
from dlqops.models.dlq_message import (
    DlqMessage,
    DlqMessageStatus,
    dlq_message_pk,
    dlq_message_sk,
)
from dlqops.repositories.base import BaseRepository, is_conditional_check_failure
from dlqops.utils.exceptions import ConflictError, NotFoundError

logger = structlog.get_logger()


class DlqMessageRepository(BaseRepository[DlqMessage]):
    """Repository for DlqMessage rows.

    Rows are never deleted. Every status transition is a conditional update
    so concurrent workers cannot move a message twice.
    """

    def __init__(self, table_name: str | None = None):
        """Initialize DLQ message repository.

        Args:
            table_name: DynamoDB table name.
        """
        super().__init__(DlqMessage, table_name)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_by_key(
        self,
        namespace_id: str,
        entity_name: str,
        sequence_number: int,
        consistent: bool = False,
    ) -> DlqMessage | None:
        """Get a message by its natural key."""
        return self.get(
            pk=dlq_message_pk(namespace_id, entity_name),
            sk=dlq_message_sk(sequence_number),
            consistent=consistent,
        )

    def exists(self, namespace_id: str, entity_name: str, sequence_number: int) -> bool:
        """Check whether a row is already tracked for this sequence number."""
        response = self.table.get_item(
            Key=self._build_key(
                dlq_message_pk(namespace_id, entity_name),
                dlq_message_sk(sequence_number),
            ),
            ProjectionExpression="PK",
        )
        return "Item" in response

    def get_by_id(self, message_id: str) -> DlqMessage | None:
        """Resolve a message by its id, then re-read it from the base table.

        Args:
            message_id: DlqMessage id.

        Returns:
            The current row, or None if unknown.
        """
        items, _ = self.query(pk=f"DLQMSG#{message_id}", index_name="GSI2", limit=1)
        if not items:
            return None
        found = items[0]
        return self.refresh(found) or found

    def get_by_id_or_raise(self, message_id: str) -> DlqMessage:
        """Resolve a message by id or raise NotFoundError."""
        message = self.get_by_id(message_id)
        if not message:
            raise NotFoundError("DlqMessage", message_id)
        return message

    def refresh(self, message: DlqMessage) -> DlqMessage | None:
        """Strongly consistent re-read of a message."""
        return self.get_by_key(
            message.namespace_id,
            message.entity_name,
            message.sequence_number,
            consistent=True,
        )

    def list_by_status(
        self,
        status: DlqMessageStatus | str,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[DlqMessage]:
        """List messages in a status, ordered by detection time.

        Args:
            status: Status to list.
            limit: Maximum messages to return.
            newest_first: Sort descending by detection time.

        Returns:
            List of DlqMessage rows.
        """
        status_value = status.value if isinstance(status, DlqMessageStatus) else status
        return self.query_all(
            pk=f"DLQSTATUS#{status_value}",
            index_name="GSI1",
            scan_forward=not newest_first,
            max_items=limit,
        )

    def list_active(self, namespace_id: str | None = None, limit: int | None = None) -> list[DlqMessage]:
        """List Active messages, oldest first, optionally for one namespace."""
        if namespace_id is None:
            return self.list_by_status(DlqMessageStatus.ACTIVE, limit=limit)
        return self.query_all(
            pk=f"DLQSTATUS#{DlqMessageStatus.ACTIVE.value}",
            index_name="GSI1",
            filter_expression="namespace_id = :namespace_id",
            expression_values={":namespace_id": namespace_id},
            max_items=limit,
        )

    def list_all(self) -> list[DlqMessage]:
        """List every tracked message across all statuses, newest first."""
        messages: list[DlqMessage] = []
        for status in DlqMessageStatus:
            messages.extend(self.list_by_status(status))
        messages.sort(key=lambda m: m.detected_at_utc, reverse=True)
        return messages

    def list_by_entity(self, namespace_id: str, entity_name: str) -> list[DlqMessage]:
        """List every tracked row of one entity in sequence order."""
        return self.query_all(pk=dlq_message_pk(namespace_id, entity_name))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def create_if_absent(self, message: DlqMessage) -> bool:
        """Persist a newly detected message unless its key is already tracked.

        Returns:
            True if this call created the row, False if it already existed.
        """
        try:
            self.create(message)
            return True
        except ConflictError:
            return False

    def _conditional_update(
        self,
        message: DlqMessage,
        update_expression: str,
        condition_expression: str,
        names: dict[str, str] | None = None,
        values: dict[str, Any] | None = None,
    ) -> bool:
        """Run a conditional update_item, returning False when the condition fails."""
        kwargs: dict[str, Any] = {
            "Key": message.get_keys(),
            "UpdateExpression": update_expression,
            "ConditionExpression": condition_expression,
        }
        if names:
            kwargs["ExpressionAttributeNames"] = names
        if values:
            kwargs["ExpressionAttributeValues"] = values

        try:
            self.table.update_item(**kwargs)
            return True
        except ClientError as e:
            if is_conditional_check_failure(e):
                return False
            logger.error(
                "DynamoDB update_item failed",
                error=str(e),
                dlq_message_id=message.id,
            )
            raise

    def _status_values(self, status: DlqMessageStatus, now: datetime) -> dict[str, Any]:
        return {
            ":new_status": status.value,
            ":gsi1pk": f"DLQSTATUS#{status.value}",
            ":now": now.isoformat(),
            ":active": DlqMessageStatus.ACTIVE.value,
        }

    def claim_for_replay(self, message: DlqMessage, claim_id: str, claim_ttl_seconds: float) -> bool:
        """Claim an Active message for a single in-flight replay.

        Succeeds only when the message is Active and either unclaimed or
        holding a claim older than the TTL.

        Returns:
            True if the claim was acquired.
        """
        now = utc_now()
        expired_before = now - timedelta(seconds=claim_ttl_seconds)
        return self._conditional_update(
            message,
            update_expression="SET replay_claim_id = :claim, replay_claimed_at = :now",
            condition_expression=(
                "#status = :active AND "
                "(attribute_not_exists(replay_claim_id) OR replay_claimed_at < :expired)"
            ),
            names={"#status": "status"},
            values={
                ":claim": claim_id,
                ":now": now.isoformat(),
                ":active": DlqMessageStatus.ACTIVE.value,
                ":expired": expired_before.isoformat(),
            },
        )

    def release_claim(
        self,
        message: DlqMessage,
        claim_id: str,
        replay_success: bool | None = None,
    ) -> bool:
        """Release a replay claim, leaving the message Active.

        Args:
            message: Claimed message.
            claim_id: Claim id that must still be held.
            replay_success: Optionally record a failed replay outcome.

        Returns:
            True if the claim was still held and is now released.
        """
        update = "REMOVE replay_claim_id, replay_claimed_at"
        values: dict[str, Any] = {":claim": claim_id}
        if replay_success is not None:
            update = "SET replay_success = :success " + update
            values[":success"] = replay_success

        released = self._conditional_update(
            message,
            update_expression=update,
            condition_expression="replay_claim_id = :claim",
            values=values,
        )
        if not released:
            logger.warning("Replay claim already released", dlq_message_id=message.id)
        return released

    def mark_replayed(self, message: DlqMessage, claim_id: str) -> bool:
        """Move a claimed Active message to Replayed.

        Returns:
            True if this caller performed the transition.
        """
        now = utc_now()
        values = self._status_values(DlqMessageStatus.REPLAYED, now)
        values[":claim"] = claim_id
        values[":success"] = True
        return self._conditional_update(
            message,
            update_expression=(
                "SET #status = :new_status, GSI1PK = :gsi1pk, replayed_at = :now, "
                "replay_success = :success, updated_at = :now "
                "REMOVE replay_claim_id, replay_claimed_at"
            ),
            condition_expression="#status = :active AND replay_claim_id = :claim",
            names={"#status": "status"},
            values=values,
        )

    def mark_resolved(self, message: DlqMessage) -> bool:
        """Record that a message is no longer present in its DLQ.

        Active rows move to Resolved. Rows in other statuses only get
        resolved_at stamped once.

        Returns:
            True if the row changed.
        """
        now = utc_now()
        if message.is_active:
            values = self._status_values(DlqMessageStatus.RESOLVED, now)
            return self._conditional_update(
                message,
                update_expression=(
                    "SET #status = :new_status, GSI1PK = :gsi1pk, "
                    "resolved_at = :now, updated_at = :now"
                ),
                condition_expression="#status = :active AND attribute_not_exists(replay_claim_id)",
                names={"#status": "status"},
                values=values,
            )

        return self._conditional_update(
            message,
            update_expression="SET resolved_at = :now, updated_at = :now",
            condition_expression="attribute_exists(PK) AND attribute_not_exists(resolved_at)",
            values={":now": now.isoformat()},
        )

    def archive(self, message: DlqMessage) -> bool:
        """Move an Active message to Archived.

        Returns:
            True if this caller performed the transition.
        """
        now = utc_now()
        values = self._status_values(DlqMessageStatus.ARCHIVED, now)
        return self._conditional_update(
            message,
            update_expression=(
                "SET #status = :new_status, GSI1PK = :gsi1pk, "
                "archived_at = :now, updated_at = :now"
            ),
            condition_expression="#status = :active AND attribute_not_exists(replay_claim_id)",
            names={"#status": "status"},
            values=values,
        )

    def update_notes(self, message: DlqMessage, notes: str | None) -> bool:
        """Set or clear operator notes on a message."""
        if notes:
            return self._conditional_update(
                message,
                update_expression="SET user_notes = :notes, updated_at = :now",
                condition_expression="attribute_exists(PK)",
                values={":notes": notes, ":now": utc_now().isoformat()},
            )
        return self._conditional_update(
            message,
            update_expression="REMOVE user_notes SET updated_at = :now",
            condition_expression="attribute_exists(PK)",
            values={":now": utc_now().isoformat()},
        )
