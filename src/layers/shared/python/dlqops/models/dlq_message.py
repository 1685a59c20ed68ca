"""Dead-lettered message snapshot model."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from dlqops.models.base import BaseModel, sort_key_time, utc_now


class FailureCategory(str, Enum):
    """Heuristic reason a message was dead-lettered."""

    UNKNOWN = "Unknown"
    TRANSIENT = "Transient"
    MAX_DELIVERY = "MaxDelivery"
    EXPIRED = "Expired"
    DATA_QUALITY = "DataQuality"
    AUTHORIZATION = "Authorization"
    PROCESSING_ERROR = "ProcessingError"
    RESOURCE_NOT_FOUND = "ResourceNotFound"
    QUOTA_EXCEEDED = "QuotaExceeded"


class DlqMessageStatus(str, Enum):
    """Lifecycle status of a tracked DLQ message."""

    ACTIVE = "Active"
    REPLAYED = "Replayed"
    ARCHIVED = "Archived"
    RESOLVED = "Resolved"


class EntityType(str, Enum):
    """Kind of broker entity owning the dead-letter queue."""

    QUEUE = "queue"
    SUBSCRIPTION = "subscription"


def subscription_entity_name(topic_name: str, subscription_name: str) -> str:
    """Build the entity name used for a topic subscription."""
    return f"{topic_name}/subscriptions/{subscription_name}"


def dlq_message_pk(namespace_id: str, entity_name: str) -> str:
    """Partition key for messages of one entity."""
    return f"DLQ#{namespace_id}#{entity_name}"


def dlq_message_sk(sequence_number: int) -> str:
    """Sort key for a message sequence number."""
    return f"SEQ#{sequence_number:020d}"


class DlqMessage(BaseModel):
    """Detection-time snapshot of a dead-lettered message.

    Rows are never deleted, only transitioned between statuses. The
    (namespace_id, entity_name, sequence_number) triple is the primary key,
    so rescanning a DLQ can never create a duplicate row.

    Key Pattern:
        PK: DLQ#{namespace_id}#{entity_name}
        SK: SEQ#{sequence_number:020d}
        GSI1PK: DLQSTATUS#{status}
        GSI1SK: {detected_at}#{id}
        GSI2PK: DLQMSG#{id}
        GSI2SK: DLQMSG
    """

    # Broker identity
    message_id: str = Field(..., description="Broker message id")
    sequence_number: int = Field(..., ge=0, description="Broker sequence number")
    body_hash: str = Field(..., description="SHA-256 hex of the body, or 'empty'")

    # Source
    namespace_id: str = Field(..., description="Owning broker namespace")
    entity_name: str = Field(..., description="Queue name or topic/subscriptions/name")
    entity_type: EntityType = Field(default=EntityType.QUEUE)
    topic_name: str | None = Field(None, description="Topic name for subscriptions")

    # Timing
    enqueued_time_utc: datetime = Field(default_factory=utc_now)
    dead_letter_time_utc: datetime | None = None
    detected_at_utc: datetime = Field(default_factory=utc_now)

    # Failure details
    dead_letter_reason: str | None = None
    dead_letter_error_description: str | None = None
    delivery_count: int = Field(default=0, ge=0)

    # Content
    content_type: str | None = None
    message_size: int = Field(default=0, ge=0)
    body_preview: str | None = None
    application_properties: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = None
    session_id: str | None = None

    # Classification (frozen at detection)
    failure_category: FailureCategory = Field(default=FailureCategory.UNKNOWN)
    category_confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    # Lifecycle
    status: DlqMessageStatus = Field(default=DlqMessageStatus.ACTIVE)
    replayed_at: datetime | None = None
    replay_success: bool | None = None
    archived_at: datetime | None = None
    resolved_at: datetime | None = None
    user_notes: str | None = Field(None, max_length=4000)

    # Replay claim held while a replay is in flight
    replay_claim_id: str | None = None
    replay_claimed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        """Check if the message is still waiting in the DLQ."""
        return self.status == DlqMessageStatus.ACTIVE

    @property
    def subscription_name(self) -> str | None:
        """Subscription part of the entity name, if this is a subscription."""
        if self.entity_type != EntityType.SUBSCRIPTION:
            return None
        return self.entity_name.rsplit("/subscriptions/", 1)[-1]

    def get_pk(self) -> str:
        """Get partition key: DLQ#{namespace_id}#{entity_name}."""
        return dlq_message_pk(self.namespace_id, self.entity_name)

    def get_sk(self) -> str:
        """Get sort key: SEQ#{sequence_number}."""
        return dlq_message_sk(self.sequence_number)

    def get_gsi_keys(self) -> dict[str, str]:
        """Get GSI keys for listing by status and resolving by id."""
        return {
            "GSI1PK": f"DLQSTATUS#{DlqMessageStatus(self.status).value}",
            "GSI1SK": f"{sort_key_time(self.detected_at_utc)}#{self.id}",
            "GSI2PK": f"DLQMSG#{self.id}",
            "GSI2SK": "DLQMSG",
        }
