"""DLQ monitor.

Scans every dead-letter queue of a namespace, records newly dead-lettered
messages exactly once and reconciles rows whose message has left the DLQ.
"""

import asyncio
import hashlib
from dataclasses import dataclass
from datetime import datetime

import structlog

from dlqops.config import DlqSettings, get_settings
from dlqops.dlq.broker import BrokerEntity, BrokerFactory, MessageBroker, PeekedMessage
from dlqops.dlq.classifier import classify_failure
from dlqops.models.base import utc_now
from dlqops.models.dlq_message import DlqMessage, EntityType, subscription_entity_name
from dlqops.repositories.dlq_message import DlqMessageRepository
from dlqops.utils.exceptions import BrokerError, BrokerTimeoutError, BrokerUnavailableError

logger = structlog.get_logger()


def compute_body_hash(body: bytes | str | None) -> str:
    """SHA-256 hex digest of a message body, or ``"empty"`` for no body."""
    if not body:
        return "empty"
    data = body.encode("utf-8") if isinstance(body, str) else body
    return hashlib.sha256(data).hexdigest()


def body_preview(body: bytes | str | None, length: int) -> str | None:
    """First ``length`` characters of the body decoded as UTF-8."""
    if not body:
        return None
    text = body if isinstance(body, str) else body.decode("utf-8", errors="replace")
    return text[:length]


def entity_name_for(entity: BrokerEntity) -> str:
    """Tracked entity name: the queue name or topic/subscriptions/name."""
    if entity.entity_type == EntityType.SUBSCRIPTION and entity.topic_name:
        return subscription_entity_name(entity.topic_name, entity.name)
    return entity.name


@dataclass
class EntityScanResult:
    """Outcome of scanning one entity's DLQ."""

    entity_name: str
    peeked: int = 0
    detected: int = 0
    resolved: int = 0
    fully_observed: bool = False
    error: str | None = None


class DlqMonitor:
    """Detects, deduplicates and classifies dead-lettered messages."""

    def __init__(
        self,
        broker_factory: BrokerFactory,
        message_repo: DlqMessageRepository | None = None,
        settings: DlqSettings | None = None,
    ):
        """Initialize the monitor.

        Args:
            broker_factory: Returns a MessageBroker for a namespace id.
            message_repo: DLQ message repository.
            settings: Engine settings.
        """
        self.broker_factory = broker_factory
        self.settings = settings or get_settings()
        self.message_repo = message_repo or DlqMessageRepository(self.settings.table_name)
        self.logger = logger.bind(service="dlq_monitor")

    async def scan_namespace(self, namespace_id: str) -> int:
        """Scan every DLQ in a namespace.

        Args:
            namespace_id: Namespace to scan.

        Returns:
            Number of newly detected messages persisted by this scan.

        Raises:
            BrokerUnavailableError: If the entity list cannot be obtained.
            BrokerTimeoutError: If listing entities timed out.
        """
        broker = self.broker_factory(namespace_id)
        try:
            entities = await broker.list_entities()
        except (BrokerUnavailableError, BrokerTimeoutError):
            raise
        except asyncio.TimeoutError as e:
            raise BrokerTimeoutError(str(e) or None, operation="list_entities") from e
        except (BrokerError, ConnectionError, OSError) as e:
            raise BrokerUnavailableError(str(e) or None, operation="list_entities") from e

        detected = 0
        for entity in entities:
            result = await self.scan_entity(namespace_id, broker, entity)
            detected += result.detected

        self.logger.info(
            "Namespace scan completed",
            namespace_id=namespace_id,
            entities=len(entities),
            detected=detected,
        )
        return detected

    async def scan_entity(
        self,
        namespace_id: str,
        broker: MessageBroker,
        entity: BrokerEntity,
    ) -> EntityScanResult:
        """Scan a single entity's DLQ. Failures are logged and isolated."""
        entity_name = entity_name_for(entity)
        result = EntityScanResult(entity_name=entity_name)

        try:
            if entity.entity_type == EntityType.SUBSCRIPTION and entity.topic_name:
                peeked = await broker.peek(
                    entity.topic_name,
                    subscription=entity.name,
                    from_dead_letter=True,
                    max_count=self.settings.peek_batch_size,
                )
            else:
                peeked = await broker.peek(
                    entity.name,
                    from_dead_letter=True,
                    max_count=self.settings.peek_batch_size,
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning(
                "Failed to peek dead-letter queue",
                namespace_id=namespace_id,
                entity_name=entity_name,
                error=str(e),
            )
            result.error = str(e)
            return result

        result.peeked = len(peeked)
        detected_at = utc_now()

        for peeked_message in peeked:
            if self.message_repo.exists(namespace_id, entity_name, peeked_message.sequence_number):
                continue

            message = self.build_message(namespace_id, entity, entity_name, peeked_message, detected_at)
            if self.message_repo.create_if_absent(message):
                result.detected += 1
                self.logger.info(
                    "Dead-lettered message detected",
                    namespace_id=namespace_id,
                    entity_name=entity_name,
                    sequence_number=message.sequence_number,
                    failure_category=message.failure_category,
                )

        # Only a short batch proves the whole DLQ was seen
        result.fully_observed = len(peeked) < self.settings.peek_batch_size
        if result.fully_observed:
            observed = {m.sequence_number for m in peeked}
            result.resolved = self.reconcile(namespace_id, entity_name, observed)

        return result

    def build_message(
        self,
        namespace_id: str,
        entity: BrokerEntity,
        entity_name: str,
        peeked: PeekedMessage,
        detected_at: datetime,
    ) -> DlqMessage:
        """Snapshot a peeked message, classifying its failure."""
        category, confidence = classify_failure(
            peeked.dead_letter_reason,
            peeked.dead_letter_error_description,
            peeked.delivery_count,
            self.settings.max_delivery_threshold,
        )

        body = peeked.body
        size = len(body.encode("utf-8") if isinstance(body, str) else body) if body else 0

        return DlqMessage(
            message_id=peeked.message_id,
            sequence_number=peeked.sequence_number,
            body_hash=compute_body_hash(body),
            namespace_id=namespace_id,
            entity_name=entity_name,
            entity_type=entity.entity_type,
            topic_name=entity.topic_name,
            enqueued_time_utc=peeked.enqueued_time or detected_at,
            dead_letter_time_utc=peeked.dead_letter_time,
            detected_at_utc=detected_at,
            dead_letter_reason=peeked.dead_letter_reason,
            dead_letter_error_description=peeked.dead_letter_error_description,
            delivery_count=peeked.delivery_count,
            content_type=peeked.content_type,
            message_size=size,
            body_preview=body_preview(body, self.settings.body_preview_length),
            application_properties=dict(peeked.application_properties or {}),
            correlation_id=peeked.correlation_id,
            session_id=peeked.session_id,
            failure_category=category,
            category_confidence=confidence,
        )

    def reconcile(self, namespace_id: str, entity_name: str, observed: set[int]) -> int:
        """Mark tracked rows that are no longer in a fully observed DLQ.

        Args:
            namespace_id: Namespace id.
            entity_name: Entity name.
            observed: Sequence numbers currently in the DLQ.

        Returns:
            Number of rows changed.
        """
        resolved = 0
        for message in self.message_repo.list_by_entity(namespace_id, entity_name):
            if message.sequence_number in observed or message.resolved_at is not None:
                continue
            if self.message_repo.mark_resolved(message):
                resolved += 1

        if resolved:
            self.logger.info(
                "Reconciled resolved messages",
                namespace_id=namespace_id,
                entity_name=entity_name,
                resolved=resolved,
            )
        return resolved
