"""Message broker adapter contract.

The broker transport is external. Anything implementing ``MessageBroker``
can be plugged in through a factory that returns a broker for a namespace id.
"""

import importlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Protocol, runtime_checkable

from dlqops.models.dlq_message import EntityType


@dataclass
class BrokerEntity:
    """A queue or topic subscription that owns a dead-letter queue.

    For subscriptions ``name`` is the subscription name and ``topic_name``
    the owning topic.
    """

    name: str
    entity_type: EntityType = EntityType.QUEUE
    topic_name: str | None = None
    dead_letter_count: int = 0


@dataclass
class PeekedMessage:
    """A message read non-destructively from a dead-letter queue."""

    message_id: str
    sequence_number: int
    body: bytes | str | None = None
    enqueued_time: datetime | None = None
    dead_letter_time: datetime | None = None
    dead_letter_reason: str | None = None
    dead_letter_error_description: str | None = None
    delivery_count: int = 0
    content_type: str | None = None
    correlation_id: str | None = None
    session_id: str | None = None
    application_properties: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class MessageBroker(Protocol):
    """Async operations the engine needs from a broker namespace."""

    async def list_entities(self) -> list[BrokerEntity]:
        """List every queue and subscription with a dead-letter queue."""
        ...

    async def peek(
        self,
        entity: str,
        subscription: str | None = None,
        from_dead_letter: bool = True,
        max_count: int = 100,
    ) -> list[PeekedMessage]:
        """Peek messages without locking or removing them."""
        ...

    async def replay(self, entity: str, subscription: str | None, sequence_number: int) -> bool:
        """Resubmit a dead-lettered message to its entity and remove it from the DLQ."""
        ...

    async def purge(
        self,
        entity: str,
        subscription: str | None = None,
        from_dead_letter: bool = True,
    ) -> int:
        """Remove every message from the queue, returning the count removed."""
        ...


BrokerFactory = Callable[[str], MessageBroker]


def load_broker_factory(path: str) -> BrokerFactory:
    """Resolve a broker factory from a ``module:callable`` path.

    Args:
        path: Import path such as ``mypkg.brokers:servicebus_broker``.

    Returns:
        Callable returning a MessageBroker for a namespace id.

    Raises:
        ValueError: If the path is malformed or does not name a callable.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Broker factory must be 'module:callable', got '{path}'")

    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"Broker factory '{path}' is not callable")
    return factory
