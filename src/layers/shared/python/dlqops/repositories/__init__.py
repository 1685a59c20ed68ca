"""Repository classes for DynamoDB data access."""

from dlqops.repositories.base import BaseRepository
from dlqops.repositories.dlq_message import DlqMessageRepository
from dlqops.repositories.replay_history import ReplayHistoryRepository
from dlqops.repositories.replay_rule import ReplayRuleRepository

__all__ = [
    "BaseRepository",
    "DlqMessageRepository",
    "ReplayHistoryRepository",
    "ReplayRuleRepository",
]
