"""Business logic services."""

from dlqops.services.history_service import HistoryFilters, HistoryService, TimelineEvent
from dlqops.services.rule_service import ReplayAllResult, RuleService
from dlqops.services.rule_templates import TEMPLATES, get_templates

__all__ = [
    "HistoryFilters",
    "HistoryService",
    "TimelineEvent",
    "ReplayAllResult",
    "RuleService",
    "TEMPLATES",
    "get_templates",
]
