"""Builds the engine's collaborators from settings."""

from dlqops.config import DlqSettings, get_settings
from dlqops.dlq.broker import BrokerFactory, load_broker_factory
from dlqops.dlq.monitor import DlqMonitor
from dlqops.dlq.orchestrator import DlqOrchestrator
from dlqops.dlq.replay_executor import AutoReplayExecutor
from dlqops.repositories.dlq_message import DlqMessageRepository
from dlqops.repositories.replay_history import ReplayHistoryRepository
from dlqops.repositories.replay_rule import ReplayRuleRepository


def get_broker_factory(settings: DlqSettings | None = None) -> BrokerFactory | None:
    """Resolve the configured broker factory, or None when unset."""
    settings = settings or get_settings()
    if not settings.broker_factory:
        return None
    return load_broker_factory(settings.broker_factory)


def build_executor(
    settings: DlqSettings | None = None,
    broker_factory: BrokerFactory | None = None,
) -> AutoReplayExecutor | None:
    """Build a replay executor, or None when no broker is configured.

    A new executor gets a new rate limiter and scheduler. The limiter seeds
    itself from persisted history, so per-invocation instances stay correct.
    """
    settings = settings or get_settings()
    broker_factory = broker_factory or get_broker_factory(settings)
    if broker_factory is None:
        return None

    table = settings.table_name
    return AutoReplayExecutor(
        broker_factory,
        message_repo=DlqMessageRepository(table),
        rule_repo=ReplayRuleRepository(table),
        history_repo=ReplayHistoryRepository(table),
        settings=settings,
    )


def build_orchestrator(
    settings: DlqSettings | None = None,
    broker_factory: BrokerFactory | None = None,
) -> DlqOrchestrator:
    """Build an orchestrator wired to one executor and monitor.

    Raises:
        ValueError: If no broker factory is given or configured.
    """
    settings = settings or get_settings()
    broker_factory = broker_factory or get_broker_factory(settings)
    if broker_factory is None:
        raise ValueError("DLQ_BROKER_FACTORY is not configured")

    executor = build_executor(settings, broker_factory)
    monitor = DlqMonitor(broker_factory, executor.message_repo, settings)
    return DlqOrchestrator(
        monitor,
        executor,
        message_repo=executor.message_repo,
        rule_repo=executor.rule_repo,
        settings=settings,
    )
