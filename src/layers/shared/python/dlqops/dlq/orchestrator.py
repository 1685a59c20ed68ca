"""Scan-and-remediate cycle.

One cycle scans each namespace for new dead-lettered messages, matches every
Active message against the enabled rules and hands matches to the replay
executor. Namespaces run concurrently under a bounded semaphore and every
namespace, message and rule match is isolated from the others.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import structlog

from dlqops.config import DlqSettings, get_settings
from dlqops.dlq.monitor import DlqMonitor
from dlqops.dlq.replay_executor import AutoReplayExecutor, ReplayOutcome
from dlqops.dlq.rule_engine import find_matching_rules
from dlqops.models.replay_rule import AutoReplayRule
from dlqops.repositories.dlq_message import DlqMessageRepository
from dlqops.repositories.replay_rule import ReplayRuleRepository
from dlqops.utils.exceptions import AlreadyReplayedError, RateLimitedError

logger = structlog.get_logger()

NamespaceProvider = Callable[[], Awaitable[list[str]] | list[str]]


@dataclass
class NamespaceReport:
    """Outcome of one namespace within a cycle."""

    namespace_id: str
    detected: int = 0
    evaluated: int = 0
    matched: int = 0
    replayed: int = 0
    scheduled: int = 0
    failed: int = 0
    skipped: int = 0
    error: str | None = None


@dataclass
class CycleReport:
    """Aggregated outcome of a scan cycle."""

    namespaces: list[NamespaceReport] = field(default_factory=list)

    def _total(self, name: str) -> int:
        return sum(getattr(report, name) for report in self.namespaces)

    @property
    def detected(self) -> int:
        return self._total("detected")

    @property
    def replayed(self) -> int:
        return self._total("replayed")

    @property
    def scheduled(self) -> int:
        return self._total("scheduled")

    @property
    def failed(self) -> int:
        return self._total("failed")

    @property
    def skipped(self) -> int:
        return self._total("skipped")

    @property
    def errors(self) -> int:
        return sum(1 for report in self.namespaces if report.error)

    def to_dict(self) -> dict:
        """Summary for logs and handler responses."""
        return {
            "namespaces": len(self.namespaces),
            "detected": self.detected,
            "replayed": self.replayed,
            "scheduled": self.scheduled,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class DlqOrchestrator:
    """Runs Monitor, Rule Engine and Executor for a set of namespaces."""

    def __init__(
        self,
        monitor: DlqMonitor,
        executor: AutoReplayExecutor,
        message_repo: DlqMessageRepository | None = None,
        rule_repo: ReplayRuleRepository | None = None,
        settings: DlqSettings | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            monitor: DLQ monitor.
            executor: Replay executor.
            message_repo: DLQ message repository.
            rule_repo: Rule repository.
            settings: Engine settings.
        """
        self.monitor = monitor
        self.executor = executor
        self.settings = settings or get_settings()
        self.message_repo = message_repo or DlqMessageRepository(self.settings.table_name)
        self.rule_repo = rule_repo or ReplayRuleRepository(self.settings.table_name)
        self.logger = logger.bind(service="dlq_orchestrator")

    async def run_cycle(self, namespace_ids: list[str]) -> CycleReport:
        """Run one scan-and-remediate cycle.

        Args:
            namespace_ids: Namespaces to process.

        Returns:
            CycleReport with per-namespace counts.
        """
        rules = self.rule_repo.list_rules(enabled_only=True)
        semaphore = asyncio.Semaphore(self.settings.max_parallel_scans)

        async def bounded(namespace_id: str) -> NamespaceReport:
            async with semaphore:
                return await self.process_namespace(namespace_id, rules)

        reports = await asyncio.gather(*(bounded(ns) for ns in namespace_ids))
        report = CycleReport(namespaces=list(reports))

        self.logger.info("Scan cycle completed", **report.to_dict())
        return report

    async def process_namespace(
        self,
        namespace_id: str,
        rules: list[AutoReplayRule],
    ) -> NamespaceReport:
        """Scan one namespace and remediate its Active messages."""
        report = NamespaceReport(namespace_id=namespace_id)
        log = self.logger.bind(namespace_id=namespace_id)

        try:
            report.detected = await self.monitor.scan_namespace(namespace_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Namespace scan failed", error=str(e))
            report.error = str(e)
            return report

        if not rules:
            return report

        try:
            messages = self.message_repo.list_active(namespace_id)
        except Exception as e:
            log.error("Failed to list active messages", error=str(e))
            report.error = str(e)
            return report

        for message in messages:
            report.evaluated += 1
            matches = find_matching_rules(message, rules)
            report.matched += len(matches)

            for rule, action in matches:
                if not action.auto_replay:
                    continue
                try:
                    result = await self.executor.execute(message, rule, action)
                except RateLimitedError:
                    report.skipped += 1
                    continue
                except AlreadyReplayedError:
                    break
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    log.error(
                        "Auto-replay failed",
                        dlq_message_id=message.id,
                        rule_id=rule.id,
                        error=str(e),
                    )
                    report.failed += 1
                    continue

                if result.outcome == ReplayOutcome.SUCCESS:
                    report.replayed += 1
                    break
                if result.outcome == ReplayOutcome.SCHEDULED:
                    report.scheduled += 1
                    continue
                report.failed += 1

        return report

    async def run_forever(
        self,
        namespace_provider: NamespaceProvider,
        interval: float | None = None,
    ) -> None:
        """Run cycles until cancelled.

        Args:
            namespace_provider: Returns the namespace ids to scan each cycle.
            interval: Seconds between cycle starts. Defaults to the scan interval setting.
        """
        interval = interval if interval is not None else self.settings.scan_interval_seconds
        self.logger.info("DLQ orchestrator started", interval=interval)

        try:
            while True:
                try:
                    namespaces = namespace_provider()
                    if asyncio.iscoroutine(namespaces):
                        namespaces = await namespaces
                    await self.run_cycle(list(namespaces))
                except asyncio.CancelledError:
                    raise
                except Exception:
                    self.logger.exception("Scan cycle failed")
                await asyncio.sleep(interval)
        finally:
            await self.executor.scheduler.shutdown()
            self.logger.info("DLQ orchestrator stopped")
