"""Auto-replay executor.

Replays a DLQ message back to its entity on behalf of a rule, enforcing the
rule's hourly rate limit and its circuit breaker, retrying broker failures
with backoff and recording every attempt in replay history.

A message is replayed at most once: the executor re-reads it as Active,
takes a conditional claim on it before calling the broker and moves it to
Replayed with a compare-and-set on that claim.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable

import structlog

from dlqops.config import DlqSettings, get_settings
from dlqops.dlq.broker import BrokerFactory
from dlqops.dlq.scheduler import DeferredReplayScheduler
from dlqops.execution.circuit_breaker import CircuitBreakerConfig, CircuitState, RuleCircuitBreaker
from dlqops.execution.retry_policy import RetryConfig, RetryPolicy, RetryResult, RetryStrategy
from dlqops.models.base import generate_ulid, utc_now
from dlqops.models.dlq_message import DlqMessage, EntityType
from dlqops.models.replay_history import OutcomeStatus, ReplayHistory, ReplayStrategy
from dlqops.models.replay_rule import AutoReplayRule, RuleAction
from dlqops.repositories.dlq_message import DlqMessageRepository
from dlqops.repositories.replay_history import ReplayHistoryRepository
from dlqops.repositories.replay_rule import ReplayRuleRepository
from dlqops.utils.exceptions import (
    AlreadyReplayedError,
    BusinessRuleError,
    NotFoundError,
)
from dlqops.utils.rate_limiter import ReplayRateLimiter, Reservation

logger = structlog.get_logger()


class ReplayOutcome(str, Enum):
    """Result of an execute call."""

    SUCCESS = "Success"
    FAILED = "Failed"
    SCHEDULED = "Scheduled"


@dataclass
class ReplayResult:
    """What happened to one replay request."""

    dlq_message_id: str
    rule_id: str | None
    outcome: ReplayOutcome
    attempts: int = 0
    target_entity: str | None = None
    error: str | None = None
    history_id: str | None = None
    rule_disabled: bool = False

    @property
    def success(self) -> bool:
        return self.outcome == ReplayOutcome.SUCCESS

    def to_dict(self) -> dict:
        """Serialize for API responses."""
        return {
            "dlq_message_id": self.dlq_message_id,
            "rule_id": self.rule_id,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "target_entity": self.target_entity,
            "error": self.error,
            "history_id": self.history_id,
            "rule_disabled": self.rule_disabled,
        }


@dataclass
class ReplayTarget:
    """Broker address a message is replayed to."""

    entity: str
    subscription: str | None
    display_name: str
    strategy: ReplayStrategy


def resolve_target(message: DlqMessage, target_entity: str | None = None) -> ReplayTarget:
    """Work out where a message should be replayed.

    An explicit target entity is used as-is. Otherwise subscriptions are
    addressed by topic plus subscription name, and queues by name.
    """
    if target_entity:
        return ReplayTarget(
            entity=target_entity,
            subscription=None,
            display_name=target_entity,
            strategy=ReplayStrategy.ALTERNATE_ENTITY,
        )
    if message.entity_type == EntityType.SUBSCRIPTION and message.topic_name:
        return ReplayTarget(
            entity=message.topic_name,
            subscription=message.subscription_name,
            display_name=message.entity_name,
            strategy=ReplayStrategy.ORIGINAL_ENTITY,
        )
    return ReplayTarget(
        entity=message.entity_name,
        subscription=None,
        display_name=message.entity_name,
        strategy=ReplayStrategy.ORIGINAL_ENTITY,
    )


def remaining_delay(message: DlqMessage, delay_seconds: int, now: datetime | None = None) -> float:
    """Seconds until a delayed replay of ``message`` is due.

    The delay runs from detection, so a message that already waited out its
    delay across earlier worker runs is due at once.
    """
    if delay_seconds <= 0:
        return 0.0
    detected = message.detected_at_utc
    if detected.tzinfo is None:
        detected = detected.replace(tzinfo=timezone.utc)
    due = detected + timedelta(seconds=delay_seconds)
    return max((due - (now or utc_now())).total_seconds(), 0.0)


class AutoReplayExecutor:
    """Executes rule-driven and manual replays."""

    def __init__(
        self,
        broker_factory: BrokerFactory,
        message_repo: DlqMessageRepository | None = None,
        rule_repo: ReplayRuleRepository | None = None,
        history_repo: ReplayHistoryRepository | None = None,
        rate_limiter: ReplayRateLimiter | None = None,
        circuit_breaker: RuleCircuitBreaker | None = None,
        scheduler: DeferredReplayScheduler | None = None,
        settings: DlqSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the executor.

        Args:
            broker_factory: Returns a MessageBroker for a namespace id.
            message_repo: DLQ message repository.
            rule_repo: Rule repository.
            history_repo: Replay history repository.
            rate_limiter: Per-rule hourly limiter. Built from history if omitted.
            circuit_breaker: Rule circuit breaker.
            scheduler: Deferred replay scheduler.
            settings: Engine settings.
            sleep: Awaitable used for retry backoff.
        """
        self.broker_factory = broker_factory
        self.settings = settings or get_settings()
        table = self.settings.table_name
        self.message_repo = message_repo or DlqMessageRepository(table)
        self.rule_repo = rule_repo or ReplayRuleRepository(table)
        self.history_repo = history_repo or ReplayHistoryRepository(table)
        self.rate_limiter = rate_limiter or ReplayRateLimiter(
            history_loader=self.history_repo.list_attempt_times_since,
            window_seconds=self.settings.rate_limit_window_seconds,
            max_rules=self.settings.rate_limit_max_rules,
        )
        self.circuit_breaker = circuit_breaker or RuleCircuitBreaker(
            self.rule_repo,
            self.history_repo,
            CircuitBreakerConfig.from_settings(self.settings),
        )
        self.scheduler = scheduler or DeferredReplayScheduler()
        self.sleep = sleep
        self.logger = logger.bind(service="auto_replay_executor")

    # -------------------------------------------------------------------------
    # Rule-driven replay
    # -------------------------------------------------------------------------

    async def execute(
        self,
        message: DlqMessage,
        rule: AutoReplayRule,
        action: RuleAction | None = None,
        replayed_by: str | None = None,
    ) -> ReplayResult:
        """Replay a message on behalf of a matching rule.

        Args:
            message: Message to replay.
            rule: Rule that matched it.
            action: Action to apply. Defaults to the rule's action.
            replayed_by: Actor recorded in history. Defaults to auto-rule:{name}.

        Returns:
            ReplayResult with outcome Success, Failed or Scheduled.

        Raises:
            AlreadyReplayedError: If the message is no longer Active or
                another caller holds its claim.
            BusinessRuleError: If the rule is disabled.
            NotFoundError: If the rule no longer exists.
            RateLimitedError: If the rule's hourly budget is spent.
        """
        action = action or rule.action
        current = self._require_active(message)
        stored_rule = self._require_enabled(rule)

        precheck = self.circuit_breaker.check_and_trip(stored_rule, current.id)
        if precheck.state == CircuitState.OPEN:
            raise BusinessRuleError(
                f"Rule '{stored_rule.name}' was disabled by the circuit breaker",
                rule="rule_must_be_enabled",
            )

        delay = remaining_delay(current, action.delay_seconds)
        if delay > 0 and self.scheduler.is_pending(current.id, stored_rule.id):
            return ReplayResult(
                dlq_message_id=current.id,
                rule_id=stored_rule.id,
                outcome=ReplayOutcome.SCHEDULED,
            )

        reservation = await self.rate_limiter.reserve(
            stored_rule.id, stored_rule.max_replays_per_hour
        )
        actor = replayed_by or f"auto-rule:{stored_rule.name}"

        if delay > 0:
            self.scheduler.schedule(
                current.id,
                stored_rule.id,
                delay,
                lambda: self._run_deferred(current, stored_rule, action, reservation, actor),
                on_cancel=lambda: self.rate_limiter.release(reservation),
            )
            return ReplayResult(
                dlq_message_id=current.id,
                rule_id=stored_rule.id,
                outcome=ReplayOutcome.SCHEDULED,
                target_entity=resolve_target(current, action.target_entity).display_name,
            )

        return await self._replay_claimed(current, stored_rule, action, actor, reservation)

    async def _run_deferred(
        self,
        message: DlqMessage,
        rule: AutoReplayRule,
        action: RuleAction,
        reservation: Reservation,
        actor: str,
    ) -> ReplayResult:
        """Run a deferred replay once its timer fires, rechecking preconditions."""
        try:
            current = self._require_active(message)
            stored_rule = self._require_enabled(rule)
        except (AlreadyReplayedError, BusinessRuleError, NotFoundError):
            self.rate_limiter.release(reservation)
            raise
        return await self._replay_claimed(current, stored_rule, action, actor, reservation)

    # -------------------------------------------------------------------------
    # Manual replay
    # -------------------------------------------------------------------------

    async def replay_manual(
        self,
        message: DlqMessage,
        replayed_by: str,
        target_entity: str | None = None,
    ) -> ReplayResult:
        """Replay a message on an operator's request.

        No rule is involved, so neither rate limiting nor the circuit breaker
        applies. The same claim and compare-and-set path is used.

        Raises:
            AlreadyReplayedError: If the message is not Active or is claimed.
        """
        current = self._require_active(message)
        action = RuleAction(delay_seconds=0, target_entity=target_entity)
        return await self._replay_claimed(current, None, action, replayed_by, None)

    # -------------------------------------------------------------------------
    # Shared path
    # -------------------------------------------------------------------------

    def _require_active(self, message: DlqMessage) -> DlqMessage:
        current = self.message_repo.refresh(message)
        if current is None or not current.is_active:
            raise AlreadyReplayedError(message.id, current.status if current else None)
        return current

    def _require_enabled(self, rule: AutoReplayRule) -> AutoReplayRule:
        stored = self.rule_repo.get_by_id(rule.id, consistent=True)
        if stored is None:
            raise NotFoundError("AutoReplayRule", rule.id)
        if not stored.enabled:
            raise BusinessRuleError(
                f"Rule '{stored.name}' is disabled",
                rule="rule_must_be_enabled",
            )
        return stored

    def _retry_policy(self, action: RuleAction) -> RetryPolicy:
        return RetryPolicy(
            RetryConfig(
                max_retries=action.max_retries,
                base_delay=self.settings.replay_base_delay,
                max_delay=self.settings.replay_max_delay,
                strategy=(
                    RetryStrategy.EXPONENTIAL if action.exponential_backoff else RetryStrategy.CONSTANT
                ),
            ),
            sleep=self.sleep,
        )

    async def _replay_claimed(
        self,
        message: DlqMessage,
        rule: AutoReplayRule | None,
        action: RuleAction,
        actor: str,
        reservation: Reservation | None,
    ) -> ReplayResult:
        """Claim the message, call the broker and record the outcome."""
        rule_id = rule.id if rule else None
        log = self.logger.bind(dlq_message_id=message.id, rule_id=rule_id)
        claim_id = generate_ulid()

        try:
            claimed = self.message_repo.claim_for_replay(
                message, claim_id, self.settings.claim_ttl_seconds
            )
        except BaseException:
            if reservation:
                self.rate_limiter.release(reservation)
            raise

        if not claimed:
            if reservation:
                self.rate_limiter.release(reservation)
            latest = self.message_repo.refresh(message)
            log.info("Replay claim lost", status=latest.status if latest else None)
            raise AlreadyReplayedError(message.id, latest.status if latest else None)

        target = resolve_target(message, action.target_entity)
        broker = self.broker_factory(message.namespace_id)

        async def attempt() -> bool:
            return await broker.replay(target.entity, target.subscription, message.sequence_number)

        try:
            retry_result = await self._retry_policy(action).execute(
                attempt,
                retry_if_result=lambda ok: not ok,
                context={"dlq_message_id": message.id, "rule_id": rule_id},
            )
        except BaseException:
            # Cancelled mid-replay: nothing is recorded
            self.message_repo.release_claim(message, claim_id)
            if reservation:
                self.rate_limiter.release(reservation)
            raise

        if retry_result.success:
            result = self._record_success(message, rule, target, actor, claim_id, retry_result, log)
        else:
            result = self._record_failure(message, rule, target, actor, claim_id, retry_result, log)
        if reservation:
            self.rate_limiter.settle(reservation)
        return result

    def _record_success(
        self,
        message: DlqMessage,
        rule: AutoReplayRule | None,
        target: ReplayTarget,
        actor: str,
        claim_id: str,
        retry_result: RetryResult,
        log,
    ) -> ReplayResult:
        if not self.message_repo.mark_replayed(message, claim_id):
            log.error("Replay claim expired before the message was marked replayed")

        if rule:
            self.rule_repo.increment_counters(rule.id, success=True)

        history = self.history_repo.append(
            ReplayHistory(
                dlq_message_id=message.id,
                rule_id=rule.id if rule else None,
                replayed_by=actor,
                replay_strategy=target.strategy,
                replayed_to_entity=target.display_name,
                outcome_status=OutcomeStatus.SUCCESS,
                attempts=retry_result.attempts,
            )
        )
        log.info("Message replayed", target_entity=target.display_name, attempts=retry_result.attempts)

        result = ReplayResult(
            dlq_message_id=message.id,
            rule_id=rule.id if rule else None,
            outcome=ReplayOutcome.SUCCESS,
            attempts=retry_result.attempts,
            target_entity=target.display_name,
            history_id=history.id,
        )
        if rule:
            result.rule_disabled = self.circuit_breaker.check_and_trip(rule, message.id).tripped_now
        return result

    def _record_failure(
        self,
        message: DlqMessage,
        rule: AutoReplayRule | None,
        target: ReplayTarget,
        actor: str,
        claim_id: str,
        retry_result: RetryResult,
        log,
    ) -> ReplayResult:
        self.message_repo.release_claim(message, claim_id, replay_success=False)

        if rule:
            self.rule_repo.increment_counters(rule.id, success=False)

        if retry_result.error is not None:
            error_details = f"{type(retry_result.error).__name__}: {retry_result.error}"
        else:
            error_details = "Broker did not accept the replay"

        history = self.history_repo.append(
            ReplayHistory(
                dlq_message_id=message.id,
                rule_id=rule.id if rule else None,
                replayed_by=actor,
                replay_strategy=target.strategy,
                replayed_to_entity=target.display_name,
                outcome_status=OutcomeStatus.FAILED,
                error_details=error_details[:4000],
                attempts=retry_result.attempts,
            )
        )
        log.error(
            "Message replay failed",
            target_entity=target.display_name,
            attempts=retry_result.attempts,
            error=error_details,
        )

        result = ReplayResult(
            dlq_message_id=message.id,
            rule_id=rule.id if rule else None,
            outcome=ReplayOutcome.FAILED,
            attempts=retry_result.attempts,
            target_entity=target.display_name,
            error=error_details,
            history_id=history.id,
        )
        if rule:
            result.rule_disabled = self.circuit_breaker.check_and_trip(rule, message.id).tripped_now
        return result
