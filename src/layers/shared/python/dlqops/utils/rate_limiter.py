"""Per-rule replay rate limiting.

Each rule gets a sliding one-hour window guarded by its own asyncio lock, so
rules never contend with each other. The map of windows is bounded and evicts
the least recently used idle window.

Every check reloads the rule's persisted replay attempts, so replays recorded
by other workers count against the same budget. A window tracks two kinds of
local slots on top of that: pending reservations whose attempt is not yet
recorded, and settled ones this process has recorded. Settled slots cover
attempts an index query does not return yet, and are never counted twice.
"""

import asyncio
import bisect
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, NamedTuple

import structlog

from dlqops.utils.exceptions import RateLimitedError

logger = structlog.get_logger()

# Loads attempt timestamps for a rule since a point in time
HistoryLoader = Callable[[str, datetime], list[datetime]]


class RateLimitResult(NamedTuple):
    """Result of a rate limit check."""

    allowed: bool
    requests_remaining: int
    retry_after: int | None  # Seconds until a slot frees up


class Reservation(NamedTuple):
    """A slot held in a rule's window until released or settled."""

    rule_id: str
    timestamp: float


@dataclass
class _RuleWindow:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    pending: deque = field(default_factory=deque)
    settled: deque = field(default_factory=deque)


class ReplayRateLimiter:
    """Sliding-window limiter keyed by rule id."""

    def __init__(
        self,
        history_loader: HistoryLoader | None = None,
        window_seconds: float = 3600.0,
        max_rules: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the limiter.

        Args:
            history_loader: Loads persisted attempts, called on every check.
            window_seconds: Length of the sliding window.
            max_rules: Maximum number of windows kept in memory.
            clock: Epoch-seconds clock.
        """
        self.history_loader = history_loader
        self.window_seconds = window_seconds
        self.max_rules = max_rules
        self.clock = clock
        self._windows: OrderedDict[str, _RuleWindow] = OrderedDict()
        self.logger = logger.bind(service="rate_limiter")

    def __len__(self) -> int:
        return len(self._windows)

    def _window(self, rule_id: str) -> _RuleWindow:
        """Get or create a window, marking it most recently used."""
        window = self._windows.get(rule_id)
        if window is not None:
            self._windows.move_to_end(rule_id)
            return window

        window = _RuleWindow()
        self._windows[rule_id] = window
        self._evict()
        return window

    def _evict(self) -> None:
        while len(self._windows) > self.max_rules:
            victim = next(
                (key for key, w in self._windows.items() if not w.lock.locked()),
                None,
            )
            if victim is None:
                return
            del self._windows[victim]
            self.logger.debug("Rate limit window evicted", rule_id=victim)

    def _persisted(self, rule_id: str, now: float) -> list[float]:
        if self.history_loader is None:
            return []
        cutoff = now - self.window_seconds
        since = datetime.fromtimestamp(cutoff, tz=timezone.utc)
        stamps = (replayed_at.timestamp() for replayed_at in self.history_loader(rule_id, since))
        return sorted(stamp for stamp in stamps if stamp > cutoff)

    def _prune(self, window: _RuleWindow, now: float) -> None:
        cutoff = now - self.window_seconds
        for slots in (window.pending, window.settled):
            while slots and slots[0] <= cutoff:
                slots.popleft()

    def _result(self, window: _RuleWindow, persisted: list[float], limit: int, now: float) -> RateLimitResult:
        recorded = persisted if len(persisted) >= len(window.settled) else list(window.settled)
        used = len(recorded) + len(window.pending)
        if used < limit:
            return RateLimitResult(True, limit - used, None)
        oldest = min(recorded[:1] + list(window.pending)[:1])
        retry_after = max(1, int(oldest + self.window_seconds - now) + 1)
        return RateLimitResult(False, 0, retry_after)

    def _check(self, rule_id: str, window: _RuleWindow, limit: int) -> tuple[RateLimitResult, float]:
        now = self.clock()
        self._prune(window, now)
        return self._result(window, self._persisted(rule_id, now), limit, now), now

    async def can_replay(self, rule_id: str, limit: int) -> RateLimitResult:
        """Check whether a rule has budget left without reserving a slot."""
        window = self._window(rule_id)
        async with window.lock:
            result, _ = self._check(rule_id, window, limit)
            return result

    async def reserve(self, rule_id: str, limit: int) -> Reservation:
        """Reserve one replay slot for a rule.

        Args:
            rule_id: Rule id.
            limit: Maximum replays per window.

        Returns:
            Reservation to settle once the attempt is recorded, or to release
            if the replay never happens.

        Raises:
            RateLimitedError: If the window is full.
        """
        window = self._window(rule_id)
        async with window.lock:
            result, now = self._check(rule_id, window, limit)
            if not result.allowed:
                self.logger.info(
                    "Rule replay rate limited",
                    rule_id=rule_id,
                    limit=limit,
                    retry_after=result.retry_after,
                )
                raise RateLimitedError(
                    f"Rule '{rule_id}' exceeded {limit} replays per hour",
                    retry_after=result.retry_after,
                )

            window.pending.append(now)
            return Reservation(rule_id, now)

    def settle(self, reservation: Reservation) -> None:
        """Mark a reserved slot as used and recorded in history.

        Synchronous, like ``release``.
        """
        window = self._windows.get(reservation.rule_id)
        if window is None:
            return
        if reservation.timestamp in window.pending:
            window.pending.remove(reservation.timestamp)
            bisect.insort(window.settled, reservation.timestamp)

    def release(self, reservation: Reservation) -> None:
        """Give back a reserved slot that was not used.

        Synchronous so it can run from cancellation handlers. It never yields
        to the event loop, so it cannot interleave with a locked check.
        """
        window = self._windows.get(reservation.rule_id)
        if window is None:
            return
        if reservation.timestamp in window.pending:
            window.pending.remove(reservation.timestamp)

    def forget(self, rule_id: str) -> None:
        """Drop a rule's window, e.g. after the rule is deleted."""
        self._windows.pop(rule_id, None)
