"""Tests for the per-rule replay rate limiter."""

import asyncio
from datetime import datetime, timezone

import pytest

from dlqops.utils.exceptions import RateLimitedError
from dlqops.utils.rate_limiter import ReplayRateLimiter


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestReplayRateLimiter:
    """Sliding window behaviour."""

    @pytest.mark.asyncio
    async def test_reserve_until_limit(self):
        limiter = ReplayRateLimiter(clock=FakeClock())

        for _ in range(3):
            await limiter.reserve("rule-1", 3)

        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.reserve("rule-1", 3)
        assert exc_info.value.retry_after == 3601

    @pytest.mark.asyncio
    async def test_concurrent_reservations_respect_limit(self):
        limiter = ReplayRateLimiter(clock=FakeClock())

        results = await asyncio.gather(
            *(limiter.reserve("rule-1", 3) for _ in range(5)),
            return_exceptions=True,
        )

        granted = [r for r in results if not isinstance(r, Exception)]
        limited = [r for r in results if isinstance(r, RateLimitedError)]
        assert len(granted) == 3
        assert len(limited) == 2

    @pytest.mark.asyncio
    async def test_window_slides(self):
        clock = FakeClock()
        limiter = ReplayRateLimiter(clock=clock, window_seconds=3600)

        await limiter.reserve("rule-1", 1)
        clock.now += 3601

        await limiter.reserve("rule-1", 1)

    @pytest.mark.asyncio
    async def test_rules_are_independent(self):
        limiter = ReplayRateLimiter(clock=FakeClock())

        await limiter.reserve("rule-1", 1)
        await limiter.reserve("rule-2", 1)

        result = await limiter.can_replay("rule-1", 1)
        assert result.allowed is False

    @pytest.mark.asyncio
    async def test_release_returns_slot(self):
        limiter = ReplayRateLimiter(clock=FakeClock())

        reservation = await limiter.reserve("rule-1", 1)
        limiter.release(reservation)

        result = await limiter.can_replay("rule-1", 1)
        assert result.allowed is True
        assert result.requests_remaining == 1

    @pytest.mark.asyncio
    async def test_can_replay_does_not_reserve(self):
        limiter = ReplayRateLimiter(clock=FakeClock())

        for _ in range(3):
            assert (await limiter.can_replay("rule-1", 1)).allowed

    @pytest.mark.asyncio
    async def test_persisted_attempts_count(self):
        clock = FakeClock()
        recent = datetime.fromtimestamp(clock.now - 60, tz=timezone.utc)
        expired = datetime.fromtimestamp(clock.now - 4000, tz=timezone.utc)
        calls = []

        def loader(rule_id, since):
            calls.append((rule_id, since))
            return [expired, recent, recent]

        limiter = ReplayRateLimiter(history_loader=loader, clock=clock)

        result = await limiter.can_replay("rule-1", 3)
        assert result.requests_remaining == 1
        await limiter.reserve("rule-1", 3)
        assert len(calls) == 2
        assert calls[0][1] == datetime.fromtimestamp(clock.now - 3600, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_attempts_recorded_elsewhere_after_window_created(self):
        clock = FakeClock()
        persisted: list[datetime] = []
        limiter = ReplayRateLimiter(history_loader=lambda rule_id, since: list(persisted), clock=clock)

        await limiter.reserve("rule-1", 3)

        # Two replays recorded by another worker
        persisted.extend([datetime.fromtimestamp(clock.now - 30, tz=timezone.utc)] * 2)

        with pytest.raises(RateLimitedError):
            await limiter.reserve("rule-1", 3)

    @pytest.mark.asyncio
    async def test_settled_slot_is_not_counted_twice(self):
        clock = FakeClock()
        persisted: list[datetime] = []
        limiter = ReplayRateLimiter(history_loader=lambda rule_id, since: list(persisted), clock=clock)

        reservation = await limiter.reserve("rule-1", 2)
        limiter.settle(reservation)

        # Not yet visible in history: the settled slot still counts
        assert (await limiter.can_replay("rule-1", 2)).requests_remaining == 1

        persisted.append(datetime.fromtimestamp(reservation.timestamp, tz=timezone.utc))
        assert (await limiter.can_replay("rule-1", 2)).requests_remaining == 1

        limiter.release(reservation)
        assert (await limiter.can_replay("rule-1", 2)).requests_remaining == 1

    @pytest.mark.asyncio
    async def test_evicts_least_recently_used(self):
        limiter = ReplayRateLimiter(clock=FakeClock(), max_rules=2)

        await limiter.reserve("rule-1", 5)
        await limiter.reserve("rule-2", 5)
        await limiter.reserve("rule-1", 5)
        await limiter.reserve("rule-3", 5)

        assert len(limiter) == 2
        assert (await limiter.can_replay("rule-1", 2)).allowed is False

    @pytest.mark.asyncio
    async def test_forget(self):
        limiter = ReplayRateLimiter(clock=FakeClock())

        await limiter.reserve("rule-1", 1)
        limiter.forget("rule-1")

        assert len(limiter) == 0
        assert (await limiter.can_replay("rule-1", 1)).allowed is True
