"""Deferred replay scheduling.

Replays for rules with a delay are parked on event-loop timers rather than
sleeping inside a worker. Each (message, rule) pair is pending at most once.
"""

import asyncio
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger()

PendingKey = tuple[str, str]


class DeferredReplayScheduler:
    """Runs coroutine factories after a delay using ``loop.call_later``."""

    def __init__(self):
        """Initialize an empty scheduler."""
        self._timers: dict[PendingKey, asyncio.TimerHandle] = {}
        self._tasks: dict[PendingKey, asyncio.Task] = {}
        self._on_cancel: dict[PendingKey, Callable[[], None]] = {}
        self.logger = logger.bind(service="deferred_replay_scheduler")

    def is_pending(self, dlq_message_id: str, rule_id: str) -> bool:
        """Check whether a replay is already waiting or running for this pair."""
        key = (dlq_message_id, rule_id)
        return key in self._timers or key in self._tasks

    @property
    def pending_count(self) -> int:
        """Number of timers waiting plus tasks running."""
        return len(self._timers) + len(self._tasks)

    def schedule(
        self,
        dlq_message_id: str,
        rule_id: str,
        delay_seconds: float,
        factory: Callable[[], Awaitable[Any]],
        on_cancel: Callable[[], None] | None = None,
    ) -> bool:
        """Schedule ``factory()`` to run after ``delay_seconds``.

        Args:
            dlq_message_id: Message the replay targets.
            rule_id: Rule that requested the replay.
            delay_seconds: Delay before running.
            factory: Builds the coroutine to run.
            on_cancel: Called if the replay is cancelled before it starts.

        Returns:
            True if scheduled, False if the pair was already pending.
        """
        key = (dlq_message_id, rule_id)
        if self.is_pending(dlq_message_id, rule_id):
            return False

        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay_seconds, self._start, key, factory)
        if on_cancel is not None:
            self._on_cancel[key] = on_cancel

        self.logger.info(
            "Replay deferred",
            dlq_message_id=dlq_message_id,
            rule_id=rule_id,
            delay_seconds=delay_seconds,
        )
        return True

    def _start(self, key: PendingKey, factory: Callable[[], Awaitable[Any]]) -> None:
        self._timers.pop(key, None)
        self._on_cancel.pop(key, None)
        task = asyncio.ensure_future(factory())
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._finished(key, t))

    def _finished(self, key: PendingKey, task: asyncio.Task) -> None:
        self._tasks.pop(key, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.warning(
                "Deferred replay failed",
                dlq_message_id=key[0],
                rule_id=key[1],
                error=str(error),
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until no replay is pending, or the timeout elapses."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._timers or self._tasks:
            if deadline is not None and loop.time() >= deadline:
                return
            if self._tasks:
                remaining = None if deadline is None else max(deadline - loop.time(), 0)
                await asyncio.wait(list(self._tasks.values()), timeout=remaining)
            else:
                await asyncio.sleep(0.05)

    async def shutdown(self) -> None:
        """Cancel every pending timer and running task."""
        for key, handle in list(self._timers.items()):
            handle.cancel()
            callback = self._on_cancel.pop(key, None)
            if callback is not None:
                callback()
        self._timers.clear()

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        self.logger.info("Deferred replay scheduler stopped", cancelled_tasks=len(tasks))
