"""Scheduled DLQ monitor worker.

Runs one scan-and-remediate cycle per invocation:
1. Peeks every dead-letter queue in each namespace and records new messages
2. Matches Active messages against enabled auto-replay rules
3. Replays matches, waiting for deferred replays up to the drain timeout

Deferred replays still pending when the drain timeout elapses are cancelled
and released. The next invocation picks the messages up again, and the
delay counts from detection, so a replay whose delay has already elapsed runs
at once instead of being deferred again.
"""

import asyncio
from typing import Any

import structlog

from dlqops.config import get_settings
from dlqops.dlq.engine import build_orchestrator
from dlqops.dlq.orchestrator import DlqOrchestrator

logger = structlog.get_logger()


def handler(event: dict[str, Any], context: Any) -> dict:
    """Run one DLQ scan cycle.

    Args:
        event: Scheduled event. May carry ``namespace_ids`` to override the
            configured namespaces.
        context: Lambda context.

    Returns:
        Cycle summary counts.
    """
    settings = get_settings()
    namespace_ids = (event or {}).get("namespace_ids") or settings.namespace_ids

    if not namespace_ids:
        logger.warning("No namespaces configured, skipping DLQ scan")
        return {"namespaces": 0}

    orchestrator = build_orchestrator(settings)

    logger.info("Starting DLQ scan", namespace_count=len(namespace_ids))
    summary = asyncio.run(run(orchestrator, list(namespace_ids), settings.drain_timeout_seconds))
    logger.info("DLQ scan finished", **summary)
    return summary


async def run(orchestrator: DlqOrchestrator, namespace_ids: list[str], drain_timeout: float) -> dict:
    """Run a cycle, then wait for deferred replays before shutting down."""
    scheduler = orchestrator.executor.scheduler
    try:
        report = await orchestrator.run_cycle(namespace_ids)
        await scheduler.drain(drain_timeout)
        if scheduler.pending_count:
            logger.warning("Deferred replays still pending at drain timeout", pending=scheduler.pending_count)
    finally:
        await scheduler.shutdown()
    return report.to_dict()
