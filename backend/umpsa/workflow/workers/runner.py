"""Utilities for wiring workflow workers into an event loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from umpsa.workflow.domain.container import get_sweeper
from umpsa.workflow.domain.errors import StoreUnavailable
from umpsa.workflow.workers.retention_worker import RetentionWorker
from umpsa.workflow.workers.sweeper_worker import SweepWorker

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 300.0
RETENTION_INTERVAL_SECONDS = 24 * 60 * 60


def next_delay(delay: float, failures: int) -> float:
    """Exponential backoff after consecutive store failures, capped."""
    if failures <= 0:
        return delay
    return min(delay * (2 ** failures), max(delay, MAX_BACKOFF_SECONDS))


async def _run_forever(worker, delay: float) -> None:
    failures = 0
    while True:
        try:
            await worker.run_once()
            failures = 0
        except (StoreUnavailable, OSError):
            failures += 1
            logger.warning(
                "workflow store unavailable, backing off",
                extra={"event": "workflow_worker_backoff", "worker": type(worker).__name__, "failures": failures},
            )
        await asyncio.sleep(next_delay(delay, failures))


def spawn_workers(
    *,
    interval: float = 60.0,
    retention_days: Optional[int] = None,
    loop: Optional[asyncio.AbstractEventLoop] = None,
) -> Iterable[asyncio.Task]:
    """Create asyncio tasks for the expiration sweep and, when ``retention_days`` is set, the report purge."""

    event_loop = loop or asyncio.get_event_loop()
    sweeper = SweepWorker(get_sweeper())
    tasks = [event_loop.create_task(_run_forever(sweeper, interval), name="workflow-sweeper")]
    if retention_days is not None:
        retention = RetentionWorker(days=retention_days)
        tasks.append(
            event_loop.create_task(_run_forever(retention, RETENTION_INTERVAL_SECONDS), name="workflow-retention")
        )
    return tasks
