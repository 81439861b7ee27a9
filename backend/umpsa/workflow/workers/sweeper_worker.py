"""Periodic expiration sweep."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from umpsa.workflow.domain.models import EntityKind
from umpsa.workflow.domain.sweeper import ExpirationSweeper, SweepReport

logger = logging.getLogger(__name__)


class SweepWorker:
    """Runs one sweep per tick using the sweeper's injected clock."""

    def __init__(self, sweeper: ExpirationSweeper, *, kinds: Optional[Iterable[EntityKind]] = None) -> None:
        self.sweeper = sweeper
        self.kinds = tuple(kinds) if kinds is not None else None

    async def run_once(self) -> SweepReport:
        report = await self.sweeper.sweep(self.kinds)
        if report.failed:
            logger.warning(
                "sweep finished with failures",
                extra={"event": "workflow_sweep_degraded", "failed": report.failed, "skipped": report.skipped},
            )
        return report
