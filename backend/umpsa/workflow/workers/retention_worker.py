"""Daily purge of old resolved reports."""

from __future__ import annotations

from typing import Dict

from umpsa.maintenance.retention import purge_resolved_reports


class RetentionWorker:
    def __init__(self, *, days: int, batch: int = 1000) -> None:
        self.days = days
        self.batch = batch

    async def run_once(self) -> Dict[str, int]:
        return await purge_resolved_reports(self.days, self.batch)
