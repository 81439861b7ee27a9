from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import asyncpg

from umpsa.infra.postgres import get_pool
from umpsa.obs import metrics as obs_metrics
from umpsa.settings import settings

logger = logging.getLogger(__name__)


async def purge_resolved_reports(
    days: Optional[int] = None,
    batch: int = 1000,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Delete reports resolved more than ``days`` ago (REPORT_RETENTION_DAYS by default)."""
    retention_days = settings.report_retention_days if days is None else days
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
    pool = await get_pool()
    counts: Dict[str, int] = {"workflow_records": 0}
    async with pool.acquire() as conn:
        counts["workflow_records"] += await _purge_resolved(conn, cutoff, batch)
    if counts["workflow_records"]:
        obs_metrics.RETENTION_PURGED_TOTAL.labels(table="workflow_records").inc(counts["workflow_records"])
        logger.info(
            "resolved reports purged",
            extra={"event": "retention_purge", "deleted": counts["workflow_records"], "days": retention_days},
        )
    return counts


async def _purge_resolved(conn: asyncpg.Connection, cutoff: datetime, limit: int) -> int:
    # resolved reports are terminal, so updated_at is the resolution time
    q = """
    WITH doomed AS (
      SELECT id FROM workflow_records
      WHERE kind = 'report' AND status = 'resolved' AND updated_at < $1
      LIMIT $2
    )
    DELETE FROM workflow_records w USING doomed d WHERE w.id = d.id
    RETURNING 1;
    """
    rows = await conn.fetch(q, cutoff, limit)
    return len(rows)
