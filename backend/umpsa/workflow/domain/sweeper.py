"""Time-driven expiry and activation pass.

Every change goes through ``WorkflowService.transition`` as the system actor, so
repeated or concurrent sweeps collapse into "nothing to do" instead of double
transitions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from umpsa.obs import metrics as obs_metrics
from umpsa.workflow.domain.clock import ensure_utc
from umpsa.workflow.domain.errors import (
    AlreadyTerminal,
    Conflict,
    InvalidTransition,
    NotFound,
    StoreUnavailable,
    WorkflowError,
)
from umpsa.workflow.domain.models import (
    ActorRole,
    AnnouncementStatus,
    EntityKind,
    PostRequestStatus,
    WorkflowRecord,
)
from umpsa.workflow.domain.queries import WorkflowQueries
from umpsa.workflow.domain.service import WorkflowService

logger = logging.getLogger(__name__)

SYSTEM_ACTOR_ID = "system"
SWEEP_ORDER = (EntityKind.REPORT, EntityKind.PUBLIC_POST_REQUEST, EntityKind.ANNOUNCEMENT)


@dataclass(frozen=True, slots=True)
class SweepOutcome:
    record_id: str
    kind: EntityKind
    from_status: str
    to_status: str
    applied: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "kind": self.kind.value,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "applied": self.applied,
        }


@dataclass
class SweepReport:
    now: datetime
    dry_run: bool = False
    transitioned: list[SweepOutcome] = field(default_factory=list)
    skipped: int = 0
    failed: int = 0
    store_failures: int = 0

    @property
    def ok(self) -> bool:
        return self.store_failures == 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "now": self.now.isoformat(),
            "dry_run": self.dry_run,
            "transitioned": [item.as_dict() for item in self.transitioned],
            "transitioned_count": len(self.transitioned),
            "skipped": self.skipped,
            "failed": self.failed,
            "store_failures": self.store_failures,
        }


@dataclass
class ExpirationSweeper:
    service: WorkflowService
    queries: WorkflowQueries

    async def sweep(
        self,
        kinds: Optional[Iterable[EntityKind]] = None,
        *,
        now: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> SweepReport:
        """Run one pass over ``kinds`` (all kinds by default).

        A failure to list candidates (``StoreUnavailable``) aborts the pass;
        failures on individual records are counted and the pass continues.
        """
        at = ensure_utc(now) if now is not None else self.service.clock.now()
        report = SweepReport(now=at, dry_run=dry_run)
        selected = set(kinds) if kinds is not None else set(SWEEP_ORDER)
        for kind in SWEEP_ORDER:
            if kind not in selected:
                continue
            if kind is EntityKind.PUBLIC_POST_REQUEST:
                await self._expire_requests(report, at)
            elif kind is EntityKind.ANNOUNCEMENT:
                await self._sweep_announcements(report, at)
        logger.info(
            "workflow sweep finished",
            extra={
                "event": "workflow_sweep",
                "now": at.isoformat(),
                "dry_run": dry_run,
                "transitioned": len(report.transitioned),
                "skipped": report.skipped,
                "failed": report.failed,
            },
        )
        return report

    async def _expire_requests(self, report: SweepReport, now: datetime) -> None:
        for record in await self.queries.find_expired(EntityKind.PUBLIC_POST_REQUEST, now):
            await self._apply(
                report,
                record,
                PostRequestStatus.EXPIRED,
                now,
                reason="Request was not reviewed before it expired",
            )

    async def _sweep_announcements(self, report: SweepReport, now: datetime) -> None:
        published: list[WorkflowRecord] = []
        for record in await self.queries.find_due_scheduled(now):
            if await self._apply(report, record, AnnouncementStatus.PUBLISHED, now, notes="Published on schedule"):
                published.append(record)
        expiring = await self.queries.find_expired(EntityKind.ANNOUNCEMENT, now)
        if report.dry_run:
            seen = {record.id for record in expiring}
            expiring.extend(
                record for record in published if record.id not in seen and record.expires_at and now > record.expires_at
            )
        for record in expiring:
            await self._apply(report, record, AnnouncementStatus.EXPIRED, now, reason="Announcement expired")

    async def _apply(
        self,
        report: SweepReport,
        record: WorkflowRecord,
        target,
        now: datetime,
        *,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> bool:
        kind = record.kind.value
        if report.dry_run:
            report.transitioned.append(
                SweepOutcome(record.id, record.kind, record.status.value, target.value, applied=False)
            )
            return True
        try:
            await self.service.transition(
                record.id,
                target.value,
                actor_id=SYSTEM_ACTOR_ID,
                role=ActorRole.SYSTEM,
                reason=reason,
                notes=notes,
                now=now,
            )
        except (AlreadyTerminal, InvalidTransition, NotFound) as exc:
            # another sweeper or an admin got there first
            report.skipped += 1
            obs_metrics.WORKFLOW_SWEEP_SKIPPED_TOTAL.labels(kind=kind).inc()
            logger.info(
                "sweep candidate skipped",
                extra={"event": "workflow_sweep_skip", "record_id": record.id, "kind": kind, "detail": exc.detail},
            )
            return False
        except (Conflict, StoreUnavailable) as exc:
            report.failed += 1
            if isinstance(exc, StoreUnavailable):
                report.store_failures += 1
            obs_metrics.WORKFLOW_SWEEP_FAILURES_TOTAL.labels(kind=kind).inc()
            logger.warning(
                "sweep candidate failed",
                extra={"event": "workflow_sweep_failure", "record_id": record.id, "kind": kind, "detail": exc.detail},
            )
            return False
        except WorkflowError as exc:
            report.failed += 1
            obs_metrics.WORKFLOW_SWEEP_FAILURES_TOTAL.labels(kind=kind).inc()
            logger.exception(
                "sweep candidate rejected",
                extra={"event": "workflow_sweep_failure", "record_id": record.id, "kind": kind, "detail": exc.detail},
            )
            return False
        report.transitioned.append(SweepOutcome(record.id, record.kind, record.status.value, target.value, applied=True))
        obs_metrics.WORKFLOW_SWEEP_TRANSITIONS_TOTAL.labels(kind=kind, to_status=target.value).inc()
        logger.info(
            "sweep transitioned record",
            extra={
                "event": "workflow_sweep_transition",
                "record_id": record.id,
                "kind": kind,
                "from_status": record.status.value,
                "to_status": target.value,
            },
        )
        return True
