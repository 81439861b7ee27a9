"""Read-only queues and lookups over workflow records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence, Union

from umpsa.workflow.domain import sla, transitions
from umpsa.workflow.domain.clock import Clock, SystemClock
from umpsa.workflow.domain.models import (
    AnnouncementStatus,
    EntityKind,
    PostRequestStatus,
    Priority,
    WorkflowRecord,
    parse_status,
)
from umpsa.workflow.domain.store import RecordFilter, SortKey, WorkflowStore

PRIORITY_QUEUE = (SortKey("priority", descending=True), SortKey("created_at"))
NEWEST_FIRST = (SortKey("created_at", descending=True),)
OLDEST_FIRST = (SortKey("created_at"),)
FOLLOW_UP_ORDER = (SortKey("follow_up_date"),)
ACTIVE_ANNOUNCEMENT_ORDER = (SortKey("priority", descending=True), SortKey("published_at", descending=True))

_TEXT_FIELDS = {
    EntityKind.REPORT: ("reason", "body"),
    EntityKind.PUBLIC_POST_REQUEST: ("title", "body"),
    EntityKind.ANNOUNCEMENT: ("title", "body", "summary"),
}


@dataclass(frozen=True, slots=True)
class SearchFilters:
    category: Optional[str] = None
    priority: Optional[Union[Priority, str]] = None
    owner_id: Optional[str] = None
    club_id: Optional[str] = None
    status: Optional[str] = None


def _values(statuses: Iterable) -> frozenset[str]:
    return frozenset(getattr(status, "value", status) for status in statuses)


def _limited(records: list[WorkflowRecord], limit: Optional[int]) -> list[WorkflowRecord]:
    if limit is None:
        return records
    return records[: max(limit, 0)]


def matches_text(record: WorkflowRecord, needle: str) -> bool:
    """Case-insensitive substring over the kind's free-text fields, or an exact tag hit."""
    if not needle:
        return True
    lowered = needle.lower()
    for name in _TEXT_FIELDS[record.kind]:
        value = getattr(record, name) or ""
        if lowered in value.lower():
            return True
    return lowered in record.tags


def is_active_announcement(record: WorkflowRecord, now: datetime) -> bool:
    return record.status == AnnouncementStatus.PUBLISHED and not sla.is_expired(record, now)


class WorkflowQueries:
    def __init__(self, store: WorkflowStore, clock: Optional[Clock] = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    async def find_pending(self, kind: EntityKind, *, limit: Optional[int] = None) -> list[WorkflowRecord]:
        """Initial-state queue, highest priority first then oldest first."""
        initial = transitions.table_for(kind).initial
        return await self._store.query(
            RecordFilter(kind=kind, statuses=_values([initial])), PRIORITY_QUEUE, limit
        )

    async def find_overdue(
        self, kind: EntityKind, now: datetime, *, limit: Optional[int] = None
    ) -> list[WorkflowRecord]:
        policy = sla.SLA_POLICIES.get(kind)
        if policy is None:
            candidates = await self._store.query(
                RecordFilter(kind=kind, requires_follow_up=True), FOLLOW_UP_ORDER
            )
            overdue = [
                record
                for record in candidates
                if sla.is_overdue_for_follow_up(record, now) and not transitions.is_terminal(record)
            ]
            return _limited(overdue, limit)
        candidates = await self._store.query(
            RecordFilter(kind=kind, statuses=_values(policy.open_statuses)), PRIORITY_QUEUE
        )
        overdue = [
            record
            for record in candidates
            if sla.is_overdue(record.priority, record.created_at, now, thresholds=policy.thresholds)
        ]
        return _limited(overdue, limit)

    async def find_requiring_follow_up(
        self, kind: EntityKind, now: datetime, *, limit: Optional[int] = None
    ) -> list[WorkflowRecord]:
        candidates = await self._store.query(
            RecordFilter(
                kind=kind,
                requires_follow_up=True,
                statuses=_values(transitions.non_terminal_statuses(kind)),
            ),
            FOLLOW_UP_ORDER,
        )
        return _limited([record for record in candidates if sla.is_follow_up_due(record, now)], limit)

    async def find_by_assignee(
        self, kind: EntityKind, assignee: str, *, limit: Optional[int] = None
    ) -> list[WorkflowRecord]:
        return await self._store.query(RecordFilter(kind=kind, assignee=assignee), NEWEST_FIRST, limit)

    async def find_by_owner(
        self, kind: EntityKind, owner_id: str, *, limit: Optional[int] = None
    ) -> list[WorkflowRecord]:
        """Reports by reporter, requests by requester, announcements by author."""
        return await self._store.query(RecordFilter(kind=kind, owner_id=owner_id), NEWEST_FIRST, limit)

    async def find_by_target(
        self, target_type: str, target_id: str, *, limit: Optional[int] = None
    ) -> list[WorkflowRecord]:
        return await self._store.query(
            RecordFilter(kind=EntityKind.REPORT, target_type=target_type, target_id=target_id),
            NEWEST_FIRST,
            limit,
        )

    async def find_by_club(
        self, kind: EntityKind, club_id: str, *, limit: Optional[int] = None
    ) -> list[WorkflowRecord]:
        return await self._store.query(RecordFilter(kind=kind, club_id=club_id), NEWEST_FIRST, limit)

    async def find_by_status(
        self, kind: EntityKind, status: str, *, limit: Optional[int] = None
    ) -> list[WorkflowRecord]:
        wanted = parse_status(kind, status)
        return await self._store.query(RecordFilter(kind=kind, statuses=_values([wanted])), NEWEST_FIRST, limit)

    async def find_by_priority(
        self, kind: EntityKind, priority: Union[Priority, str], *, limit: Optional[int] = None
    ) -> list[WorkflowRecord]:
        """Open records of one priority, oldest first."""
        return await self._store.query(
            RecordFilter(
                kind=kind,
                priority=Priority.parse(priority),
                statuses=_values(transitions.non_terminal_statuses(kind)),
            ),
            OLDEST_FIRST,
            limit,
        )

    async def find_expired(
        self, kind: EntityKind, now: datetime, *, limit: Optional[int] = None
    ) -> list[WorkflowRecord]:
        """Live records past ``expires_at`` (pending requests, published announcements)."""
        if kind is EntityKind.PUBLIC_POST_REQUEST:
            live = PostRequestStatus.PENDING
        elif kind is EntityKind.ANNOUNCEMENT:
            live = AnnouncementStatus.PUBLISHED
        else:
            return []
        candidates = await self._store.query(
            RecordFilter(kind=kind, statuses=_values([live])), (SortKey("expires_at"),)
        )
        return _limited([record for record in candidates if sla.is_expired(record, now)], limit)

    async def find_due_scheduled(self, now: datetime, *, limit: Optional[int] = None) -> list[WorkflowRecord]:
        candidates = await self._store.query(
            RecordFilter(kind=EntityKind.ANNOUNCEMENT, statuses=_values([AnnouncementStatus.SCHEDULED])),
            (SortKey("scheduled_for"),),
        )
        due = [record for record in candidates if record.scheduled_for is not None and record.scheduled_for <= now]
        return _limited(due, limit)

    async def find_active_announcements(
        self,
        now: datetime,
        *,
        audience: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowRecord]:
        candidates = await self._store.query(
            RecordFilter(kind=EntityKind.ANNOUNCEMENT, statuses=_values([AnnouncementStatus.PUBLISHED])),
            ACTIVE_ANNOUNCEMENT_ORDER,
        )
        active = []
        for record in candidates:
            if not is_active_announcement(record, now):
                continue
            if audience and "all" not in record.target_audience and audience not in record.target_audience:
                continue
            active.append(record)
        return _limited(active, limit)

    async def search(
        self,
        kind: EntityKind,
        query: str,
        *,
        filters: Optional[SearchFilters] = None,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowRecord]:
        """Substring search AND-combined with ``filters``.

        Announcements only match while published and unexpired at ``now``
        (defaults to the injected clock).
        """
        filters = filters or SearchFilters()
        statuses = None
        if filters.status:
            statuses = _values([parse_status(kind, filters.status)])
        record_filter = RecordFilter(
            kind=kind,
            statuses=statuses,
            owner_id=filters.owner_id,
            club_id=filters.club_id,
            category=filters.category,
            priority=Priority.parse(filters.priority) if filters.priority else None,
        )
        order: Sequence[SortKey] = PRIORITY_QUEUE[:1] + NEWEST_FIRST
        if kind is EntityKind.ANNOUNCEMENT:
            order = ACTIVE_ANNOUNCEMENT_ORDER
        candidates = await self._store.query(record_filter, order)
        needle = (query or "").strip()
        at = now or self._clock.now()
        matched = []
        for record in candidates:
            if kind is EntityKind.ANNOUNCEMENT and not is_active_announcement(record, at):
                continue
            if matches_text(record, needle):
                matched.append(record)
        return _limited(matched, limit)
