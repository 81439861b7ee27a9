"""Durable store contract and the in-memory implementation used in dev and tests."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, NamedTuple, Optional, Protocol, Sequence

from umpsa.workflow.domain.errors import Conflict, NotFound, VersionConflict
from umpsa.workflow.domain.models import EntityKind, Priority, WorkflowRecord

logger = logging.getLogger(__name__)


class SortKey(NamedTuple):
    field: str
    descending: bool = False


@dataclass(frozen=True, slots=True)
class RecordFilter:
    """Equality filters AND-combined; ``None`` means "don't care"."""

    kind: Optional[EntityKind] = None
    statuses: Optional[frozenset[str]] = None
    owner_id: Optional[str] = None
    assignee: Optional[str] = None
    club_id: Optional[str] = None
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[Priority] = None
    requires_follow_up: Optional[bool] = None

    def matches(self, record: WorkflowRecord) -> bool:
        if self.kind is not None and record.kind is not self.kind:
            return False
        if self.statuses is not None and record.status.value not in self.statuses:
            return False
        if self.owner_id is not None and record.owner_id != self.owner_id:
            return False
        if self.assignee is not None and record.assignee != self.assignee:
            return False
        if self.club_id is not None and record.club_id != self.club_id:
            return False
        if self.target_type is not None and record.target_type != self.target_type:
            return False
        if self.target_id is not None and record.target_id != self.target_id:
            return False
        if self.category is not None and record.category != self.category:
            return False
        if self.priority is not None and record.priority is not self.priority:
            return False
        if self.requires_follow_up is not None and record.requires_follow_up != self.requires_follow_up:
            return False
        return True


def _sort_value(record: WorkflowRecord, field: str) -> Any:
    if field == "priority":
        return record.priority.rank
    return getattr(record, field)


SORTABLE_FIELDS = frozenset(
    {"priority", "created_at", "updated_at", "follow_up_date", "published_at", "scheduled_for", "expires_at"}
)


def sort_records(records: Iterable[WorkflowRecord], sort: Sequence[SortKey]) -> list[WorkflowRecord]:
    """Stable multi-key sort; missing values go last in either direction."""
    items = list(records)
    for key in reversed(sort):
        if key.field not in SORTABLE_FIELDS:
            raise ValueError(f"unsupported sort field: {key.field}")
        if key.descending:
            items.sort(
                key=lambda r, f=key.field: (_sort_value(r, f) is not None, _sort_value(r, f)),
                reverse=True,
            )
        else:
            items.sort(key=lambda r, f=key.field: (_sort_value(r, f) is None, _sort_value(r, f)))
    return items


class WorkflowStore(Protocol):
    async def get(self, record_id: str) -> Optional[WorkflowRecord]:
        ...

    async def insert(self, record: WorkflowRecord) -> WorkflowRecord:
        ...

    async def put(self, record: WorkflowRecord, *, expected_version: int) -> WorkflowRecord:
        """Replace the stored record if its version still equals ``expected_version``.

        Raises ``VersionConflict`` on mismatch and ``KeyError`` when the id is unknown.
        The returned record carries the bumped version.
        """

    async def query(
        self,
        record_filter: RecordFilter,
        sort: Sequence[SortKey] = (),
        limit: Optional[int] = None,
    ) -> list[WorkflowRecord]:
        ...


class InMemoryWorkflowStore:
    """Process-local store; every read and write deep-copies."""

    def __init__(self) -> None:
        self._items: dict[str, WorkflowRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, record_id: str) -> Optional[WorkflowRecord]:
        record = self._items.get(record_id)
        return record.copy() if record else None

    async def insert(self, record: WorkflowRecord) -> WorkflowRecord:
        async with self._lock:
            if record.id in self._items:
                raise ValueError(f"duplicate record id: {record.id}")
            stored = record.copy()
            stored.version = 1
            self._items[stored.id] = stored
            return stored.copy()

    async def put(self, record: WorkflowRecord, *, expected_version: int) -> WorkflowRecord:
        async with self._lock:
            current = self._items.get(record.id)
            if current is None:
                raise KeyError(record.id)
            if current.version != expected_version:
                raise VersionConflict(record.id, expected_version, current.version)
            stored = record.copy()
            stored.version = expected_version + 1
            self._items[stored.id] = stored
            return stored.copy()

    async def query(
        self,
        record_filter: RecordFilter,
        sort: Sequence[SortKey] = (),
        limit: Optional[int] = None,
    ) -> list[WorkflowRecord]:
        matched = [record.copy() for record in self._items.values() if record_filter.matches(record)]
        ordered = sort_records(matched, sort)
        if limit is not None:
            ordered = ordered[: max(limit, 0)]
        return ordered


Mutation = Callable[[WorkflowRecord], None]
ConflictHook = Callable[[str, int], Awaitable[None]]


async def apply_update(
    store: WorkflowStore,
    record_id: str,
    mutate: Mutation,
    *,
    retries: int,
    on_conflict: Optional[ConflictHook] = None,
) -> tuple[WorkflowRecord, WorkflowRecord]:
    """Read-modify-write ``record_id`` under the version guard.

    ``mutate`` runs against a fresh copy on every attempt, so business checks are
    re-evaluated against the state that won the race. After ``retries`` lost
    races the call fails with ``Conflict``. Returns ``(before, after)``.
    """
    attempt = 0
    while True:
        current = await store.get(record_id)
        if current is None:
            raise NotFound("record_not_found")
        working = current.copy()
        mutate(working)
        try:
            saved = await store.put(working, expected_version=current.version)
        except KeyError as exc:
            raise NotFound("record_not_found") from exc
        except VersionConflict:
            attempt += 1
            if on_conflict is not None:
                await on_conflict(record_id, attempt)
            if attempt > retries:
                raise Conflict() from None
            logger.info(
                "workflow version conflict, retrying",
                extra={"event": "workflow_conflict_retry", "record_id": record_id, "attempt": attempt},
            )
            continue
        return current, saved
