"""Append-only action log embedded in each workflow record."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Optional

from umpsa.workflow.domain import store as store_mod
from umpsa.workflow.domain.errors import NotFound
from umpsa.workflow.domain.models import HistoryAction, HistoryEntry, WorkflowRecord


def make_entry(
    record: WorkflowRecord,
    action: HistoryAction,
    actor_id: str,
    now: datetime,
    *,
    notes: Optional[str] = None,
    reason: Optional[str] = None,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
) -> HistoryEntry:
    last = record.last_entry
    timestamp = now if last is None or now >= last.timestamp else last.timestamp
    return HistoryEntry(
        action=action,
        actor_id=actor_id,
        timestamp=timestamp,
        notes=notes,
        reason=reason,
        from_status=from_status,
        to_status=to_status,
    )


def append_entry(record: WorkflowRecord, entry: HistoryEntry) -> HistoryEntry:
    """Append to the working copy; the entry commits with the record write."""
    last = record.last_entry
    if last is not None and entry.timestamp < last.timestamp:
        entry = replace(entry, timestamp=last.timestamp)
    record.history = (*record.history, entry)
    return entry


class HistoryLog:
    def __init__(self, store: store_mod.WorkflowStore, *, max_conflict_retries: int = 2) -> None:
        self._store = store
        self._retries = max_conflict_retries

    async def list_for(self, record_id: str) -> tuple[HistoryEntry, ...]:
        record = await self._store.get(record_id)
        if record is None:
            raise NotFound("record_not_found")
        return record.history

    async def append(self, record_id: str, entry: HistoryEntry) -> HistoryEntry:
        """Append an annotation that does not change status."""
        appended: list[HistoryEntry] = []

        def _mutate(record: WorkflowRecord) -> None:
            stored = append_entry(record, entry)
            record.updated_at = max(record.updated_at, stored.timestamp)
            appended[:] = [stored]

        await store_mod.apply_update(self._store, record_id, _mutate, retries=self._retries)
        return appended[0]
