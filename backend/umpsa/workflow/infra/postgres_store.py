"""PostgreSQL-backed workflow store.

Each record is one row: scalar columns for filtering and ordering plus the full
document (history included) as JSONB, so a single UPDATE guarded by ``version``
commits status, terminal fields and the new history entry together.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Sequence

import asyncpg

from umpsa.workflow.domain.errors import StoreUnavailable, VersionConflict
from umpsa.workflow.domain.models import WorkflowRecord, record_from_document, record_to_document
from umpsa.workflow.domain.store import SORTABLE_FIELDS, RecordFilter, SortKey

SCHEMA = """
CREATE TABLE IF NOT EXISTS workflow_records (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    status TEXT NOT NULL,
    priority_rank SMALLINT NOT NULL,
    priority TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    assignee TEXT,
    club_id TEXT,
    target_type TEXT,
    target_id TEXT,
    category TEXT,
    requires_follow_up BOOLEAN NOT NULL DEFAULT FALSE,
    follow_up_date TIMESTAMPTZ,
    expires_at TIMESTAMPTZ,
    scheduled_for TIMESTAMPTZ,
    published_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    version INTEGER NOT NULL,
    document JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS workflow_records_queue_idx
    ON workflow_records (kind, status, priority_rank DESC, created_at);
CREATE INDEX IF NOT EXISTS workflow_records_assignee_idx ON workflow_records (kind, assignee);
CREATE INDEX IF NOT EXISTS workflow_records_owner_idx ON workflow_records (kind, owner_id);
CREATE INDEX IF NOT EXISTS workflow_records_target_idx ON workflow_records (target_type, target_id);
CREATE INDEX IF NOT EXISTS workflow_records_follow_up_idx
    ON workflow_records (kind, follow_up_date) WHERE requires_follow_up;
"""

_UNAVAILABLE = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
)

_COLUMNS = (
    "kind",
    "status",
    "priority_rank",
    "priority",
    "owner_id",
    "assignee",
    "club_id",
    "target_type",
    "target_id",
    "category",
    "requires_follow_up",
    "follow_up_date",
    "expires_at",
    "scheduled_for",
    "published_at",
    "created_at",
    "updated_at",
)

_SORT_COLUMNS = {name: name for name in SORTABLE_FIELDS}
_SORT_COLUMNS["priority"] = "priority_rank"


def _column_values(record: WorkflowRecord) -> list[Any]:
    return [
        record.kind.value,
        record.status.value,
        record.priority.rank,
        record.priority.value,
        record.owner_id,
        record.assignee,
        record.club_id,
        record.target_type,
        record.target_id,
        record.category,
        record.requires_follow_up,
        record.follow_up_date,
        record.expires_at,
        record.scheduled_for,
        record.published_at,
        record.created_at,
        record.updated_at,
    ]


def _document(record: WorkflowRecord, version: int) -> str:
    doc = record_to_document(record)
    doc["version"] = version
    return json.dumps(doc)


def _record_from_row(row: asyncpg.Record) -> WorkflowRecord:
    raw = row["document"]
    doc = json.loads(raw) if isinstance(raw, (str, bytes)) else dict(raw)
    record = record_from_document(doc)
    record.version = int(row["version"])
    return record


def build_query(
    record_filter: RecordFilter,
    sort: Sequence[SortKey] = (),
    limit: Optional[int] = None,
) -> tuple[str, list[Any]]:
    """Translate a filter/sort pair into SQL with positional parameters."""
    clauses: list[str] = []
    params: list[Any] = []

    def _eq(column: str, value: Any) -> None:
        params.append(value)
        clauses.append(f"{column} = ${len(params)}")

    if record_filter.kind is not None:
        _eq("kind", record_filter.kind.value)
    if record_filter.statuses is not None:
        params.append(sorted(getattr(status, "value", status) for status in record_filter.statuses))
        clauses.append(f"status = ANY(${len(params)}::text[])")
    if record_filter.owner_id is not None:
        _eq("owner_id", record_filter.owner_id)
    if record_filter.assignee is not None:
        _eq("assignee", record_filter.assignee)
    if record_filter.club_id is not None:
        _eq("club_id", record_filter.club_id)
    if record_filter.target_type is not None:
        _eq("target_type", record_filter.target_type)
    if record_filter.target_id is not None:
        _eq("target_id", record_filter.target_id)
    if record_filter.category is not None:
        _eq("category", record_filter.category)
    if record_filter.priority is not None:
        _eq("priority", record_filter.priority.value)
    if record_filter.requires_follow_up is not None:
        _eq("requires_follow_up", record_filter.requires_follow_up)

    query = "SELECT document, version FROM workflow_records"
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    order = []
    for key in sort:
        column = _SORT_COLUMNS.get(key.field)
        if column is None:
            raise ValueError(f"unsupported sort field: {key.field}")
        order.append(f"{column} {'DESC' if key.descending else 'ASC'} NULLS LAST")
    if order:
        query += " ORDER BY " + ", ".join(order)
    if limit is not None:
        params.append(max(int(limit), 0))
        query += f" LIMIT ${len(params)}"
    return query, params


class PostgresWorkflowStore:
    """Persists workflow records using asyncpg."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def ensure_schema(self) -> None:
        try:
            await self.pool.execute(SCHEMA)
        except _UNAVAILABLE as exc:
            raise StoreUnavailable() from exc

    async def get(self, record_id: str) -> Optional[WorkflowRecord]:
        try:
            row = await self.pool.fetchrow(
                "SELECT document, version FROM workflow_records WHERE id = $1", record_id
            )
        except _UNAVAILABLE as exc:
            raise StoreUnavailable() from exc
        return _record_from_row(row) if row else None

    async def insert(self, record: WorkflowRecord) -> WorkflowRecord:
        columns = ("id", *_COLUMNS, "version", "document")
        placeholders = [f"${index}" for index in range(1, len(columns) + 1)]
        placeholders[-1] += "::jsonb"
        query = f"INSERT INTO workflow_records ({', '.join(columns)}) VALUES ({', '.join(placeholders)})"
        try:
            await self.pool.execute(query, record.id, *_column_values(record), 1, _document(record, 1))
        except asyncpg.UniqueViolationError as exc:
            raise ValueError(f"duplicate record id: {record.id}") from exc
        except _UNAVAILABLE as exc:
            raise StoreUnavailable() from exc
        stored = record.copy()
        stored.version = 1
        return stored

    async def put(self, record: WorkflowRecord, *, expected_version: int) -> WorkflowRecord:
        assignments = ", ".join(f"{column} = ${index}" for index, column in enumerate(_COLUMNS, start=3))
        doc_index = len(_COLUMNS) + 3
        query = (
            f"UPDATE workflow_records SET {assignments}, version = version + 1, document = ${doc_index}::jsonb "
            "WHERE id = $1 AND version = $2 RETURNING version"
        )
        try:
            row = await self.pool.fetchrow(
                query,
                record.id,
                expected_version,
                *_column_values(record),
                _document(record, expected_version + 1),
            )
            if row is None:
                current = await self.pool.fetchrow("SELECT version FROM workflow_records WHERE id = $1", record.id)
        except _UNAVAILABLE as exc:
            raise StoreUnavailable() from exc
        if row is None:
            if current is None:
                raise KeyError(record.id)
            raise VersionConflict(record.id, expected_version, int(current["version"]))
        stored = record.copy()
        stored.version = int(row["version"])
        return stored

    async def query(
        self,
        record_filter: RecordFilter,
        sort: Sequence[SortKey] = (),
        limit: Optional[int] = None,
    ) -> list[WorkflowRecord]:
        sql, params = build_query(record_filter, sort, limit)
        try:
            rows = await self.pool.fetch(sql, *params)
        except _UNAVAILABLE as exc:
            raise StoreUnavailable() from exc
        return [_record_from_row(row) for row in rows]
