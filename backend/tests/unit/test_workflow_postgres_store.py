import json
from unittest.mock import AsyncMock

import asyncpg
import pytest

from umpsa.workflow.domain.errors import StoreUnavailable, VersionConflict
from umpsa.workflow.domain.models import (
    EntityKind,
    PostRequestStatus,
    Priority,
    WorkflowRecord,
    record_to_document,
)
from umpsa.workflow.domain.store import RecordFilter, SortKey
from umpsa.workflow.infra.postgres_store import PostgresWorkflowStore, build_query

from conftest import T0


def _record() -> WorkflowRecord:
    return WorkflowRecord(
        id="req-1",
        kind=EntityKind.PUBLIC_POST_REQUEST,
        status=PostRequestStatus.PENDING,
        priority=Priority.HIGH,
        owner_id="student-1",
        club_id="club-1",
        created_at=T0,
        updated_at=T0,
        body="Chess night",
    )


def _row(record: WorkflowRecord, version: int) -> dict:
    doc = record_to_document(record)
    doc["version"] = version
    return {"document": json.dumps(doc), "version": version}


def test_build_query_filters_sort_and_limit():
    sql, params = build_query(
        RecordFilter(kind=EntityKind.REPORT, statuses=frozenset({"pending", "escalated"}), assignee="mod-1"),
        (SortKey("priority", descending=True), SortKey("created_at")),
        25,
    )
    assert sql == (
        "SELECT document, version FROM workflow_records WHERE kind = $1 AND status = ANY($2::text[]) "
        "AND assignee = $3 ORDER BY priority_rank DESC NULLS LAST, created_at ASC NULLS LAST LIMIT $4"
    )
    assert params == ["report", ["escalated", "pending"], "mod-1", 25]


def test_build_query_rejects_unknown_sort():
    with pytest.raises(ValueError):
        build_query(RecordFilter(), (SortKey("owner_id"),))


@pytest.mark.asyncio
async def test_get_decodes_document():
    pool = AsyncMock()
    pool.fetchrow.return_value = _row(_record(), 4)
    store = PostgresWorkflowStore(pool)

    record = await store.get("req-1")
    assert record.version == 4
    assert record.status is PostRequestStatus.PENDING
    assert record.priority is Priority.HIGH
    assert record.created_at == T0


@pytest.mark.asyncio
async def test_get_missing_returns_none():
    pool = AsyncMock()
    pool.fetchrow.return_value = None
    assert await PostgresWorkflowStore(pool).get("nope") is None


@pytest.mark.asyncio
async def test_insert_writes_version_one():
    pool = AsyncMock()
    store = PostgresWorkflowStore(pool)
    saved = await store.insert(_record())

    assert saved.version == 1
    query, *args = pool.execute.await_args.args
    assert query.startswith("INSERT INTO workflow_records (id, kind, status")
    assert query.endswith("::jsonb)")
    assert args[0] == "req-1"
    assert json.loads(args[-1])["version"] == 1


@pytest.mark.asyncio
async def test_insert_duplicate_maps_to_value_error():
    pool = AsyncMock()
    pool.execute.side_effect = asyncpg.UniqueViolationError("duplicate key")
    with pytest.raises(ValueError):
        await PostgresWorkflowStore(pool).insert(_record())


@pytest.mark.asyncio
async def test_put_guarded_by_version():
    pool = AsyncMock()
    pool.fetchrow.return_value = {"version": 3}
    store = PostgresWorkflowStore(pool)

    saved = await store.put(_record(), expected_version=2)
    assert saved.version == 3
    query, record_id, expected, *_ = pool.fetchrow.await_args.args
    assert "WHERE id = $1 AND version = $2 RETURNING version" in query
    assert (record_id, expected) == ("req-1", 2)


@pytest.mark.asyncio
async def test_put_conflict_and_missing():
    pool = AsyncMock()
    pool.fetchrow.side_effect = [None, {"version": 5}]
    with pytest.raises(VersionConflict) as exc:
        await PostgresWorkflowStore(pool).put(_record(), expected_version=2)
    assert exc.value.actual == 5

    pool = AsyncMock()
    pool.fetchrow.side_effect = [None, None]
    with pytest.raises(KeyError):
        await PostgresWorkflowStore(pool).put(_record(), expected_version=2)


@pytest.mark.asyncio
async def test_connectivity_errors_become_store_unavailable():
    pool = AsyncMock()
    pool.fetch.side_effect = ConnectionRefusedError()
    with pytest.raises(StoreUnavailable):
        await PostgresWorkflowStore(pool).query(RecordFilter(kind=EntityKind.REPORT))

    pool = AsyncMock()
    pool.fetchrow.side_effect = asyncpg.exceptions.CannotConnectNowError("starting up")
    with pytest.raises(StoreUnavailable):
        await PostgresWorkflowStore(pool).get("req-1")


@pytest.mark.asyncio
async def test_query_returns_records():
    pool = AsyncMock()
    pool.fetch.return_value = [_row(_record(), 2)]
    records = await PostgresWorkflowStore(pool).query(
        RecordFilter(kind=EntityKind.PUBLIC_POST_REQUEST), (SortKey("created_at"),), 10
    )
    assert [(record.id, record.version) for record in records] == [("req-1", 2)]
