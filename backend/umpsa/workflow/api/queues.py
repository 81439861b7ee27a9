"""Read-only queues, search and member listings."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from umpsa.infra.auth import AuthenticatedUser, get_current_user, require_roles
from umpsa.workflow.api.records import render
from umpsa.workflow.api.schemas import RecordListOut
from umpsa.workflow.domain.container import get_clock, get_queries
from umpsa.workflow.domain.models import EntityKind, WorkflowRecord, public_view, record_to_document
from umpsa.workflow.domain.queries import SearchFilters, WorkflowQueries

router = APIRouter(prefix="/api/workflow/v1", tags=["workflow-queues"])

_staff = require_roles("admin", "moderator")


def get_queries_dep() -> WorkflowQueries:
    return get_queries()


def _staff_list(records: list[WorkflowRecord]) -> RecordListOut:
    items = [record_to_document(record) for record in records]
    return RecordListOut(items=items, count=len(items))


@router.get("/queues/{kind}/pending", response_model=RecordListOut)
async def pending_queue(
    kind: EntityKind,
    limit: int = Query(50, ge=1, le=500),
    queries: WorkflowQueries = Depends(get_queries_dep),
    user: AuthenticatedUser = Depends(_staff),
) -> RecordListOut:
    return _staff_list(await queries.find_pending(kind, limit=limit))


@router.get("/queues/{kind}/overdue", response_model=RecordListOut)
async def overdue_queue(
    kind: EntityKind,
    limit: int = Query(50, ge=1, le=500),
    queries: WorkflowQueries = Depends(get_queries_dep),
    user: AuthenticatedUser = Depends(_staff),
) -> RecordListOut:
    return _staff_list(await queries.find_overdue(kind, get_clock().now(), limit=limit))


@router.get("/queues/{kind}/follow-up", response_model=RecordListOut)
async def follow_up_queue(
    kind: EntityKind,
    limit: int = Query(50, ge=1, le=500),
    queries: WorkflowQueries = Depends(get_queries_dep),
    user: AuthenticatedUser = Depends(_staff),
) -> RecordListOut:
    return _staff_list(await queries.find_requiring_follow_up(kind, get_clock().now(), limit=limit))


@router.get("/queues/{kind}/assigned", response_model=RecordListOut)
async def assigned_queue(
    kind: EntityKind,
    assignee_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    queries: WorkflowQueries = Depends(get_queries_dep),
    user: AuthenticatedUser = Depends(_staff),
) -> RecordListOut:
    return _staff_list(await queries.find_by_assignee(kind, assignee_id or user.id, limit=limit))


@router.get("/queues/{kind}/priority/{priority}", response_model=RecordListOut)
async def priority_queue(
    kind: EntityKind,
    priority: str,
    limit: int = Query(50, ge=1, le=500),
    queries: WorkflowQueries = Depends(get_queries_dep),
    user: AuthenticatedUser = Depends(_staff),
) -> RecordListOut:
    try:
        records = await queries.find_by_priority(kind, priority, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_filter") from exc
    return _staff_list(records)


@router.get("/reports/by-target/{target_type}/{target_id}", response_model=RecordListOut)
async def reports_for_target(
    target_type: str,
    target_id: str,
    limit: int = Query(50, ge=1, le=500),
    queries: WorkflowQueries = Depends(get_queries_dep),
    user: AuthenticatedUser = Depends(_staff),
) -> RecordListOut:
    return _staff_list(await queries.find_by_target(target_type, target_id, limit=limit))


@router.get("/search/{kind}", response_model=RecordListOut)
async def search_records(
    kind: EntityKind,
    q: str = "",
    category: Optional[str] = None,
    priority: Optional[str] = None,
    owner_id: Optional[str] = None,
    club_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    queries: WorkflowQueries = Depends(get_queries_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> RecordListOut:
    # members may only search published announcements
    if kind is not EntityKind.ANNOUNCEMENT and not user.is_staff:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="insufficient_role")
    filters = SearchFilters(
        category=category,
        priority=priority,
        owner_id=owner_id,
        club_id=club_id,
        status=status_filter,
    )
    try:
        records = await queries.search(kind, q, filters=filters, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_filter") from exc
    items = [render(record, user) for record in records]
    return RecordListOut(items=items, count=len(items))


@router.get("/announcements/active", response_model=RecordListOut)
async def active_announcements(
    audience: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    queries: WorkflowQueries = Depends(get_queries_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> RecordListOut:
    records = await queries.find_active_announcements(get_clock().now(), audience=audience, limit=limit)
    items = [public_view(record) for record in records]
    return RecordListOut(items=items, count=len(items))


@router.get("/me/{kind}", response_model=RecordListOut)
async def my_records(
    kind: EntityKind,
    limit: int = Query(50, ge=1, le=500),
    queries: WorkflowQueries = Depends(get_queries_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> RecordListOut:
    records = await queries.find_by_owner(kind, user.id, limit=limit)
    items = [public_view(record) for record in records]
    return RecordListOut(items=items, count=len(items))
