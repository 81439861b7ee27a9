"""Creation, lookup and state changes for workflow records."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status

from umpsa.infra.auth import AuthenticatedUser, get_current_user, require_roles
from umpsa.workflow.api.schemas import (
    AcknowledgeIn,
    AnnouncementIn,
    ApprovalIn,
    AssignIn,
    EngagementOut,
    EvidenceIn,
    FindingsIn,
    FollowUpActionIn,
    FollowUpIn,
    HistoryEntryOut,
    LinkPostIn,
    NotesIn,
    PostRequestIn,
    ReportIn,
    TransitionIn,
    WitnessIn,
)
from umpsa.workflow.domain.container import get_service
from umpsa.workflow.domain.errors import NotFound
from umpsa.workflow.domain.models import EntityKind, WorkflowRecord, public_view, record_to_document
from umpsa.workflow.domain.service import WorkflowService

router = APIRouter(prefix="/api/workflow/v1", tags=["workflow"])

_staff = require_roles("admin", "moderator")
_admin = require_roles("admin")


def get_service_dep() -> WorkflowService:
    return get_service()


def render(record: WorkflowRecord, user: AuthenticatedUser) -> dict[str, Any]:
    """Full document for staff, redacted view for the owner."""
    if user.is_staff:
        return record_to_document(record)
    return public_view(record)


@router.post("/reports", status_code=status.HTTP_201_CREATED)
async def create_report(
    payload: ReportIn,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    record = await service.submit_report(
        reporter_id=user.id,
        target_type=payload.target_type,
        target_id=payload.target_id,
        reason=payload.reason,
        description=payload.description,
        category=payload.category,
        priority=payload.priority,
        tags=payload.tags,
        target_details=payload.target_details,
    )
    return render(record, user)


@router.post("/post-requests", status_code=status.HTTP_201_CREATED)
async def create_post_request(
    payload: PostRequestIn,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    record = await service.submit_post_request(
        requester_id=user.id,
        club_id=payload.club_id,
        content=payload.content,
        title=payload.title,
        category=payload.category,
        priority=payload.priority,
        tags=payload.tags,
    )
    return render(record, user)


@router.post("/announcements", status_code=status.HTTP_201_CREATED)
async def create_announcement(
    payload: AnnouncementIn,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(_admin),
) -> dict[str, Any]:
    record = await service.create_announcement(
        author_id=user.id,
        role=user.primary_role,
        title=payload.title,
        body=payload.body,
        summary=payload.summary,
        author_type=payload.author_type,
        club_id=payload.club_id,
        category=payload.category,
        priority=payload.priority,
        tags=payload.tags,
        target_audience=payload.target_audience,
        requires_approval=payload.requires_approval,
        expires_at=payload.expires_at,
    )
    return record_to_document(record)


@router.get("/records/{record_id}")
async def get_record(
    record_id: str,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    record = await service.get(record_id)
    if not user.is_staff and record.owner_id != user.id:
        raise NotFound("record_not_found")
    return render(record, user)


@router.get("/records/{record_id}/history", response_model=list[HistoryEntryOut])
async def get_history(
    record_id: str,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(_staff),
) -> list[HistoryEntryOut]:
    entries = await service.history(record_id)
    return [HistoryEntryOut.from_entry(entry) for entry in entries]


@router.post("/records/{record_id}/transition")
async def transition_record(
    record_id: str,
    payload: TransitionIn,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    record = await service.transition(
        record_id,
        payload.target_status,
        actor_id=user.id,
        role=user.primary_role,
        reason=payload.reason,
        notes=payload.notes,
        payload=payload.payload(),
    )
    return render(record, user)


@router.post("/records/{record_id}/assign")
async def assign_record(
    record_id: str,
    payload: AssignIn,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(_staff),
) -> dict[str, Any]:
    record = await service.assign(
        record_id,
        payload.assignee_id or user.id,
        actor_id=user.id,
        role=user.primary_role,
        notes=payload.notes,
    )
    return record_to_document(record)


@router.post("/records/{record_id}/follow-up")
async def schedule_follow_up(
    record_id: str,
    payload: FollowUpIn,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(_staff),
) -> dict[str, Any]:
    record = await service.schedule_follow_up(
        record_id,
        payload.follow_up_date,
        actor_id=user.id,
        role=user.primary_role,
        notes=payload.notes,
    )
    return record_to_document(record)


@router.post("/post-requests/{record_id}/link-post")
async def link_post(
    record_id: str,
    payload: LinkPostIn,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(_staff),
) -> dict[str, Any]:
    record = await service.link_approved_post(record_id, payload.post_id, actor_id=user.id)
    return record_to_document(record)


@router.post("/post-requests/{record_id}/review-notes")
async def add_review_notes(
    record_id: str,
    payload: NotesIn,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(_staff),
) -> dict[str, Any]:
    record = await service.add_review_notes(record_id, payload.notes, actor_id=user.id, role=user.primary_role)
    return record_to_document(record)


@router.post("/reports/{record_id}/findings")
async def record_findings(
    record_id: str,
    payload: FindingsIn,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(_staff),
) -> dict[str, Any]:
    record = await service.record_findings(record_id, payload.findings, actor_id=user.id, role=user.primary_role)
    return record_to_document(record)


@router.post("/reports/{record_id}/evidence")
async def add_evidence(
    record_id: str,
    payload: EvidenceIn,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(_staff),
) -> dict[str, Any]:
    record = await service.add_evidence(
        record_id,
        evidence_type=payload.type,
        description=payload.description,
        url=payload.url,
        actor_id=user.id,
        role=user.primary_role,
    )
    return record_to_document(record)


@router.post("/reports/{record_id}/witnesses")
async def add_witness_statement(
    record_id: str,
    payload: WitnessIn,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(_staff),
) -> dict[str, Any]:
    record = await service.add_witness_statement(
        record_id, payload.user_id, payload.statement, actor_id=user.id, role=user.primary_role
    )
    return record_to_document(record)


@router.post("/announcements/{record_id}/approve")
async def approve_announcement(
    record_id: str,
    payload: ApprovalIn,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(_admin),
) -> dict[str, Any]:
    record = await service.approve_announcement(
        record_id, actor_id=user.id, role=user.primary_role, notes=payload.notes
    )
    return record_to_document(record)


@router.post("/announcements/{record_id}/follow-up-actions")
async def add_follow_up_action(
    record_id: str,
    payload: FollowUpActionIn,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(_admin),
) -> dict[str, Any]:
    record = await service.add_follow_up_action(
        record_id, payload.action, actor_id=user.id, role=user.primary_role
    )
    return record_to_document(record)


@router.post("/announcements/{record_id}/follow-up-actions/{index}/complete")
async def complete_follow_up_action(
    record_id: str,
    index: int,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(_admin),
) -> dict[str, Any]:
    record = await service.complete_follow_up_action(
        record_id, index, actor_id=user.id, role=user.primary_role
    )
    return record_to_document(record)


@router.post("/announcements/{record_id}/views", response_model=EngagementOut)
async def record_view(
    record_id: str,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> EngagementOut:
    record = await service.record_view(record_id, user.id)
    return EngagementOut.from_record(record)


@router.post("/announcements/{record_id}/acknowledge", response_model=EngagementOut)
async def acknowledge_announcement(
    record_id: str,
    payload: AcknowledgeIn,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> EngagementOut:
    record = await service.acknowledge(record_id, user.id, method=payload.method)
    return EngagementOut.from_record(record)


@router.get("/announcements/{record_id}/engagement", response_model=EngagementOut)
async def announcement_engagement(
    record_id: str,
    service: WorkflowService = Depends(get_service_dep),
    user: AuthenticatedUser = Depends(_admin),
) -> EngagementOut:
    record = await service.get(record_id)
    if record.kind is not EntityKind.ANNOUNCEMENT:
        raise NotFound("record_not_found")
    return EngagementOut.from_record(record)
