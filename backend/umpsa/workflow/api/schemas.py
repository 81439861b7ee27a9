"""Request/response bodies for the workflow API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from umpsa.workflow.domain import sla
from umpsa.workflow.domain.models import HistoryEntry, WorkflowRecord


class ReportIn(BaseModel):
    target_type: str
    target_id: str
    reason: str
    description: str
    category: Optional[str] = None
    priority: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    target_details: dict[str, str] = Field(default_factory=dict)


class PostRequestIn(BaseModel):
    club_id: str
    content: str
    title: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


class AnnouncementIn(BaseModel):
    title: str
    body: str
    summary: Optional[str] = None
    author_type: Optional[str] = None
    club_id: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    target_audience: list[str] = Field(default_factory=lambda: ["all"])
    requires_approval: bool = False
    expires_at: Optional[datetime] = None


class TransitionIn(BaseModel):
    target_status: str = Field(..., min_length=1)
    reason: Optional[str] = None
    notes: Optional[str] = None
    # resolution details for reports
    action: Optional[str] = None
    duration_days: Optional[int] = None
    escalated_to: Optional[str] = None
    # publish time for approved requests / scheduled announcements
    scheduled_for: Optional[datetime] = None

    def payload(self) -> dict[str, Any]:
        values = {
            "action": self.action,
            "duration_days": self.duration_days,
            "escalated_to": self.escalated_to,
            "scheduled_for": self.scheduled_for,
        }
        return {key: value for key, value in values.items() if value is not None}


class AssignIn(BaseModel):
    assignee_id: Optional[str] = None
    notes: Optional[str] = None


class LinkPostIn(BaseModel):
    post_id: str = Field(..., min_length=1)


class FollowUpIn(BaseModel):
    follow_up_date: datetime
    notes: Optional[str] = None


class NotesIn(BaseModel):
    notes: str


class FindingsIn(BaseModel):
    findings: str


class EvidenceIn(BaseModel):
    type: str
    description: Optional[str] = None
    url: Optional[str] = None


class WitnessIn(BaseModel):
    user_id: str = Field(..., min_length=1)
    statement: str


class AcknowledgeIn(BaseModel):
    method: Optional[str] = None


class ApprovalIn(BaseModel):
    notes: Optional[str] = None


class FollowUpActionIn(BaseModel):
    action: str


class HistoryEntryOut(BaseModel):
    action: str
    actor_id: str
    timestamp: datetime
    notes: Optional[str] = None
    reason: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: HistoryEntry) -> "HistoryEntryOut":
        return cls(
            action=entry.action.value,
            actor_id=entry.actor_id,
            timestamp=entry.timestamp,
            notes=entry.notes,
            reason=entry.reason,
            from_status=entry.from_status,
            to_status=entry.to_status,
        )


class RecordListOut(BaseModel):
    items: list[dict[str, Any]]
    count: int


class EngagementOut(BaseModel):
    id: str
    view_count: int
    acknowledgment_count: int
    engagement_rate: int

    @classmethod
    def from_record(cls, record: WorkflowRecord) -> "EngagementOut":
        return cls(
            id=record.id,
            view_count=sla.view_count(record),
            acknowledgment_count=sla.acknowledgment_count(record),
            engagement_rate=sla.engagement_rate(record),
        )
