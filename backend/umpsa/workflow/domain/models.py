"""Entity records and history entries for the moderation & publishing workflow."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Union


class EntityKind(str, Enum):
    REPORT = "report"
    PUBLIC_POST_REQUEST = "public_post_request"
    ANNOUNCEMENT = "announcement"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def parse(cls, value: Union["Priority", str]) -> "Priority":
        if isinstance(value, Priority):
            return value
        text = str(value or "").strip().lower()
        if text == "medium":
            return cls.NORMAL
        return cls(text)

    def label_for(self, kind: EntityKind) -> str:
        """Reports call the middle priority ``medium``; everything else ``normal``."""
        if self is Priority.NORMAL and kind is EntityKind.REPORT:
            return "medium"
        return self.value


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


class ActorRole(str, Enum):
    MEMBER = "member"
    MODERATOR = "moderator"
    ADMIN = "admin"
    SYSTEM = "system"

    @property
    def is_staff(self) -> bool:
        return self in (ActorRole.MODERATOR, ActorRole.ADMIN)


class ReportStatus(str, Enum):
    PENDING = "pending"
    INVESTIGATING = "investigating"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class PostRequestStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class AnnouncementStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"
    ARCHIVED = "archived"
    EXPIRED = "expired"


WorkflowStatus = Union[ReportStatus, PostRequestStatus, AnnouncementStatus]

STATUS_ENUMS: Mapping[EntityKind, type[Enum]] = {
    EntityKind.REPORT: ReportStatus,
    EntityKind.PUBLIC_POST_REQUEST: PostRequestStatus,
    EntityKind.ANNOUNCEMENT: AnnouncementStatus,
}


def parse_status(kind: EntityKind, value: Union[str, Enum]) -> WorkflowStatus:
    """Return the status enum member of ``kind`` for ``value``; ValueError when unknown."""
    enum_cls = STATUS_ENUMS[kind]
    if isinstance(value, enum_cls):
        return value  # type: ignore[return-value]
    raw = value.value if isinstance(value, Enum) else value
    return enum_cls(str(raw).strip().lower())  # type: ignore[return-value]


class HistoryAction(str, Enum):
    SUBMITTED = "submitted"
    CREATED = "created"
    ASSIGNED = "assigned"
    REVIEWED = "reviewed"
    APPROVED = "approved"
    REJECTED = "rejected"
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"
    PUBLISHED = "published"
    ARCHIVED = "archived"


REPORT_CATEGORIES = frozenset(
    {"inappropriate_content", "harassment", "spam", "fake_news", "copyright", "other"}
)
REPORT_TARGET_TYPES = frozenset({"user", "post", "club", "comment", "event"})
REPORT_RESOLUTION_ACTIONS = frozenset({"no_action", "warn", "suspend", "ban", "remove_content", "escalate"})
ESCALATION_TARGETS = frozenset({"supervisor", "legal", "external_authority"})
EVIDENCE_TYPES = frozenset({"screenshot", "link", "document", "text", "other"})
ACKNOWLEDGMENT_METHODS = frozenset({"read", "clicked", "dismissed"})
POST_REQUEST_CATEGORIES = frozenset({"announcement", "event", "news", "achievement", "general"})
ANNOUNCEMENT_CATEGORIES = frozenset(
    {"general", "academic", "events", "safety", "maintenance", "achievements", "reminders"}
)
ANNOUNCEMENT_AUTHOR_TYPES = frozenset({"admin", "system", "club"})
ANNOUNCEMENT_AUDIENCES = frozenset(
    {"all", "students", "club_members", "admins", "specific_clubs", "specific_faculties"}
)


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """One append-only line of a record's action log."""

    action: HistoryAction
    actor_id: str
    timestamp: datetime
    notes: Optional[str] = None
    reason: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Resolution:
    action: str
    decided_by: str
    decided_at: datetime
    reason: Optional[str] = None
    notes: Optional[str] = None
    duration_days: Optional[int] = None


@dataclass(frozen=True, slots=True)
class Escalation:
    escalated_to: str
    escalated_at: datetime
    reason: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Evidence:
    evidence_type: str
    description: Optional[str] = None
    url: Optional[str] = None


@dataclass(frozen=True, slots=True)
class WitnessStatement:
    user_id: str
    statement: str
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class AnnouncementView:
    user_id: str
    viewed_at: datetime


@dataclass(frozen=True, slots=True)
class Acknowledgment:
    user_id: str
    acknowledged_at: datetime
    method: str = "read"


@dataclass(frozen=True, slots=True)
class FollowUpAction:
    action: str
    completed: bool = False
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None


@dataclass(slots=True)
class WorkflowRecord:
    """Identity plus lifecycle state of a Report, PublicPostRequest or Announcement.

    ``owner_id`` is the reporter, requester or author. ``body`` holds the report
    description, the requested post content or the announcement body. Terminal
    and intermediate timestamps (``approved_at``, ``resolved_at`` ...) live in
    ``milestones`` keyed by name.
    """

    id: str
    kind: EntityKind
    status: WorkflowStatus
    priority: Priority
    owner_id: str
    created_at: datetime
    updated_at: datetime
    version: int = 0
    body: str = ""
    title: Optional[str] = None
    reason: Optional[str] = None
    summary: Optional[str] = None
    category: Optional[str] = None
    tags: tuple[str, ...] = ()
    club_id: Optional[str] = None
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    target_details: Mapping[str, str] = field(default_factory=dict)
    author_type: Optional[str] = None
    target_audience: tuple[str, ...] = ()
    assignee: Optional[str] = None
    expires_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    published_at: Optional[datetime] = None
    requires_follow_up: bool = False
    follow_up_date: Optional[datetime] = None
    follow_up_notes: Optional[str] = None
    follow_up_actions: tuple[FollowUpAction, ...] = ()
    requires_approval: bool = False
    approved_by: Optional[str] = None
    approval_notes: Optional[str] = None
    review_notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    findings: Optional[str] = None
    evidence: tuple[Evidence, ...] = ()
    witnesses: tuple[WitnessStatement, ...] = ()
    escalation: Optional[Escalation] = None
    resolution: Optional[Resolution] = None
    approved_post_id: Optional[str] = None
    views: tuple[AnnouncementView, ...] = ()
    acknowledgments: tuple[Acknowledgment, ...] = ()
    milestones: dict[str, datetime] = field(default_factory=dict)
    history: tuple[HistoryEntry, ...] = ()

    def copy(self) -> "WorkflowRecord":
        return copy.deepcopy(self)

    def milestone(self, name: str) -> Optional[datetime]:
        return self.milestones.get(name)

    def mark(self, name: str, at: datetime, *, overwrite: bool = True) -> None:
        if overwrite or name not in self.milestones:
            self.milestones[name] = at

    @property
    def last_entry(self) -> Optional[HistoryEntry]:
        return self.history[-1] if self.history else None


# --- Document mapping ---------------------------------------------------------


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def entry_to_document(entry: HistoryEntry) -> dict[str, Any]:
    return {
        "action": entry.action.value,
        "actor_id": entry.actor_id,
        "timestamp": _iso(entry.timestamp),
        "notes": entry.notes,
        "reason": entry.reason,
        "from_status": entry.from_status,
        "to_status": entry.to_status,
    }


def entry_from_document(doc: Mapping[str, Any]) -> HistoryEntry:
    timestamp = _dt(doc.get("timestamp"))
    assert timestamp is not None
    return HistoryEntry(
        action=HistoryAction(doc["action"]),
        actor_id=str(doc.get("actor_id") or ""),
        timestamp=timestamp,
        notes=doc.get("notes"),
        reason=doc.get("reason"),
        from_status=doc.get("from_status"),
        to_status=doc.get("to_status"),
    )


def record_to_document(record: WorkflowRecord) -> dict[str, Any]:
    """Serialise a record (history included) into a JSON-compatible document."""
    resolution = record.resolution
    escalation = record.escalation
    return {
        "id": record.id,
        "kind": record.kind.value,
        "status": record.status.value,
        "priority": record.priority.value,
        "owner_id": record.owner_id,
        "created_at": _iso(record.created_at),
        "updated_at": _iso(record.updated_at),
        "version": record.version,
        "body": record.body,
        "title": record.title,
        "reason": record.reason,
        "summary": record.summary,
        "category": record.category,
        "tags": list(record.tags),
        "club_id": record.club_id,
        "target_type": record.target_type,
        "target_id": record.target_id,
        "target_details": dict(record.target_details),
        "author_type": record.author_type,
        "target_audience": list(record.target_audience),
        "assignee": record.assignee,
        "expires_at": _iso(record.expires_at),
        "scheduled_for": _iso(record.scheduled_for),
        "published_at": _iso(record.published_at),
        "requires_follow_up": record.requires_follow_up,
        "follow_up_date": _iso(record.follow_up_date),
        "follow_up_notes": record.follow_up_notes,
        "follow_up_actions": [
            {
                "action": item.action,
                "completed": item.completed,
                "completed_at": _iso(item.completed_at),
                "completed_by": item.completed_by,
            }
            for item in record.follow_up_actions
        ],
        "requires_approval": record.requires_approval,
        "approved_by": record.approved_by,
        "approval_notes": record.approval_notes,
        "review_notes": record.review_notes,
        "reviewed_by": record.reviewed_by,
        "findings": record.findings,
        "evidence": [
            {"type": item.evidence_type, "description": item.description, "url": item.url}
            for item in record.evidence
        ],
        "witnesses": [
            {"user_id": item.user_id, "statement": item.statement, "timestamp": _iso(item.timestamp)}
            for item in record.witnesses
        ],
        "escalation": (
            {
                "escalated_to": escalation.escalated_to,
                "escalated_at": _iso(escalation.escalated_at),
                "reason": escalation.reason,
            }
            if escalation
            else None
        ),
        "resolution": (
            {
                "action": resolution.action,
                "decided_by": resolution.decided_by,
                "decided_at": _iso(resolution.decided_at),
                "reason": resolution.reason,
                "notes": resolution.notes,
                "duration_days": resolution.duration_days,
            }
            if resolution
            else None
        ),
        "approved_post_id": record.approved_post_id,
        "views": [{"user_id": item.user_id, "viewed_at": _iso(item.viewed_at)} for item in record.views],
        "acknowledgments": [
            {"user_id": item.user_id, "acknowledged_at": _iso(item.acknowledged_at), "method": item.method}
            for item in record.acknowledgments
        ],
        "milestones": {name: _iso(value) for name, value in record.milestones.items()},
        "history": [entry_to_document(entry) for entry in record.history],
    }


def record_from_document(doc: Mapping[str, Any]) -> WorkflowRecord:
    kind = EntityKind(doc["kind"])
    escalation_doc = doc.get("escalation")
    resolution_doc = doc.get("resolution")
    created_at = _dt(doc.get("created_at"))
    updated_at = _dt(doc.get("updated_at"))
    assert created_at is not None and updated_at is not None
    return WorkflowRecord(
        id=str(doc["id"]),
        kind=kind,
        status=parse_status(kind, doc["status"]),
        priority=Priority.parse(doc.get("priority") or Priority.NORMAL),
        owner_id=str(doc["owner_id"]),
        created_at=created_at,
        updated_at=updated_at,
        version=int(doc.get("version") or 0),
        body=doc.get("body") or "",
        title=doc.get("title"),
        reason=doc.get("reason"),
        summary=doc.get("summary"),
        category=doc.get("category"),
        tags=tuple(doc.get("tags") or ()),
        club_id=doc.get("club_id"),
        target_type=doc.get("target_type"),
        target_id=doc.get("target_id"),
        target_details=dict(doc.get("target_details") or {}),
        author_type=doc.get("author_type"),
        target_audience=tuple(doc.get("target_audience") or ()),
        assignee=doc.get("assignee"),
        expires_at=_dt(doc.get("expires_at")),
        scheduled_for=_dt(doc.get("scheduled_for")),
        published_at=_dt(doc.get("published_at")),
        requires_follow_up=bool(doc.get("requires_follow_up")),
        follow_up_date=_dt(doc.get("follow_up_date")),
        follow_up_notes=doc.get("follow_up_notes"),
        follow_up_actions=tuple(
            FollowUpAction(
                action=item["action"],
                completed=bool(item.get("completed")),
                completed_at=_dt(item.get("completed_at")),
                completed_by=item.get("completed_by"),
            )
            for item in doc.get("follow_up_actions") or ()
        ),
        requires_approval=bool(doc.get("requires_approval")),
        approved_by=doc.get("approved_by"),
        approval_notes=doc.get("approval_notes"),
        review_notes=doc.get("review_notes"),
        reviewed_by=doc.get("reviewed_by"),
        findings=doc.get("findings"),
        evidence=tuple(
            Evidence(evidence_type=item["type"], description=item.get("description"), url=item.get("url"))
            for item in doc.get("evidence") or ()
        ),
        witnesses=tuple(
            WitnessStatement(
                user_id=str(item["user_id"]),
                statement=item.get("statement") or "",
                timestamp=_dt(item["timestamp"]),  # type: ignore[arg-type]
            )
            for item in doc.get("witnesses") or ()
        ),
        escalation=(
            Escalation(
                escalated_to=escalation_doc["escalated_to"],
                escalated_at=_dt(escalation_doc["escalated_at"]),  # type: ignore[arg-type]
                reason=escalation_doc.get("reason"),
            )
            if escalation_doc
            else None
        ),
        resolution=(
            Resolution(
                action=resolution_doc["action"],
                decided_by=resolution_doc["decided_by"],
                decided_at=_dt(resolution_doc["decided_at"]),  # type: ignore[arg-type]
                reason=resolution_doc.get("reason"),
                notes=resolution_doc.get("notes"),
                duration_days=resolution_doc.get("duration_days"),
            )
            if resolution_doc
            else None
        ),
        approved_post_id=doc.get("approved_post_id"),
        views=tuple(
            AnnouncementView(user_id=str(item["user_id"]), viewed_at=_dt(item["viewed_at"]))  # type: ignore[arg-type]
            for item in doc.get("views") or ()
        ),
        acknowledgments=tuple(
            Acknowledgment(
                user_id=str(item["user_id"]),
                acknowledged_at=_dt(item["acknowledged_at"]),  # type: ignore[arg-type]
                method=item.get("method") or "read",
            )
            for item in doc.get("acknowledgments") or ()
        ),
        milestones={name: _dt(value) for name, value in (doc.get("milestones") or {}).items() if value},  # type: ignore[misc]
        history=tuple(entry_from_document(item) for item in doc.get("history") or ()),
    )


_PRIVATE_FIELDS = (
    "history",
    "review_notes",
    "follow_up_notes",
    "follow_up_actions",
    "findings",
    "evidence",
    "witnesses",
    "escalation",
    "approval_notes",
    "views",
    "acknowledgments",
)


def public_view(record: WorkflowRecord) -> dict[str, Any]:
    """Document for the owning member: moderation internals removed."""
    doc = record_to_document(record)
    for key in _PRIVATE_FIELDS:
        doc.pop(key, None)
    doc["priority"] = record.priority.label_for(record.kind)
    return doc
