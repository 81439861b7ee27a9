"""Explicit per-kind transition tables.

Each edge names the history action it records, the roles allowed to take it and
an optional guard/effect pair. Effects only touch the working copy handed in by
the service; the store write that follows commits status, terminal fields and
the history entry together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from umpsa.workflow.domain import history
from umpsa.workflow.domain.clock import ensure_utc
from umpsa.workflow.domain.errors import AlreadyTerminal, Forbidden, InvalidTransition, ValidationFailed
from umpsa.workflow.domain.models import (
    ESCALATION_TARGETS,
    REPORT_RESOLUTION_ACTIONS,
    ActorRole,
    AnnouncementStatus,
    EntityKind,
    Escalation,
    HistoryAction,
    HistoryEntry,
    PostRequestStatus,
    ReportStatus,
    Resolution,
    WorkflowRecord,
    WorkflowStatus,
)


@dataclass(frozen=True, slots=True)
class TransitionContext:
    actor_id: str
    role: ActorRole
    now: datetime
    reason: Optional[str] = None
    notes: Optional[str] = None
    payload: Mapping[str, Any] = field(default_factory=dict)


Guard = Callable[[WorkflowRecord, TransitionContext], None]
Effect = Callable[[WorkflowRecord, TransitionContext], Optional[HistoryAction]]


@dataclass(frozen=True, slots=True)
class TransitionRule:
    source: WorkflowStatus
    target: WorkflowStatus
    action: HistoryAction
    roles: frozenset[ActorRole] = frozenset()
    owner_only: bool = False
    via_assign: bool = False
    guard: Optional[Guard] = None
    effect: Optional[Effect] = None

    def permits(self, record: WorkflowRecord, role: ActorRole, actor_id: str) -> bool:
        if self.owner_only:
            return bool(actor_id) and actor_id == record.owner_id
        return role in self.roles


@dataclass(frozen=True, slots=True)
class LifecycleTable:
    kind: EntityKind
    initial: WorkflowStatus
    terminal: frozenset[WorkflowStatus]
    rules: tuple[TransitionRule, ...]

    def edge(self, source: WorkflowStatus, target: WorkflowStatus) -> Optional[TransitionRule]:
        for rule in self.rules:
            if rule.source == source and rule.target == target:
                return rule
        return None

    def edges_from(self, source: WorkflowStatus) -> tuple[TransitionRule, ...]:
        return tuple(rule for rule in self.rules if rule.source == source)

    def is_terminal(self, status: WorkflowStatus) -> bool:
        return status in self.terminal

    @property
    def assign_rule(self) -> Optional[TransitionRule]:
        for rule in self.rules:
            if rule.via_assign:
                return rule
        return None

    @property
    def statuses(self) -> frozenset[WorkflowStatus]:
        seen = {self.initial}
        for rule in self.rules:
            seen.update((rule.source, rule.target))
        return frozenset(seen)


STAFF = frozenset({ActorRole.MODERATOR, ActorRole.ADMIN})
ADMIN_ONLY = frozenset({ActorRole.ADMIN})
SYSTEM_ONLY = frozenset({ActorRole.SYSTEM})


# --- effects ------------------------------------------------------------------


def _milestone(name: str) -> Effect:
    def _effect(record: WorkflowRecord, ctx: TransitionContext) -> None:
        record.mark(name, ctx.now)

    return _effect


def _first_response(record: WorkflowRecord, ctx: TransitionContext) -> None:
    record.mark("first_response_at", ctx.now, overwrite=False)


def _assigned(record: WorkflowRecord, ctx: TransitionContext) -> None:
    assignee = str(ctx.payload.get("assignee") or "").strip()
    if not assignee:
        raise ValidationFailed("assignee_required")
    record.assignee = assignee
    record.mark("assigned_at", ctx.now)


def _report_assigned(record: WorkflowRecord, ctx: TransitionContext) -> None:
    _assigned(record, ctx)
    record.mark("investigation_started_at", ctx.now, overwrite=False)
    _first_response(record, ctx)


def _report_escalated(record: WorkflowRecord, ctx: TransitionContext) -> None:
    escalated_to = str(ctx.payload.get("escalated_to") or "supervisor")
    if escalated_to not in ESCALATION_TARGETS:
        raise ValidationFailed("invalid_escalation_target")
    record.escalation = Escalation(escalated_to=escalated_to, escalated_at=ctx.now, reason=ctx.reason)
    _first_response(record, ctx)


def _duration_days(payload: Mapping[str, Any]) -> Optional[int]:
    raw = payload.get("duration_days")
    if raw is None:
        return None
    try:
        days = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed("invalid_duration") from exc
    if days <= 0:
        raise ValidationFailed("invalid_duration")
    return days


def _report_resolved(record: WorkflowRecord, ctx: TransitionContext) -> None:
    action = str(ctx.payload.get("action") or "no_action")
    if action not in REPORT_RESOLUTION_ACTIONS:
        raise ValidationFailed("invalid_resolution_action")
    record.resolution = Resolution(
        action=action,
        decided_by=ctx.actor_id,
        decided_at=ctx.now,
        reason=ctx.reason,
        notes=ctx.notes,
        duration_days=_duration_days(ctx.payload),
    )
    record.mark("resolved_at", ctx.now)
    _first_response(record, ctx)


def _report_dismissed(record: WorkflowRecord, ctx: TransitionContext) -> None:
    record.resolution = Resolution(
        action="no_action",
        decided_by=ctx.actor_id,
        decided_at=ctx.now,
        reason=ctx.reason or "Report dismissed",
        notes=ctx.notes,
    )
    record.mark("resolved_at", ctx.now)
    _first_response(record, ctx)


def _reviewed(record: WorkflowRecord, ctx: TransitionContext) -> None:
    record.reviewed_by = ctx.actor_id
    record.mark("reviewed_at", ctx.now)
    if ctx.notes:
        record.review_notes = ctx.notes


def _request_approved(record: WorkflowRecord, ctx: TransitionContext) -> Optional[HistoryAction]:
    _reviewed(record, ctx)
    record.mark("approved_at", ctx.now)
    record.resolution = Resolution(
        action="approved", decided_by=ctx.actor_id, decided_at=ctx.now, reason=ctx.reason, notes=ctx.notes
    )
    scheduled_for = ctx.payload.get("scheduled_for")
    if scheduled_for is None:
        return None
    if not isinstance(scheduled_for, datetime):
        raise ValidationFailed("invalid_scheduled_for")
    record.scheduled_for = ensure_utc(scheduled_for)
    return HistoryAction.SCHEDULED


def _request_rejected(record: WorkflowRecord, ctx: TransitionContext) -> None:
    if not (ctx.reason or "").strip():
        raise ValidationFailed("reason_required")
    _reviewed(record, ctx)
    record.mark("rejected_at", ctx.now)
    record.resolution = Resolution(
        action="rejected", decided_by=ctx.actor_id, decided_at=ctx.now, reason=ctx.reason, notes=ctx.notes
    )


def _request_not_expired(record: WorkflowRecord, ctx: TransitionContext) -> None:
    if record.expires_at is not None and ctx.now > record.expires_at:
        raise InvalidTransition("request_expired")


def _approval_recorded(record: WorkflowRecord, ctx: TransitionContext) -> None:
    if record.requires_approval:
        raise InvalidTransition("approval_required")


def _announcement_published(record: WorkflowRecord, ctx: TransitionContext) -> None:
    if record.published_at is None:
        record.published_at = ctx.now
    record.mark("published_at", record.published_at, overwrite=False)


def _announcement_schedule_guard(record: WorkflowRecord, ctx: TransitionContext) -> None:
    _approval_recorded(record, ctx)
    scheduled_for = ctx.payload.get("scheduled_for")
    if not isinstance(scheduled_for, datetime):
        raise ValidationFailed("scheduled_for_required")
    if ensure_utc(scheduled_for) <= ctx.now:
        raise ValidationFailed("scheduled_for_in_past")


def _announcement_scheduled(record: WorkflowRecord, ctx: TransitionContext) -> None:
    record.scheduled_for = ensure_utc(ctx.payload["scheduled_for"])


# --- tables -------------------------------------------------------------------


def _rule(source, target, action, roles=frozenset(), **kwargs) -> TransitionRule:
    return TransitionRule(source=source, target=target, action=action, roles=roles, **kwargs)


_R = ReportStatus
_P = PostRequestStatus
_A = AnnouncementStatus

REPORT_TABLE = LifecycleTable(
    kind=EntityKind.REPORT,
    initial=_R.PENDING,
    terminal=frozenset({_R.RESOLVED, _R.DISMISSED}),
    rules=(
        _rule(_R.PENDING, _R.INVESTIGATING, HistoryAction.ASSIGNED, STAFF, via_assign=True, effect=_report_assigned),
        _rule(_R.PENDING, _R.DISMISSED, HistoryAction.DISMISSED, STAFF, effect=_report_dismissed),
        _rule(_R.INVESTIGATING, _R.RESOLVED, HistoryAction.RESOLVED, STAFF, effect=_report_resolved),
        _rule(_R.INVESTIGATING, _R.DISMISSED, HistoryAction.DISMISSED, STAFF, effect=_report_dismissed),
        _rule(_R.INVESTIGATING, _R.ESCALATED, HistoryAction.ESCALATED, STAFF, effect=_report_escalated),
        _rule(_R.ESCALATED, _R.RESOLVED, HistoryAction.RESOLVED, STAFF, effect=_report_resolved),
        _rule(_R.ESCALATED, _R.DISMISSED, HistoryAction.DISMISSED, STAFF, effect=_report_dismissed),
    ),
)

POST_REQUEST_TABLE = LifecycleTable(
    kind=EntityKind.PUBLIC_POST_REQUEST,
    initial=_P.PENDING,
    terminal=frozenset({_P.APPROVED, _P.REJECTED, _P.CANCELLED, _P.EXPIRED}),
    rules=(
        _rule(_P.PENDING, _P.UNDER_REVIEW, HistoryAction.ASSIGNED, STAFF, via_assign=True, effect=_assigned),
        _rule(_P.PENDING, _P.REJECTED, HistoryAction.REJECTED, STAFF, effect=_request_rejected),
        _rule(
            _P.PENDING,
            _P.CANCELLED,
            HistoryAction.CANCELLED,
            owner_only=True,
            guard=_request_not_expired,
            effect=_milestone("cancelled_at"),
        ),
        _rule(_P.PENDING, _P.EXPIRED, HistoryAction.EXPIRED, SYSTEM_ONLY, effect=_milestone("expired_at")),
        _rule(_P.UNDER_REVIEW, _P.APPROVED, HistoryAction.APPROVED, STAFF, effect=_request_approved),
        _rule(_P.UNDER_REVIEW, _P.REJECTED, HistoryAction.REJECTED, STAFF, effect=_request_rejected),
    ),
)

ANNOUNCEMENT_TABLE = LifecycleTable(
    kind=EntityKind.ANNOUNCEMENT,
    initial=_A.DRAFT,
    terminal=frozenset({_A.ARCHIVED, _A.EXPIRED}),
    rules=(
        _rule(
            _A.DRAFT,
            _A.PUBLISHED,
            HistoryAction.PUBLISHED,
            ADMIN_ONLY,
            guard=_approval_recorded,
            effect=_announcement_published,
        ),
        _rule(
            _A.DRAFT,
            _A.SCHEDULED,
            HistoryAction.SCHEDULED,
            ADMIN_ONLY,
            guard=_announcement_schedule_guard,
            effect=_announcement_scheduled,
        ),
        _rule(_A.DRAFT, _A.ARCHIVED, HistoryAction.ARCHIVED, ADMIN_ONLY, effect=_milestone("archived_at")),
        _rule(
            _A.SCHEDULED,
            _A.PUBLISHED,
            HistoryAction.PUBLISHED,
            ADMIN_ONLY | SYSTEM_ONLY,
            effect=_announcement_published,
        ),
        _rule(_A.SCHEDULED, _A.ARCHIVED, HistoryAction.ARCHIVED, ADMIN_ONLY, effect=_milestone("archived_at")),
        _rule(_A.PUBLISHED, _A.ARCHIVED, HistoryAction.ARCHIVED, ADMIN_ONLY, effect=_milestone("archived_at")),
        _rule(_A.PUBLISHED, _A.EXPIRED, HistoryAction.EXPIRED, SYSTEM_ONLY, effect=_milestone("expired_at")),
    ),
)

TABLES: Mapping[EntityKind, LifecycleTable] = MappingProxyType(
    {
        EntityKind.REPORT: REPORT_TABLE,
        EntityKind.PUBLIC_POST_REQUEST: POST_REQUEST_TABLE,
        EntityKind.ANNOUNCEMENT: ANNOUNCEMENT_TABLE,
    }
)


def table_for(kind: EntityKind) -> LifecycleTable:
    return TABLES[kind]


def is_terminal(record: WorkflowRecord) -> bool:
    return TABLES[record.kind].is_terminal(record.status)


def non_terminal_statuses(kind: EntityKind) -> frozenset[WorkflowStatus]:
    table = TABLES[kind]
    return table.statuses - table.terminal


def resolve_transition(
    record: WorkflowRecord,
    target: WorkflowStatus,
    *,
    role: ActorRole,
    actor_id: str,
    through_assign: bool = False,
) -> TransitionRule:
    """Validate ``record.status -> target`` for the actor; returns the matching edge.

    Checks run in a fixed order: terminal source, reachability, then permission.
    """
    table = TABLES[record.kind]
    if table.is_terminal(record.status):
        raise AlreadyTerminal()
    rule = table.edge(record.status, target)
    if rule is None:
        raise InvalidTransition()
    if rule.via_assign and not through_assign:
        raise InvalidTransition("assignment_required")
    if not rule.permits(record, role, actor_id):
        raise Forbidden("transition_not_permitted")
    return rule


def apply_rule(record: WorkflowRecord, rule: TransitionRule, ctx: TransitionContext) -> HistoryEntry:
    """Run guard and effect, move the status and append the history entry in place."""
    if rule.guard is not None:
        rule.guard(record, ctx)
    action = rule.action
    if rule.effect is not None:
        action = rule.effect(record, ctx) or action
    source = record.status
    record.status = rule.target
    if TABLES[record.kind].is_terminal(rule.target) and record.resolution is None:
        record.resolution = Resolution(
            action=action.value,
            decided_by=ctx.actor_id,
            decided_at=ctx.now,
            reason=ctx.reason,
            notes=ctx.notes,
        )
    entry = history.make_entry(
        record,
        action,
        ctx.actor_id,
        ctx.now,
        notes=ctx.notes,
        reason=ctx.reason,
        from_status=source.value,
        to_status=rule.target.value,
    )
    return history.append_entry(record, entry)
