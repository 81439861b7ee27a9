"""State-changing operations for reports, public post requests and announcements."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional, Union
from uuid import uuid4

from umpsa.obs import metrics as obs_metrics
from umpsa.workflow.domain import events as workflow_events
from umpsa.workflow.domain import history, sla, transitions
from umpsa.workflow.domain.clock import Clock, SystemClock, ensure_utc
from umpsa.workflow.domain.errors import (
    AlreadyTerminal,
    BusinessRuleError,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from umpsa.workflow.domain.models import (
    ACKNOWLEDGMENT_METHODS,
    ANNOUNCEMENT_AUDIENCES,
    ANNOUNCEMENT_AUTHOR_TYPES,
    ANNOUNCEMENT_CATEGORIES,
    EVIDENCE_TYPES,
    POST_REQUEST_CATEGORIES,
    REPORT_CATEGORIES,
    REPORT_TARGET_TYPES,
    Acknowledgment,
    ActorRole,
    AnnouncementStatus,
    AnnouncementView,
    EntityKind,
    Evidence,
    FollowUpAction,
    HistoryAction,
    HistoryEntry,
    PostRequestStatus,
    Priority,
    ReportStatus,
    WitnessStatement,
    WorkflowRecord,
    parse_status,
)
from umpsa.workflow.domain.store import WorkflowStore, apply_update

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
MAX_REPORT_REASON_LENGTH = 200
MAX_REPORT_DESCRIPTION_LENGTH = 1000
MAX_REQUEST_CONTENT_LENGTH = 2000
MAX_ANNOUNCEMENT_BODY_LENGTH = 5000
MAX_ANNOUNCEMENT_SUMMARY_LENGTH = 300
MAX_TAG_LENGTH = 30
MAX_NOTES_LENGTH = 2000

RoleLike = Union[ActorRole, str]
Mutation = Callable[[WorkflowRecord, datetime], None]


def _new_id() -> str:
    return str(uuid4())


def as_role(role: RoleLike) -> ActorRole:
    if isinstance(role, ActorRole):
        return role
    try:
        return ActorRole(str(role or "").strip().lower())
    except ValueError as exc:
        raise Forbidden("unknown_role") from exc


def _required_text(value: Optional[str], *, field_name: str, max_length: int) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationFailed(f"{field_name}_required")
    if len(text) > max_length:
        raise ValidationFailed(f"{field_name}_too_long")
    return text


def _optional_text(value: Optional[str], *, field_name: str, max_length: int) -> Optional[str]:
    text = (value or "").strip()
    if not text:
        return None
    if len(text) > max_length:
        raise ValidationFailed(f"{field_name}_too_long")
    return text


def _clean_tags(tags: Iterable[str]) -> tuple[str, ...]:
    cleaned: list[str] = []
    for tag in tags or ():
        text = str(tag).strip().lower()
        if not text:
            continue
        if len(text) > MAX_TAG_LENGTH:
            raise ValidationFailed("tag_too_long")
        if text not in cleaned:
            cleaned.append(text)
    return tuple(cleaned)


def _choice(value: Optional[str], allowed: frozenset[str], *, field_name: str, default: str) -> str:
    text = (value or default).strip().lower()
    if text not in allowed:
        raise ValidationFailed(f"invalid_{field_name}")
    return text


def _priority(value: Union[Priority, str, None]) -> Priority:
    try:
        return Priority.parse(value or Priority.NORMAL)
    except ValueError as exc:
        raise ValidationFailed("invalid_priority") from exc


def _require_staff(record: WorkflowRecord, role: ActorRole) -> None:
    if record.kind is EntityKind.ANNOUNCEMENT:
        if role is not ActorRole.ADMIN:
            raise Forbidden("admin_required")
    elif not role.is_staff:
        raise Forbidden("staff_required")


def _require_kind(record: WorkflowRecord, kind: EntityKind) -> None:
    if record.kind is not kind:
        raise InvalidTransition(f"not_a_{kind.value}")


def _require_open(record: WorkflowRecord) -> None:
    if transitions.is_terminal(record):
        raise AlreadyTerminal()


def _require_published(record: WorkflowRecord) -> None:
    _require_kind(record, EntityKind.ANNOUNCEMENT)
    _require_open(record)
    if record.status != AnnouncementStatus.PUBLISHED:
        raise InvalidTransition("not_published")


@dataclass
class WorkflowService:
    store: WorkflowStore
    clock: Clock = field(default_factory=SystemClock)
    events: Optional[workflow_events.EventPublisher] = None
    max_conflict_retries: int = 2
    id_factory: Callable[[], str] = _new_id

    def __post_init__(self) -> None:
        self.log = history.HistoryLog(self.store, max_conflict_retries=self.max_conflict_retries)

    # --- reads -----------------------------------------------------------------

    async def get(self, record_id: str) -> WorkflowRecord:
        record = await self.store.get(record_id)
        if record is None:
            raise NotFound("record_not_found")
        return record

    async def history(self, record_id: str) -> tuple[HistoryEntry, ...]:
        return await self.log.list_for(record_id)

    # --- creation --------------------------------------------------------------

    async def submit_report(
        self,
        *,
        reporter_id: str,
        target_type: str,
        target_id: str,
        reason: str,
        description: str,
        category: Optional[str] = None,
        priority: Union[Priority, str, None] = None,
        tags: Iterable[str] = (),
        target_details: Optional[Mapping[str, str]] = None,
    ) -> WorkflowRecord:
        if not (reporter_id or "").strip():
            raise ValidationFailed("reporter_required")
        now = self.clock.now()
        record = WorkflowRecord(
            id=self.id_factory(),
            kind=EntityKind.REPORT,
            status=ReportStatus.PENDING,
            priority=_priority(priority),
            owner_id=reporter_id,
            created_at=now,
            updated_at=now,
            reason=_required_text(reason, field_name="reason", max_length=MAX_REPORT_REASON_LENGTH),
            body=_required_text(description, field_name="description", max_length=MAX_REPORT_DESCRIPTION_LENGTH),
            category=_choice(category, REPORT_CATEGORIES, field_name="category", default="other"),
            target_type=_choice(target_type, REPORT_TARGET_TYPES, field_name="target_type", default=""),
            target_id=_required_text(target_id, field_name="target_id", max_length=MAX_TITLE_LENGTH),
            target_details={str(k): str(v) for k, v in (target_details or {}).items()},
            tags=_clean_tags(tags),
        )
        return await self._create(record, HistoryAction.SUBMITTED, notes="Report submitted")

    async def submit_post_request(
        self,
        *,
        requester_id: str,
        club_id: str,
        content: str,
        title: Optional[str] = None,
        category: Optional[str] = None,
        priority: Union[Priority, str, None] = None,
        tags: Iterable[str] = (),
    ) -> WorkflowRecord:
        if not (requester_id or "").strip():
            raise ValidationFailed("requester_required")
        if not (club_id or "").strip():
            raise ValidationFailed("club_required")
        now = self.clock.now()
        record = WorkflowRecord(
            id=self.id_factory(),
            kind=EntityKind.PUBLIC_POST_REQUEST,
            status=PostRequestStatus.PENDING,
            priority=_priority(priority),
            owner_id=requester_id,
            club_id=club_id,
            created_at=now,
            updated_at=now,
            title=_optional_text(title, field_name="title", max_length=MAX_TITLE_LENGTH),
            body=_required_text(content, field_name="content", max_length=MAX_REQUEST_CONTENT_LENGTH),
            category=_choice(category, POST_REQUEST_CATEGORIES, field_name="category", default="general"),
            tags=_clean_tags(tags),
            expires_at=now + sla.POST_REQUEST_TTL,
        )
        return await self._create(record, HistoryAction.SUBMITTED, notes="Request submitted for review")

    async def create_announcement(
        self,
        *,
        author_id: str,
        role: RoleLike,
        title: str,
        body: str,
        summary: Optional[str] = None,
        author_type: Optional[str] = None,
        club_id: Optional[str] = None,
        category: Optional[str] = None,
        priority: Union[Priority, str, None] = None,
        tags: Iterable[str] = (),
        target_audience: Iterable[str] = ("all",),
        requires_approval: bool = False,
        expires_at: Optional[datetime] = None,
    ) -> WorkflowRecord:
        if as_role(role) is not ActorRole.ADMIN:
            raise Forbidden("admin_required")
        now = self.clock.now()
        kind_of_author = _choice(author_type, ANNOUNCEMENT_AUTHOR_TYPES, field_name="author_type", default="admin")
        if kind_of_author == "club" and not (club_id or "").strip():
            raise ValidationFailed("club_required")
        audience = tuple(dict.fromkeys(str(item).strip().lower() for item in target_audience if str(item).strip()))
        if not audience:
            audience = ("all",)
        if any(item not in ANNOUNCEMENT_AUDIENCES for item in audience):
            raise ValidationFailed("invalid_target_audience")
        if expires_at is not None:
            expires_at = ensure_utc(expires_at)
            if expires_at <= now:
                raise ValidationFailed("expires_at_in_past")
        record = WorkflowRecord(
            id=self.id_factory(),
            kind=EntityKind.ANNOUNCEMENT,
            status=AnnouncementStatus.DRAFT,
            priority=_priority(priority),
            owner_id=author_id,
            club_id=club_id or None,
            created_at=now,
            updated_at=now,
            title=_required_text(title, field_name="title", max_length=MAX_TITLE_LENGTH),
            body=_required_text(body, field_name="body", max_length=MAX_ANNOUNCEMENT_BODY_LENGTH),
            summary=_optional_text(summary, field_name="summary", max_length=MAX_ANNOUNCEMENT_SUMMARY_LENGTH),
            author_type=kind_of_author,
            category=_choice(category, ANNOUNCEMENT_CATEGORIES, field_name="category", default="general"),
            tags=_clean_tags(tags),
            target_audience=audience,
            requires_approval=bool(requires_approval),
            expires_at=expires_at,
        )
        return await self._create(record, HistoryAction.CREATED, notes="Announcement drafted")

    # --- status changes --------------------------------------------------------

    async def transition(
        self,
        record_id: str,
        target_status: str,
        *,
        actor_id: str,
        role: RoleLike,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        payload: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> WorkflowRecord:
        """Move ``record_id`` to ``target_status``.

        ``now`` pins the effective time (the sweeper passes its sweep instant);
        otherwise the injected clock is read on every attempt.
        """
        actor_role = as_role(role)
        data = dict(payload or {})

        def _mutate(record: WorkflowRecord, at: datetime) -> None:
            _require_open(record)
            try:
                target = parse_status(record.kind, target_status)
            except ValueError as exc:
                raise InvalidTransition("unknown_status") from exc
            rule = transitions.resolve_transition(record, target, role=actor_role, actor_id=actor_id)
            ctx = transitions.TransitionContext(
                actor_id=actor_id,
                role=actor_role,
                now=at,
                reason=reason,
                notes=notes,
                payload=data,
            )
            transitions.apply_rule(record, rule, ctx)

        _, saved = await self._run(record_id, _mutate, operation="transition", now=now)
        await self._after_transition(saved)
        return saved

    async def assign(
        self,
        record_id: str,
        assignee_id: str,
        *,
        actor_id: str,
        role: RoleLike,
        notes: Optional[str] = None,
    ) -> WorkflowRecord:
        actor_role = as_role(role)

        def _mutate(record: WorkflowRecord, at: datetime) -> None:
            table = transitions.table_for(record.kind)
            rule = table.assign_rule
            if rule is None:
                raise InvalidTransition("assignment_not_supported")
            _require_open(record)
            if record.status != table.initial:
                raise InvalidTransition("not_pending")
            rule = transitions.resolve_transition(
                record, rule.target, role=actor_role, actor_id=actor_id, through_assign=True
            )
            ctx = transitions.TransitionContext(
                actor_id=actor_id,
                role=actor_role,
                now=at,
                notes=notes or f"Assigned to {assignee_id}",
                payload={"assignee": assignee_id},
            )
            transitions.apply_rule(record, rule, ctx)

        _, saved = await self._run(record_id, _mutate, operation="assign")
        await self._after_transition(saved)
        return saved

    # --- annotations (never change status) -------------------------------------

    async def link_approved_post(self, request_id: str, post_id: str, *, actor_id: str = "system") -> WorkflowRecord:
        post_id = (post_id or "").strip()
        if not post_id:
            raise ValidationFailed("post_id_required")
        current = await self.get(request_id)
        if current.kind is EntityKind.PUBLIC_POST_REQUEST and current.approved_post_id == post_id:
            return current

        def _mutate(record: WorkflowRecord, at: datetime) -> None:
            _require_kind(record, EntityKind.PUBLIC_POST_REQUEST)
            if record.status != PostRequestStatus.APPROVED:
                raise InvalidTransition("not_approved")
            if record.approved_post_id and record.approved_post_id != post_id:
                raise InvalidTransition("post_already_linked")
            record.approved_post_id = post_id
            record.mark("post_linked_at", at, overwrite=False)

        _, saved = await self._run(request_id, _mutate, operation="link_approved_post")
        logger.info(
            "approved post linked",
            extra={"event": "workflow_post_linked", "record_id": request_id, "post_id": post_id, "actor_id": actor_id},
        )
        return saved

    async def schedule_follow_up(
        self,
        record_id: str,
        follow_up_date: datetime,
        *,
        actor_id: str,
        role: RoleLike,
        notes: Optional[str] = None,
    ) -> WorkflowRecord:
        actor_role = as_role(role)
        if not isinstance(follow_up_date, datetime):
            raise ValidationFailed("follow_up_date_required")
        when = ensure_utc(follow_up_date)
        cleaned = _optional_text(notes, field_name="notes", max_length=MAX_NOTES_LENGTH)

        def _mutate(record: WorkflowRecord, at: datetime) -> None:
            _require_open(record)
            _require_staff(record, actor_role)
            record.requires_follow_up = True
            record.follow_up_date = when
            if cleaned is not None:
                record.follow_up_notes = cleaned

        _, saved = await self._run(record_id, _mutate, operation="schedule_follow_up")
        return saved

    async def add_review_notes(
        self,
        request_id: str,
        notes: str,
        *,
        actor_id: str,
        role: RoleLike,
    ) -> WorkflowRecord:
        actor_role = as_role(role)
        text = _required_text(notes, field_name="notes", max_length=MAX_NOTES_LENGTH)

        def _mutate(record: WorkflowRecord, at: datetime) -> None:
            _require_kind(record, EntityKind.PUBLIC_POST_REQUEST)
            _require_open(record)
            _require_staff(record, actor_role)
            record.review_notes = text
            record.reviewed_by = actor_id
            record.mark("reviewed_at", at)
            history.append_entry(record, history.make_entry(record, HistoryAction.REVIEWED, actor_id, at, notes=text))

        _, saved = await self._run(request_id, _mutate, operation="add_review_notes")
        return saved

    async def record_findings(
        self,
        report_id: str,
        findings: str,
        *,
        actor_id: str,
        role: RoleLike,
    ) -> WorkflowRecord:
        actor_role = as_role(role)
        text = _required_text(findings, field_name="findings", max_length=MAX_NOTES_LENGTH)

        def _mutate(record: WorkflowRecord, at: datetime) -> None:
            self._require_investigation(record, actor_role)
            record.findings = text

        _, saved = await self._run(report_id, _mutate, operation="record_findings")
        return saved

    async def add_evidence(
        self,
        report_id: str,
        *,
        evidence_type: str,
        actor_id: str,
        role: RoleLike,
        description: Optional[str] = None,
        url: Optional[str] = None,
    ) -> WorkflowRecord:
        actor_role = as_role(role)
        item = Evidence(
            evidence_type=_choice(evidence_type, EVIDENCE_TYPES, field_name="evidence_type", default=""),
            description=_optional_text(description, field_name="description", max_length=MAX_NOTES_LENGTH),
            url=(url or "").strip() or None,
        )

        def _mutate(record: WorkflowRecord, at: datetime) -> None:
            self._require_investigation(record, actor_role)
            record.evidence = (*record.evidence, item)

        _, saved = await self._run(report_id, _mutate, operation="add_evidence")
        return saved

    async def add_witness_statement(
        self,
        report_id: str,
        witness_id: str,
        statement: str,
        *,
        actor_id: str,
        role: RoleLike,
    ) -> WorkflowRecord:
        actor_role = as_role(role)
        witness = (witness_id or "").strip()
        if not witness:
            raise ValidationFailed("witness_required")
        text = _required_text(statement, field_name="statement", max_length=MAX_NOTES_LENGTH)

        def _mutate(record: WorkflowRecord, at: datetime) -> None:
            self._require_investigation(record, actor_role)
            record.witnesses = (*record.witnesses, WitnessStatement(user_id=witness, statement=text, timestamp=at))

        _, saved = await self._run(report_id, _mutate, operation="add_witness_statement")
        return saved

    async def approve_announcement(
        self,
        announcement_id: str,
        *,
        actor_id: str,
        role: RoleLike,
        notes: Optional[str] = None,
    ) -> WorkflowRecord:
        actor_role = as_role(role)
        cleaned = _optional_text(notes, field_name="notes", max_length=MAX_NOTES_LENGTH)

        def _mutate(record: WorkflowRecord, at: datetime) -> None:
            _require_kind(record, EntityKind.ANNOUNCEMENT)
            _require_open(record)
            _require_staff(record, actor_role)
            if not record.requires_approval:
                raise InvalidTransition("approval_not_required")
            record.requires_approval = False
            record.approved_by = actor_id
            record.approval_notes = cleaned
            record.mark("approved_at", at)
            history.append_entry(record, history.make_entry(record, HistoryAction.APPROVED, actor_id, at, notes=cleaned))

        _, saved = await self._run(announcement_id, _mutate, operation="approve_announcement")
        return saved

    async def add_follow_up_action(
        self,
        announcement_id: str,
        action: str,
        *,
        actor_id: str,
        role: RoleLike,
    ) -> WorkflowRecord:
        actor_role = as_role(role)
        text = _required_text(action, field_name="action", max_length=MAX_TITLE_LENGTH)

        def _mutate(record: WorkflowRecord, at: datetime) -> None:
            _require_kind(record, EntityKind.ANNOUNCEMENT)
            _require_open(record)
            _require_staff(record, actor_role)
            record.follow_up_actions = (*record.follow_up_actions, FollowUpAction(action=text))

        _, saved = await self._run(announcement_id, _mutate, operation="add_follow_up_action")
        return saved

    async def complete_follow_up_action(
        self,
        announcement_id: str,
        index: int,
        *,
        actor_id: str,
        role: RoleLike,
    ) -> WorkflowRecord:
        actor_role = as_role(role)

        def _mutate(record: WorkflowRecord, at: datetime) -> None:
            _require_kind(record, EntityKind.ANNOUNCEMENT)
            _require_open(record)
            _require_staff(record, actor_role)
            if index < 0 or index >= len(record.follow_up_actions):
                raise ValidationFailed("invalid_follow_up_index")
            actions = list(record.follow_up_actions)
            if actions[index].completed:
                return
            actions[index] = replace(actions[index], completed=True, completed_at=at, completed_by=actor_id)
            record.follow_up_actions = tuple(actions)

        _, saved = await self._run(announcement_id, _mutate, operation="complete_follow_up_action")
        return saved

    async def record_view(self, announcement_id: str, viewer_id: str) -> WorkflowRecord:
        """First view per user counts; repeat views leave the record untouched."""
        viewer = (viewer_id or "").strip()
        if not viewer:
            raise ValidationFailed("viewer_required")
        current = await self.get(announcement_id)
        if current.kind is EntityKind.ANNOUNCEMENT and any(item.user_id == viewer for item in current.views):
            return current

        def _mutate(record: WorkflowRecord, at: datetime) -> None:
            _require_published(record)
            if any(item.user_id == viewer for item in record.views):
                return
            record.views = (*record.views, AnnouncementView(user_id=viewer, viewed_at=at))

        _, saved = await self._run(announcement_id, _mutate, operation="record_view")
        return saved

    async def acknowledge(self, announcement_id: str, user_id: str, *, method: Optional[str] = None) -> WorkflowRecord:
        member = (user_id or "").strip()
        if not member:
            raise ValidationFailed("user_required")
        how = _choice(method, ACKNOWLEDGMENT_METHODS, field_name="method", default="read")
        current = await self.get(announcement_id)
        if current.kind is EntityKind.ANNOUNCEMENT and any(item.user_id == member for item in current.acknowledgments):
            return current

        def _mutate(record: WorkflowRecord, at: datetime) -> None:
            _require_published(record)
            if any(item.user_id == member for item in record.acknowledgments):
                return
            record.acknowledgments = (
                *record.acknowledgments,
                Acknowledgment(user_id=member, acknowledged_at=at, method=how),
            )

        _, saved = await self._run(announcement_id, _mutate, operation="acknowledge")
        logger.info(
            "announcement acknowledged",
            extra={"event": "workflow_acknowledged", "record_id": announcement_id, "method": how},
        )
        return saved

    # --- plumbing --------------------------------------------------------------

    @staticmethod
    def _require_investigation(record: WorkflowRecord, role: ActorRole) -> None:
        _require_kind(record, EntityKind.REPORT)
        _require_open(record)
        if record.status not in (ReportStatus.INVESTIGATING, ReportStatus.ESCALATED):
            raise InvalidTransition("not_under_investigation")
        _require_staff(record, role)

    async def _create(self, record: WorkflowRecord, action: HistoryAction, *, notes: str) -> WorkflowRecord:
        entry = history.make_entry(
            record,
            action,
            record.owner_id,
            record.created_at,
            notes=notes,
            to_status=record.status.value,
        )
        history.append_entry(record, entry)
        saved = await self.store.insert(record)
        obs_metrics.WORKFLOW_RECORDS_CREATED_TOTAL.labels(kind=saved.kind.value).inc()
        logger.info(
            "workflow record created",
            extra={
                "event": "workflow_record_created",
                "record_id": saved.id,
                "kind": saved.kind.value,
                "priority": saved.priority.value,
            },
        )
        await workflow_events.publish_safely(self.events, workflow_events.transition_event(saved, entry))
        return saved

    async def _run(
        self,
        record_id: str,
        mutate: Mutation,
        *,
        operation: str,
        now: Optional[datetime] = None,
    ) -> tuple[WorkflowRecord, WorkflowRecord]:
        seen: dict[str, str] = {}
        started = time.perf_counter()

        def _apply(record: WorkflowRecord) -> None:
            seen["kind"] = record.kind.value
            at = ensure_utc(now) if now is not None else self.clock.now()
            mutate(record, at)
            last = record.last_entry
            stamp = max(at, last.timestamp) if last is not None else at
            record.updated_at = max(record.updated_at, stamp)

        async def _on_conflict(conflicted_id: str, attempt: int) -> None:
            exhausted = attempt > self.max_conflict_retries
            obs_metrics.WORKFLOW_CONFLICTS_TOTAL.labels(
                kind=seen.get("kind", "unknown"), outcome="exhausted" if exhausted else "retried"
            ).inc()
            if exhausted:
                logger.warning(
                    "workflow conflict retries exhausted",
                    extra={"event": "workflow_conflict", "record_id": conflicted_id, "operation": operation},
                )

        try:
            before, saved = await apply_update(
                self.store,
                record_id,
                _apply,
                retries=self.max_conflict_retries,
                on_conflict=_on_conflict,
            )
        except BusinessRuleError as exc:
            obs_metrics.WORKFLOW_REJECTED_TOTAL.labels(kind=seen.get("kind", "unknown"), reason=exc.detail).inc()
            raise
        finally:
            obs_metrics.WORKFLOW_TRANSITION_LATENCY_SECONDS.labels(kind=seen.get("kind", "unknown")).observe(
                time.perf_counter() - started
            )
        return before, saved

    async def _after_transition(self, saved: WorkflowRecord) -> None:
        entry = saved.last_entry
        assert entry is not None
        obs_metrics.WORKFLOW_TRANSITIONS_TOTAL.labels(kind=saved.kind.value, action=entry.action.value).inc()
        logger.info(
            "workflow transition committed",
            extra={
                "event": "workflow_transition",
                "record_id": saved.id,
                "kind": saved.kind.value,
                "from_status": entry.from_status,
                "to_status": entry.to_status,
                "action": entry.action.value,
                "actor_id": entry.actor_id,
                "version": saved.version,
            },
        )
        await workflow_events.publish_safely(self.events, workflow_events.transition_event(saved, entry))
