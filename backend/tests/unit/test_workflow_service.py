import asyncio
from datetime import timedelta

import pytest

from umpsa.workflow.domain.errors import (
    AlreadyTerminal,
    Conflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    StoreUnavailable,
    ValidationFailed,
    VersionConflict,
)
from umpsa.workflow.domain.models import (
    AnnouncementStatus,
    EntityKind,
    HistoryAction,
    HistoryEntry,
    PostRequestStatus,
    Priority,
    ReportStatus,
)
from umpsa.workflow.domain.service import WorkflowService
from umpsa.workflow.domain.store import InMemoryWorkflowStore

from conftest import T0


async def _report(service, **overrides):
    values = dict(
        reporter_id="student-1",
        target_type="post",
        target_id="post-9",
        reason="Spam links",
        description="Posts the same link in every club",
        category="spam",
        priority="high",
    )
    values.update(overrides)
    return await service.submit_report(**values)


async def _request(service, **overrides):
    values = dict(requester_id="student-1", club_id="club-chess", content="Chess night on Friday", priority="urgent")
    values.update(overrides)
    return await service.submit_post_request(**values)


@pytest.mark.asyncio
async def test_post_request_review_scenario(service, queries, clock):
    request = await _request(service)
    assert request.status is PostRequestStatus.PENDING
    assert request.expires_at == T0 + timedelta(days=7)

    clock.advance(timedelta(hours=3))
    overdue = await queries.find_overdue(EntityKind.PUBLIC_POST_REQUEST, clock.now())
    assert [record.id for record in overdue] == [request.id]

    assigned = await service.assign(request.id, "mod1", actor_id="mod1", role="moderator")
    assert assigned.status is PostRequestStatus.UNDER_REVIEW
    assert assigned.assignee == "mod1"

    approved = await service.transition(request.id, "approved", actor_id="mod1", role="moderator")
    assert approved.status is PostRequestStatus.APPROVED
    assert approved.milestone("approved_at") == clock.now()
    assert approved.reviewed_by == "mod1"
    assert [entry.action for entry in approved.history] == [
        HistoryAction.SUBMITTED,
        HistoryAction.ASSIGNED,
        HistoryAction.APPROVED,
    ]
    assert approved.resolution.action == "approved"
    assert approved.assignee == "mod1"


@pytest.mark.asyncio
async def test_transition_bumps_version_and_history_order(service, clock):
    report = await _report(service)
    assert report.version == 1
    clock.advance(timedelta(minutes=5))
    report = await service.assign(report.id, "mod-1", actor_id="mod-1", role="moderator")
    clock.advance(timedelta(minutes=5))
    report = await service.transition(report.id, "escalated", actor_id="mod-1", role="moderator", reason="Threats")
    assert report.version == 3
    timestamps = [entry.timestamp for entry in report.history]
    assert timestamps == sorted(timestamps)
    assert report.escalation.escalated_to == "supervisor"
    assert report.milestone("first_response_at") == T0 + timedelta(minutes=5)
    assert report.updated_at == T0 + timedelta(minutes=10)


class YieldingStore(InMemoryWorkflowStore):
    """Suspends after every read so concurrent writers interleave."""

    def __init__(self):
        super().__init__()
        self.conflicts = 0

    async def get(self, record_id):
        record = await super().get(record_id)
        await asyncio.sleep(0)
        return record

    async def put(self, record, *, expected_version):
        try:
            return await super().put(record, expected_version=expected_version)
        except VersionConflict:
            self.conflicts += 1
            raise


@pytest.mark.asyncio
async def test_concurrent_resolve_commits_once(clock):
    store = YieldingStore()
    service = WorkflowService(store=store, clock=clock)
    report = await _report(service)
    await service.assign(report.id, "mod-1", actor_id="mod-1", role="moderator")

    results = await asyncio.gather(
        service.transition(report.id, "resolved", actor_id="mod-1", role="moderator", payload={"action": "warn"}),
        service.transition(report.id, "resolved", actor_id="mod-2", role="admin", payload={"action": "ban"}),
        return_exceptions=True,
    )
    assert [type(result).__name__ for result in results] == ["WorkflowRecord", "AlreadyTerminal"]
    assert store.conflicts == 1

    stored = await service.get(report.id)
    assert [entry.action for entry in stored.history].count(HistoryAction.RESOLVED) == 1
    assert stored.status is ReportStatus.RESOLVED
    assert stored.resolution.action == "warn"


class FailingPutStore(InMemoryWorkflowStore):
    async def put(self, record, *, expected_version):
        raise StoreUnavailable()


class ConflictingStore(InMemoryWorkflowStore):
    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def put(self, record, *, expected_version):
        self.attempts += 1
        raise VersionConflict(record.id, expected_version, expected_version + 1)


@pytest.mark.asyncio
async def test_store_failure_commits_nothing(clock):
    store = FailingPutStore()
    service = WorkflowService(store=store, clock=clock)
    report = await _report(service)

    with pytest.raises(StoreUnavailable):
        await service.assign(report.id, "mod-1", actor_id="mod-1", role="moderator")

    stored = await store.get(report.id)
    assert stored.status is ReportStatus.PENDING
    assert stored.assignee is None
    assert len(stored.history) == 1
    assert stored.version == 1


@pytest.mark.asyncio
async def test_conflict_after_bounded_retries(clock):
    store = ConflictingStore()
    service = WorkflowService(store=store, clock=clock, max_conflict_retries=2)
    report = await _report(service)

    with pytest.raises(Conflict):
        await service.transition(report.id, "dismissed", actor_id="mod-1", role="moderator")
    assert store.attempts == 3


@pytest.mark.asyncio
async def test_error_precedence(service):
    with pytest.raises(NotFound):
        await service.transition("missing", "resolved", actor_id="student-1", role="member")

    report = await _report(service)
    await service.transition(report.id, "dismissed", actor_id="mod-1", role="moderator")
    # terminal wins over the member's missing permission
    with pytest.raises(AlreadyTerminal):
        await service.transition(report.id, "resolved", actor_id="student-1", role="member")

    other = await _report(service)
    # unreachable edge wins over permission
    with pytest.raises(InvalidTransition):
        await service.transition(other.id, "resolved", actor_id="student-1", role="member")
    with pytest.raises(Forbidden):
        await service.transition(other.id, "dismissed", actor_id="student-1", role="member")


@pytest.mark.asyncio
async def test_unknown_status_and_role(service):
    report = await _report(service)
    with pytest.raises(InvalidTransition):
        await service.transition(report.id, "archived", actor_id="mod-1", role="moderator")
    with pytest.raises(Forbidden):
        await service.transition(report.id, "dismissed", actor_id="mod-1", role="janitor")


@pytest.mark.asyncio
async def test_rejected_request_needs_reason(service):
    request = await _request(service)
    with pytest.raises(ValidationFailed):
        await service.transition(request.id, "rejected", actor_id="mod-1", role="moderator")
    rejected = await service.transition(
        request.id, "rejected", actor_id="mod-1", role="moderator", reason="Off-topic"
    )
    assert rejected.resolution.reason == "Off-topic"
    assert rejected.milestone("rejected_at") is not None


@pytest.mark.asyncio
async def test_owner_cancels_pending_request(service):
    request = await _request(service)
    with pytest.raises(Forbidden):
        await service.transition(request.id, "cancelled", actor_id="student-2", role="member")
    cancelled = await service.transition(request.id, "cancelled", actor_id="student-1", role="member")
    assert cancelled.status is PostRequestStatus.CANCELLED
    assert cancelled.resolution.action == "cancelled"


@pytest.mark.asyncio
async def test_owner_cannot_cancel_after_expiry(service, clock):
    request = await _request(service)
    clock.advance(timedelta(days=8))
    with pytest.raises(InvalidTransition) as excinfo:
        await service.transition(request.id, "cancelled", actor_id="student-1", role="member")
    assert excinfo.value.detail == "request_expired"

    stored = await service.get(request.id)
    assert stored.status is PostRequestStatus.PENDING
    assert len(stored.history) == 1
    expired = await service.transition(request.id, "expired", actor_id="system", role="system")
    assert expired.status is PostRequestStatus.EXPIRED


@pytest.mark.asyncio
async def test_submit_validation(service):
    with pytest.raises(ValidationFailed):
        await _request(service, content="   ")
    with pytest.raises(ValidationFailed):
        await _request(service, content="x" * 2001)
    with pytest.raises(ValidationFailed):
        await _request(service, tags=["y" * 31])
    with pytest.raises(ValidationFailed):
        await _report(service, target_type="planet")
    with pytest.raises(ValidationFailed):
        await _report(service, priority="critical")
    with pytest.raises(Forbidden):
        await service.create_announcement(author_id="mod-1", role="moderator", title="Hi", body="There")
    with pytest.raises(ValidationFailed):
        await service.create_announcement(
            author_id="admin-1", role="admin", title="Club", body="News", author_type="club"
        )


@pytest.mark.asyncio
async def test_report_priority_alias(service):
    report = await _report(service, priority="medium")
    assert report.priority is Priority.NORMAL


@pytest.mark.asyncio
async def test_link_approved_post(service):
    request = await _request(service)
    with pytest.raises(InvalidTransition):
        await service.link_approved_post(request.id, "post-1")
    await service.assign(request.id, "mod-1", actor_id="mod-1", role="moderator")
    await service.transition(request.id, "approved", actor_id="mod-1", role="moderator")

    linked = await service.link_approved_post(request.id, "post-1")
    assert linked.approved_post_id == "post-1"
    again = await service.link_approved_post(request.id, "post-1")
    assert again.version == linked.version
    with pytest.raises(InvalidTransition):
        await service.link_approved_post(request.id, "post-2")
    assert linked.status is PostRequestStatus.APPROVED


@pytest.mark.asyncio
async def test_follow_up_rules(service, clock):
    report = await _report(service)
    with pytest.raises(Forbidden):
        await service.schedule_follow_up(
            report.id, T0 + timedelta(days=1), actor_id="student-1", role="member"
        )
    updated = await service.schedule_follow_up(
        report.id, T0 + timedelta(days=1), actor_id="mod-1", role="moderator", notes="Check again"
    )
    assert updated.requires_follow_up
    assert updated.follow_up_notes == "Check again"
    assert updated.status is ReportStatus.PENDING

    await service.transition(report.id, "dismissed", actor_id="mod-1", role="moderator")
    with pytest.raises(AlreadyTerminal):
        await service.schedule_follow_up(report.id, T0 + timedelta(days=2), actor_id="mod-1", role="moderator")


@pytest.mark.asyncio
async def test_findings_and_evidence_need_investigation(service):
    report = await _report(service)
    with pytest.raises(InvalidTransition):
        await service.record_findings(report.id, "Confirmed", actor_id="mod-1", role="moderator")
    await service.assign(report.id, "mod-1", actor_id="mod-1", role="moderator")
    await service.record_findings(report.id, "Confirmed", actor_id="mod-1", role="moderator")
    updated = await service.add_evidence(
        report.id,
        evidence_type="screenshot",
        url="https://example.org/shot.png",
        actor_id="mod-1",
        role="moderator",
    )
    assert updated.findings == "Confirmed"
    assert updated.evidence[0].evidence_type == "screenshot"
    assert updated.status is ReportStatus.INVESTIGATING
    with pytest.raises(ValidationFailed):
        await service.add_evidence(report.id, evidence_type="rumour", actor_id="mod-1", role="moderator")


@pytest.mark.asyncio
async def test_witness_statements_during_investigation(service, clock):
    report = await _report(service)
    with pytest.raises(InvalidTransition):
        await service.add_witness_statement(report.id, "student-7", "Saw it", actor_id="mod-1", role="moderator")
    await service.assign(report.id, "mod-1", actor_id="mod-1", role="moderator")
    with pytest.raises(Forbidden):
        await service.add_witness_statement(report.id, "student-7", "Saw it", actor_id="student-1", role="member")

    clock.advance(timedelta(minutes=30))
    updated = await service.add_witness_statement(
        report.id, "student-7", "Saw the same link twice", actor_id="mod-1", role="moderator"
    )
    assert updated.witnesses[0].user_id == "student-7"
    assert updated.witnesses[0].timestamp == T0 + timedelta(minutes=30)
    assert updated.status is ReportStatus.INVESTIGATING
    with pytest.raises(ValidationFailed):
        await service.add_witness_statement(report.id, "student-8", "  ", actor_id="mod-1", role="moderator")


@pytest.mark.asyncio
async def test_review_notes_append_history(service):
    request = await _request(service)
    updated = await service.add_review_notes(request.id, "Needs a date", actor_id="mod-1", role="moderator")
    assert updated.review_notes == "Needs a date"
    assert updated.history[-1].action is HistoryAction.REVIEWED
    assert updated.status is PostRequestStatus.PENDING


@pytest.mark.asyncio
async def test_announcement_approval_and_follow_up_actions(service):
    announcement = await service.create_announcement(
        author_id="admin-1",
        role="admin",
        title="Library hours",
        body="Open until midnight during finals",
        requires_approval=True,
    )
    assert announcement.status is AnnouncementStatus.DRAFT
    with pytest.raises(InvalidTransition):
        await service.transition(announcement.id, "published", actor_id="admin-1", role="admin")

    approved = await service.approve_announcement(announcement.id, actor_id="admin-2", role="admin")
    assert not approved.requires_approval
    assert approved.history[-1].action is HistoryAction.APPROVED
    with pytest.raises(InvalidTransition):
        await service.approve_announcement(announcement.id, actor_id="admin-2", role="admin")

    published = await service.transition(announcement.id, "published", actor_id="admin-1", role="admin")
    assert published.published_at is not None

    with_action = await service.add_follow_up_action(
        announcement.id, "Collect feedback", actor_id="admin-1", role="admin"
    )
    done = await service.complete_follow_up_action(announcement.id, 0, actor_id="admin-1", role="admin")
    assert not with_action.follow_up_actions[0].completed
    assert done.follow_up_actions[0].completed
    assert done.follow_up_actions[0].completed_by == "admin-1"
    with pytest.raises(ValidationFailed):
        await service.complete_follow_up_action(announcement.id, 5, actor_id="admin-1", role="admin")
    with pytest.raises(Forbidden):
        await service.add_follow_up_action(announcement.id, "Nope", actor_id="mod-1", role="moderator")


@pytest.mark.asyncio
async def test_views_and_acknowledgments_count_once_per_member(service):
    announcement = await service.create_announcement(
        author_id="admin-1", role="admin", title="Exam timetable", body="Timetable is out"
    )
    with pytest.raises(InvalidTransition):
        await service.record_view(announcement.id, "student-1")
    await service.transition(announcement.id, "published", actor_id="admin-1", role="admin")

    await service.record_view(announcement.id, "student-1")
    await service.record_view(announcement.id, "student-2")
    await service.record_view(announcement.id, "student-3")
    repeat = await service.record_view(announcement.id, "student-1")
    assert [view.user_id for view in repeat.views] == ["student-1", "student-2", "student-3"]

    await service.acknowledge(announcement.id, "student-1")
    acked = await service.acknowledge(announcement.id, "student-2", method="clicked")
    again = await service.acknowledge(announcement.id, "student-2", method="dismissed")
    assert again.version == acked.version
    assert [ack.method for ack in again.acknowledgments] == ["read", "clicked"]
    with pytest.raises(ValidationFailed):
        await service.acknowledge(announcement.id, "student-3", method="liked")
    assert again.status is AnnouncementStatus.PUBLISHED
    assert len(again.history) == 2


@pytest.mark.asyncio
async def test_transitions_publish_events(service, fake_redis):
    report = await _report(service)
    await service.assign(report.id, "mod-1", actor_id="mod-1", role="moderator")

    entries = await fake_redis.xrange("workflow:events")
    events = [fields for _, fields in entries]
    assert [event["action"] for event in events] == ["submitted", "assigned"]
    assert events[1]["from_status"] == "pending"
    assert events[1]["to_status"] == "investigating"
    assert events[1]["record_id"] == report.id


@pytest.mark.asyncio
async def test_publish_failure_keeps_commit(store, clock):
    class BrokenPublisher:
        async def publish(self, event):
            raise ConnectionError("redis down")

    service = WorkflowService(store=store, clock=clock, events=BrokenPublisher())
    report = await _report(service)
    assigned = await service.assign(report.id, "mod-1", actor_id="mod-1", role="moderator")
    assert assigned.status is ReportStatus.INVESTIGATING
    assert (await store.get(report.id)).status is ReportStatus.INVESTIGATING


@pytest.mark.asyncio
async def test_history_log_append_keeps_order(service, clock):
    report = await _report(service)
    entry = HistoryEntry(
        action=HistoryAction.REVIEWED,
        actor_id="mod-1",
        timestamp=T0 - timedelta(minutes=1),
        notes="Looked at the thread",
    )
    stored = await service.log.append(report.id, entry)
    # never earlier than the submission entry
    assert stored.timestamp == T0

    entries = await service.history(report.id)
    assert [e.action for e in entries] == [HistoryAction.SUBMITTED, HistoryAction.REVIEWED]
    assert (await service.get(report.id)).status is ReportStatus.PENDING
    with pytest.raises(NotFound):
        await service.log.list_for("missing")
