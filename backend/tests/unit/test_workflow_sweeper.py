from datetime import timedelta

import pytest

from umpsa.workflow.domain.errors import StoreUnavailable
from umpsa.workflow.domain.models import (
    AnnouncementStatus,
    EntityKind,
    HistoryAction,
    PostRequestStatus,
)
from umpsa.workflow.domain.queries import WorkflowQueries
from umpsa.workflow.domain.service import WorkflowService
from umpsa.workflow.domain.store import InMemoryWorkflowStore
from umpsa.workflow.domain.sweeper import ExpirationSweeper

from conftest import T0


async def _scheduled_announcement(service, *, expires_at=None):
    announcement = await service.create_announcement(
        author_id="admin-1",
        role="admin",
        title="Career fair",
        body="Hall B, 10am",
        expires_at=expires_at,
    )
    return await service.transition(
        announcement.id,
        "scheduled",
        actor_id="admin-1",
        role="admin",
        payload={"scheduled_for": T0 + timedelta(days=1)},
    )


@pytest.mark.asyncio
async def test_scheduled_announcement_published_once(service, sweeper):
    scheduled = await _scheduled_announcement(service)
    assert scheduled.status is AnnouncementStatus.SCHEDULED

    first_now = T0 + timedelta(days=1, seconds=1)
    report = await sweeper.sweep([EntityKind.ANNOUNCEMENT], now=first_now)
    assert [(o.record_id, o.to_status) for o in report.transitioned] == [(scheduled.id, "published")]
    published = await service.get(scheduled.id)
    assert published.status is AnnouncementStatus.PUBLISHED
    assert published.published_at == first_now
    assert published.history[-1].actor_id == "system"

    again = await sweeper.sweep([EntityKind.ANNOUNCEMENT], now=T0 + timedelta(days=1, seconds=2))
    assert again.transitioned == []
    unchanged = await service.get(scheduled.id)
    assert unchanged.version == published.version
    assert len(unchanged.history) == len(published.history)


@pytest.mark.asyncio
async def test_not_yet_due_announcement_left_alone(service, sweeper):
    scheduled = await _scheduled_announcement(service)
    report = await sweeper.sweep(now=T0 + timedelta(hours=23))
    assert report.transitioned == []
    assert (await service.get(scheduled.id)).status is AnnouncementStatus.SCHEDULED


@pytest.mark.asyncio
async def test_stale_requests_expire(service, sweeper):
    request = await service.submit_post_request(requester_id="student-1", club_id="club-1", content="Bake sale")
    reviewed = await service.submit_post_request(requester_id="student-2", club_id="club-1", content="Quiz")
    await service.assign(reviewed.id, "mod-1", actor_id="mod-1", role="moderator")

    report = await sweeper.sweep([EntityKind.PUBLIC_POST_REQUEST], now=T0 + timedelta(days=7, seconds=1))
    assert [o.record_id for o in report.transitioned] == [request.id]
    expired = await service.get(request.id)
    assert expired.status is PostRequestStatus.EXPIRED
    assert expired.history[-1].action is HistoryAction.EXPIRED
    assert expired.resolution.action == "expired"
    assert (await service.get(reviewed.id)).status is PostRequestStatus.UNDER_REVIEW


@pytest.mark.asyncio
async def test_published_then_expired_in_one_pass(service, sweeper):
    scheduled = await _scheduled_announcement(service, expires_at=T0 + timedelta(days=1, hours=1))
    report = await sweeper.sweep(now=T0 + timedelta(days=2))
    assert [o.to_status for o in report.transitioned] == ["published", "expired"]
    assert (await service.get(scheduled.id)).status is AnnouncementStatus.EXPIRED


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(service, sweeper):
    request = await service.submit_post_request(requester_id="student-1", club_id="club-1", content="Bake sale")
    scheduled = await _scheduled_announcement(service, expires_at=T0 + timedelta(days=1, hours=1))

    report = await sweeper.sweep(now=T0 + timedelta(days=8), dry_run=True)
    planned = sorted((o.record_id, o.to_status) for o in report.transitioned)
    assert planned == sorted(
        [(request.id, "expired"), (scheduled.id, "published"), (scheduled.id, "expired")]
    )
    assert all(not o.applied for o in report.transitioned)
    assert (await service.get(request.id)).status is PostRequestStatus.PENDING
    assert (await service.get(scheduled.id)).status is AnnouncementStatus.SCHEDULED
    assert report.as_dict()["dry_run"] is True


@pytest.mark.asyncio
async def test_candidate_taken_by_someone_else_is_skipped(service, queries, sweeper, monkeypatch):
    request = await service.submit_post_request(requester_id="student-1", club_id="club-1", content="Bake sale")
    stale = await service.get(request.id)
    await service.transition(request.id, "cancelled", actor_id="student-1", role="member")

    async def _stale_candidates(kind, now, *, limit=None):
        return [stale]

    monkeypatch.setattr(queries, "find_expired", _stale_candidates)
    report = await sweeper.sweep([EntityKind.PUBLIC_POST_REQUEST], now=T0 + timedelta(days=8))
    assert report.transitioned == []
    assert report.skipped == 1
    assert report.ok


class FlakyStore(InMemoryWorkflowStore):
    async def put(self, record, *, expected_version):
        raise StoreUnavailable()


@pytest.mark.asyncio
async def test_store_failure_is_counted(clock):
    store = FlakyStore()
    service = WorkflowService(store=store, clock=clock)
    sweeper = ExpirationSweeper(service=service, queries=WorkflowQueries(store, clock=clock))
    await service.submit_post_request(requester_id="student-1", club_id="club-1", content="Bake sale")

    report = await sweeper.sweep(now=T0 + timedelta(days=8))
    assert report.failed == 1
    assert report.store_failures == 1
    assert not report.ok
