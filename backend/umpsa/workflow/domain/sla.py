"""SLA thresholds and derived time values.

Every function here is pure: the current time is always an argument.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Mapping, Optional, Union

from umpsa.workflow.domain import transitions
from umpsa.workflow.domain.models import (
    EntityKind,
    PostRequestStatus,
    Priority,
    ReportStatus,
    WorkflowRecord,
)

DEFAULT_THRESHOLDS: Mapping[Priority, timedelta] = MappingProxyType(
    {
        Priority.URGENT: timedelta(hours=2),
        Priority.HIGH: timedelta(hours=24),
        Priority.NORMAL: timedelta(days=3),
        Priority.LOW: timedelta(days=7),
    }
)

POST_REQUEST_TTL = timedelta(days=7)


@dataclass(frozen=True, slots=True)
class SlaPolicy:
    thresholds: Mapping[Priority, timedelta]
    open_statuses: frozenset[str]

    def threshold_for(self, priority: Union[Priority, str]) -> timedelta:
        return self.thresholds[Priority.parse(priority)]


# Announcements have no priority-scaled SLA; their overdue check is the follow-up date.
SLA_POLICIES: Mapping[EntityKind, SlaPolicy] = MappingProxyType(
    {
        EntityKind.REPORT: SlaPolicy(
            thresholds=DEFAULT_THRESHOLDS,
            open_statuses=frozenset({ReportStatus.PENDING, ReportStatus.INVESTIGATING, ReportStatus.ESCALATED}),
        ),
        EntityKind.PUBLIC_POST_REQUEST: SlaPolicy(
            thresholds=DEFAULT_THRESHOLDS,
            open_statuses=frozenset({PostRequestStatus.PENDING, PostRequestStatus.UNDER_REVIEW}),
        ),
    }
)


def is_overdue(
    priority: Union[Priority, str],
    created_at: datetime,
    now: datetime,
    *,
    thresholds: Mapping[Priority, timedelta] = DEFAULT_THRESHOLDS,
) -> bool:
    """True once strictly more than the priority's threshold has elapsed."""
    return now - created_at > thresholds[Priority.parse(priority)]


def overdue_by(
    priority: Union[Priority, str],
    created_at: datetime,
    now: datetime,
    *,
    thresholds: Mapping[Priority, timedelta] = DEFAULT_THRESHOLDS,
) -> timedelta:
    """How far past the threshold; zero when not overdue."""
    excess = now - created_at - thresholds[Priority.parse(priority)]
    return excess if excess > timedelta(0) else timedelta(0)


def is_overdue_for_follow_up(record: WorkflowRecord, now: datetime) -> bool:
    return bool(record.requires_follow_up and record.follow_up_date is not None and now > record.follow_up_date)


def is_follow_up_due(record: WorkflowRecord, now: datetime) -> bool:
    if not record.requires_follow_up or record.follow_up_date is None:
        return False
    return record.follow_up_date <= now and not transitions.is_terminal(record)


def is_record_overdue(record: WorkflowRecord, now: datetime) -> bool:
    policy = SLA_POLICIES.get(record.kind)
    if policy is None:
        return is_overdue_for_follow_up(record, now)
    if record.status not in policy.open_statuses:
        return False
    return is_overdue(record.priority, record.created_at, now, thresholds=policy.thresholds)


def is_expired(record: WorkflowRecord, now: datetime) -> bool:
    return record.expires_at is not None and now > record.expires_at


def age(record: WorkflowRecord, now: datetime) -> timedelta:
    return now - record.created_at


def response_time(record: WorkflowRecord) -> Optional[timedelta]:
    """Time from submission to the first staff action (assign, escalate or decision)."""
    first = record.milestone("first_response_at") or record.milestone("reviewed_at")
    if first is None:
        return None
    return first - record.created_at


def total_resolution_time(record: WorkflowRecord) -> Optional[timedelta]:
    if record.resolution is None:
        return None
    return record.resolution.decided_at - record.created_at


def view_count(record: WorkflowRecord) -> int:
    return len(record.views)


def acknowledgment_count(record: WorkflowRecord) -> int:
    return len(record.acknowledgments)


def engagement_rate(record: WorkflowRecord) -> int:
    """Acknowledgments per distinct viewer as a whole percentage (halves round up); 0 without views."""
    views = view_count(record)
    if views == 0:
        return 0
    return math.floor(acknowledgment_count(record) * 100 / views + 0.5)
