"""Outbound workflow events for the publishing sink and other consumers."""

from __future__ import annotations

import logging
from typing import Mapping, Optional, Protocol

from umpsa.obs import metrics as obs_metrics
from umpsa.workflow.domain.models import HistoryEntry, WorkflowRecord

logger = logging.getLogger(__name__)

TRANSITION_EVENT = "workflow.transition"


class EventPublisher(Protocol):
    async def publish(self, event: Mapping[str, str]) -> None:
        ...


class RedisEventPublisher:
    """Appends events to a Redis stream with XADD (approximate MAXLEN trim)."""

    def __init__(self, redis, stream: str, *, maxlen: int = 10_000) -> None:
        self._redis = redis
        self.stream = stream
        self.maxlen = maxlen

    async def publish(self, event: Mapping[str, str]) -> None:
        await self._redis.xadd(self.stream, dict(event), maxlen=self.maxlen, approximate=True)


def transition_event(record: WorkflowRecord, entry: HistoryEntry) -> dict[str, str]:
    event = {
        "type": TRANSITION_EVENT,
        "record_id": record.id,
        "kind": record.kind.value,
        "from_status": entry.from_status or "",
        "to_status": entry.to_status or record.status.value,
        "action": entry.action.value,
        "actor_id": entry.actor_id,
        "at": entry.timestamp.isoformat(),
        "version": str(record.version),
    }
    if record.club_id:
        event["club_id"] = record.club_id
    return event


async def publish_safely(publisher: Optional[EventPublisher], event: Mapping[str, str]) -> bool:
    """Publish after commit; failures are logged and never reach the caller."""
    if publisher is None:
        return False
    try:
        await publisher.publish(event)
    except Exception:  # noqa: BLE001
        obs_metrics.WORKFLOW_EVENTS_FAILED_TOTAL.inc()
        logger.exception(
            "workflow event publish failed",
            extra={"event": "workflow_event_failed", "record_id": event.get("record_id")},
        )
        return False
    return True
