"""Lightweight service container shared by workflow modules."""

from __future__ import annotations

from typing import Optional

import asyncpg

from umpsa.infra.redis import redis_client
from umpsa.settings import settings
from umpsa.workflow.domain.clock import Clock, SystemClock
from umpsa.workflow.domain.events import EventPublisher, RedisEventPublisher
from umpsa.workflow.domain.queries import WorkflowQueries
from umpsa.workflow.domain.service import WorkflowService
from umpsa.workflow.domain.store import InMemoryWorkflowStore, WorkflowStore
from umpsa.workflow.domain.sweeper import ExpirationSweeper
from umpsa.workflow.infra.postgres_store import PostgresWorkflowStore


def _default_events() -> Optional[EventPublisher]:
    if not settings.workflow_events_enabled:
        return None
    return RedisEventPublisher(redis_client, settings.workflow_events_stream)


_store: WorkflowStore = InMemoryWorkflowStore()
_clock: Clock = SystemClock()
_events: Optional[EventPublisher] = _default_events()
_retries: int = settings.workflow_conflict_retries
_service = WorkflowService(store=_store, clock=_clock, events=_events, max_conflict_retries=_retries)
_queries = WorkflowQueries(_store, clock=_clock)
_sweeper = ExpirationSweeper(service=_service, queries=_queries)


def configure(
    *,
    store: Optional[WorkflowStore] = None,
    clock: Optional[Clock] = None,
    events: Optional[EventPublisher] = None,
    max_conflict_retries: Optional[int] = None,
) -> None:
    global _store, _clock, _events, _retries, _service, _queries, _sweeper
    if store is not None:
        _store = store
    if clock is not None:
        _clock = clock
    if events is not None:
        _events = events
    if max_conflict_retries is not None:
        _retries = max(0, int(max_conflict_retries))
    _service = WorkflowService(store=_store, clock=_clock, events=_events, max_conflict_retries=_retries)
    _queries = WorkflowQueries(_store, clock=_clock)
    _sweeper = ExpirationSweeper(service=_service, queries=_queries)


def configure_postgres(pool: asyncpg.Pool) -> PostgresWorkflowStore:
    store = PostgresWorkflowStore(pool)
    configure(store=store)
    return store


def reset() -> None:
    """Fresh in-memory store and system clock (tests)."""
    global _clock
    _clock = SystemClock()
    configure(store=InMemoryWorkflowStore())


def get_store() -> WorkflowStore:
    return _store


def get_clock() -> Clock:
    return _clock


def get_service() -> WorkflowService:
    return _service


def get_queries() -> WorkflowQueries:
    return _queries


def get_sweeper() -> ExpirationSweeper:
    return _sweeper
