import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from umpsa.infra import postgres
from umpsa.main import app
from umpsa.settings import settings
from umpsa.workflow.domain import container
from umpsa.workflow.domain.clock import FixedClock
from umpsa.workflow.domain.events import RedisEventPublisher
from umpsa.workflow.domain.queries import WorkflowQueries
from umpsa.workflow.domain.service import WorkflowService
from umpsa.workflow.domain.store import InMemoryWorkflowStore
from umpsa.workflow.domain.sweeper import ExpirationSweeper

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from umpsa.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Keep every test on the in-memory store with the sweeper disabled."""
	original_store = settings.workflow_store
	original_sweeper = settings.workflow_sweeper_enabled
	settings.workflow_store = "memory"
	settings.workflow_sweeper_enabled = False
	try:
		yield
	finally:
		settings.workflow_store = original_store
		settings.workflow_sweeper_enabled = original_sweeper


@pytest.fixture
def clock():
	return FixedClock(T0)


@pytest.fixture
def store():
	return InMemoryWorkflowStore()


@pytest.fixture
def service(store, clock, fake_redis):
	events = RedisEventPublisher(fake_redis, settings.workflow_events_stream)
	return WorkflowService(store=store, clock=clock, events=events)


@pytest.fixture
def queries(store, clock):
	return WorkflowQueries(store, clock=clock)


@pytest.fixture
def sweeper(service, queries):
	return ExpirationSweeper(service=service, queries=queries)


@pytest.fixture(autouse=True)
def workflow_container(fake_redis):
	"""Fresh in-memory store and a fixed clock behind the API container."""
	container.reset()
	container.configure(clock=FixedClock(T0))
	try:
		yield container
	finally:
		container.reset()


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
