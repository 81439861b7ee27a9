"""FastAPI application for the moderation & publishing workflow."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from umpsa import obs
from umpsa.api import ops
from umpsa.api.errors import install_error_handlers
from umpsa.infra import postgres
from umpsa.settings import settings
from umpsa.workflow import configure_postgres as configure_workflow_postgres
from umpsa.workflow import router as workflow_router
from umpsa.workflow import spawn_workers as spawn_workflow_workers

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	uses_postgres = settings.workflow_store == "postgres"
	if uses_postgres:
		pool = await postgres.init_pool()
		store = configure_workflow_postgres(pool)
		await store.ensure_schema()
	worker_tasks: list[asyncio.Task] = []
	if settings.workflow_sweeper_enabled:
		worker_tasks.extend(
			spawn_workflow_workers(
				interval=settings.workflow_sweep_interval_seconds,
				retention_days=settings.report_retention_days if uses_postgres else None,
			)
		)
	logger.info(
		"workflow service started",
		extra={"store": settings.workflow_store, "sweeper": settings.workflow_sweeper_enabled},
	)
	try:
		yield
	finally:
		if worker_tasks:
			for task in worker_tasks:
				task.cancel()
			await asyncio.gather(*worker_tasks, return_exceptions=True)
		if uses_postgres:
			await postgres.close_pool()


app = FastAPI(title="UMPSA Workflow", lifespan=lifespan)
install_error_handlers(app)
obs.init(app)

app.include_router(ops.router, tags=["ops"])
app.include_router(workflow_router)
