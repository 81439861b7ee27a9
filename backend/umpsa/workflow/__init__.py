"""Workflow package integration helpers exposed to the application."""

from umpsa.workflow.api import router
from umpsa.workflow.domain.container import configure, configure_postgres
from umpsa.workflow.workers.runner import spawn_workers

__all__ = ["router", "configure", "configure_postgres", "spawn_workers"]
