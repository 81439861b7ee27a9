"""Workflow worker exports."""

from .retention_worker import RetentionWorker
from .sweeper_worker import SweepWorker

__all__ = ["RetentionWorker", "SweepWorker"]
