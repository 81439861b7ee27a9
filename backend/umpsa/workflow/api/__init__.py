"""Workflow API routers."""

from fastapi import APIRouter

from . import queues, records

router = APIRouter()
router.include_router(queues.router)
router.include_router(records.router)

__all__ = ["router"]
