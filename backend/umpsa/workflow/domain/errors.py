"""Error taxonomy for the workflow engine.

Business-rule errors are surfaced verbatim and never retried. Infrastructure
errors are retried within bounds (``Conflict``) or by the caller
(``StoreUnavailable``).
"""

from __future__ import annotations

from fastapi import status


class WorkflowError(Exception):
    """Base class for workflow failures."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: str = "workflow_error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail


class BusinessRuleError(WorkflowError):
    """Caller or logic error; never retried automatically."""


class NotFound(BusinessRuleError):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "not_found"


class Forbidden(BusinessRuleError):
    status_code = status.HTTP_403_FORBIDDEN
    detail = "forbidden"


class InvalidTransition(BusinessRuleError):
    status_code = status.HTTP_409_CONFLICT
    detail = "invalid_transition"


class AlreadyTerminal(BusinessRuleError):
    status_code = status.HTTP_409_CONFLICT
    detail = "already_terminal"


class ValidationFailed(BusinessRuleError):
    status_code = 422
    detail = "validation_error"


class InfrastructureError(WorkflowError):
    """Transient failure of the durable store."""


class Conflict(InfrastructureError):
    """Concurrent modification survived the bounded retry."""

    status_code = status.HTTP_409_CONFLICT
    detail = "conflict"


class StoreUnavailable(InfrastructureError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    detail = "store_unavailable"


class VersionConflict(Exception):
    """Raised by stores when the expected version no longer matches."""

    def __init__(self, record_id: str, expected: int, actual: int | None = None) -> None:
        super().__init__(f"{record_id}: expected version {expected}, found {actual}")
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
