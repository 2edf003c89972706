from __future__ import annotations

from fastapi import status


class PipelineError(Exception):
    """Base class for typed pipeline failures surfaced to callers."""

    kind = "internal"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(PipelineError):
    """Missing or not-owned pipeline, stage, placement or referenced entity. Never retried."""

    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(PipelineError):
    """State conflict; callers may retry after re-reading current state."""

    kind = "conflict"
    status_code = status.HTTP_409_CONFLICT


class ValidationError(PipelineError):
    """Malformed input, surfaced verbatim."""

    kind = "validation"
    status_code = 422


class InternalError(PipelineError):
    """Storage failure or aborted transaction. Reads are safe to retry; moves are not."""

    kind = "internal"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
