"""Shared helpers for shaping job responses and errors."""
from __future__ import annotations

from fastapi import HTTPException, status

from app.api.schemas.job import JobSnapshot
from app.core.exceptions import (
    IllegalTransitionError,
    ImportPipelineError,
    JobNotFoundError,
    MalformedFileError,
    NothingToRetryError,
)

TERMINAL_STREAM_STATUSES = ("completed", "failed", "cancelled")


def serialize_snapshot(snapshot: dict) -> JobSnapshot:
    """Validate a tracker snapshot into the response schema."""
    return JobSnapshot.model_validate(snapshot)


def http_error(exc: ImportPipelineError) -> HTTPException:
    """Translate a domain error into the matching HTTP status."""
    if isinstance(exc, JobNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, IllegalTransitionError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, (MalformedFileError, NothingToRetryError)):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(
        status_code=code,
        detail={"message": exc.message, "code": exc.code, "details": exc.details},
    )
