"""
Exception taxonomy for the bulk-import pipeline.

File-level and job-level errors abort a job; row-level errors are recorded
against the row and processing moves on to the next one.
"""
from typing import Any, Dict, Optional


class ImportPipelineError(Exception):
    """Base exception class for the import pipeline."""

    def __init__(
        self,
        message: str,
        code: str = "IMPORT_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)


class MalformedFileError(ImportPipelineError):
    """Raised when a CSV file cannot be read or has the wrong structure."""

    def __init__(
        self,
        message: str = "Malformed CSV file",
        code: str = "MALFORMED_FILE",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, code=code, details=details)


class JobNotFoundError(ImportPipelineError):
    """Raised for operations against a job id that does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(
            message=f"Import job {job_id} not found",
            code="JOB_NOT_FOUND",
            details={"job_id": job_id},
        )


class IllegalTransitionError(ImportPipelineError):
    """Raised when a job lifecycle operation is not legal in its current state."""

    def __init__(self, action: str, current_status: str, message: Optional[str] = None):
        self.action = action
        self.current_status = current_status
        super().__init__(
            message=message
            or f"Cannot {action} an import job in '{current_status}' status",
            code="ILLEGAL_TRANSITION",
            details={"action": action, "current_status": current_status},
        )


class InvalidProgressError(IllegalTransitionError):
    """Raised when a progress update would break the counter invariants."""

    def __init__(self, current_status: str, message: str):
        super().__init__("update progress of", current_status, message=message)
        self.code = "INVALID_PROGRESS"


class NothingToRetryError(ImportPipelineError):
    """Raised when a job has no validation or duplicate errors to retry."""

    def __init__(self, job_id: str):
        super().__init__(
            message=f"Import job {job_id} has no failed rows to retry",
            code="NOTHING_TO_RETRY",
            details={"job_id": job_id},
        )


class RowError(ImportPipelineError):
    """Base class for errors confined to a single CSV row."""

    error_type = "system"
    row_status = "failed"

    def __init__(
        self,
        message: str,
        code: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.context = context or {}
        super().__init__(message=message, code=code, details=self.context)


class ValidationError(RowError):
    """Row failed field constraints or business rules."""

    error_type = "validation"

    def __init__(self, errors: Dict[str, list], values: Optional[Dict[str, Any]] = None):
        self.errors = errors
        message = "; ".join(
            f"{field}: {', '.join(messages)}" for field, messages in errors.items()
        )
        context: Dict[str, Any] = {"errors": errors}
        if values:
            context["values"] = values
        super().__init__(
            message=f"Validation failed: {message}",
            code="VALIDATION_FAILED",
            context=context,
        )


class DuplicateError(RowError):
    """Row collides with an employee already written by the same job."""

    error_type = "duplicate"
    row_status = "duplicate"

    def __init__(self, reason: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message=reason, code="DUPLICATE_EMPLOYEE", context=context)


class BusinessRuleError(RowError):
    """Row is well formed but cannot be applied to the existing employees."""

    error_type = "business_logic"

    def __init__(self, message: str, code: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code=code, context=context)


class RowSystemError(RowError):
    """Unexpected failure while writing a single row (race, storage error)."""

    error_type = "system"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="SYSTEM_ERROR", context=context)
