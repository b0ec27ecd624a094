"""Import job, row and error payloads."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class JobSnapshot(BaseModel):
    job_id: str
    status: str = Field(..., description="pending|processing|completed|failed|cancelled")
    original_filename: str | None = None
    parent_job_id: str | None = None
    file_size: int | None = None
    total_rows: int = 0
    processed_rows: int = 0
    successful_rows: int = 0
    failed_rows: int = 0
    duplicate_rows: int = 0
    progress_percentage: float = Field(0.0, description="0-100 range for UI progress bars")
    error_message: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None


class JobDetails(BaseModel):
    job: JobSnapshot
    rows_by_status: dict[str, int]
    errors_by_type: dict[str, int]
    error_count: int
    employee_count: int
    duration_seconds: float | None = None


class RowItem(BaseModel):
    id: int
    row_number: int
    status: str
    raw_data: dict[str, Any]
    employee_id: int | None = None
    error_message: str | None = None
    validation_errors: dict[str, Any] | None = None
    processed_at: datetime | None = None


class ErrorItem(BaseModel):
    id: int
    row_number: int
    import_row_id: int | None = None
    error_type: str
    error_code: str
    error_message: str
    error_details: dict[str, Any] | None = None
    raw_data: dict[str, Any] | None = None
    created_at: datetime | None = None


class RowPage(BaseModel):
    items: list[RowItem]
    total: int
    page: int
    page_size: int


class ErrorPage(BaseModel):
    items: list[ErrorItem]
    total: int
    page: int
    page_size: int


class ClearAllResult(BaseModel):
    jobs: int
    rows: int
    errors: int
