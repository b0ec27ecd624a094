"""Import job tracking and control endpoints."""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse

from app.api.dependencies.imports import get_import_service, get_progress_tracker
from app.api.routers.job_helpers import (
    TERMINAL_STREAM_STATUSES,
    http_error,
    serialize_snapshot,
)
from app.api.schemas.job import ClearAllResult, ErrorPage, JobDetails, JobSnapshot, RowPage
from app.core.exceptions import ImportPipelineError
from app.db.models.import_job import ImportJob
from app.services.import_service import ImportService
from app.services.progress_tracker import ProgressTracker

logger = logging.getLogger(__name__)

router = APIRouter()

STREAM_INTERVAL_SECONDS = 2
STREAM_IDLE_LIMIT = 150


@router.get("/", summary="List import jobs", response_model=list[JobSnapshot])
async def list_jobs(
    limit: int = Query(50, ge=1, le=500, description="Maximum number of jobs to return"),
    offset: int = Query(0, ge=0),
    status_filter: str | None = Query(
        None, alias="status", description="pending, processing, completed, failed, cancelled"
    ),
    service: ImportService = Depends(get_import_service),
) -> list[JobSnapshot]:
    """Newest jobs first, each with its latest progress snapshot."""
    jobs = service.list_jobs(status=status_filter, limit=limit, offset=offset)
    return [serialize_snapshot(job) for job in jobs]


@router.delete("/", summary="Delete every import job", response_model=ClearAllResult)
async def clear_all_jobs(
    service: ImportService = Depends(get_import_service),
) -> ClearAllResult:
    """Administrative purge of jobs, rows and errors. Employees are kept."""
    return ClearAllResult(**service.clear_all())


@router.get("/{job_id}", summary="Fetch job progress", response_model=JobSnapshot)
async def get_job(
    job_id: str,
    service: ImportService = Depends(get_import_service),
) -> JobSnapshot:
    try:
        return serialize_snapshot(service.get_job_snapshot(job_id))
    except ImportPipelineError as exc:
        raise http_error(exc) from exc


@router.get("/{job_id}/details", summary="Row and error breakdown", response_model=JobDetails)
async def get_job_details(
    job_id: str,
    service: ImportService = Depends(get_import_service),
) -> JobDetails:
    try:
        return JobDetails.model_validate(service.get_import_details(job_id))
    except ImportPipelineError as exc:
        raise http_error(exc) from exc


@router.get("/{job_id}/rows", summary="Page through a job's rows", response_model=RowPage)
async def get_job_rows(
    job_id: str,
    row_status: str | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    service: ImportService = Depends(get_import_service),
) -> RowPage:
    try:
        return RowPage.model_validate(
            service.get_row_page(job_id, status=row_status, page=page, page_size=page_size)
        )
    except ImportPipelineError as exc:
        raise http_error(exc) from exc


@router.get("/{job_id}/errors", summary="Page through a job's row errors", response_model=ErrorPage)
async def get_job_errors(
    job_id: str,
    error_type: str | None = Query(None, description="validation, duplicate, system, business_logic"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    service: ImportService = Depends(get_import_service),
) -> ErrorPage:
    try:
        return ErrorPage.model_validate(
            service.get_error_page(job_id, error_type=error_type, page=page, page_size=page_size)
        )
    except ImportPipelineError as exc:
        raise http_error(exc) from exc


@router.post("/{job_id}/cancel", summary="Cancel a job", response_model=JobSnapshot)
async def cancel_job(
    job_id: str,
    service: ImportService = Depends(get_import_service),
) -> JobSnapshot:
    """Running workers stop at their next chunk boundary."""
    try:
        service.request_cancel(job_id)
        return serialize_snapshot(service.get_job_snapshot(job_id))
    except ImportPipelineError as exc:
        raise http_error(exc) from exc


@router.post(
    "/{job_id}/retry",
    summary="Re-run a failed or cancelled job",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=JobSnapshot,
)
async def retry_job(
    job_id: str,
    purge_rows: bool = Query(False, description="Delete stored rows and errors first"),
    service: ImportService = Depends(get_import_service),
) -> JobSnapshot:
    try:
        service.request_retry(job_id, purge_rows=purge_rows)
        return serialize_snapshot(service.get_job_snapshot(job_id))
    except ImportPipelineError as exc:
        raise http_error(exc) from exc


@router.post(
    "/{job_id}/retry-failed",
    summary="Retry a job's validation and duplicate failures as a new job",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=JobSnapshot,
)
async def retry_failed_rows(
    job_id: str,
    service: ImportService = Depends(get_import_service),
) -> JobSnapshot:
    try:
        retry_job = service.request_retry_failed_rows(job_id)
        return serialize_snapshot(service.get_job_snapshot(retry_job.id))
    except ImportPipelineError as exc:
        raise http_error(exc) from exc


@router.get("/{job_id}/stream", summary="Server-Sent Events stream for real-time progress")
async def stream_job_progress(
    job_id: str,
    service: ImportService = Depends(get_import_service),
    tracker: ProgressTracker = Depends(get_progress_tracker),
) -> StreamingResponse:
    """Stream snapshots as ``data:`` events until the job reaches a terminal state."""
    try:
        service.get_job(job_id)
    except ImportPipelineError as exc:
        raise http_error(exc) from exc

    async def event_generator() -> AsyncGenerator[str, None]:
        # The request session closes when this function returns; the
        # generator keeps running, so it owns a session of its own.
        from app.db.session import SessionLocal

        session = SessionLocal()
        last_processed = -1
        idle_polls = 0
        try:
            while True:
                job = session.get(ImportJob, job_id, populate_existing=True)
                if job is None:
                    yield 'event: error\ndata: {"error": "Job not found"}\n\n'
                    break
                snapshot = serialize_snapshot(tracker.get_snapshot(job))
                yield f"data: {snapshot.model_dump_json()}\n\n"

                if snapshot.status in TERMINAL_STREAM_STATUSES:
                    yield "event: close\ndata: {}\n\n"
                    break
                if snapshot.processed_rows != last_processed:
                    last_processed = snapshot.processed_rows
                    idle_polls = 0
                else:
                    idle_polls += 1
                if idle_polls > STREAM_IDLE_LIMIT:
                    yield "event: timeout\ndata: {}\n\n"
                    break
                session.rollback()
                await asyncio.sleep(STREAM_INTERVAL_SECONDS)
        finally:
            session.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
