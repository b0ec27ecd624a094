"""Endpoint that accepts a CSV upload and starts its import job."""

from __future__ import annotations

import logging
from pathlib import Path

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError

from app.api.dependencies.imports import get_import_service
from app.api.routers.job_helpers import http_error, serialize_snapshot
from app.api.schemas.job import JobSnapshot
from app.core.exceptions import ImportPipelineError, MalformedFileError
from app.services.csv_parser import ALLOWED_EXTENSIONS
from app.services.import_service import ImportService
from app.storage.uploads import delete_upload, save_upload

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/",
    summary="Start an employee CSV import job",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=JobSnapshot,
)
async def enqueue_import(
    file: UploadFile = File(...),
    service: ImportService = Depends(get_import_service),
) -> JobSnapshot:
    """Stage the upload, validate it, create a pending job and enqueue it."""
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Filename is required",
        )
    if Path(file.filename).suffix.lower() not in ALLOWED_EXTENSIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only CSV or TXT uploads are supported",
        )

    try:
        staged_path = await run_in_threadpool(save_upload, file.file, file.filename)
    except OSError as exc:
        logger.error(f"OS error staging file: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save uploaded file",
        ) from exc

    try:
        # full-file scans run off the event loop
        job = await run_in_threadpool(
            service.create_job_from_upload, staged_path, file.filename
        )
    except MalformedFileError as exc:
        delete_upload(staged_path)
        raise http_error(exc) from exc
    except ImportPipelineError as exc:
        raise http_error(exc) from exc
    except SQLAlchemyError as exc:
        logger.error(f"Database error creating import job: {exc}", exc_info=True)
        delete_upload(staged_path)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create import job",
        ) from exc
    except Exception as exc:
        logger.error(f"Error starting import for {file.filename}: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start import process",
        ) from exc

    return serialize_snapshot(service.get_job_snapshot(job.id))
