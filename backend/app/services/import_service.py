"""Operations the API and admin tooling call into: accept, inspect, steer jobs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.exceptions import JobNotFoundError, MalformedFileError
from app.db.models.employee import Employee
from app.db.models.import_error import ImportErrorRecord
from app.db.models.import_job import JOB_PENDING, ImportJob
from app.db.models.import_row import ImportRow
from app.services.csv_parser import CsvParser
from app.services.import_pipeline import BulkImportPipeline
from app.services.job_state import ImportJobStateMachine
from app.services.progress_tracker import ProgressTracker, get_progress_publisher
from app.services.row_ledger import DEFAULT_PAGE_SIZE, ImportRowLedger, clamp_page
from app.utils.csv_validator import CANONICAL_FIELDS

logger = logging.getLogger(__name__)


class ImportDispatcher(Protocol):
    """Hands work items to whatever executes them (a Celery queue in production)."""

    def dispatch_import(self, job_id: str) -> None: ...

    def dispatch_retry(self, job_id: str) -> None: ...


class ImportService:
    def __init__(
        self,
        session: Session,
        dispatcher: ImportDispatcher,
        tracker: ProgressTracker | None = None,
        parser: CsvParser | None = None,
        settings: Settings | None = None,
    ):
        self.session = session
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        self.state_machine = ImportJobStateMachine()
        self.tracker = tracker or ProgressTracker(get_progress_publisher(), self.state_machine)
        self.parser = parser or CsvParser(
            max_file_size=self.settings.import_max_file_size,
            sample_size=self.settings.import_structure_sample_size,
        )
        self.ledger = ImportRowLedger(session)

    # -- intake ----------------------------------------------------------

    def create_job_from_upload(self, file_path: str | Path, original_filename: str) -> ImportJob:
        """Validate a staged upload, create its pending job and enqueue it.

        Raises:
            MalformedFileError: file-level or structural problems, or more
                rows than ``import_max_rows``.
        """
        errors = self.parser.validate_file(file_path)
        if errors:
            raise MalformedFileError(
                "CSV file validation failed: " + "; ".join(errors),
                details={"errors": errors},
            )

        stats = self.parser.get_file_statistics(file_path)
        row_count = stats["row_count"]
        if row_count == 0:
            raise MalformedFileError("CSV file contains no data rows", details=stats)
        if row_count > self.settings.import_max_rows:
            raise MalformedFileError(
                f"CSV file has {row_count} rows; the maximum is {self.settings.import_max_rows}",
                details={"row_count": row_count, "max_rows": self.settings.import_max_rows},
            )

        job = ImportJob(
            original_filename=original_filename,
            file_path=str(Path(file_path).resolve()),
            file_size=stats["file_size"],
            status=JOB_PENDING,
            total_rows=row_count,
        )
        self.session.add(job)
        self.session.commit()
        self.tracker.publish(job)
        logger.info(
            f"Created import job {job.id} for {original_filename} "
            f"({row_count} rows, {stats['file_size']} bytes)"
        )
        self._dispatch(job, self.dispatcher.dispatch_import)
        return job

    # -- reads -----------------------------------------------------------

    def get_job(self, job_id: str) -> ImportJob:
        job = self.session.get(ImportJob, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_job_snapshot(self, job_id: str) -> dict[str, Any]:
        """Latest progress for a job, preferring the fast path."""
        job = self.get_job(job_id)
        return self._describe(job)

    def list_jobs(
        self,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        statement = select(ImportJob)
        if status:
            statement = statement.where(ImportJob.status == status)
        statement = (
            statement.order_by(ImportJob.created_at.desc(), ImportJob.id)
            .offset(max(offset, 0))
            .limit(max(limit, 1))
        )
        return [self._describe(job) for job in self.session.scalars(statement)]

    def get_row_page(
        self,
        job_id: str,
        status: str | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> dict[str, Any]:
        self.get_job(job_id)
        page, page_size = clamp_page(page, page_size)
        rows, total = self.ledger.page_rows(job_id, status=status, page=page, page_size=page_size)
        return _page([_row_dict(row) for row in rows], total, page, page_size)

    def get_error_page(
        self,
        job_id: str,
        error_type: str | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> dict[str, Any]:
        self.get_job(job_id)
        page, page_size = clamp_page(page, page_size)
        errors, total = self.ledger.page_errors(
            job_id, error_type=error_type, page=page, page_size=page_size
        )
        return _page([_error_dict(error) for error in errors], total, page, page_size)

    def get_import_details(self, job_id: str) -> dict[str, Any]:
        """Snapshot plus row/error breakdowns and the employees this job wrote."""
        job = self.get_job(job_id)
        errors_by_type = self.ledger.count_errors_by_type(job.id)
        employee_count = self.session.scalar(
            select(func.count(Employee.id)).where(Employee.last_import_job_id == job.id)
        ) or 0
        return {
            "job": self._describe(job),
            "rows_by_status": self.ledger.count_rows_by_status(job.id),
            "errors_by_type": errors_by_type,
            "error_count": sum(errors_by_type.values()),
            "employee_count": employee_count,
            "duration_seconds": job.duration_seconds,
        }

    # -- commands --------------------------------------------------------

    def request_cancel(self, job_id: str) -> bool:
        """Flag a job as cancelled; a running worker stops at its next chunk.

        Raises:
            IllegalTransitionError: the job already finished.
        """
        job = self._lock(job_id)
        self.state_machine.cancel(job)
        self.session.commit()
        self.tracker.publish(job)
        return True

    def request_retry(self, job_id: str, purge_rows: bool = False) -> bool:
        """Send a failed or cancelled job through the pipeline again.

        Rows that already reached a terminal status are counted but not
        reprocessed unless ``purge_rows`` deletes the job's rows and errors.
        """
        job = self._lock(job_id)
        self.state_machine.reset_for_retry(job)
        if purge_rows:
            removed = self.ledger.reset_rows(job.id)
            logger.info(f"Purged {removed} rows of job {job.id} before retry")
        self.session.commit()
        self.tracker.publish(job)
        self._dispatch(job, self.dispatcher.dispatch_import)
        return True

    def request_retry_failed_rows(self, job_id: str) -> ImportJob:
        """Create and enqueue a retry job for the validation/duplicate failures.

        Raises:
            JobNotFoundError, IllegalTransitionError, NothingToRetryError
        """
        pipeline = BulkImportPipeline(
            self.session,
            parser=self.parser,
            tracker=self.tracker,
            state_machine=self.state_machine,
            settings=self.settings,
        )
        retry_job = pipeline.prepare_retry(job_id)
        self._dispatch(retry_job, self.dispatcher.dispatch_retry)
        return retry_job

    def clear_all(self) -> dict[str, int]:
        """Delete every job with its rows and errors; employees are kept."""
        job_ids = list(self.session.scalars(select(ImportJob.id)))
        self.session.execute(
            update(Employee)
            .where(Employee.last_import_job_id.is_not(None))
            .values(last_import_job_id=None)
        )
        errors = self.session.execute(delete(ImportErrorRecord)).rowcount or 0
        rows = self.session.execute(delete(ImportRow)).rowcount or 0
        self.session.execute(update(ImportJob).values(parent_job_id=None))
        jobs = self.session.execute(delete(ImportJob)).rowcount or 0
        self.session.commit()
        for job_id in job_ids:
            self.tracker.clear(job_id)
        logger.warning(f"Cleared {jobs} import jobs, {rows} rows and {errors} errors")
        return {"jobs": jobs, "rows": rows, "errors": errors}

    # -- helpers ---------------------------------------------------------

    def _lock(self, job_id: str) -> ImportJob:
        job = self.session.get(ImportJob, job_id, with_for_update=True)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _dispatch(self, job: ImportJob, send) -> None:
        try:
            send(job.id)
        except Exception as exc:
            logger.error(f"Error enqueueing import job {job.id}: {exc}", exc_info=True)
            self.session.rollback()
            if not job.is_finished:
                self.state_machine.fail(job, f"Failed to enqueue import: {exc}")
                self.session.commit()
                self.tracker.publish(job)
            raise

    def _describe(self, job: ImportJob) -> dict[str, Any]:
        snapshot = self.tracker.get_snapshot(job)
        snapshot.update(
            {
                "original_filename": job.original_filename,
                "file_size": job.file_size,
                "parent_job_id": job.parent_job_id,
            }
        )
        return snapshot


def _page(items: list[dict[str, Any]], total: int, page: int, page_size: int) -> dict[str, Any]:
    return {"items": items, "total": total, "page": page, "page_size": page_size}


def _row_dict(row: ImportRow) -> dict[str, Any]:
    return {
        "id": row.id,
        "row_number": row.row_number,
        "status": row.status,
        "raw_data": canonical_order(row.raw_data),
        "employee_id": row.employee_id,
        "error_message": row.error_message,
        "validation_errors": row.validation_errors,
        "processed_at": row.processed_at,
    }


def _error_dict(error: ImportErrorRecord) -> dict[str, Any]:
    return {
        "id": error.id,
        "row_number": error.row_number,
        "import_row_id": error.import_row_id,
        "error_type": error.error_type,
        "error_code": error.error_code,
        "error_message": error.error_message,
        "error_details": error.error_details,
        "raw_data": canonical_order(error.raw_data),
        "created_at": error.created_at,
    }


def canonical_order(raw: dict[str, Any] | None) -> dict[str, Any] | None:
    """Return ``raw`` keyed in CSV column order (JSONB does not keep key order)."""
    if not raw:
        return raw
    ordered = {name: raw[name] for name in CANONICAL_FIELDS if name in raw}
    ordered.update((key, value) for key, value in raw.items() if key not in ordered)
    return ordered
