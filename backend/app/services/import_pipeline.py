"""End-to-end orchestration of a bulk employee import.

    parse -> materialize rows -> process rows in chunks -> finalize job

The pipeline works on a caller-owned Session and commits at well defined
points: once per materialized chunk and once per processed chunk. Durable
job counters therefore always describe a complete prefix of rows, and a
redelivered job resumes from whatever the ledger already holds.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from itertools import islice

from pydantic import ValidationError as PayloadError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.exceptions import (
    DuplicateError,
    IllegalTransitionError,
    JobNotFoundError,
    MalformedFileError,
    NothingToRetryError,
    RowError,
    RowSystemError,
    ValidationError,
)
from app.db.models.employee import Employee
from app.db.models.import_job import (
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESSING,
    ImportJob,
)
from app.db.models.import_row import (
    ROW_FAILED,
    ROW_SKIPPED,
    ROW_SUCCESS,
    TERMINAL_ROW_STATUSES,
    ImportRow,
)
from app.services.csv_parser import CsvParser
from app.services.employee_store import EmployeeStore
from app.services.job_state import ImportJobStateMachine
from app.services.progress_tracker import (
    ProgressTracker,
    RowTally,
    get_progress_publisher,
)
from app.services.row_ledger import ImportRowLedger
from app.services.row_validator import RowValidator
from app.utils.csv_validator import (
    build_column_index,
    find_header_problems,
    is_blank_row,
    map_row,
    payload_from_raw,
)
from app.utils.memory_monitor import check_memory_exceeded, force_gc, log_memory_status

logger = logging.getLogger(__name__)

RETRY_SUFFIX = " (Retry)"
SUPERSEDED = "superseded"
BLANK_ROW_REASON = "Row has no values"


@dataclass
class PipelineResult:
    job_id: str
    status: str
    total_rows: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    duplicate: int = 0
    skipped: int = 0
    chunks: int = 0
    error_message: str | None = None

    @classmethod
    def from_job(cls, job: ImportJob, tally: RowTally | None = None, chunks: int = 0):
        if tally is None:
            return cls(
                job_id=job.id,
                status=job.status,
                total_rows=job.total_rows or 0,
                processed=job.processed_rows or 0,
                successful=job.successful_rows or 0,
                failed=job.failed_rows or 0,
                duplicate=job.duplicate_rows or 0,
                error_message=job.error_message,
            )
        return cls(
            job_id=job.id,
            status=job.status,
            total_rows=job.total_rows or 0,
            processed=tally.processed,
            successful=tally.successful,
            failed=tally.failed,
            duplicate=tally.duplicate,
            skipped=tally.skipped,
            chunks=chunks,
            error_message=job.error_message,
        )


@dataclass
class _ChunkScope:
    index: int
    first_row: int | None = None
    last_row: int | None = None
    stopped_status: str | None = None
    before: dict[str, int] = field(default_factory=dict)


class BulkImportPipeline:
    """Drive one import job (or one failed-row retry job) to a terminal state."""

    def __init__(
        self,
        session: Session,
        parser: CsvParser | None = None,
        validator: RowValidator | None = None,
        tracker: ProgressTracker | None = None,
        state_machine: ImportJobStateMachine | None = None,
        settings: Settings | None = None,
        memory_check: Callable[[], tuple[bool, int, int]] = check_memory_exceeded,
        pause: Callable[[float], None] = time.sleep,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.parser = parser or CsvParser(
            max_file_size=self.settings.import_max_file_size,
            sample_size=self.settings.import_structure_sample_size,
        )
        self.validator = validator or RowValidator(self.settings.allowed_email_domains)
        self.state_machine = state_machine or ImportJobStateMachine()
        self.tracker = tracker or ProgressTracker(get_progress_publisher(), self.state_machine)
        self.ledger = ImportRowLedger(session)
        self.store = EmployeeStore(session)
        self.memory_check = memory_check
        self.pause = pause

    # -- entry points ----------------------------------------------------

    def run(self, job_id: str) -> PipelineResult:
        """Process ``job_id`` until it is completed, failed or cancelled.

        Safe to invoke again for the same job: a terminal job is left
        untouched and a job already ``processing`` (a redelivered task)
        resumes from the row ledger. Structural CSV problems fail the job
        and return; any other job-level exception fails the job and is
        re-raised for the dispatcher.
        """
        job = self._load_job(job_id)
        if job.is_finished:
            logger.info(f"Import job {job.id} is already {job.status}; nothing to do")
            return PipelineResult.from_job(job)

        if job.status == JOB_PROCESSING:
            logger.warning(f"Resuming import job {job.id} left in processing")
        else:
            self.state_machine.start(job)
            self.session.commit()
            self.tracker.publish(job)

        run_id = job.run_id
        try:
            if job.parent_job_id is None:
                self._prepare_rows(job)
            return self._process_rows(job, run_id)
        except MalformedFileError as exc:
            self._abort(job, f"Invalid CSV file: {exc.message}", run_id)
            return PipelineResult.from_job(job)
        except Exception as exc:
            if isinstance(exc, MemoryError):
                message = f"Out of memory: {exc}"
            else:
                message = str(exc) or type(exc).__name__
            logger.error(f"Import job {job_id} aborted: {message}", exc_info=True)
            self._abort(job, message, run_id)
            raise

    def prepare_retry(self, source_job_id: str) -> ImportJob:
        """Create a pending retry job holding the source job's retryable rows.

        Only validation and duplicate failures are carried over; system
        errors point at infrastructure trouble and are left alone. Each
        retried row keeps its original row number.

        Raises:
            JobNotFoundError: unknown ``source_job_id``.
            IllegalTransitionError: the source job never ran to an end.
            NothingToRetryError: no validation or duplicate errors exist.
        """
        source = self._load_job(source_job_id)
        attempted = source.status in (JOB_COMPLETED, JOB_FAILED) or (
            source.status == JOB_CANCELLED and source.started_at is not None
        )
        if not attempted:
            raise IllegalTransitionError("retry failed rows of", source.status)

        errors = self.ledger.retryable_errors(source.id)
        if not errors:
            raise NothingToRetryError(source.id)

        retry_job = ImportJob(
            parent_job_id=source.id,
            original_filename=f"{source.original_filename}{RETRY_SUFFIX}",
            file_path=source.file_path,
            file_size=source.file_size,
            status=JOB_PENDING,
            total_rows=len(errors),
        )
        self.session.add(retry_job)
        self.session.flush()
        self.ledger.add_rows(
            retry_job.id, ((record.row_number, record.raw_data) for record in errors)
        )
        self.session.commit()
        logger.info(
            f"Created retry job {retry_job.id} for {len(errors)} rows of job {source.id}"
        )
        self.tracker.publish(retry_job)
        return retry_job

    def retry_failed_rows(self, source_job_id: str) -> PipelineResult:
        retry_job = self.prepare_retry(source_job_id)
        return self.run(retry_job.id)

    # -- phases ----------------------------------------------------------

    def _prepare_rows(self, job: ImportJob) -> None:
        """Validate headers, size the job and materialize its ledger rows."""
        with self.parser.open(job.file_path) as document:
            problems = find_header_problems(document.headers)
            if problems:
                raise MalformedFileError(
                    "; ".join(problems), details={"problems": problems}
                )
            column_index = build_column_index(document.headers)

            total = self.parser.count_rows(job.file_path)
            job.total_rows = total
            self.session.commit()
            log_memory_status(f"Job {job.id} sized at {total} rows")

            existing = self.ledger.count_rows(job.id)
            if existing >= total:
                if existing:
                    logger.info(f"Job {job.id} already has {existing} rows; skipping materialization")
                return

            start_row = self.ledger.max_row_number(job.id) + 1
            if start_row > 1:
                logger.info(f"Resuming materialization of job {job.id} at row {start_row}")
            payloads = (map_row(cells, column_index) for cells in document.rows)
            inserted = self.ledger.materialize(
                job.id,
                islice(payloads, start_row - 1, None),
                chunk_size=self.settings.import_materialize_chunk_size,
                start_row_number=start_row,
                on_chunk=lambda count: self._guard_memory(job),
            )
            logger.info(f"Materialized {inserted} rows for job {job.id}")

    def _process_rows(self, job: ImportJob, run_id: str | None) -> PipelineResult:
        tally = RowTally()
        chunks = 0
        rows = self.ledger.iter_chunks(job.id, self.settings.import_process_chunk_size)
        for chunk_index, chunk in enumerate(rows, start=1):
            if chunk_index > 1:
                self._between_chunks(job)
                # Holding the job row lock for the chunk keeps a cancel or
                # retry from landing mid-chunk.
                stop = self._ownership(job, run_id)
                if stop is not None:
                    return self._stop(job, tally, chunks, stop)

            with self._chunk_scope(job, tally, chunk_index, run_id) as scope:
                for row in chunk:
                    self._process_row(job, row, tally)
                    scope.first_row = scope.first_row or row.row_number
                    scope.last_row = row.row_number
            chunks = chunk_index
            if scope.stopped_status is not None:
                return self._stopped(job, tally, chunks, scope.stopped_status)

        stop = self._ownership(job, run_id)
        if stop is not None:
            return self._stop(job, tally, chunks, stop)

        if tally.processed > (job.processed_rows or 0):
            self.tracker.flush(job, tally)
        self.state_machine.complete(job)
        self.session.commit()
        self.tracker.publish(job, tally)
        log_memory_status(f"Job {job.id} complete")
        return PipelineResult.from_job(job, tally, chunks)

    @contextmanager
    def _chunk_scope(
        self, job: ImportJob, tally: RowTally, index: int, run_id: str | None
    ) -> Iterator[_ChunkScope]:
        """Commit the chunk's row outcomes together with the job counters.

        Only a clean exit checkpoints; an exception propagates to ``run``
        which fails the job, so a partial chunk is never counted.
        """
        scope = _ChunkScope(index=index, before=tally.as_dict())
        yield scope
        scope.stopped_status = self._checkpoint(job, tally, scope, run_id)

    def _checkpoint(
        self, job: ImportJob, tally: RowTally, scope: _ChunkScope, run_id: str | None
    ) -> str | None:
        self.session.flush()
        stop = self._ownership(job, run_id)
        if stop is not None:
            self._release(job, tally, stop)
            return stop

        # After a redelivery the tally has to catch up with counters that
        # were already persisted before it can move them.
        if tally.processed > (job.processed_rows or 0):
            self.tracker.flush(job, tally)
        self.session.commit()
        self.tracker.publish(job, tally)

        delta = {key: value - scope.before[key] for key, value in tally.as_dict().items()}
        logger.info(
            f"Job {job.id} chunk {scope.index} rows {scope.first_row}-{scope.last_row}: "
            f"{delta['successful']} ok, {delta['failed']} failed, "
            f"{delta['duplicate']} duplicate, {delta['skipped']} skipped "
            f"(total {tally.processed}/{job.total_rows}, {job.progress_percentage}%)"
        )
        return None

    def _ownership(self, job: ImportJob, run_id: str | None) -> str | None:
        """Lock the job row; return why this execution must stop, if it must.

        A changed ``run_id`` means the job was cancelled, retried and
        started by another worker since this execution began.
        """
        status = self._lock_job(job)
        if status != JOB_PROCESSING:
            return status
        if job.run_id != run_id:
            return SUPERSEDED
        return None

    def _release(self, job: ImportJob, tally: RowTally, stop: str) -> None:
        """Cancelled: keep the chunk's rows, leave durable counters at the
        last prefix and report the tally through the fast path. Superseded:
        another execution owns the job, so none of this chunk may land."""
        if stop == SUPERSEDED:
            self.session.rollback()
            return
        self.session.commit()
        self.tracker.publish(job, tally, status=stop)

    def _stop(self, job: ImportJob, tally: RowTally, chunks: int, stop: str) -> PipelineResult:
        self._release(job, tally, stop)
        return self._stopped(job, tally, chunks, stop)

    def _stopped(self, job: ImportJob, tally: RowTally, chunks: int, stop: str) -> PipelineResult:
        if stop == SUPERSEDED:
            logger.warning(
                f"Import job {job.id} was restarted by another worker; abandoning this "
                f"execution after {chunks} chunks"
            )
        else:
            logger.info(
                f"Import job {job.id} is {stop}; stopping after chunk "
                f"{chunks} ({tally.processed}/{job.total_rows} rows)"
            )
        result = PipelineResult.from_job(job, tally, chunks)
        result.status = stop
        return result

    def _guard_memory(self, job: ImportJob) -> None:
        is_exceeded, current, limit = self.memory_check()
        if is_exceeded:
            raise MemoryError(
                f"{current / 1024 / 1024:.1f}MB >= {limit / 1024 / 1024:.1f}MB "
                f"while processing job {job.id}"
            )

    def _between_chunks(self, job: ImportJob) -> None:
        self._guard_memory(job)
        force_gc()
        if self.settings.import_chunk_pause_seconds > 0:
            self.pause(self.settings.import_chunk_pause_seconds)

    # -- per row ---------------------------------------------------------

    def _process_row(self, job: ImportJob, row: ImportRow, tally: RowTally) -> None:
        """Apply one ledger row; every row-level failure is recorded here."""
        if row.status in TERMINAL_ROW_STATUSES:
            tally.record(row.status)
            return

        try:
            status = self._apply_row(job, row)
        except RowError as error:
            self.ledger.mark_error(row, error)
            status = error.row_status
        except Exception as exc:
            logger.error(
                f"Unexpected error on row {row.row_number} of job {job.id}: {exc}",
                exc_info=True,
            )
            self.ledger.mark_error(
                row,
                RowSystemError(
                    f"Unexpected error processing row: {exc}",
                    context={"exception": type(exc).__name__},
                ),
            )
            status = ROW_FAILED
        tally.record(status)

    def _apply_row(self, job: ImportJob, row: ImportRow) -> str:
        try:
            payload = payload_from_raw(row.raw_data or {})
        except PayloadError as exc:
            raise RowSystemError(
                "Stored row data does not match the employee columns",
                context={"error": str(exc)},
            ) from exc

        if is_blank_row(payload):
            self.ledger.mark_skipped(row, BLANK_ROW_REASON)
            return ROW_SKIPPED

        data = payload.as_dict()
        result = self.validator.validate_row(data)
        if not result.valid:
            raise ValidationError(result.errors, values=data)
        for warning in self.validator.check_data_quality(data):
            logger.debug(f"Job {job.id} row {row.row_number}: {warning}")

        clean = self.validator.sanitize_row(data)
        matches = self.store.find_matches(clean["employee_number"], clean["email"])
        self._reject_in_job_duplicate(job, clean, matches)
        existing = self.store.find_existing(
            clean["employee_number"], clean["email"], matches=matches
        )
        outcome = self.store.upsert(clean, job.id, existing=existing)
        self.ledger.mark_success(row, outcome.employee.id)
        return ROW_SUCCESS

    def _reject_in_job_duplicate(
        self, job: ImportJob, clean: dict, matches: list[Employee]
    ) -> None:
        for employee in matches:
            if employee.last_import_job_id != job.id:
                continue
            matched_on = [
                name
                for name in ("employee_number", "email")
                if getattr(employee, name) == clean[name]
            ]
            earlier_row = self.ledger.row_number_for_employee(job.id, employee.id)
            where = f" at row {earlier_row}" if earlier_row else ""
            raise DuplicateError(
                f"Duplicate employee in this import: {' and '.join(matched_on)} "
                f"already imported{where}",
                context={
                    "employee_number": clean["employee_number"],
                    "email": clean["email"],
                    "matched_on": matched_on,
                    "existing_employee_id": employee.id,
                    "conflicts_with_row": earlier_row,
                },
            )

    # -- helpers ---------------------------------------------------------

    def _load_job(self, job_id: str) -> ImportJob:
        job = self.session.get(ImportJob, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _lock_job(self, job: ImportJob) -> str:
        """Re-read the job row under a row lock and return its status."""
        self.session.refresh(job, with_for_update=True)
        return job.status

    def _abort(self, job: ImportJob, message: str, run_id: str | None) -> None:
        self.session.rollback()
        if job.is_finished:
            logger.warning(
                f"Import job {job.id} already {job.status}; not recording failure: {message}"
            )
            return
        if job.run_id != run_id:
            logger.warning(
                f"Import job {job.id} belongs to another execution; not recording failure: "
                f"{message}"
            )
            return
        self.state_machine.fail(job, message)
        self.session.commit()
        self.tracker.publish(job)
        force_gc()
        log_memory_status(f"Job {job.id} failed")
