"""Lifecycle rules for ImportJob.

    pending -> processing -> completed | failed | cancelled

Terminal states are absorbing. Every illegal call raises
IllegalTransitionError naming the attempted action and the current status;
nothing is coerced into the nearest legal state. Methods mutate the job in
the caller's session and leave committing to the caller.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from app.core.exceptions import IllegalTransitionError, InvalidProgressError
from app.db.models.import_job import (
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESSING,
    ImportJob,
)

logger = logging.getLogger(__name__)

RETRYABLE_JOB_STATUSES = (JOB_FAILED, JOB_CANCELLED)
HUNDRED = Decimal("100")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def compute_percentage(processed: int, total: int) -> Decimal:
    if not total:
        return Decimal("0.00")
    value = Decimal(processed) / Decimal(total) * HUNDRED
    return min(value, HUNDRED).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class ImportJobStateMachine:
    def start(self, job: ImportJob) -> None:
        if job.status != JOB_PENDING:
            raise IllegalTransitionError("start", job.status)
        job.status = JOB_PROCESSING
        job.started_at = _now()
        job.run_id = str(uuid.uuid4())
        job.completed_at = None
        job.error_message = None
        self._reset_counters(job)
        logger.info(f"Import job {job.id} started")

    def update_progress(
        self,
        job: ImportJob,
        processed: int,
        successful: int,
        failed: int,
        duplicate: int,
    ) -> None:
        if job.status != JOB_PROCESSING:
            raise IllegalTransitionError("update progress of", job.status)

        if min(processed, successful, failed, duplicate) < 0:
            raise InvalidProgressError(job.status, "Progress counters cannot be negative")
        if processed > (job.total_rows or 0):
            raise InvalidProgressError(
                job.status,
                f"Processed rows ({processed}) cannot exceed total rows ({job.total_rows})",
            )
        if successful + failed + duplicate > processed:
            raise InvalidProgressError(
                job.status,
                "Successful, failed and duplicate rows cannot exceed processed rows",
            )
        previous = (
            job.processed_rows or 0,
            job.successful_rows or 0,
            job.failed_rows or 0,
            job.duplicate_rows or 0,
        )
        current = (processed, successful, failed, duplicate)
        if any(new < old for new, old in zip(current, previous)):
            raise InvalidProgressError(
                job.status,
                f"Progress counters must not decrease (was {previous}, got {current})",
            )

        job.processed_rows = processed
        job.successful_rows = successful
        job.failed_rows = failed
        job.duplicate_rows = duplicate
        job.progress_percentage = compute_percentage(processed, job.total_rows)

    def complete(self, job: ImportJob) -> None:
        if job.status != JOB_PROCESSING:
            raise IllegalTransitionError("complete", job.status)
        job.status = JOB_COMPLETED
        job.completed_at = _now()
        job.progress_percentage = HUNDRED
        logger.info(
            f"Import job {job.id} completed: {job.successful_rows} successful, "
            f"{job.failed_rows} failed, {job.duplicate_rows} duplicate"
        )

    def fail(self, job: ImportJob, message: str) -> None:
        if job.is_finished:
            raise IllegalTransitionError("fail", job.status)
        job.status = JOB_FAILED
        job.error_message = message
        job.completed_at = _now()
        logger.warning(f"Import job {job.id} failed: {message}")

    def cancel(self, job: ImportJob) -> None:
        if job.is_finished:
            raise IllegalTransitionError(
                "cancel", job.status, message="Cannot cancel finished jobs"
            )
        job.status = JOB_CANCELLED
        job.completed_at = _now()
        logger.info(f"Import job {job.id} cancelled")

    def reset_for_retry(self, job: ImportJob) -> None:
        """Return a failed or cancelled job to pending with fresh counters."""
        if job.status not in RETRYABLE_JOB_STATUSES:
            raise IllegalTransitionError("retry", job.status)
        job.status = JOB_PENDING
        job.error_message = None
        job.run_id = None
        job.started_at = None
        job.completed_at = None
        self._reset_counters(job)
        logger.info(f"Import job {job.id} reset to pending for retry")

    @staticmethod
    def _reset_counters(job: ImportJob) -> None:
        job.processed_rows = 0
        job.successful_rows = 0
        job.failed_rows = 0
        job.duplicate_rows = 0
        job.progress_percentage = Decimal("0.00")
