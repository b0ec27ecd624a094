"""Celery tasks that run the import pipeline for one job."""

from __future__ import annotations

import logging
from dataclasses import asdict

from celery import Task

from app.core.config import get_settings
from app.core.exceptions import JobNotFoundError
from app.db.models.import_job import JOB_FAILED, ImportJob
from app.db.session import get_fresh_session
from app.services.import_pipeline import BulkImportPipeline
from app.services.job_state import ImportJobStateMachine
from app.services.progress_tracker import ProgressTracker, get_progress_publisher
from app.utils.memory_monitor import force_gc, log_memory_status
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)
settings = get_settings()


def _execute(task: Task, job_id: str, label: str) -> dict:
    """Run the pipeline for ``job_id``; the queue owns attempts and backoff."""
    session = get_fresh_session()
    log_memory_status(f"{label} start {job_id}")
    try:
        result = BulkImportPipeline(session).run(job_id)
        logger.info(
            f"{label} for job {job_id} finished as {result.status}: "
            f"{result.processed}/{result.total_rows} rows in {result.chunks} chunks"
        )
        return asdict(result)
    except JobNotFoundError:
        logger.warning(f"{label}: job {job_id} no longer exists, dropping task")
        return {"job_id": job_id, "status": "missing"}
    except Exception as exc:
        if task.request.retries < task.max_retries:
            _requeue(session, job_id)
            countdown = settings.import_task_retry_backoff * (2 ** task.request.retries)
            logger.warning(
                f"{label} for job {job_id} failed ({exc}); "
                f"retrying in {countdown}s (attempt {task.request.retries + 1})"
            )
            raise task.retry(exc=exc, countdown=countdown)
        raise
    finally:
        force_gc()
        log_memory_status(f"{label} end {job_id}")
        session.close()


def _requeue(session, job_id: str) -> None:
    """Put a job the pipeline just failed back to pending for the next attempt."""
    session.rollback()
    job = session.get(ImportJob, job_id)
    if job is None or job.status != JOB_FAILED:
        return
    state_machine = ImportJobStateMachine()
    state_machine.reset_for_retry(job)
    session.commit()
    ProgressTracker(get_progress_publisher(), state_machine).publish(job)


@celery_app.task(
    bind=True,
    name="app.workers.tasks.run_import",
    max_retries=settings.import_task_max_retries,
)
def run_import_task(self, job_id: str) -> dict:
    """Parse, materialize and process the rows of an uploaded CSV."""
    return _execute(self, job_id, "Import")


@celery_app.task(
    bind=True,
    name="app.workers.tasks.retry_failed_rows",
    max_retries=settings.import_task_max_retries,
)
def retry_failed_rows_task(self, job_id: str) -> dict:
    """Process a retry job created from another job's failed rows."""
    return _execute(self, job_id, "Failed-row retry")
