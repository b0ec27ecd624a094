"""Celery task wrappers, executed eagerly against the test session."""

import pytest

from app.workers.tasks import import_jobs

from tests.factories import employee_row


@pytest.fixture
def worker(monkeypatch, session, pipeline_factory):
    monkeypatch.setattr(import_jobs, "get_fresh_session", lambda: session)
    monkeypatch.setattr(import_jobs, "BulkImportPipeline", lambda db: pipeline_factory())


def test_import_task_runs_pipeline(worker, session, write_csv, make_job):
    job = make_job(write_csv([employee_row(1), employee_row(2)]))

    result = import_jobs.run_import_task.apply(args=(job.id,)).get()

    assert result["status"] == "completed"
    assert result["successful"] == 2
    assert result["chunks"] == 1


def test_missing_job_is_dropped(worker):
    result = import_jobs.run_import_task.apply(args=("gone",)).get()

    assert result == {"job_id": "gone", "status": "missing"}


def test_retry_task_processes_retry_job(worker, session, pipeline, write_csv, make_job):
    source = make_job(write_csv([employee_row(1), employee_row(2, currency="JPY")]))
    pipeline.run(source.id)
    retry_job = pipeline.prepare_retry(source.id)

    result = import_jobs.retry_failed_rows_task.apply(args=(retry_job.id,)).get()

    assert result["status"] == "completed"
    assert result["failed"] == 1
