"""ImportService: intake, reads and job commands."""

import pytest
from sqlalchemy import func, select, update

from app.core.exceptions import (
    IllegalTransitionError,
    JobNotFoundError,
    MalformedFileError,
    NothingToRetryError,
)
from app.db.models.employee import Employee
from app.db.models.import_error import ImportErrorRecord
from app.db.models.import_job import ImportJob
from app.db.models.import_row import ImportRow
from app.services.import_service import ImportService

from tests.factories import HEADER, employee_row


class BrokenDispatcher:
    def dispatch_import(self, job_id):
        raise RuntimeError("broker down")

    def dispatch_retry(self, job_id):
        raise RuntimeError("broker down")


@pytest.fixture
def service(session, dispatcher, tracker, parser, settings):
    return ImportService(session, dispatcher, tracker=tracker, parser=parser, settings=settings)


@pytest.fixture
def finished_job(session, pipeline, write_csv, make_job):
    """A completed job with one good row and one validation failure."""
    job = make_job(write_csv([employee_row(1), employee_row(2, email="x@gmail.com")]))
    pipeline.run(job.id)
    session.refresh(job)
    return job


def _job_count(session):
    return session.scalar(select(func.count(ImportJob.id)))


class TestCreateJobFromUpload:
    def test_creates_and_dispatches_a_pending_job(self, service, dispatcher, publisher, write_csv):
        path = write_csv([employee_row(1), employee_row(2)])

        job = service.create_job_from_upload(path, "staff.csv")

        assert job.status == "pending"
        assert job.total_rows == 2
        assert job.original_filename == "staff.csv"
        assert job.file_size == path.stat().st_size
        assert dispatcher.imports == [job.id]
        assert publisher.read(job.id)["status"] == "pending"

    def test_structural_problems_are_rejected(self, session, service, dispatcher, write_csv):
        path = write_csv([employee_row(1)], headers=HEADER[:-1])

        with pytest.raises(MalformedFileError, match="CSV file validation failed"):
            service.create_job_from_upload(path, "staff.csv")

        assert _job_count(session) == 0
        assert dispatcher.imports == []

    def test_header_only_file_is_rejected(self, service, write_csv):
        with pytest.raises(MalformedFileError, match="no data rows"):
            service.create_job_from_upload(write_csv([]), "staff.csv")

    def test_row_limit(self, session, dispatcher, tracker, parser, settings, write_csv):
        service = ImportService(
            session,
            dispatcher,
            tracker=tracker,
            parser=parser,
            settings=settings.model_copy(update={"import_max_rows": 2}),
        )
        path = write_csv([employee_row(n) for n in range(1, 4)])

        with pytest.raises(MalformedFileError, match="maximum is 2"):
            service.create_job_from_upload(path, "staff.csv")

    def test_enqueue_failure_fails_the_job(self, session, tracker, parser, settings, write_csv):
        service = ImportService(
            session, BrokenDispatcher(), tracker=tracker, parser=parser, settings=settings
        )

        with pytest.raises(RuntimeError):
            service.create_job_from_upload(write_csv([employee_row(1)]), "staff.csv")

        job = session.scalar(select(ImportJob))
        assert job.status == "failed"
        assert job.error_message == "Failed to enqueue import: broker down"


class TestReads:
    def test_unknown_job(self, service):
        with pytest.raises(JobNotFoundError):
            service.get_job_snapshot("missing")

    def test_snapshot_carries_file_metadata(self, service, finished_job):
        snapshot = service.get_job_snapshot(finished_job.id)

        assert snapshot["status"] == "completed"
        assert snapshot["original_filename"] == "employees.csv"
        assert snapshot["parent_job_id"] is None
        assert snapshot["processed_rows"] == 2

    def test_list_jobs_filters_by_status(self, service, write_csv, make_job):
        path = write_csv([employee_row(1)])
        make_job(path)
        failed = make_job(path, status="failed")

        jobs = service.list_jobs(status="failed")

        assert [job["job_id"] for job in jobs] == [failed.id]
        assert len(service.list_jobs()) == 2

    def test_row_page(self, service, finished_job):
        page = service.get_row_page(finished_job.id, status="failed")

        assert page["total"] == 1
        assert page["items"][0]["row_number"] == 2
        assert page["items"][0]["validation_errors"]["email"]

    def test_error_page_clamps_paging(self, service, finished_job):
        page = service.get_error_page(finished_job.id, page=0, page_size=0)

        assert (page["page"], page["page_size"]) == (1, 1)
        assert page["total"] == 1
        assert page["items"][0]["error_type"] == "validation"

    def test_raw_data_keeps_csv_column_order(self, session, service, finished_job):
        # JSONB hands keys back sorted by length, not in insertion order
        shuffled = dict(reversed(list(employee_row(2, email="x@gmail.com").items())))
        shuffled["note"] = "extra"
        for model in (ImportRow, ImportErrorRecord):
            session.execute(
                update(model)
                .where(model.import_job_id == finished_job.id)
                .where(model.row_number == 2)
                .values(raw_data=shuffled)
            )
        session.commit()

        row = service.get_row_page(finished_job.id, status="failed")["items"][0]
        error = service.get_error_page(finished_job.id)["items"][0]

        assert list(row["raw_data"]) == HEADER + ["note"]
        assert list(error["raw_data"]) == HEADER + ["note"]
        assert row["raw_data"]["email"] == "x@gmail.com"

    def test_details(self, service, finished_job):
        details = service.get_import_details(finished_job.id)

        assert details["rows_by_status"] == {"success": 1, "failed": 1}
        assert details["errors_by_type"] == {"validation": 1}
        assert details["error_count"] == 1
        assert details["employee_count"] == 1
        assert details["duration_seconds"] is not None


class TestCommands:
    def test_cancel_pending_job(self, session, service, write_csv, make_job):
        job = make_job(write_csv([employee_row(1)]))

        service.request_cancel(job.id)

        session.refresh(job)
        assert job.status == "cancelled"
        assert job.completed_at is not None

    def test_cancel_finished_job_is_illegal(self, service, finished_job):
        with pytest.raises(IllegalTransitionError):
            service.request_cancel(finished_job.id)

    def test_retry_requires_failed_or_cancelled(self, service, finished_job):
        with pytest.raises(IllegalTransitionError):
            service.request_retry(finished_job.id)

    def test_retry_keeps_rows_by_default(self, session, service, dispatcher, finished_job):
        finished_job.status = "cancelled"
        session.commit()

        service.request_retry(finished_job.id)

        session.refresh(finished_job)
        assert finished_job.status == "pending"
        assert finished_job.processed_rows == 0
        assert dispatcher.imports == [finished_job.id]
        assert session.scalar(select(func.count(ImportRow.id))) == 2

    def test_retry_with_purge(self, session, service, finished_job):
        finished_job.status = "failed"
        session.commit()

        service.request_retry(finished_job.id, purge_rows=True)

        assert session.scalar(select(func.count(ImportRow.id))) == 0
        assert service.get_error_page(finished_job.id)["total"] == 0

    def test_retry_failed_rows_dispatches_new_job(self, session, service, dispatcher, finished_job):
        retry_job = service.request_retry_failed_rows(finished_job.id)

        assert retry_job.parent_job_id == finished_job.id
        assert retry_job.status == "pending"
        assert retry_job.total_rows == 1
        assert dispatcher.retries == [retry_job.id]

    def test_retry_failed_rows_with_nothing_to_retry(self, service, pipeline, write_csv, make_job):
        job = make_job(write_csv([employee_row(1)]))
        pipeline.run(job.id)

        with pytest.raises(NothingToRetryError):
            service.request_retry_failed_rows(job.id)

    def test_clear_all_keeps_employees(self, session, service, publisher, finished_job):
        service.request_retry_failed_rows(finished_job.id)

        removed = service.clear_all()

        assert removed == {"jobs": 2, "rows": 3, "errors": 1}
        assert _job_count(session) == 0
        employee = session.scalar(select(Employee))
        assert employee.last_import_job_id is None
        assert publisher.read(finished_job.id) is None
