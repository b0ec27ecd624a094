"""ImportRowLedger: materialization, keyset chunks, outcomes and pages."""

import pytest

from app.core.exceptions import DuplicateError, RowSystemError, ValidationError
from app.db.models.import_row import ImportRow
from app.services.row_ledger import MAX_PAGE_SIZE, ImportRowLedger
from app.utils.csv_validator import RowPayload

from tests.factories import employee_row


@pytest.fixture
def ledger(session):
    return ImportRowLedger(session)


@pytest.fixture
def job(make_job, write_csv):
    return make_job(write_csv([]))


def _payloads(count, start=1):
    return [RowPayload(**employee_row(n)) for n in range(start, start + count)]


class TestMaterialize:
    def test_numbers_rows_sequentially(self, ledger, job):
        chunks = []

        inserted = ledger.materialize(job.id, _payloads(7), chunk_size=3, on_chunk=chunks.append)

        assert inserted == 7
        assert chunks == [3, 6, 7]
        assert ledger.count_rows(job.id) == 7
        assert ledger.max_row_number(job.id) == 7

    def test_resume_continues_numbering(self, ledger, job):
        ledger.materialize(job.id, _payloads(4), chunk_size=3)

        ledger.materialize(job.id, _payloads(2, start=5), chunk_size=3, start_row_number=5)

        numbers = [row.row_number for chunk in ledger.iter_chunks(job.id, 10) for row in chunk]
        assert numbers == [1, 2, 3, 4, 5, 6]

    def test_raw_data_round_trips(self, session, ledger, job):
        payload = RowPayload(**employee_row(9, first_name="Zoë"))
        ledger.materialize(job.id, [payload], chunk_size=10)
        session.expire_all()

        row = next(ledger.iter_chunks(job.id, 10))[0]

        assert row.raw_data == payload.as_dict()
        assert list(row.raw_data) == list(payload.as_dict())
        assert row.status == "pending"


class TestIterChunks:
    def test_keyset_chunks_in_row_order(self, ledger, job):
        ledger.add_rows(job.id, [(5, employee_row(5)), (2, employee_row(2)), (9, employee_row(9))])

        chunks = [[row.row_number for row in chunk] for chunk in ledger.iter_chunks(job.id, 2)]

        assert chunks == [[2, 5], [9]]

    def test_empty_job(self, ledger, job):
        assert list(ledger.iter_chunks(job.id, 5)) == []


class TestOutcomes:
    def test_mark_error_appends_to_error_log(self, session, ledger, job):
        ledger.materialize(job.id, _payloads(2), chunk_size=5)
        first, second = next(ledger.iter_chunks(job.id, 5))

        ledger.mark_error(first, ValidationError({"email": ["bad"]}, values={"email": "x"}))
        ledger.mark_error(second, DuplicateError("dup", context={"conflicts_with_row": 1}))
        session.commit()

        assert first.status == "failed"
        assert first.validation_errors == {"email": ["bad"]}
        assert second.status == "duplicate"
        assert ledger.count_errors_by_type(job.id) == {"validation": 1, "duplicate": 1}
        assert ledger.count_rows_by_status(job.id) == {"failed": 1, "duplicate": 1}

        errors, total = ledger.page_errors(job.id, error_type="duplicate")
        assert total == 1
        assert errors[0].row_number == 2
        assert errors[0].import_row_id == second.id
        assert errors[0].raw_data == employee_row(2)

    def test_retryable_errors_keep_latest_per_row(self, session, ledger, job):
        ledger.materialize(job.id, _payloads(2), chunk_size=5)
        first, second = next(ledger.iter_chunks(job.id, 5))
        ledger.mark_error(first, ValidationError({"email": ["old"]}))
        ledger.mark_error(first, ValidationError({"email": ["new"]}))
        ledger.mark_error(second, RowSystemError("db down"))
        session.commit()

        retryable = ledger.retryable_errors(job.id)

        assert [record.row_number for record in retryable] == [1]
        assert retryable[0].error_details["errors"] == {"email": ["new"]}

    def test_reset_rows_purges_rows_and_errors(self, session, ledger, job):
        ledger.materialize(job.id, _payloads(3), chunk_size=5)
        row = next(ledger.iter_chunks(job.id, 5))[0]
        ledger.mark_error(row, ValidationError({"salary": ["bad"]}))
        session.commit()

        assert ledger.reset_rows(job.id) == 3
        session.commit()

        assert ledger.count_rows(job.id) == 0
        assert ledger.count_errors_by_type(job.id) == {}


class TestPages:
    def test_page_rows_with_status_filter(self, session, ledger, job):
        ledger.materialize(job.id, _payloads(5), chunk_size=5)
        rows = next(ledger.iter_chunks(job.id, 5))
        ledger.mark_skipped(rows[3], "blank")
        session.commit()

        page, total = ledger.page_rows(job.id, page=2, page_size=2)
        skipped, skipped_total = ledger.page_rows(job.id, status="skipped")

        assert total == 5
        assert [row.row_number for row in page] == [3, 4]
        assert skipped_total == 1
        assert skipped[0].row_number == 4

    def test_page_size_is_clamped(self, ledger, job):
        ledger.materialize(job.id, _payloads(1), chunk_size=5)

        rows, total = ledger.page_rows(job.id, page=0, page_size=MAX_PAGE_SIZE * 10)

        assert total == 1
        assert isinstance(rows[0], ImportRow)
