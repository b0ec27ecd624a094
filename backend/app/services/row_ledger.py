"""Durable per-row ledger and the append-only row error log.

Every CSV data line becomes one ``ImportRow`` keyed by (job, row_number).
Status only moves forward out of ``pending``; a terminal row is never
touched again unless a retry explicitly purges the job's rows.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, insert, select
from sqlalchemy.orm import Session

from app.core.exceptions import RowError
from app.db.models.import_error import RETRYABLE_ERROR_TYPES, ImportErrorRecord
from app.db.models.import_row import (
    ROW_PENDING,
    ROW_SKIPPED,
    ROW_SUCCESS,
    ImportRow,
)
from app.utils.batching import chunked
from app.utils.csv_validator import RowPayload

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ImportRowLedger:
    def __init__(self, session: Session):
        self.session = session

    # -- materialization -------------------------------------------------

    def count_rows(self, job_id: str) -> int:
        return self.session.scalar(
            select(func.count(ImportRow.id)).where(ImportRow.import_job_id == job_id)
        ) or 0

    def max_row_number(self, job_id: str) -> int:
        return self.session.scalar(
            select(func.max(ImportRow.row_number)).where(ImportRow.import_job_id == job_id)
        ) or 0

    def materialize(
        self,
        job_id: str,
        payloads: Iterable[RowPayload],
        chunk_size: int,
        start_row_number: int = 1,
        on_chunk=None,
    ) -> int:
        """Bulk-insert pending rows, committing once per chunk.

        A crash loses at most the chunk being inserted; the caller resumes
        from ``max_row_number() + 1``. Returns the number of rows inserted.
        """
        inserted = 0
        row_number = start_row_number
        for chunk_index, batch in enumerate(chunked(payloads, chunk_size), start=1):
            records = []
            for payload in batch:
                records.append(
                    {
                        "import_job_id": job_id,
                        "row_number": row_number,
                        "raw_data": payload.as_dict(),
                        "status": ROW_PENDING,
                    }
                )
                row_number += 1
            self.session.execute(insert(ImportRow), records)
            self.session.commit()
            inserted += len(records)
            logger.info(
                f"Materialized chunk {chunk_index} for job {job_id}: "
                f"rows {records[0]['row_number']}-{records[-1]['row_number']}"
            )
            if on_chunk is not None:
                on_chunk(inserted)
        return inserted

    def add_rows(self, job_id: str, numbered_payloads: Iterable[tuple[int, dict[str, Any]]]) -> int:
        """Insert rows with explicit row numbers (used for retry jobs)."""
        records = [
            {
                "import_job_id": job_id,
                "row_number": row_number,
                "raw_data": raw_data,
                "status": ROW_PENDING,
            }
            for row_number, raw_data in numbered_payloads
        ]
        if records:
            self.session.execute(insert(ImportRow), records)
        return len(records)

    # -- processing ------------------------------------------------------

    def iter_chunks(self, job_id: str, chunk_size: int) -> Iterator[list[ImportRow]]:
        """Yield every row of the job in ascending row_number order.

        Keyset pagination on row_number so each chunk is a fresh query and
        earlier chunks can be released from memory.
        """
        last_row_number = 0
        while True:
            statement = (
                select(ImportRow)
                .where(
                    ImportRow.import_job_id == job_id,
                    ImportRow.row_number > last_row_number,
                )
                .order_by(ImportRow.row_number)
                .limit(chunk_size)
            )
            rows = list(self.session.scalars(statement))
            if not rows:
                return
            last_row_number = rows[-1].row_number
            yield rows

    def mark_success(self, row: ImportRow, employee_id: int) -> None:
        row.status = ROW_SUCCESS
        row.employee_id = employee_id
        row.error_message = None
        row.validation_errors = None
        row.processed_at = _now()

    def mark_skipped(self, row: ImportRow, reason: str) -> None:
        row.status = ROW_SKIPPED
        row.error_message = reason
        row.processed_at = _now()

    def mark_error(self, row: ImportRow, error: RowError) -> ImportErrorRecord:
        """Record ``error`` on the row and append it to the job's error log."""
        row.status = error.row_status
        row.error_message = error.message
        row.validation_errors = error.context.get("errors") or {"error": [error.message]}
        row.processed_at = _now()
        record = ImportErrorRecord(
            import_job_id=row.import_job_id,
            row=row,
            row_number=row.row_number,
            error_type=error.error_type,
            error_code=error.code,
            error_message=error.message,
            error_details=error.context,
            raw_data=row.raw_data,
        )
        self.session.add(record)
        return record

    def reset_rows(self, job_id: str) -> int:
        """Delete every row and error of a job so a retry starts clean."""
        self.session.execute(
            delete(ImportErrorRecord).where(ImportErrorRecord.import_job_id == job_id)
        )
        result = self.session.execute(delete(ImportRow).where(ImportRow.import_job_id == job_id))
        return result.rowcount or 0

    def row_number_for_employee(self, job_id: str, employee_id: int) -> int | None:
        return self.session.scalar(
            select(func.min(ImportRow.row_number)).where(
                ImportRow.import_job_id == job_id,
                ImportRow.employee_id == employee_id,
                ImportRow.status == ROW_SUCCESS,
            )
        )

    # -- error log -------------------------------------------------------

    def retryable_errors(self, job_id: str) -> list[ImportErrorRecord]:
        """Latest validation/duplicate error per row number, in row order."""
        statement = (
            select(ImportErrorRecord)
            .where(
                ImportErrorRecord.import_job_id == job_id,
                ImportErrorRecord.error_type.in_(RETRYABLE_ERROR_TYPES),
            )
            .order_by(ImportErrorRecord.row_number, ImportErrorRecord.id)
        )
        latest: dict[int, ImportErrorRecord] = {}
        for record in self.session.scalars(statement):
            latest[record.row_number] = record
        return list(latest.values())

    def count_errors_by_type(self, job_id: str) -> dict[str, int]:
        statement = (
            select(ImportErrorRecord.error_type, func.count(ImportErrorRecord.id))
            .where(ImportErrorRecord.import_job_id == job_id)
            .group_by(ImportErrorRecord.error_type)
        )
        return {error_type: count for error_type, count in self.session.execute(statement)}

    def count_rows_by_status(self, job_id: str) -> dict[str, int]:
        statement = (
            select(ImportRow.status, func.count(ImportRow.id))
            .where(ImportRow.import_job_id == job_id)
            .group_by(ImportRow.status)
        )
        return {status: count for status, count in self.session.execute(statement)}

    # -- pages for reporting -----------------------------------------------

    def page_rows(
        self,
        job_id: str,
        status: str | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> tuple[list[ImportRow], int]:
        statement = select(ImportRow).where(ImportRow.import_job_id == job_id)
        count_statement = select(func.count(ImportRow.id)).where(ImportRow.import_job_id == job_id)
        if status:
            statement = statement.where(ImportRow.status == status)
            count_statement = count_statement.where(ImportRow.status == status)
        page, page_size = clamp_page(page, page_size)
        statement = (
            statement.order_by(ImportRow.row_number)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        total = self.session.scalar(count_statement) or 0
        return list(self.session.scalars(statement)), total

    def page_errors(
        self,
        job_id: str,
        error_type: str | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> tuple[list[ImportErrorRecord], int]:
        statement = select(ImportErrorRecord).where(ImportErrorRecord.import_job_id == job_id)
        count_statement = select(func.count(ImportErrorRecord.id)).where(
            ImportErrorRecord.import_job_id == job_id
        )
        if error_type:
            statement = statement.where(ImportErrorRecord.error_type == error_type)
            count_statement = count_statement.where(ImportErrorRecord.error_type == error_type)
        page, page_size = clamp_page(page, page_size)
        statement = (
            statement.order_by(ImportErrorRecord.row_number, ImportErrorRecord.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        total = self.session.scalar(count_statement) or 0
        return list(self.session.scalars(statement)), total


def clamp_page(page: int, page_size: int) -> tuple[int, int]:
    return max(page, 1), min(max(page_size, 1), MAX_PAGE_SIZE)
