"""Queue-backed dispatcher handed to ImportService by the API."""

from app.workers.celery_app import IMPORT_QUEUE
from app.workers.tasks.import_jobs import retry_failed_rows_task, run_import_task


class CeleryImportDispatcher:
    def dispatch_import(self, job_id: str) -> None:
        run_import_task.apply_async(args=(job_id,), queue=IMPORT_QUEUE)

    def dispatch_retry(self, job_id: str) -> None:
        retry_failed_rows_task.apply_async(args=(job_id,), queue=IMPORT_QUEUE)
