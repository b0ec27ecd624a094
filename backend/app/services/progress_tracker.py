"""Row counters for a running job and the fast progress read path.

The durable counters live on ImportJob; after every chunk a snapshot is
also pushed to a publisher (Redis in production) so dashboards can poll
without touching the database. Readers fall back to the durable counters
when no snapshot is available.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Protocol

from redis import Redis
from redis.exceptions import RedisError

from app.core.config import get_settings
from app.db.models.import_job import ImportJob
from app.db.models.import_row import ROW_DUPLICATE, ROW_FAILED, ROW_SKIPPED, ROW_SUCCESS
from app.services.job_state import ImportJobStateMachine, compute_percentage
from app.utils.redis_client import create_redis_client

logger = logging.getLogger(__name__)

PROGRESS_PREFIX = "import:progress:"


class ProgressPublisher(Protocol):
    def publish(self, job_id: str, snapshot: dict[str, Any]) -> None: ...

    def read(self, job_id: str) -> dict[str, Any] | None: ...

    def clear(self, job_id: str) -> None: ...


class RedisProgressPublisher:
    """Store the latest snapshot under a TTL'd key and announce it on a channel."""

    def __init__(self, client: Redis, ttl_seconds: int, channel: str):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.channel = channel

    @staticmethod
    def _key(job_id: str) -> str:
        return f"{PROGRESS_PREFIX}{job_id}"

    def publish(self, job_id: str, snapshot: dict[str, Any]) -> None:
        payload = json.dumps(snapshot, default=str)
        try:
            pipe = self.client.pipeline()
            pipe.set(self._key(job_id), payload, ex=self.ttl_seconds)
            pipe.publish(
                self.channel,
                json.dumps(
                    {"event": "progress_updated", "job_id": job_id, "data": snapshot},
                    default=str,
                ),
            )
            pipe.execute()
        except RedisError as e:
            # Redis availability should not break ingestion.
            logger.warning(f"Failed to publish progress for job {job_id}: {e}")

    def read(self, job_id: str) -> dict[str, Any] | None:
        try:
            raw = self.client.get(self._key(job_id))
        except RedisError as e:
            logger.warning(f"Failed to read progress for job {job_id}: {e}")
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding unreadable progress snapshot for job {job_id}")
            return None

    def clear(self, job_id: str) -> None:
        try:
            self.client.delete(self._key(job_id))
        except RedisError as e:
            logger.warning(f"Failed to clear progress for job {job_id}: {e}")


class InMemoryProgressPublisher:
    """Process-local publisher for tests and single-process deployments."""

    def __init__(self):
        self._snapshots: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.history: list[tuple[str, dict[str, Any]]] = []

    def publish(self, job_id: str, snapshot: dict[str, Any]) -> None:
        with self._lock:
            self._snapshots[job_id] = dict(snapshot)
            self.history.append((job_id, dict(snapshot)))

    def read(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            snapshot = self._snapshots.get(job_id)
            return dict(snapshot) if snapshot is not None else None

    def clear(self, job_id: str) -> None:
        with self._lock:
            self._snapshots.pop(job_id, None)


@lru_cache
def get_progress_publisher() -> ProgressPublisher:
    settings = get_settings()
    if settings.progress_backend == "memory":
        return InMemoryProgressPublisher()
    client = create_redis_client(settings.redis_url, decode_responses=True)
    return RedisProgressPublisher(
        client,
        ttl_seconds=settings.progress_ttl_seconds,
        channel=settings.progress_channel,
    )


@dataclass
class RowTally:
    """Running counters for one pass over a job's rows."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    duplicate: int = 0
    skipped: int = 0

    def record(self, row_status: str) -> None:
        self.processed += 1
        if row_status == ROW_SUCCESS:
            self.successful += 1
        elif row_status == ROW_FAILED:
            self.failed += 1
        elif row_status == ROW_DUPLICATE:
            self.duplicate += 1
        elif row_status == ROW_SKIPPED:
            self.skipped += 1

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "duplicate": self.duplicate,
            "skipped": self.skipped,
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def build_snapshot(
    job: ImportJob,
    tally: RowTally | None = None,
    status: str | None = None,
) -> dict[str, Any]:
    """Serialize job state; ``tally`` overrides the durable counters."""
    if tally is None:
        processed = job.processed_rows or 0
        counters = {
            "processed_rows": processed,
            "successful_rows": job.successful_rows or 0,
            "failed_rows": job.failed_rows or 0,
            "duplicate_rows": job.duplicate_rows or 0,
        }
        percentage = float(job.progress_percentage or 0)
    else:
        processed = tally.processed
        counters = {
            "processed_rows": tally.processed,
            "successful_rows": tally.successful,
            "failed_rows": tally.failed,
            "duplicate_rows": tally.duplicate,
        }
        percentage = float(compute_percentage(processed, job.total_rows or 0))
    return {
        "job_id": job.id,
        "status": status or job.status,
        "total_rows": job.total_rows or 0,
        **counters,
        "progress_percentage": percentage,
        "error_message": job.error_message,
        "started_at": _iso(job.started_at),
        "completed_at": _iso(job.completed_at),
        "created_at": _iso(job.created_at),
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }


class ProgressTracker:
    def __init__(
        self,
        publisher: ProgressPublisher,
        state_machine: ImportJobStateMachine | None = None,
    ):
        self.publisher = publisher
        self.state_machine = state_machine or ImportJobStateMachine()

    def flush(self, job: ImportJob, tally: RowTally) -> None:
        """Copy the tally onto the job's durable counters (caller commits)."""
        self.state_machine.update_progress(
            job,
            processed=tally.processed,
            successful=tally.successful,
            failed=tally.failed,
            duplicate=tally.duplicate,
        )

    def publish(
        self,
        job: ImportJob,
        tally: RowTally | None = None,
        status: str | None = None,
    ) -> dict[str, Any]:
        snapshot = build_snapshot(job, tally=tally, status=status)
        self.publisher.publish(job.id, snapshot)
        return snapshot

    def get_snapshot(self, job: ImportJob) -> dict[str, Any]:
        """Latest fast-path snapshot, or one built from the durable counters.

        A cached snapshot is ignored once the durable row is terminal and
        the cache still shows a live status, so readers never see a job
        stuck at ``processing`` after it finished.
        """
        snapshot = self.publisher.read(job.id)
        if snapshot is None:
            return build_snapshot(job)
        if job.is_finished and snapshot.get("status") != job.status:
            return build_snapshot(job)
        return snapshot

    def clear(self, job_id: str) -> None:
        self.publisher.clear(job_id)
