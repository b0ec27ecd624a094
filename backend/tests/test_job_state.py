"""ImportJobStateMachine: legal transitions and counter invariants."""

from decimal import Decimal

import pytest

from app.core.exceptions import IllegalTransitionError, InvalidProgressError
from app.db.models.import_job import ImportJob
from app.services.job_state import compute_percentage


def _job(status="pending", total=10, **values):
    return ImportJob(
        id="job-1",
        original_filename="employees.csv",
        file_path="/tmp/employees.csv",
        status=status,
        total_rows=total,
        processed_rows=values.get("processed", 0),
        successful_rows=values.get("successful", 0),
        failed_rows=values.get("failed", 0),
        duplicate_rows=values.get("duplicate", 0),
        progress_percentage=Decimal("0"),
    )


class TestStart:
    def test_start_from_pending(self, state_machine):
        job = _job(processed=4, successful=4)

        state_machine.start(job)

        assert job.status == "processing"
        assert job.started_at is not None
        assert job.processed_rows == 0
        assert job.successful_rows == 0

    def test_each_start_gets_a_new_run_id(self, state_machine):
        job = _job()

        state_machine.start(job)
        first = job.run_id
        job.status = "pending"
        state_machine.start(job)

        assert first is not None
        assert job.run_id not in (None, first)

    @pytest.mark.parametrize("status", ["processing", "completed", "failed", "cancelled"])
    def test_start_is_only_legal_from_pending(self, state_machine, status):
        with pytest.raises(IllegalTransitionError) as excinfo:
            state_machine.start(_job(status=status))

        assert excinfo.value.action == "start"
        assert excinfo.value.current_status == status


class TestUpdateProgress:
    def test_updates_counters_and_percentage(self, state_machine):
        job = _job(status="processing", total=3)

        state_machine.update_progress(job, processed=2, successful=1, failed=1, duplicate=0)

        assert job.processed_rows == 2
        assert job.progress_percentage == Decimal("66.67")

    def test_rejected_outside_processing(self, state_machine):
        with pytest.raises(IllegalTransitionError):
            state_machine.update_progress(_job(), processed=1, successful=1, failed=0, duplicate=0)

    def test_processed_cannot_exceed_total(self, state_machine):
        job = _job(status="processing", total=2)

        with pytest.raises(InvalidProgressError, match="cannot exceed total rows"):
            state_machine.update_progress(job, processed=3, successful=3, failed=0, duplicate=0)

    def test_outcomes_cannot_exceed_processed(self, state_machine):
        job = _job(status="processing")

        with pytest.raises(InvalidProgressError):
            state_machine.update_progress(job, processed=2, successful=2, failed=1, duplicate=0)

    def test_counters_never_move_backwards(self, state_machine):
        job = _job(status="processing", processed=5, successful=3, failed=2)

        with pytest.raises(InvalidProgressError, match="must not decrease"):
            state_machine.update_progress(job, processed=6, successful=2, failed=2, duplicate=2)
        assert job.processed_rows == 5

    def test_negative_values(self, state_machine):
        with pytest.raises(InvalidProgressError, match="negative"):
            state_machine.update_progress(
                _job(status="processing"), processed=-1, successful=0, failed=0, duplicate=0
            )


class TestTerminalTransitions:
    def test_complete(self, state_machine):
        job = _job(status="processing")

        state_machine.complete(job)

        assert job.status == "completed"
        assert job.progress_percentage == Decimal("100")
        assert job.completed_at is not None

    def test_complete_requires_processing(self, state_machine):
        with pytest.raises(IllegalTransitionError):
            state_machine.complete(_job())

    @pytest.mark.parametrize("status", ["pending", "processing"])
    def test_fail_from_non_terminal(self, state_machine, status):
        job = _job(status=status)

        state_machine.fail(job, "disk on fire")

        assert job.status == "failed"
        assert job.error_message == "disk on fire"

    @pytest.mark.parametrize("status", ["completed", "failed", "cancelled"])
    def test_terminal_states_are_absorbing(self, state_machine, status):
        job = _job(status=status)

        for transition in (
            state_machine.start,
            state_machine.complete,
            state_machine.cancel,
            lambda j: state_machine.fail(j, "late failure"),
        ):
            with pytest.raises(IllegalTransitionError):
                transition(job)
        assert job.status == status

    def test_cancel_finished_job_is_rejected(self, state_machine):
        with pytest.raises(IllegalTransitionError, match="Cannot cancel finished jobs"):
            state_machine.cancel(_job(status="completed"))

    @pytest.mark.parametrize("status", ["pending", "processing"])
    def test_cancel_live_job(self, state_machine, status):
        job = _job(status=status)

        state_machine.cancel(job)

        assert job.status == "cancelled"


class TestResetForRetry:
    @pytest.mark.parametrize("status", ["failed", "cancelled"])
    def test_resets_to_pending(self, state_machine, status):
        job = _job(status=status, processed=4, successful=2, failed=2)
        job.error_message = "boom"
        job.run_id = "old-run"

        state_machine.reset_for_retry(job)

        assert job.status == "pending"
        assert job.processed_rows == 0
        assert job.failed_rows == 0
        assert job.error_message is None
        assert job.started_at is None
        assert job.completed_at is None
        assert job.run_id is None

    @pytest.mark.parametrize("status", ["pending", "processing", "completed"])
    def test_retry_rejected_for_other_states(self, state_machine, status):
        with pytest.raises(IllegalTransitionError):
            state_machine.reset_for_retry(_job(status=status))


def test_compute_percentage():
    assert compute_percentage(0, 0) == Decimal("0.00")
    assert compute_percentage(1, 3) == Decimal("33.33")
    assert compute_percentage(3, 3) == Decimal("100.00")
