"""State transition tests for the GenerationJob model and its repository.

Tests focus on validating the job lifecycle state machine:
- Valid transitions between states
- Invalid transitions are rejected with clear error messages
- Terminal states never transition again
- Persisted transitions are compare-and-swap on status and attempt number
"""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from mockgen.models.generation_job import (
    ERROR_MAX_LENGTH,
    GenerationJob,
    InvalidStateTransition,
    JobStatus,
)

NOW = datetime(2025, 1, 1, 12, 0, 0)


def make_job(**overrides) -> GenerationJob:
    fields = {
        "mockup_id": uuid4(),
        "user_id": uuid4(),
        "queued_at": NOW,
        "estimated_credits": 10,
    }
    fields.update(overrides)
    return GenerationJob(**fields)


class TestJobStateMachine:
    def test_happy_path(self):
        """queued -> processing -> completed."""
        job = make_job()

        job.mark_processing(NOW)
        assert job.status == JobStatus.PROCESSING
        assert job.attempts == 1
        assert job.started_at == NOW
        assert job.dispatched_at == NOW

        done_at = NOW + timedelta(seconds=30)
        job.mark_completed(done_at)
        assert job.status == JobStatus.COMPLETED
        assert job.completed_at == done_at
        assert job.actual_credits == 10
        assert job.is_terminal

    def test_started_at_set_only_on_first_dispatch(self):
        job = make_job()
        job.mark_processing(NOW)
        job.mark_attempt_failed("timeout", NOW, retry_at=NOW + timedelta(seconds=30))

        later = NOW + timedelta(minutes=1)
        job.mark_processing(later)

        assert job.started_at == NOW
        assert job.dispatched_at == later
        assert job.attempts == 2
        assert job.next_retry_at is None

    def test_failed_attempt_with_attempts_left_requeues(self):
        job = make_job()
        job.mark_processing(NOW)
        retry_at = NOW + timedelta(seconds=30)

        status = job.mark_attempt_failed("503 Service Unavailable", NOW, retry_at=retry_at)

        assert status == JobStatus.QUEUED
        assert job.next_retry_at == retry_at
        assert job.error == "503 Service Unavailable"
        assert job.failed_at is None

    def test_failed_attempt_without_retry_time_is_terminal(self):
        job = make_job()
        job.mark_processing(NOW)

        status = job.mark_attempt_failed("Invalid API token", NOW)

        assert status == JobStatus.FAILED
        assert job.failed_at == NOW
        assert job.next_retry_at is None

    def test_last_attempt_fails_terminally_even_with_retry_time(self):
        job = make_job(max_attempts=1)
        job.mark_processing(NOW)

        status = job.mark_attempt_failed("timeout", NOW, retry_at=NOW + timedelta(seconds=30))

        assert status == JobStatus.FAILED
        assert job.attempts == job.max_attempts
        assert job.completed_at is None

    def test_cannot_dispatch_with_no_attempts_left(self):
        job = make_job(max_attempts=1, attempts=1)

        with pytest.raises(InvalidStateTransition) as exc_info:
            job.mark_processing(NOW)

        assert "1/1" in str(exc_info.value)

    def test_error_is_truncated(self):
        job = make_job()
        job.mark_processing(NOW)

        job.mark_attempt_failed("x" * 5000, NOW)

        assert len(job.error) == ERROR_MAX_LENGTH

    def test_cancel_only_from_queued(self):
        job = make_job()
        job.mark_cancelled(NOW)
        assert job.status == JobStatus.CANCELLED
        assert job.cancelled_at == NOW

        processing = make_job()
        processing.mark_processing(NOW)
        with pytest.raises(InvalidStateTransition) as exc_info:
            processing.mark_cancelled(NOW)
        assert "processing" in str(exc_info.value).lower()

    @pytest.mark.parametrize(
        "status", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED]
    )
    def test_cannot_transition_from_terminal_states(self, status):
        job = make_job(status=status)

        with pytest.raises(InvalidStateTransition):
            job.mark_processing(NOW)
        with pytest.raises(InvalidStateTransition):
            job.mark_completed(NOW)
        with pytest.raises(InvalidStateTransition):
            job.mark_attempt_failed("boom", NOW, retry_at=NOW)
        with pytest.raises(InvalidStateTransition):
            job.mark_cancelled(NOW)


@pytest.mark.asyncio
class TestCompareAndSwap:
    async def test_claim_succeeds_once(self, uow_factory, seed_user, seed_job):
        user = await seed_user()
        job = await seed_job(user)

        async with await uow_factory() as uow:
            first = await uow.jobs.get_by_id(job.id)
            assert await uow.jobs.claim(first, NOW) is True

        async with await uow_factory() as uow:
            stale = await uow.jobs.get_by_id(job.id)
            # Simulate a second scheduler that read the row before the first claim
            stale.status = JobStatus.QUEUED
            stale.attempts = 0

            # Entity guard passes, database guard must reject
            assert await uow.jobs.claim(stale, NOW) is False
            assert stale.status == JobStatus.PROCESSING

        async with await uow_factory() as uow:
            stored = await uow.jobs.get_by_id(job.id)
            assert stored.status == JobStatus.PROCESSING
            assert stored.attempts == 1

    async def test_save_transition_rejects_stale_attempt(self, uow_factory, seed_user, seed_job):
        user = await seed_user()
        job = await seed_job(user)

        async with await uow_factory() as uow:
            claimed = await uow.jobs.get_by_id(job.id)
            await uow.jobs.claim(claimed, NOW)

        async with await uow_factory() as uow:
            current = await uow.jobs.get_by_id(job.id)
            current.mark_completed(NOW)

            applied = await uow.jobs.save_transition(current, JobStatus.PROCESSING, 2)

            assert applied is False
            # Reloaded from the database, in-memory change discarded
            assert current.status == JobStatus.PROCESSING
            assert current.completed_at is None

    async def test_dispatch_selection_order_and_eligibility(
        self, uow_factory, seed_user, seed_job
    ):
        user = await seed_user()
        late_low = await seed_job(user, priority=100, queued_at=NOW + timedelta(seconds=2))
        early_low = await seed_job(user, priority=100, queued_at=NOW + timedelta(seconds=1))
        urgent = await seed_job(user, priority=60, queued_at=NOW + timedelta(seconds=3))
        backing_off = await seed_job(user, priority=10, queued_at=NOW)

        async with await uow_factory() as uow:
            job = await uow.jobs.get_by_id(backing_off.id)
            await uow.jobs.claim(job, NOW)
            job.mark_attempt_failed("503", NOW, retry_at=NOW + timedelta(minutes=5))
            await uow.jobs.save_transition(job, JobStatus.PROCESSING, 1)

        async with await uow_factory() as uow:
            eligible = await uow.jobs.get_eligible_for_dispatch(NOW + timedelta(minutes=1))

        assert [j.id for j in eligible] == [urgent.id, early_low.id, late_low.id]

        async with await uow_factory() as uow:
            eligible = await uow.jobs.get_eligible_for_dispatch(NOW + timedelta(minutes=5))

        assert eligible[0].id == backing_off.id
