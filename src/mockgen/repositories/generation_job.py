"""GenerationJob repository.

Provides data access for generation jobs. Every status transition is persisted
with a conditional (compare-and-swap) UPDATE so that two schedulers, or a
scheduler and a user cancelling, can never both win the same transition.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mockgen.models.generation_job import GenerationJob, JobStatus

# Columns written by a state transition
TRANSITION_COLUMNS = (
    "status",
    "attempts",
    "started_at",
    "dispatched_at",
    "next_retry_at",
    "completed_at",
    "failed_at",
    "cancelled_at",
    "actual_credits",
    "error",
    "replicate_id",
)


class GenerationJobRepository:
    """Repository for GenerationJob entities.

    Dispatch selection uses FOR UPDATE SKIP LOCKED so concurrent scheduler
    instances receive non-overlapping batches; the claim itself is still a
    conditional update, which is what guarantees exclusivity.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, job_id: UUID) -> GenerationJob | None:
        result = await self.session.execute(
            select(GenerationJob).where(GenerationJob.id == job_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_latest_for_mockup(self, mockup_id: UUID) -> GenerationJob | None:
        """Most recently queued job for a mockup."""
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.mockup_id == mockup_id)  # type: ignore[arg-type]
            .order_by(GenerationJob.queued_at.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_many(
        self, job_ids: list[UUID] | None = None, mockup_ids: list[UUID] | None = None
    ) -> list[GenerationJob]:
        """Jobs matching any of the given job ids or mockup ids."""
        conditions = []
        if job_ids:
            conditions.append(GenerationJob.id.in_(job_ids))  # type: ignore[attr-defined]
        if mockup_ids:
            conditions.append(GenerationJob.mockup_id.in_(mockup_ids))  # type: ignore[attr-defined]
        if not conditions:
            return []
        result = await self.session.execute(
            select(GenerationJob)
            .where(or_(*conditions))
            .order_by(GenerationJob.queued_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Persist new job to database."""
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_eligible_for_dispatch(self, now: datetime, limit: int = 10) -> list[GenerationJob]:
        """Retrieve jobs ready to run, in dispatch order.

        Query explanation:
        - WHERE status = 'queued': Waiting jobs only
        - AND (next_retry_at IS NULL OR next_retry_at <= now): Backoff has elapsed
        - ORDER BY priority ASC, queued_at ASC: Lower priority value first, FIFO within a band
        - FOR UPDATE SKIP LOCKED: Skip rows another scheduler is selecting

        Args:
            now: Current time (naive UTC)
            limit: Maximum number of jobs to retrieve

        Returns:
            Jobs in dispatch order
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.status == JobStatus.QUEUED,  # type: ignore[arg-type]
                or_(
                    GenerationJob.next_retry_at.is_(None),  # type: ignore[union-attr]
                    GenerationJob.next_retry_at <= now,  # type: ignore[operator]
                ),
            )
            .order_by(
                GenerationJob.priority.asc(),  # type: ignore[attr-defined]
                GenerationJob.queued_at.asc(),  # type: ignore[attr-defined]
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def get_stuck(self, dispatched_before: datetime, limit: int = 100) -> list[GenerationJob]:
        """Retrieve processing jobs whose latest dispatch is older than the cutoff."""
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.status == JobStatus.PROCESSING,  # type: ignore[arg-type]
                GenerationJob.dispatched_at < dispatched_before,  # type: ignore[operator]
            )
            .order_by(GenerationJob.dispatched_at.asc())  # type: ignore[union-attr]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def claim(self, job: GenerationJob, now: datetime) -> bool:
        """Atomically move a queued job to processing for one dispatch attempt.

        Returns:
            True if this caller owns the attempt, False if another caller
            claimed or cancelled the job first (``job`` is reloaded either way)
        """
        expected_attempts = job.attempts
        job.mark_processing(now)
        return await self._compare_and_set(
            job,
            JobStatus.QUEUED,
            expected_attempts,
            GenerationJob.attempts < GenerationJob.max_attempts,  # type: ignore[operator]
        )

    async def save_transition(
        self, job: GenerationJob, expected_status: JobStatus, expected_attempts: int
    ) -> bool:
        """Persist an in-memory transition if the row is still in the expected state.

        Args:
            job: Job already moved to its new state by one of its ``mark_*`` methods
            expected_status: Status the row must still have
            expected_attempts: Attempt number the row must still have

        Returns:
            True if the row was updated, False if it had moved on (``job`` is
            reloaded from the database either way)
        """
        return await self._compare_and_set(job, expected_status, expected_attempts)

    async def _compare_and_set(
        self,
        job: GenerationJob,
        expected_status: JobStatus,
        expected_attempts: int,
        *conditions: Any,
    ) -> bool:
        values = {name: getattr(job, name) for name in TRANSITION_COLUMNS}
        stmt = (
            update(GenerationJob)
            .where(
                GenerationJob.id == job.id,  # type: ignore[arg-type]
                GenerationJob.status == expected_status,  # type: ignore[arg-type]
                GenerationJob.attempts == expected_attempts,  # type: ignore[arg-type]
                *conditions,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        # The in-memory job must not be flushed unconditionally ahead of the CAS
        with self.session.no_autoflush:
            result = await self.session.execute(stmt)
        applied = result.rowcount == 1  # type: ignore[attr-defined]
        await self.session.refresh(job)
        return applied

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(GenerationJob.status, func.count()).group_by(GenerationJob.status)
        )
        return {status.value: count for status, count in result.all()}
