"""Generation job entry points: enqueue, cancel and read.

Credits are reserved when a job is enqueued and returned if the job ends
failed or cancelled, so a user's balance always reflects work that is queued,
running or done.
"""

from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

import structlog

from mockgen.core.clock import Clock, utcnow
from mockgen.models.generation_job import (
    GenerationJob,
    InvalidStateTransition,
    JobStatus,
    JobType,
)
from mockgen.models.mockup import Mockup, MockupQuality
from mockgen.services.exceptions import (
    AccountNotFoundError,
    InsufficientCreditsError,
    JobNotFoundError,
)
from mockgen.services.generation.pricing import calculate_credits, calculate_job_priority
from mockgen.services.payments.ledger import CreditLedger
from mockgen.uow import UnitOfWork

logger = structlog.get_logger(__name__)


@dataclass
class GenerationRequest:
    """A user's request for one generation job."""

    external_user_id: str
    prompt: str
    job_type: JobType = JobType.GENERATION
    quality: MockupQuality = MockupQuality.STANDARD
    mockup_type: str = "product"
    source_image_url: Optional[str] = None
    variations: int = 1
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class JobSnapshot:
    job: GenerationJob
    mockup: Optional[Mockup]


async def enqueue_generation(
    uow: UnitOfWork,
    request: GenerationRequest,
    max_attempts: int = 3,
    clock: Clock = utcnow,
) -> JobSnapshot:
    """Create a mockup and its queued job, reserving the job's credits.

    Args:
        uow: Unit of Work (the caller's transaction)
        request: What to generate and for whom
        max_attempts: Attempt budget for the job
        clock: Time source

    Returns:
        Snapshot of the new job and mockup

    Raises:
        AccountNotFoundError: User has no ledger account
        InsufficientCreditsError: Balance below the job's cost
    """
    ledger = CreditLedger(uow, clock=clock)
    user = await uow.users.get_by_external_id_for_update(request.external_user_id)
    if user is None:
        raise AccountNotFoundError(f"No account for user {request.external_user_id}")

    credits = calculate_credits(request.job_type, request.quality, request.variations)
    if user.credits_remaining < credits:
        raise InsufficientCreditsError(credits, user.credits_remaining)

    now = clock()
    mockup = await uow.mockups.add(
        Mockup(
            user_id=user.id,
            prompt=request.prompt,
            mockup_type=request.mockup_type,
            quality=request.quality,
            source_image_url=request.source_image_url,
            created_at=now,
        )
    )
    job = await uow.jobs.add(
        GenerationJob(
            mockup_id=mockup.id,
            user_id=user.id,
            job_type=request.job_type,
            priority=calculate_job_priority(request.job_type, user.subscription_tier),
            max_attempts=max_attempts,
            queued_at=now,
            estimated_credits=credits,
            params={**request.params, "variations": request.variations},
        )
    )
    await ledger.reserve_for_job(user, job)

    logger.info(
        "job.enqueued",
        job_id=str(job.id),
        mockup_id=str(mockup.id),
        user_id=str(user.id),
        job_type=job.job_type.value,
        priority=job.priority,
        estimated_credits=credits,
    )
    return JobSnapshot(job=job, mockup=mockup)


async def cancel_job(uow: UnitOfWork, job_id: UUID, clock: Clock = utcnow) -> JobSnapshot:
    """Cancel a queued job and refund its reserved credits.

    Raises:
        JobNotFoundError: No such job
        InvalidStateTransition: Job is not queued (already dispatched or terminal)
    """
    job = await uow.jobs.get_by_id(job_id)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found")

    expected_attempts = job.attempts
    job.mark_cancelled(clock())
    if not await uow.jobs.save_transition(job, JobStatus.QUEUED, expected_attempts):
        raise InvalidStateTransition(
            f"Cannot cancel job in {job.status.value} state. Only queued jobs can be cancelled."
        )

    mockup = await uow.mockups.get_by_id(job.mockup_id)
    if mockup is not None:
        mockup.mark_cancelled()
        await uow.mockups.save(mockup)

    await CreditLedger(uow, clock=clock).refund_job(job, reason="cancelled")
    logger.info("job.cancelled", job_id=str(job.id), attempts=job.attempts)
    return JobSnapshot(job=job, mockup=mockup)


async def get_job_snapshot(
    uow: UnitOfWork, job_id: Optional[UUID] = None, mockup_id: Optional[UUID] = None
) -> JobSnapshot:
    """Current state of a job and its mockup, looked up by job id or mockup id.

    Raises:
        ValueError: Neither id given
        JobNotFoundError: Nothing matches
    """
    if job_id is None and mockup_id is None:
        raise ValueError("job_id or mockup_id is required")

    if job_id is not None:
        job = await uow.jobs.get_by_id(job_id)
    else:
        job = await uow.jobs.get_latest_for_mockup(mockup_id)  # type: ignore[arg-type]

    if job is None:
        raise JobNotFoundError(f"No job found for job_id={job_id} mockup_id={mockup_id}")

    mockup = await uow.mockups.get_by_id(job.mockup_id)
    return JobSnapshot(job=job, mockup=mockup)


async def list_jobs(
    uow: UnitOfWork, job_ids: list[UUID], mockup_ids: list[UUID]
) -> list[GenerationJob]:
    """Jobs matching any of the given ids (the progress tracker's fetch)."""
    return await uow.jobs.get_many(job_ids=job_ids, mockup_ids=mockup_ids)
