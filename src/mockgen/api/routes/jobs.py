"""Generation job API endpoints.

This module implements REST endpoints for generation jobs:
- POST /jobs - Enqueue a generation job (reserves credits)
- POST /jobs/{job_id}/cancel - Cancel a queued job (refunds credits)
- GET /jobs?jobId=<id> or ?mockupId=<id> - Job and mockup snapshot
- GET /jobs/progress?jobIds=a,b&mockupIds=c - Aggregated progress for a batch
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from mockgen.api.dependencies import RateLimit, get_settings, get_uow_factory
from mockgen.core.config import Settings
from mockgen.models.generation_job import GenerationJob, InvalidStateTransition, JobType
from mockgen.models.mockup import Mockup, MockupQuality
from mockgen.services.exceptions import (
    AccountNotFoundError,
    InsufficientCreditsError,
    JobNotFoundError,
)
from mockgen.services.jobs import (
    GenerationRequest,
    JobSnapshot,
    cancel_job,
    enqueue_generation,
    get_job_snapshot,
    list_jobs,
)
from mockgen.services.progress import summarize

logger = structlog.get_logger()
router = APIRouter(prefix="/jobs", tags=["jobs"])


# Request/Response Models


class EnqueueJobRequest(BaseModel):
    """Request model for enqueueing a generation job."""

    user_id: str = Field(
        ...,
        description="Commerce platform user id",
        min_length=1,
    )
    prompt: str = Field(
        ...,
        description="Generation prompt",
        min_length=1,
        max_length=1000,
    )
    job_type: JobType = Field(default=JobType.GENERATION)
    quality: MockupQuality = Field(default=MockupQuality.STANDARD)
    mockup_type: str = Field(default="product", max_length=100)
    source_image_url: Optional[str] = Field(
        default=None,
        description="Uploaded product image to place in the mockup",
    )
    variations: int = Field(default=1, ge=1, le=10)
    params: dict[str, Any] = Field(
        default_factory=dict,
        description="Extra generation inputs (negative_prompt, seed, batch index)",
    )


class JobDTO(BaseModel):
    """Data Transfer Object for job state in API responses."""

    id: UUID
    mockup_id: UUID
    job_type: str
    status: str
    priority: int
    attempts: int
    max_attempts: int
    queued_at: datetime
    started_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    estimated_credits: int
    actual_credits: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_job(cls, job: GenerationJob) -> "JobDTO":
        return cls(
            id=job.id,
            mockup_id=job.mockup_id,
            job_type=job.job_type.value,
            status=job.status.value,
            priority=job.priority,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            queued_at=job.queued_at,
            started_at=job.started_at,
            next_retry_at=job.next_retry_at,
            completed_at=job.completed_at,
            failed_at=job.failed_at,
            cancelled_at=job.cancelled_at,
            estimated_credits=job.estimated_credits,
            actual_credits=job.actual_credits,
            error=job.error,
        )


class MockupDTO(BaseModel):
    """Data Transfer Object for mockup state in API responses."""

    id: UUID
    status: str
    quality: str
    mockup_type: str
    image_url: Optional[str] = None
    error: Optional[str] = None
    generation_time_ms: Optional[int] = None
    created_at: datetime

    @classmethod
    def from_mockup(cls, mockup: Mockup) -> "MockupDTO":
        return cls(
            id=mockup.id,
            status=mockup.status.value,
            quality=mockup.quality.value,
            mockup_type=mockup.mockup_type,
            image_url=mockup.image_url,
            error=mockup.error,
            generation_time_ms=mockup.generation_time_ms,
            created_at=mockup.created_at,
        )


class JobSnapshotResponse(BaseModel):
    """Response model for a job and the mockup it produces."""

    job: JobDTO
    mockup: Optional[MockupDTO] = None

    @classmethod
    def from_snapshot(cls, snapshot: JobSnapshot) -> "JobSnapshotResponse":
        return cls(
            job=JobDTO.from_job(snapshot.job),
            mockup=MockupDTO.from_mockup(snapshot.mockup) if snapshot.mockup else None,
        )


class JobProgressDTO(BaseModel):
    job_id: UUID
    mockup_id: UUID
    status: str
    progress: int = Field(..., ge=0, le=100)
    attempts: int
    max_attempts: int
    error: Optional[str] = None
    next_retry_at: Optional[datetime] = None


class ProgressResponse(BaseModel):
    """Response model for aggregated batch progress."""

    jobs: list[JobProgressDTO]
    total: int
    overall_progress: int = Field(..., ge=0, le=100)
    counts: dict[str, int]
    all_terminal: bool


def _parse_id_list(raw: Optional[str], name: str) -> list[UUID]:
    if not raw:
        return []
    try:
        return [UUID(part.strip()) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{name} must be a comma-separated list of UUIDs",
        )


# API Endpoints


@router.post(
    "",
    response_model=JobSnapshotResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(RateLimit("jobs"))],
)
async def create_job(
    request: EnqueueJobRequest,
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> JobSnapshotResponse:
    """Enqueue a generation job and reserve its credits.

    HTTP Status Codes:
        201: Job queued
        402: Not enough credits
        404: No ledger account for the user
        429: Rate limit exceeded
    """
    generation_request = GenerationRequest(
        external_user_id=request.user_id,
        prompt=request.prompt,
        job_type=request.job_type,
        quality=request.quality,
        mockup_type=request.mockup_type,
        source_image_url=request.source_image_url,
        variations=request.variations,
        params=request.params,
    )

    try:
        async with await uow_factory() as uow:
            snapshot = await enqueue_generation(
                uow, generation_request, max_attempts=settings.job_max_attempts
            )
    except AccountNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InsufficientCreditsError as e:
        logger.info(
            "job.enqueue_rejected",
            user_id=request.user_id,
            required=e.required,
            available=e.available,
        )
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": "Insufficient credits",
                "required": e.required,
                "available": e.available,
            },
        )

    return JobSnapshotResponse.from_snapshot(snapshot)


@router.post(
    "/{job_id}/cancel",
    response_model=JobSnapshotResponse,
    dependencies=[Depends(RateLimit("jobs"))],
)
async def cancel_queued_job(
    job_id: UUID,
    uow_factory=Depends(get_uow_factory),
) -> JobSnapshotResponse:
    """Cancel a job that has not been dispatched yet.

    HTTP Status Codes:
        200: Job cancelled and credits refunded
        404: Job not found
        409: Job already dispatched or finished
    """
    try:
        async with await uow_factory() as uow:
            snapshot = await cancel_job(uow, job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidStateTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return JobSnapshotResponse.from_snapshot(snapshot)


@router.get(
    "/progress",
    response_model=ProgressResponse,
    dependencies=[Depends(RateLimit("status"))],
)
async def get_progress(
    job_ids: Optional[str] = Query(default=None, alias="jobIds"),
    mockup_ids: Optional[str] = Query(default=None, alias="mockupIds"),
    uow_factory=Depends(get_uow_factory),
) -> ProgressResponse:
    """Aggregated progress for a batch of jobs.

    Always returns 200; ids that match nothing are simply absent from the report.
    """
    parsed_job_ids = _parse_id_list(job_ids, "jobIds")
    parsed_mockup_ids = _parse_id_list(mockup_ids, "mockupIds")
    if not parsed_job_ids and not parsed_mockup_ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="jobIds or mockupIds is required",
        )

    async with await uow_factory() as uow:
        jobs = await list_jobs(uow, parsed_job_ids, parsed_mockup_ids)

    report = summarize(jobs)
    return ProgressResponse(
        jobs=[
            JobProgressDTO(
                job_id=entry.job_id,
                mockup_id=entry.mockup_id,
                status=entry.status.value,
                progress=entry.progress,
                attempts=entry.attempts,
                max_attempts=entry.max_attempts,
                error=entry.error,
                next_retry_at=entry.next_retry_at,
            )
            for entry in report.jobs
        ],
        total=report.total,
        overall_progress=report.overall_progress,
        counts=report.counts,
        all_terminal=report.all_terminal,
    )


@router.get(
    "",
    response_model=JobSnapshotResponse,
    dependencies=[Depends(RateLimit("status"))],
)
async def get_job(
    job_id: Optional[UUID] = Query(default=None, alias="jobId"),
    mockup_id: Optional[UUID] = Query(default=None, alias="mockupId"),
    uow_factory=Depends(get_uow_factory),
) -> JobSnapshotResponse:
    """Current job and mockup state, by job id or mockup id.

    HTTP Status Codes:
        200: Snapshot returned
        400: Neither jobId nor mockupId given
        404: No matching job
    """
    if job_id is None and mockup_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="jobId or mockupId is required",
        )

    try:
        async with await uow_factory() as uow:
            snapshot = await get_job_snapshot(uow, job_id=job_id, mockup_id=mockup_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return JobSnapshotResponse.from_snapshot(snapshot)
