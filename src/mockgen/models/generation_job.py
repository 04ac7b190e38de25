"""GenerationJob entity - One generation/variation/upscale request and its retry state."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import NaiveDatetime
from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from mockgen.core.clock import utcnow

ERROR_MAX_LENGTH = 1000


class JobType(str, Enum):
    """Kind of work a job performs."""

    GENERATION = "generation"
    VARIATION = "variation"
    UPSCALE = "upscale"


class JobStatus(str, Enum):
    """Job lifecycle status."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition."""

    pass


def truncate_error(message: str) -> str:
    return message[:ERROR_MAX_LENGTH]


class GenerationJob(SQLModel, table=True):
    """GenerationJob tracks a unit of generation work from enqueue to a terminal state.

    The ``mark_*`` methods enforce the state machine in memory:

        queued -> processing -> completed
                            -> queued (retry, while attempts < max_attempts)
                            -> failed
        queued -> cancelled

    Persisting a transition is the repository's job; it writes the new state with
    a conditional UPDATE on the previous status and attempt number.
    """

    __tablename__ = "generation_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    mockup_id: UUID = Field(foreign_key="mockups.id", index=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    job_type: JobType = Field(default=JobType.GENERATION)
    status: JobStatus = Field(default=JobStatus.QUEUED, index=True)
    priority: int = Field(default=100, index=True)  # lower value is served first

    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)

    # Naive UTC throughout (see core.clock.utcnow)
    queued_at: NaiveDatetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)
    # First dispatch only
    started_at: Optional[NaiveDatetime] = Field(default=None, sa_type=DateTime)
    # Most recent dispatch; the stuck sweep keys on it
    dispatched_at: Optional[NaiveDatetime] = Field(default=None, sa_type=DateTime)
    next_retry_at: Optional[NaiveDatetime] = Field(default=None, index=True, sa_type=DateTime)
    completed_at: Optional[NaiveDatetime] = Field(default=None, sa_type=DateTime)
    failed_at: Optional[NaiveDatetime] = Field(default=None, sa_type=DateTime)
    cancelled_at: Optional[NaiveDatetime] = Field(default=None, sa_type=DateTime)

    estimated_credits: int = Field(default=0, ge=0)
    actual_credits: Optional[int] = Field(default=None)

    error: Optional[str] = Field(default=None, max_length=ERROR_MAX_LENGTH)
    replicate_id: Optional[str] = Field(default=None, max_length=255)
    params: dict = Field(default_factory=dict, sa_column=Column(JSON))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def can_retry(self) -> bool:
        """True when a failed attempt would go back to the queue."""
        return self.attempts < self.max_attempts

    def mark_processing(self, now: datetime) -> None:
        """Claim the job for a dispatch attempt (queued -> processing).

        Raises:
            InvalidStateTransition: If the job is not queued or has no attempts left
        """
        if self.status != JobStatus.QUEUED:
            raise InvalidStateTransition(
                f"Cannot mark processing from {self.status.value}. Job must be queued."
            )
        if self.attempts >= self.max_attempts:
            raise InvalidStateTransition(
                f"Cannot dispatch job with {self.attempts}/{self.max_attempts} attempts used."
            )
        self.status = JobStatus.PROCESSING
        self.attempts += 1
        if self.started_at is None:
            self.started_at = now
        self.dispatched_at = now
        self.next_retry_at = None

    def mark_completed(self, now: datetime) -> None:
        """Transition from processing to completed and finalize credits.

        Raises:
            InvalidStateTransition: If current status is not processing
        """
        if self.status != JobStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot mark completed from {self.status.value}. Job must be processing."
            )
        self.status = JobStatus.COMPLETED
        self.completed_at = now
        self.actual_credits = self.estimated_credits
        self.error = None

    def mark_attempt_failed(
        self, error: str, now: datetime, retry_at: Optional[datetime] = None
    ) -> JobStatus:
        """Record a failed attempt (processing -> queued or failed).

        The job goes back to the queue when attempts remain and a retry time is
        given; otherwise it fails terminally.

        Args:
            error: Failure reason for this attempt (replaces any previous error)
            now: Failure time
            retry_at: Earliest time of the next attempt, or None for no retry

        Returns:
            The resulting status (QUEUED or FAILED)

        Raises:
            InvalidStateTransition: If current status is not processing
        """
        if self.status != JobStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot record failed attempt from {self.status.value}. Job must be processing."
            )
        self.error = truncate_error(error)
        if retry_at is not None and self.can_retry:
            self.status = JobStatus.QUEUED
            self.next_retry_at = retry_at
        else:
            self.status = JobStatus.FAILED
            self.failed_at = now
            self.next_retry_at = None
        return self.status

    def mark_cancelled(self, now: datetime) -> None:
        """Transition from queued to cancelled.

        Raises:
            InvalidStateTransition: If current status is not queued
        """
        if self.status != JobStatus.QUEUED:
            raise InvalidStateTransition(
                f"Cannot cancel job in {self.status.value} state. Only queued jobs can be cancelled."
            )
        self.status = JobStatus.CANCELLED
        self.cancelled_at = now
        self.next_retry_at = None
