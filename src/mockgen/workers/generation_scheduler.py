"""Generation job scheduler.

Polls for queued jobs that are due, dispatches them through the
generation-service circuit breaker, and records each outcome.

Job lifecycle:

    queued -> processing -> completed
                         -> queued      (failed attempt, attempts < max_attempts)
                         -> failed      (attempts exhausted, or a permanent error)

Every transition is a conditional UPDATE on the job's previous status and
attempt number:
- the claim (queued -> processing) succeeds for exactly one scheduler, so a job
  is never dispatched twice concurrently;
- an outcome is only recorded if the job is still in the attempt that produced
  it, so a late result from an attempt the stuck-job sweep already gave up on
  is discarded.

Each job is processed in its own short transactions (claim, then outcome); the
generation call itself runs outside any transaction. Reserved credits are
refunded in the same transaction that marks a job terminally failed.
"""

import asyncio
import functools
import random
from dataclasses import asdict, dataclass
from datetime import timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional
from uuid import UUID

import structlog

from mockgen.core.clock import Clock, monotonic, utcnow
from mockgen.core.config import GENERATION_SERVICE, Settings
from mockgen.models.generation_job import GenerationJob, JobStatus
from mockgen.services.exceptions import PermanentError
from mockgen.services.generation.replicate_client import GenerateFn, GenerationOutput
from mockgen.services.generation.retry_policy import RetryPolicy
from mockgen.services.payments.ledger import CreditLedger
from mockgen.services.resilience.circuit_breaker import CircuitBreakerRegistry
from mockgen.uow import UnitOfWork

logger = structlog.get_logger(__name__)

STUCK_JOB_ERROR = "Job exceeded processing timeout"


class DispatchOutcome(str, Enum):
    COMPLETED = "completed"
    RETRIED = "retried"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class DispatchSummary:
    """Counts for one dispatch pass."""

    selected: int = 0
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0

    def record(self, outcome: DispatchOutcome) -> None:
        if outcome != DispatchOutcome.SKIPPED:
            self.claimed += 1
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)


class JobScheduler:
    """Dispatches due generation jobs and sweeps stuck ones."""

    def __init__(
        self,
        uow_factory: Callable[[], Awaitable[UnitOfWork]],
        generate: GenerateFn,
        breakers: CircuitBreakerRegistry,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: int = 10,
        concurrency: int = 4,
        stuck_job_timeout_seconds: float = 600,
        clock: Clock = utcnow,
        rng: Optional[random.Random] = None,
    ):
        self._uow_factory = uow_factory
        self._generate = generate
        self._breakers = breakers
        self._retry_policy = retry_policy or RetryPolicy()
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)
        self.stuck_job_timeout_seconds = stuck_job_timeout_seconds
        self._clock = clock
        self._rng = rng

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        uow_factory: Callable[[], Awaitable[UnitOfWork]],
        generate: GenerateFn,
        breakers: CircuitBreakerRegistry,
        **kwargs,
    ) -> "JobScheduler":
        return cls(
            uow_factory,
            generate,
            breakers,
            retry_policy=RetryPolicy.from_settings(settings),
            batch_size=settings.worker_batch_size,
            concurrency=settings.worker_concurrency,
            stuck_job_timeout_seconds=settings.stuck_job_timeout_seconds,
            **kwargs,
        )

    async def dispatch_eligible_jobs(self) -> DispatchSummary:
        """Dispatch one batch of due jobs, highest priority (lowest value) first.

        Jobs are processed concurrently up to ``concurrency``; each job succeeds
        or fails independently of the others in the batch.
        """
        summary = DispatchSummary()

        async with await self._uow_factory() as uow:
            jobs = await uow.jobs.get_eligible_for_dispatch(self._clock(), limit=self.batch_size)
            job_ids = [job.id for job in jobs]

        summary.selected = len(job_ids)
        if not job_ids:
            return summary

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _run(job_id: UUID) -> DispatchOutcome:
            async with semaphore:
                return await self.process_job(job_id)

        results = await asyncio.gather(*(_run(job_id) for job_id in job_ids), return_exceptions=True)

        for job_id, result in zip(job_ids, results):
            if isinstance(result, BaseException):
                summary.errors += 1
                logger.error(
                    "job.dispatch.error",
                    job_id=str(job_id),
                    error=str(result),
                    error_type=type(result).__name__,
                )
            else:
                summary.record(result)

        return summary

    async def process_job(self, job_id: UUID) -> DispatchOutcome:
        """Claim one job, run its generation call and record the outcome."""
        async with await self._uow_factory() as uow:
            now = self._clock()
            job = await uow.jobs.get_by_id(job_id)
            if job is None or not self._is_due(job, now):
                return DispatchOutcome.SKIPPED

            if not await uow.jobs.claim(job, now):
                logger.info("job.claim_lost", job_id=str(job_id), status=job.status.value)
                return DispatchOutcome.SKIPPED

            mockup = await uow.mockups.get_by_id(job.mockup_id)
            if mockup is not None:
                mockup.mark_processing()
                await uow.mockups.save(mockup)

        attempt = job.attempts
        logger.info(
            "job.dispatch.started",
            job_id=str(job.id),
            job_type=job.job_type.value,
            attempt=attempt,
            max_attempts=job.max_attempts,
            priority=job.priority,
        )

        try:
            output = await self._breakers.execute(
                GENERATION_SERVICE, functools.partial(self._generate, job, mockup)
            )
        except PermanentError as e:
            return await self._record_failure(job_id, attempt, e, retryable=False)
        except Exception as e:
            # Transient errors, open breaker, breaker timeout and anything unexpected
            return await self._record_failure(job_id, attempt, e, retryable=True)

        return await self._record_success(job_id, attempt, output)

    def _is_due(self, job: GenerationJob, now) -> bool:
        if job.status != JobStatus.QUEUED or job.attempts >= job.max_attempts:
            return False
        return job.next_retry_at is None or job.next_retry_at <= now

    async def _record_success(
        self, job_id: UUID, attempt: int, output: GenerationOutput
    ) -> DispatchOutcome:
        async with await self._uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
            if job is None or job.status != JobStatus.PROCESSING or job.attempts != attempt:
                self._log_stale(job_id, attempt, job)
                return DispatchOutcome.SKIPPED

            job.mark_completed(self._clock())
            job.replicate_id = output.prediction_id
            if not await uow.jobs.save_transition(job, JobStatus.PROCESSING, attempt):
                self._log_stale(job_id, attempt, job)
                return DispatchOutcome.SKIPPED

            mockup = await uow.mockups.get_by_id(job.mockup_id)
            if mockup is not None:
                mockup.mark_completed(output.image_url, output.generation_time_ms)
                await uow.mockups.save(mockup)

        logger.info(
            "job.dispatch.succeeded",
            job_id=str(job_id),
            attempt=attempt,
            image_url=output.image_url,
            generation_time_ms=output.generation_time_ms,
            actual_credits=job.actual_credits,
        )
        return DispatchOutcome.COMPLETED

    async def _record_failure(
        self, job_id: UUID, attempt: int, error: Exception, retryable: bool
    ) -> DispatchOutcome:
        async with await self._uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
            if job is None or job.status != JobStatus.PROCESSING or job.attempts != attempt:
                self._log_stale(job_id, attempt, job)
                return DispatchOutcome.SKIPPED

            message = str(error) or type(error).__name__
            return await self._fail_attempt(
                uow, job, message, retryable=retryable, error_type=type(error).__name__
            )

    async def _fail_attempt(
        self,
        uow: UnitOfWork,
        job: GenerationJob,
        error: str,
        retryable: bool,
        error_type: str,
    ) -> DispatchOutcome:
        """Turn the current processing attempt into a retry or a terminal failure."""
        now = self._clock()
        attempt = job.attempts
        retry_at = None
        if retryable and job.can_retry:
            retry_at = self._retry_policy.next_retry_at(attempt, now, self._rng)

        status = job.mark_attempt_failed(error, now, retry_at)
        if not await uow.jobs.save_transition(job, JobStatus.PROCESSING, attempt):
            self._log_stale(job.id, attempt, job)
            return DispatchOutcome.SKIPPED

        if status == JobStatus.QUEUED:
            logger.warning(
                "job.dispatch.retry_scheduled",
                job_id=str(job.id),
                attempt=attempt,
                max_attempts=job.max_attempts,
                next_retry_at=job.next_retry_at.isoformat() if job.next_retry_at else None,
                error_type=error_type,
                error_message=error,
            )
            return DispatchOutcome.RETRIED

        mockup = await uow.mockups.get_by_id(job.mockup_id)
        if mockup is not None:
            mockup.mark_failed(error)
            await uow.mockups.save(mockup)
        await CreditLedger(uow, clock=self._clock).refund_job(job, reason="generation failed")

        logger.error(
            "job.dispatch.failed",
            job_id=str(job.id),
            attempt=attempt,
            max_attempts=job.max_attempts,
            error_type=error_type,
            error_message=error,
            permanent=not retryable,
        )
        return DispatchOutcome.FAILED

    def _log_stale(self, job_id: UUID, attempt: int, job: Optional[GenerationJob]) -> None:
        logger.warning(
            "job.dispatch.stale_result_discarded",
            job_id=str(job_id),
            attempt=attempt,
            current_status=job.status.value if job else None,
            current_attempt=job.attempts if job else None,
        )

    async def find_stuck_jobs(self) -> list[GenerationJob]:
        """Processing jobs whose latest dispatch is older than the stuck-job timeout."""
        cutoff = self._clock() - timedelta(seconds=self.stuck_job_timeout_seconds)
        async with await self._uow_factory() as uow:
            return await uow.jobs.get_stuck(cutoff)

    async def sweep_stuck_jobs(self) -> int:
        """Convert stuck processing jobs into failed attempts (retry or terminal).

        Returns:
            Number of jobs recovered
        """
        recovered = 0
        for stuck in await self.find_stuck_jobs():
            async with await self._uow_factory() as uow:
                job = await uow.jobs.get_by_id(stuck.id)
                if (
                    job is None
                    or job.status != JobStatus.PROCESSING
                    or job.attempts != stuck.attempts
                ):
                    continue
                outcome = await self._fail_attempt(
                    uow, job, STUCK_JOB_ERROR, retryable=True, error_type="StuckJob"
                )
            if outcome != DispatchOutcome.SKIPPED:
                recovered += 1

        if recovered:
            logger.warning("scheduler.stuck_jobs_recovered", count=recovered)
        return recovered


async def run_generation_scheduler(scheduler: JobScheduler, settings: Settings) -> None:
    """Main scheduler loop.

    Workflow:
    1. Sweep stuck jobs left behind by a previous crash
    2. Each tick: sweep again if the sweep interval has elapsed, then dispatch a batch
    3. Sleep POLL_INTERVAL_SECONDS between ticks
    4. Propagate CancelledError for graceful shutdown

    Args:
        scheduler: Configured JobScheduler
        settings: Application settings (poll and sweep intervals)
    """
    await scheduler.sweep_stuck_jobs()
    last_sweep = monotonic()

    logger.info(
        "scheduler.started",
        poll_interval=settings.poll_interval_seconds,
        batch_size=scheduler.batch_size,
        concurrency=scheduler.concurrency,
        stuck_job_timeout=scheduler.stuck_job_timeout_seconds,
    )

    try:
        while True:
            try:
                if monotonic() - last_sweep >= settings.stuck_sweep_interval_seconds:
                    await scheduler.sweep_stuck_jobs()
                    last_sweep = monotonic()

                summary = await scheduler.dispatch_eligible_jobs()
                if summary.selected:
                    logger.info("scheduler.tick", **asdict(summary))

                await asyncio.sleep(settings.poll_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                # Unexpected error in polling loop - log and continue with backoff
                logger.error(
                    "scheduler.error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("scheduler.stopped")
        raise
