"""Progress tracking for batches of generation jobs.

Progress is derived from job status alone (the generation service reports no
intermediate progress). The tracker polls job state, remembers which jobs it
has already reported as finished, and batches finish notifications so that at
most one goes out per notification window.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional
from uuid import UUID

import structlog

from mockgen.core.clock import MonotonicClock, monotonic
from mockgen.models.generation_job import TERMINAL_STATUSES, GenerationJob, JobStatus

logger = structlog.get_logger(__name__)

PROGRESS_BY_STATUS = {
    JobStatus.QUEUED: 0,
    JobStatus.PROCESSING: 50,
    JobStatus.COMPLETED: 100,
    JobStatus.FAILED: 0,
    JobStatus.CANCELLED: 0,
}


def job_progress(status: JobStatus) -> int:
    """Coarse completion percentage for a job status."""
    return PROGRESS_BY_STATUS[status]


@dataclass(frozen=True)
class JobProgress:
    job_id: UUID
    mockup_id: UUID
    status: JobStatus
    progress: int
    attempts: int
    max_attempts: int
    error: Optional[str] = None
    next_retry_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class ProgressReport:
    jobs: list[JobProgress]
    overall_progress: int
    counts: dict[str, int]
    all_terminal: bool

    @property
    def total(self) -> int:
        return len(self.jobs)


@dataclass(frozen=True)
class ProgressNotification:
    """Summary of jobs that finished since the previous notification."""

    completed: int
    failed: int
    cancelled: int
    job_ids: list[UUID] = field(default_factory=list)
    all_terminal: bool = False

    @property
    def total(self) -> int:
        return self.completed + self.failed + self.cancelled


def summarize(jobs: Iterable[GenerationJob]) -> ProgressReport:
    """Aggregate job state into a progress report.

    ``all_terminal`` is only true when at least one job is tracked and every
    tracked job has reached a terminal state.
    """
    entries = [
        JobProgress(
            job_id=job.id,
            mockup_id=job.mockup_id,
            status=job.status,
            progress=job_progress(job.status),
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            error=job.error,
            next_retry_at=job.next_retry_at,
        )
        for job in jobs
    ]
    counts = {status.value: 0 for status in JobStatus}
    for entry in entries:
        counts[entry.status.value] += 1

    overall = round(sum(e.progress for e in entries) / len(entries)) if entries else 0
    return ProgressReport(
        jobs=entries,
        overall_progress=overall,
        counts=counts,
        all_terminal=bool(entries) and all(e.is_terminal for e in entries),
    )


FetchJobs = Callable[[list[UUID], list[UUID]], Awaitable[list[GenerationJob]]]
Notify = Callable[[ProgressNotification], Awaitable[None]]


class ProgressTracker:
    """Polls a set of jobs and emits throttled finish notifications.

    Example:
        tracker = ProgressTracker(fetch=fetch_jobs, notify=send_toast)
        tracker.track(job_ids=[job.id for job in batch])
        report = await tracker.watch()
    """

    def __init__(
        self,
        fetch: FetchJobs,
        notify: Notify,
        poll_interval: float = 5.0,
        notification_window: float = 10.0,
        clock: MonotonicClock = monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._fetch = fetch
        self._notify = notify
        self.poll_interval = poll_interval
        self.notification_window = notification_window
        self._clock = clock
        self._sleep = sleep

        self._job_ids: set[UUID] = set()
        self._mockup_ids: set[UUID] = set()
        self._seen_terminal: set[UUID] = set()
        self._pending: list[JobProgress] = []
        self._last_notified_at: Optional[float] = None
        self.last_report: Optional[ProgressReport] = None

    def track(self, job_ids: Iterable[UUID] = (), mockup_ids: Iterable[UUID] = ()) -> None:
        self._job_ids.update(job_ids)
        self._mockup_ids.update(mockup_ids)

    def untrack(self, job_ids: Iterable[UUID] = (), mockup_ids: Iterable[UUID] = ()) -> None:
        job_ids = set(job_ids)
        self._job_ids.difference_update(job_ids)
        self._mockup_ids.difference_update(mockup_ids)
        self._seen_terminal.difference_update(job_ids)
        self._pending = [entry for entry in self._pending if entry.job_id not in job_ids]

    @property
    def pending_count(self) -> int:
        """Finished jobs not yet included in a notification."""
        return len(self._pending)

    async def poll(self) -> ProgressReport:
        """Fetch current state once, record newly finished jobs and maybe notify."""
        jobs = await self._fetch(sorted(self._job_ids), sorted(self._mockup_ids))
        report = summarize(jobs)

        for entry in report.jobs:
            if entry.is_terminal and entry.job_id not in self._seen_terminal:
                self._seen_terminal.add(entry.job_id)
                self._pending.append(entry)

        self.last_report = report
        await self._maybe_notify(report.all_terminal)
        return report

    async def watch(self) -> ProgressReport:
        """Poll until every tracked job is terminal, then flush pending notifications."""
        while True:
            report = await self.poll()
            if report.all_terminal:
                break
            await self._sleep(self.poll_interval)

        while self._pending:
            await self._sleep(self._time_until_window_opens())
            await self._maybe_notify(all_terminal=True)
        return report

    def _time_until_window_opens(self) -> float:
        if self._last_notified_at is None:
            return 0.0
        return max(0.0, self._last_notified_at + self.notification_window - self._clock())

    async def _maybe_notify(self, all_terminal: bool) -> None:
        if not self._pending:
            return
        if self._time_until_window_opens() > 0:
            # Carried over to the next window
            return

        batch, self._pending = self._pending, []
        notification = ProgressNotification(
            completed=sum(1 for e in batch if e.status == JobStatus.COMPLETED),
            failed=sum(1 for e in batch if e.status == JobStatus.FAILED),
            cancelled=sum(1 for e in batch if e.status == JobStatus.CANCELLED),
            job_ids=[e.job_id for e in batch],
            all_terminal=all_terminal,
        )
        self._last_notified_at = self._clock()
        logger.info(
            "progress.notification",
            completed=notification.completed,
            failed=notification.failed,
            cancelled=notification.cancelled,
            all_terminal=all_terminal,
        )
        await self._notify(notification)
