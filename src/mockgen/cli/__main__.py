"""Operator CLI for the generation pipeline.

Usage:
    python -m mockgen.cli <command> [OPTIONS]

Examples:
    # List processing jobs past the stuck-job timeout without changing them
    python -m mockgen.cli sweep --dry-run

    # Requeue or fail stuck jobs
    python -m mockgen.cli sweep

    # Dispatch one batch of due jobs and exit
    python -m mockgen.cli dispatch

    # Show job counts per status and circuit breaker tuning
    python -m mockgen.cli breakers

    # Follow jobs until they finish
    python -m mockgen.cli watch --job-id <uuid> --mockup-id <uuid>

    # Verbose logging
    python -m mockgen.cli -v sweep
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from dataclasses import asdict
from typing import Optional, Sequence
from uuid import UUID

import structlog

from mockgen.core.config import Settings, configure_logging
from mockgen.core.database import dispose_db_session, setup_db_session
from mockgen.models.generation_job import GenerationJob
from mockgen.services.generation.replicate_client import ReplicateGenerator
from mockgen.services.jobs import list_jobs
from mockgen.services.progress import ProgressNotification, ProgressTracker
from mockgen.services.resilience.circuit_breaker import CircuitBreakerRegistry
from mockgen.uow import create_uow_factory
from mockgen.workers.generation_scheduler import JobScheduler

logger = structlog.get_logger()


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Generation pipeline operator tools",
        epilog="Reads DATABASE_URL and scheduler settings from the environment",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    sweep = subparsers.add_parser("sweep", help="Recover jobs stuck in processing")
    sweep.add_argument(
        "--dry-run",
        action="store_true",
        help="List stuck jobs without database writes",
    )

    subparsers.add_parser("dispatch", help="Dispatch one batch of due jobs")
    subparsers.add_parser("breakers", help="Show breaker tuning and job counts per status")

    watch = subparsers.add_parser("watch", help="Follow jobs until they finish")
    watch.add_argument(
        "--job-id", dest="job_ids", type=UUID, action="append", default=[], help="Job to follow"
    )
    watch.add_argument(
        "--mockup-id",
        dest="mockup_ids",
        type=UUID,
        action="append",
        default=[],
        help="Follow the jobs of this mockup",
    )

    return parser.parse_args(argv)


def build_scheduler(settings: Settings, uow_factory) -> JobScheduler:
    return JobScheduler.from_settings(
        settings,
        uow_factory,
        ReplicateGenerator(settings.replicate_api_token, settings.replicate_model_version),
        CircuitBreakerRegistry(settings.breaker_configs()),
    )


async def run_sweep(scheduler: JobScheduler, dry_run: bool) -> int:
    stuck = await scheduler.find_stuck_jobs()

    print("\n" + "=" * 60)
    print("Stuck Job Sweep")
    print("=" * 60)
    print(f"Timeout: {scheduler.stuck_job_timeout_seconds}s")
    print(f"Stuck jobs found: {len(stuck)}")
    for job in stuck[:20]:
        print(f"  - {job.id} attempt {job.attempts}/{job.max_attempts} since {job.dispatched_at}")
    if len(stuck) > 20:
        print(f"  ... and {len(stuck) - 20} more")

    if dry_run:
        print("\n[DRY RUN] No changes were persisted to database")
    else:
        recovered = await scheduler.sweep_stuck_jobs()
        print(f"Jobs recovered: {recovered}")

    print("=" * 60 + "\n")
    return 0


async def run_dispatch(scheduler: JobScheduler) -> int:
    summary = await scheduler.dispatch_eligible_jobs()

    print("\n" + "=" * 60)
    print("Dispatch Summary")
    print("=" * 60)
    for name, value in asdict(summary).items():
        print(f"{name}: {value}")
    print("=" * 60 + "\n")

    if summary.errors:
        logger.warning("cli.dispatch_errors", errors=summary.errors)
        return 2  # Partial success
    return 0


async def run_breakers(uow_factory, settings: Settings) -> int:
    print("\n" + "=" * 60)
    print("Circuit Breakers (per process; this CLI starts with all closed)")
    print("=" * 60)
    for name, config in settings.breaker_configs().items():
        print(
            f"{name}: threshold={config.failure_threshold} timeout={config.timeout_ms}ms "
            f"reset={config.reset_timeout_ms}ms window={config.monitoring_period_ms}ms"
        )

    async with await uow_factory() as uow:
        counts = await uow.jobs.count_by_status()

    print("\nJobs by status:")
    for status, count in sorted(counts.items()):
        print(f"  {status}: {count}")
    print("=" * 60 + "\n")
    return 0


async def run_watch(
    uow_factory,
    settings: Settings,
    job_ids: Sequence[UUID],
    mockup_ids: Sequence[UUID],
) -> int:
    """Follow jobs until all are terminal, printing throttled finish notifications."""

    async def fetch(job_ids: list[UUID], mockup_ids: list[UUID]) -> list[GenerationJob]:
        async with await uow_factory() as uow:
            return await list_jobs(uow, job_ids, mockup_ids)

    async def notify(notification: ProgressNotification) -> None:
        print(
            f"Finished {notification.total}: completed={notification.completed} "
            f"failed={notification.failed} cancelled={notification.cancelled}"
        )

    tracker = ProgressTracker(
        fetch,
        notify,
        poll_interval=settings.progress_poll_interval_seconds,
        notification_window=settings.progress_notification_window_seconds,
    )
    tracker.track(job_ids=job_ids, mockup_ids=mockup_ids)

    # An empty set is never terminal; stop instead of polling forever
    if (await tracker.poll()).total == 0:
        print("No matching jobs", file=sys.stderr)
        return 1

    report = await tracker.watch()

    print("\n" + "=" * 60)
    print(f"Overall progress: {report.overall_progress}%")
    print("=" * 60)
    for entry in report.jobs:
        line = f"  - {entry.job_id} {entry.status.value}"
        line += f" attempt {entry.attempts}/{entry.max_attempts}"
        if entry.error:
            line += f" ({entry.error})"
        print(line)
    print("=" * 60 + "\n")

    return 2 if report.counts["failed"] else 0


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (partial success)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", command=args.command)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    scheduler = build_scheduler(settings, uow_factory)

    try:
        if args.command == "sweep":
            return await run_sweep(scheduler, args.dry_run)
        if args.command == "dispatch":
            return await run_dispatch(scheduler)
        if args.command == "watch":
            return await run_watch(uow_factory, settings, args.job_ids, args.mockup_ids)
        return await run_breakers(uow_factory, settings)

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nInterrupted by user", file=sys.stderr)
        return 130  # Standard exit code for SIGINT

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await dispose_db_session(session_factory)


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
