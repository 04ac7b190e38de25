"""Background workers for async processing tasks."""

from mockgen.workers.generation_scheduler import (
    DispatchOutcome,
    DispatchSummary,
    JobScheduler,
    run_generation_scheduler,
)

__all__ = [
    "JobScheduler",
    "DispatchOutcome",
    "DispatchSummary",
    "run_generation_scheduler",
]
