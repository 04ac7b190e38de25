"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from mockgen.models.billing_event import BillingEvent, BillingEventType
from mockgen.models.generation_job import (
    TERMINAL_STATUSES,
    GenerationJob,
    InvalidStateTransition,
    JobStatus,
    JobType,
)
from mockgen.models.mockup import Mockup, MockupQuality, MockupStatus
from mockgen.models.user import User
from mockgen.models.webhook_event import ProcessedWebhookEvent, WebhookEventKind

__all__ = [
    "User",
    "Mockup",
    "MockupQuality",
    "MockupStatus",
    "GenerationJob",
    "JobStatus",
    "JobType",
    "TERMINAL_STATUSES",
    "InvalidStateTransition",
    "BillingEvent",
    "BillingEventType",
    "ProcessedWebhookEvent",
    "WebhookEventKind",
]
