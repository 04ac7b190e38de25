"""Repository layer for the mockgen backend.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from mockgen.repositories.billing_event import BillingEventRepository
from mockgen.repositories.generation_job import GenerationJobRepository
from mockgen.repositories.mockup import MockupRepository
from mockgen.repositories.user import UserRepository
from mockgen.repositories.webhook_event import ProcessedWebhookEventRepository

__all__ = [
    "UserRepository",
    "MockupRepository",
    "GenerationJobRepository",
    "BillingEventRepository",
    "ProcessedWebhookEventRepository",
]
