"""ProcessedWebhookEvent entity - Idempotency record for commerce platform webhooks."""

from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import NaiveDatetime
from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from mockgen.core.clock import utcnow


class WebhookEventKind(str, Enum):
    """Logical event family used as the first half of the idempotency key."""

    PAYMENT = "payment"
    PAYMENT_FAILED = "payment_failed"
    REFUND = "refund"


class ProcessedWebhookEvent(SQLModel, table=True):
    """Marks a (kind, external id) pair as applied. Written once, never updated."""

    __tablename__ = "processed_webhook_events"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint("event_kind", "external_id", name="uq_processed_webhook_events_key"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    event_kind: WebhookEventKind
    external_id: str = Field(max_length=255)
    event_type: str = Field(max_length=100)  # raw upstream type, e.g. charge.succeeded
    user_id: Optional[UUID] = Field(default=None)
    processed_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)
