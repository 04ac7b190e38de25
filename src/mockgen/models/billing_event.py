"""BillingEvent entity - Append-only audit trail of credit ledger mutations."""

from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import NaiveDatetime
from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from mockgen.core.clock import utcnow


class BillingEventType(str, Enum):
    CREDIT_PURCHASE = "credit_purchase"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    GENERATION_RESERVE = "generation_reserve"
    GENERATION_REFUND = "generation_refund"


class BillingEvent(SQLModel, table=True):
    """One ledger mutation (or recorded non-mutation, e.g. a failed payment)."""

    __tablename__ = "billing_events"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    event_type: BillingEventType = Field(index=True)
    credits_delta: int = Field(default=0)  # signed
    balance_after: int = Field(default=0)
    amount: Optional[float] = Field(default=None)  # as reported by the commerce platform
    currency: Optional[str] = Field(default=None, max_length=10)
    payment_id: Optional[str] = Field(default=None, max_length=255, index=True)
    refund_id: Optional[str] = Field(default=None, max_length=255)
    job_id: Optional[UUID] = Field(default=None, index=True)
    description: str = Field(default="", max_length=500)
    details: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)
