"""User entity - Commerce platform customer and their credit balance."""

from typing import Optional
from uuid import UUID, uuid4

from pydantic import NaiveDatetime
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from mockgen.core.clock import utcnow


class User(SQLModel, table=True):
    """User is a ledger account keyed by the commerce platform's user id."""

    __tablename__ = "users"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    external_user_id: str = Field(max_length=255, unique=True, index=True)
    email: Optional[str] = Field(default=None, max_length=255)
    subscription_tier: str = Field(default="starter", max_length=50)
    credits_remaining: int = Field(default=0, ge=0)
    lifetime_credits_purchased: int = Field(default=0, ge=0)
    created_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)
