"""Mockup entity - The artifact a generation job produces."""

from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import NaiveDatetime
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from mockgen.core.clock import utcnow


class MockupStatus(str, Enum):
    """Mockup lifecycle status, mirrored from its generation job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MockupQuality(str, Enum):
    DRAFT = "draft"
    STANDARD = "standard"
    PREMIUM = "premium"
    ULTRA = "ultra"


class Mockup(SQLModel, table=True):
    """Mockup holds the generation inputs and, once done, the output image."""

    __tablename__ = "mockups"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    prompt: str
    mockup_type: str = Field(default="product", max_length=100)
    quality: MockupQuality = Field(default=MockupQuality.STANDARD)
    source_image_url: Optional[str] = Field(default=None)
    status: MockupStatus = Field(default=MockupStatus.PENDING, index=True)
    image_url: Optional[str] = Field(default=None)
    error: Optional[str] = Field(default=None, max_length=1000)
    generation_time_ms: Optional[int] = Field(default=None)
    created_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)

    def mark_processing(self) -> None:
        self.status = MockupStatus.PROCESSING

    def mark_completed(self, image_url: str, generation_time_ms: int) -> None:
        if not image_url:
            raise ValueError("image_url is required")
        self.status = MockupStatus.COMPLETED
        self.image_url = image_url
        self.generation_time_ms = generation_time_ms
        self.error = None

    def mark_failed(self, error: str) -> None:
        self.status = MockupStatus.FAILED
        self.error = error[:1000]

    def mark_cancelled(self) -> None:
        self.status = MockupStatus.CANCELLED
