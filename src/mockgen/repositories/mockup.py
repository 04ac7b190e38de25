"""Mockup repository."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mockgen.models.mockup import Mockup


class MockupRepository:
    """Repository for Mockup entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, mockup_id: UUID) -> Mockup | None:
        result = await self.session.execute(select(Mockup).where(Mockup.id == mockup_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_many(self, mockup_ids: list[UUID]) -> list[Mockup]:
        if not mockup_ids:
            return []
        result = await self.session.execute(
            select(Mockup).where(Mockup.id.in_(mockup_ids))  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def add(self, mockup: Mockup) -> Mockup:
        self.session.add(mockup)
        await self.session.flush()
        return mockup

    async def save(self, mockup: Mockup) -> None:
        self.session.add(mockup)
        await self.session.flush()
