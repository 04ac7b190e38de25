"""User repository.

Ledger mutations read the user row with SELECT ... FOR UPDATE so concurrent
credits and debits against the same balance serialize.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mockgen.models.user import User


class UserRepository:
    """Repository for User entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, user_id: UUID) -> User | None:
        result = await self.session.execute(select(User).where(User.id == user_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_user_id: str) -> User | None:
        """Retrieve user by commerce platform user id."""
        result = await self.session.execute(
            select(User).where(User.external_user_id == external_user_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, user_id: UUID) -> User | None:
        """Retrieve user with a row lock for a balance mutation."""
        result = await self.session.execute(
            select(User)
            .where(User.id == user_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_external_id_for_update(self, external_user_id: str) -> User | None:
        result = await self.session.execute(
            select(User)
            .where(User.external_user_id == external_user_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, user: User) -> User:
        """Persist new user to database.

        Raises:
            IntegrityError: If external_user_id already exists
        """
        self.session.add(user)
        await self.session.flush()
        return user
