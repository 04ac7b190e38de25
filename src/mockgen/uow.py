"""Unit of Work over the job store.

One UnitOfWork is one transaction. Scheduler attempts, ledger mutations and
webhook deliveries each open their own, so a failure in one never leaves
another half-applied.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mockgen.repositories.billing_event import BillingEventRepository
from mockgen.repositories.generation_job import GenerationJobRepository
from mockgen.repositories.mockup import MockupRepository
from mockgen.repositories.user import UserRepository
from mockgen.repositories.webhook_event import ProcessedWebhookEventRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Transaction boundary exposing every repository on one session.

    Usage:
        async with await uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
            await CreditLedger(uow).refund_job(job, "cancelled")

    Leaving the block normally commits. Leaving it with an exception rolls back
    and re-raises, so a lost unique-constraint race (duplicate webhook) leaves
    nothing behind.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

        self.users = UserRepository(session)
        self.mockups = MockupRepository(session)
        self.jobs = GenerationJobRepository(session)
        self.billing_events = BillingEventRepository(session)
        self.webhook_events = ProcessedWebhookEventRepository(session)

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        try:
            if exc_type is not None:
                await self.session.rollback()
                logger.info("transaction.rolled_back", exc_type=exc_type.__name__)
            else:
                await self.session.commit()
                logger.debug("transaction.committed")
        finally:
            await self.session.close()

        return False


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Return an async callable producing a UnitOfWork on a fresh session.

    The factory is what the scheduler, routes and CLI receive; tests pass one
    bound to a throwaway SQLite database.
    """

    async def _create_uow() -> UnitOfWork:
        return UnitOfWork(session_factory())

    return _create_uow
