"""BillingEvent repository (append-only ledger audit trail)."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mockgen.models.billing_event import BillingEvent, BillingEventType


class BillingEventRepository:
    """Repository for BillingEvent entities. No update or delete methods."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, event: BillingEvent) -> BillingEvent:
        self.session.add(event)
        await self.session.flush()
        return event

    async def list_for_user(self, user_id: UUID, limit: int = 100) -> list[BillingEvent]:
        """Newest first."""
        result = await self.session.execute(
            select(BillingEvent)
            .where(BillingEvent.user_id == user_id)  # type: ignore[arg-type]
            .order_by(BillingEvent.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_for_job(
        self, job_id: UUID, event_type: BillingEventType | None = None
    ) -> list[BillingEvent]:
        query = select(BillingEvent).where(BillingEvent.job_id == job_id)  # type: ignore[arg-type]
        if event_type is not None:
            query = query.where(BillingEvent.event_type == event_type)  # type: ignore[arg-type]
        result = await self.session.execute(query.order_by(BillingEvent.created_at.asc()))  # type: ignore[attr-defined]
        return list(result.scalars().all())

    async def get_purchase_for_payment(self, payment_id: str) -> BillingEvent | None:
        """The credit_purchase audit row for a payment, if that payment was applied."""
        result = await self.session.execute(
            select(BillingEvent).where(
                BillingEvent.payment_id == payment_id,  # type: ignore[arg-type]
                BillingEvent.event_type == BillingEventType.CREDIT_PURCHASE,  # type: ignore[arg-type]
            )
        )
        return result.scalars().first()
