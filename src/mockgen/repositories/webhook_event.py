"""ProcessedWebhookEvent repository (webhook idempotency records)."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mockgen.models.webhook_event import ProcessedWebhookEvent, WebhookEventKind


class ProcessedWebhookEventRepository:
    """Repository for idempotency records. Records are inserted once and only read afterwards."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, event_kind: WebhookEventKind, external_id: str) -> bool:
        result = await self.session.execute(
            select(ProcessedWebhookEvent.id).where(
                ProcessedWebhookEvent.event_kind == event_kind,  # type: ignore[arg-type]
                ProcessedWebhookEvent.external_id == external_id,  # type: ignore[arg-type]
            )
        )
        return result.first() is not None

    async def add(self, record: ProcessedWebhookEvent) -> ProcessedWebhookEvent:
        """Insert an idempotency record.

        Raises:
            IntegrityError: If the (event_kind, external_id) key was recorded concurrently
        """
        self.session.add(record)
        await self.session.flush()
        return record
