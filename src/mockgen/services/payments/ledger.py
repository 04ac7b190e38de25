"""Credit ledger.

Balances live on ``users.credits_remaining``; every mutation appends a
``BillingEvent`` audit row inside the caller's transaction. The user row is
locked for the duration of the mutation, so concurrent credits and debits
against one balance serialize.
"""

from typing import Any, Optional
from uuid import UUID

import structlog

from mockgen.core.clock import Clock, utcnow
from mockgen.models.billing_event import BillingEvent, BillingEventType
from mockgen.models.generation_job import GenerationJob
from mockgen.models.user import User
from mockgen.services.exceptions import AccountNotFoundError, InsufficientCreditsError
from mockgen.uow import UnitOfWork

logger = structlog.get_logger(__name__)


class CreditLedger:
    """Balance mutations with audit trail, scoped to one Unit of Work."""

    def __init__(self, uow: UnitOfWork, clock: Clock = utcnow):
        self.uow = uow
        self._clock = clock

    async def get_or_create_account(
        self, external_user_id: str, email: Optional[str] = None
    ) -> User:
        """Lock and return the account for a commerce platform user.

        Unknown users are provisioned with a zero balance.

        Raises:
            IntegrityError: If the same user was provisioned concurrently
        """
        user = await self.uow.users.get_by_external_id_for_update(external_user_id)
        if user is not None:
            return user

        user = await self.uow.users.add(
            User(external_user_id=external_user_id, email=email, credits_remaining=0)
        )
        logger.info("ledger.account_created", user_id=str(user.id), external_user_id=external_user_id)
        return user

    async def lock_account(self, user_id: UUID) -> User:
        user = await self.uow.users.get_for_update(user_id)
        if user is None:
            raise AccountNotFoundError(f"User {user_id} not found")
        return user

    async def credit(
        self, user: User, credits: int, event_type: BillingEventType, **audit: Any
    ) -> BillingEvent:
        """Add ``credits`` to the balance."""
        if credits < 0:
            raise ValueError("credits must be non-negative")
        user.credits_remaining += credits
        if event_type == BillingEventType.CREDIT_PURCHASE:
            user.lifetime_credits_purchased += credits
        return await self._apply(user, credits, event_type, **audit)

    async def debit(
        self,
        user: User,
        credits: int,
        event_type: BillingEventType,
        floor_at_zero: bool = False,
        **audit: Any,
    ) -> BillingEvent:
        """Remove ``credits`` from the balance.

        Args:
            floor_at_zero: Deduct at most the current balance instead of failing

        Raises:
            InsufficientCreditsError: Balance too low and floor_at_zero is False
        """
        if credits < 0:
            raise ValueError("credits must be non-negative")
        if credits > user.credits_remaining:
            if not floor_at_zero:
                raise InsufficientCreditsError(credits, user.credits_remaining)
            credits = user.credits_remaining
        user.credits_remaining -= credits
        return await self._apply(user, -credits, event_type, **audit)

    async def record(self, user: User, event_type: BillingEventType, **audit: Any) -> BillingEvent:
        """Append an audit row without touching the balance."""
        return await self._apply(user, 0, event_type, **audit)

    async def reserve_for_job(self, user: User, job: GenerationJob) -> BillingEvent:
        """Debit a job's estimated credits at enqueue time."""
        return await self.debit(
            user,
            job.estimated_credits,
            BillingEventType.GENERATION_RESERVE,
            job_id=job.id,
            description=f"Reserved {job.estimated_credits} credits for {job.job_type.value} job",
        )

    async def refund_job(self, job: GenerationJob, reason: str) -> BillingEvent:
        """Return a failed or cancelled job's reserved credits.

        Callers invoke this only after winning the terminal transition, which
        happens once per job.
        """
        user = await self.lock_account(job.user_id)
        event = await self.credit(
            user,
            job.estimated_credits,
            BillingEventType.GENERATION_REFUND,
            job_id=job.id,
            description=f"Refunded {job.estimated_credits} credits ({reason})",
        )
        logger.info(
            "ledger.job_refunded",
            job_id=str(job.id),
            user_id=str(user.id),
            credits=job.estimated_credits,
            reason=reason,
        )
        return event

    async def _apply(
        self,
        user: User,
        credits_delta: int,
        event_type: BillingEventType,
        description: str = "",
        details: Optional[dict] = None,
        **fields: Any,
    ) -> BillingEvent:
        user.updated_at = self._clock()
        self.uow.session.add(user)
        event = BillingEvent(
            user_id=user.id,
            event_type=event_type,
            credits_delta=credits_delta,
            balance_after=user.credits_remaining,
            description=description,
            details=details or {},
            created_at=self._clock(),
            **fields,
        )
        return await self.uow.billing_events.add(event)
