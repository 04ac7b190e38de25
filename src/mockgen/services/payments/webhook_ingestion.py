"""Commerce platform payment webhook ingestion.

Turns a signed payment event into exactly one ledger mutation:

1. Verify the HMAC signature over the raw body (before any parsing).
2. Parse the event and map its type to an idempotency kind.
3. In one transaction: check the idempotency record, mutate the ledger, append
   the audit row and insert the idempotency record.

The idempotency record has a unique constraint on (kind, external id), so when
two deliveries of the same event race past the existence check, the loser's
insert fails, its whole transaction (ledger mutation included) rolls back, and
it is reported as a duplicate.

Supported event types:
- payment.succeeded (and its alias charge.succeeded): credit the purchased credits
- payment.failed: audit only
- payment.refunded: debit the purchased credits, floored at zero
Anything else is acknowledged without effect.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
from sqlalchemy.exc import IntegrityError

from mockgen.core.clock import Clock, utcnow
from mockgen.models.billing_event import BillingEventType
from mockgen.models.webhook_event import ProcessedWebhookEvent, WebhookEventKind
from mockgen.services.exceptions import InvalidSignatureError, MalformedWebhookError
from mockgen.services.payments.ledger import CreditLedger
from mockgen.services.payments.signature import verify_payment_signature
from mockgen.uow import UnitOfWork

logger = structlog.get_logger(__name__)

EVENT_KINDS = {
    "payment.succeeded": WebhookEventKind.PAYMENT,
    "charge.succeeded": WebhookEventKind.PAYMENT,
    "payment.failed": WebhookEventKind.PAYMENT_FAILED,
    "payment.refunded": WebhookEventKind.REFUND,
}


class IngestStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentEvent:
    """Validated view of a webhook payload."""

    event_type: str
    kind: Optional[WebhookEventKind]
    external_id: Optional[str] = None
    payment_id: Optional[str] = None
    refund_id: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    credits: Optional[int] = None
    error_message: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class IngestResult:
    status: IngestStatus
    event_type: str
    external_id: Optional[str] = None
    credits_delta: int = 0
    balance_after: Optional[int] = None


def _optional_str(data: dict, key: str) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise MalformedWebhookError(f"Field '{key}' must be a string")
    return str(value)


def _required_str(data: dict, key: str) -> str:
    value = _optional_str(data, key)
    if value is None:
        raise MalformedWebhookError(f"Missing required field: data.{key}")
    return value


def _credits(metadata: dict, required: bool) -> Optional[int]:
    value = metadata.get("creditsToPurchase")
    if value is None:
        if required:
            raise MalformedWebhookError("Missing required field: data.metadata.creditsToPurchase")
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedWebhookError("data.metadata.creditsToPurchase must be a non-negative integer")
    if required and value == 0:
        raise MalformedWebhookError("data.metadata.creditsToPurchase must be positive")
    return value


def parse_payment_event(raw_body: bytes) -> PaymentEvent:
    """Parse and validate a webhook body.

    Raises:
        MalformedWebhookError: Invalid JSON, missing type, or missing fields for a known type
    """
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedWebhookError(f"Invalid JSON payload: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedWebhookError("Payload must be a JSON object")

    event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedWebhookError("Missing required field: type")

    kind = EVENT_KINDS.get(event_type)
    if kind is None:
        return PaymentEvent(event_type=event_type, kind=None)

    data = payload.get("data")
    if not isinstance(data, dict):
        raise MalformedWebhookError("Missing required field: data")

    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise MalformedWebhookError("data.metadata must be an object")

    amount = data.get("amount")
    if amount is not None and (isinstance(amount, bool) or not isinstance(amount, (int, float))):
        raise MalformedWebhookError("data.amount must be a number")

    user_id = _required_str(data, "user_id")
    common: dict[str, Any] = {
        "event_type": event_type,
        "kind": kind,
        "user_id": user_id,
        "email": _optional_str(data, "email"),
        "amount": amount,
        "currency": _optional_str(data, "currency"),
        "metadata": metadata,
    }

    if kind == WebhookEventKind.PAYMENT:
        payment_id = _required_str(data, "payment_id")
        return PaymentEvent(
            external_id=payment_id,
            payment_id=payment_id,
            credits=_credits(metadata, required=True),
            **common,
        )

    if kind == WebhookEventKind.PAYMENT_FAILED:
        payment_id = _required_str(data, "payment_id")
        return PaymentEvent(
            external_id=payment_id,
            payment_id=payment_id,
            error_message=_optional_str(data, "error_message"),
            **common,
        )

    refund_id = _required_str(data, "refund_id")
    return PaymentEvent(
        external_id=refund_id,
        payment_id=_optional_str(data, "payment_id"),
        refund_id=refund_id,
        credits=_credits(metadata, required=False),
        **common,
    )


class PaymentWebhookIngestor:
    """Verifies, deduplicates and applies payment webhooks."""

    def __init__(
        self,
        uow_factory: Callable[[], Awaitable[UnitOfWork]],
        webhook_secret: str,
        clock: Clock = utcnow,
    ):
        self._uow_factory = uow_factory
        self._secret = webhook_secret
        self._clock = clock

    async def ingest(self, raw_body: bytes, signature_header: Optional[str]) -> IngestResult:
        """Verify and apply one webhook delivery.

        Args:
            raw_body: Exact request body bytes
            signature_header: Value of the signature header

        Returns:
            IngestResult describing what happened (applied, duplicate or ignored)

        Raises:
            InvalidSignatureError: Signature missing, malformed or wrong (401)
            MalformedWebhookError: Payload unusable (400)
        """
        try:
            verify_payment_signature(raw_body, signature_header, self._secret)
        except InvalidSignatureError as e:
            logger.warning("webhook.signature_rejected", reason=str(e), body_size=len(raw_body))
            raise

        event = parse_payment_event(raw_body)
        logger.info(
            "webhook.received",
            event_type=event.event_type,
            external_id=event.external_id,
            user_id=event.user_id,
        )

        if event.kind is None:
            logger.info("webhook.ignored", event_type=event.event_type)
            return IngestResult(status=IngestStatus.IGNORED, event_type=event.event_type)

        try:
            async with await self._uow_factory() as uow:
                if await uow.webhook_events.exists(event.kind, event.external_id):
                    return self._duplicate(event)

                result = await self._apply(uow, event)

                await uow.webhook_events.add(
                    ProcessedWebhookEvent(
                        event_kind=event.kind,
                        external_id=event.external_id,
                        event_type=event.event_type,
                        user_id=result[0],
                        processed_at=self._clock(),
                    )
                )
        except IntegrityError:
            # Lost the race against a concurrent delivery of the same event
            if await self._already_processed(event):
                return self._duplicate(event)
            raise

        _, credits_delta, balance_after = result
        logger.info(
            "webhook.applied",
            event_type=event.event_type,
            external_id=event.external_id,
            credits_delta=credits_delta,
            balance_after=balance_after,
        )
        return IngestResult(
            status=IngestStatus.APPLIED,
            event_type=event.event_type,
            external_id=event.external_id,
            credits_delta=credits_delta,
            balance_after=balance_after,
        )

    async def _apply(self, uow: UnitOfWork, event: PaymentEvent):
        ledger = CreditLedger(uow, clock=self._clock)
        user = await ledger.get_or_create_account(event.user_id, email=event.email)
        audit = {
            "amount": event.amount,
            "currency": event.currency,
            "payment_id": event.payment_id,
            "details": event.metadata,
        }

        if event.kind == WebhookEventKind.PAYMENT:
            entry = await ledger.credit(
                user,
                event.credits,
                BillingEventType.CREDIT_PURCHASE,
                description=f"Purchased {event.credits} credits",
                **audit,
            )
        elif event.kind == WebhookEventKind.PAYMENT_FAILED:
            entry = await ledger.record(
                user,
                BillingEventType.PAYMENT_FAILED,
                description=(event.error_message or "Payment failed")[:500],
                **audit,
            )
        else:
            credits = event.credits
            if credits is None and event.payment_id:
                purchase = await uow.billing_events.get_purchase_for_payment(event.payment_id)
                credits = purchase.credits_delta if purchase else 0
            entry = await ledger.debit(
                user,
                credits or 0,
                BillingEventType.PAYMENT_REFUNDED,
                floor_at_zero=True,
                refund_id=event.refund_id,
                description=f"Refund {event.refund_id}",
                **audit,
            )

        return user.id, entry.credits_delta, entry.balance_after

    async def _already_processed(self, event: PaymentEvent) -> bool:
        async with await self._uow_factory() as uow:
            return await uow.webhook_events.exists(event.kind, event.external_id)

    def _duplicate(self, event: PaymentEvent) -> IngestResult:
        logger.info(
            "webhook.duplicate",
            event_type=event.event_type,
            external_id=event.external_id,
        )
        return IngestResult(
            status=IngestStatus.DUPLICATE,
            event_type=event.event_type,
            external_id=event.external_id,
        )
