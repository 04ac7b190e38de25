"""Commerce platform webhook endpoints.

This module implements the payment webhook receiver. Deliveries are verified
against the raw request body, deduplicated by payment/refund id and applied
to the credit ledger exactly once.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from mockgen.api.dependencies import RateLimit, get_settings, get_webhook_ingestor
from mockgen.core.config import Settings
from mockgen.services.exceptions import InvalidSignatureError, MalformedWebhookError
from mockgen.services.payments.webhook_ingestion import PaymentWebhookIngestor

logger = structlog.get_logger()
router = APIRouter()


@router.post("/payment", dependencies=[Depends(RateLimit("webhooks"))])
async def receive_payment_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None),
    whop_signature: Optional[str] = Header(default=None),
    ingestor: PaymentWebhookIngestor = Depends(get_webhook_ingestor),
):
    """Receive a payment event from the commerce platform.

    The signature is read from the ``signature`` header; ``whop-signature`` is
    accepted for deliveries configured before the header was renamed.

    HTTP Status Codes:
        200: Event acknowledged (applied, duplicate or ignored)
        400: Malformed payload
        401: Signature missing or invalid
        429: Rate limit exceeded
        500: Internal server error (triggers platform retry)
    """
    raw_body = await request.body()

    try:
        result = await ingestor.ingest(raw_body, signature or whop_signature)
    except InvalidSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature",
        )
    except MalformedWebhookError as e:
        logger.error("webhook.malformed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

    return {
        "received": True,
        "status": result.status.value,
        "event_type": result.event_type,
    }


@router.get("/payment")
async def payment_webhook_status(settings: Settings = Depends(get_settings)):
    """Readiness probe for the payment webhook (never exposes the secret)."""
    return {
        "status": "ok",
        "endpoint": "/webhooks/payment",
        "configured": bool(settings.payment_webhook_secret),
    }
