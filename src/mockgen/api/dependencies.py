"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Access to app-scoped objects (settings, UoW factory, breakers, services)
- Per-route rate limiting
"""

import math
import time
from typing import Callable

import structlog
from fastapi import HTTPException, Request, Response, status

from mockgen.core.config import Settings
from mockgen.services.commerce_client import CommercePlatformClient
from mockgen.services.payments.webhook_ingestion import PaymentWebhookIngestor
from mockgen.services.resilience.circuit_breaker import CircuitBreakerRegistry
from mockgen.services.resilience.rate_limiter import RateLimitDecision, RateLimiter
from mockgen.uow import UnitOfWork

logger = structlog.get_logger()


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    return request.app.state.settings


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.post("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.jobs.get_by_id(job_id)
    """
    return request.app.state.uow_factory


def get_breakers(request: Request) -> CircuitBreakerRegistry:
    """Get the process-wide circuit breaker registry from app state."""
    return request.app.state.breakers


def get_webhook_ingestor(request: Request) -> PaymentWebhookIngestor:
    settings: Settings = request.app.state.settings
    return PaymentWebhookIngestor(request.app.state.uow_factory, settings.payment_webhook_secret)


def get_commerce_client(request: Request) -> CommercePlatformClient:
    return request.app.state.commerce_client


def get_client_key(request: Request) -> str:
    """Client identity for rate limiting.

    First hop of X-Forwarded-For, then X-Real-IP, then the socket peer.
    """
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    reset_epoch = math.ceil(time.time() + max(0.0, decision.reset_after))
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(reset_epoch),
    }


class RateLimit:
    """Dependency enforcing the fixed-window limit configured for one route.

    Example:
        >>> @router.post("/jobs", dependencies=[Depends(RateLimit("jobs"))])
        >>> async def enqueue(...): ...

    Raises:
        HTTPException: 429 with Retry-After and X-RateLimit-* headers when over the limit
    """

    def __init__(self, route_name: str):
        self.route_name = route_name

    async def __call__(self, request: Request, response: Response) -> RateLimitDecision:
        limiters: dict[str, RateLimiter] = request.app.state.rate_limiters
        limiter = limiters.get(self.route_name) or limiters["default"]
        decision = await limiter.allow(get_client_key(request))
        headers = rate_limit_headers(decision)

        if not decision.allowed:
            headers["Retry-After"] = str(decision.retry_after)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error": "Too many requests",
                    "retry_after": decision.retry_after,
                },
                headers=headers,
            )

        for name, value in headers.items():
            response.headers[name] = value
        return decision
