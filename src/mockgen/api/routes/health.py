"""Health check endpoints.

- GET /health - Database connectivity and circuit breaker state per dependency
- GET /health/commerce - Commerce platform connectivity through its breaker
"""

import structlog
from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy import text

from mockgen.api.dependencies import get_breakers, get_commerce_client
from mockgen.services.commerce_client import CommercePlatformClient
from mockgen.services.exceptions import CircuitOpenError, ServiceError
from mockgen.services.resilience.circuit_breaker import CircuitBreakerRegistry

logger = structlog.get_logger()
router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health_check(
    request: Request,
    response: Response,
    breakers: CircuitBreakerRegistry = Depends(get_breakers),
):
    """Health check with database connectivity test and breaker states.

    Returns:
        200: {"status": "healthy" | "degraded", ...} ("degraded" when any breaker is open)
        503: {"status": "unhealthy", "error": {...}, ...} if the database is unreachable
    """
    snapshots = await breakers.snapshots()
    open_breakers = sorted(name for name, snap in snapshots.items() if snap["state"] == "open")

    try:
        # Test database connection with simple query
        async with request.app.state.session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
    except Exception as e:
        logger.error(
            "health_check.failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {
            "status": "unhealthy",
            "database": "unreachable",
            "error": {
                "type": type(e).__name__,
                "message": str(e),
            },
            "circuit_breakers": snapshots,
        }

    if open_breakers:
        logger.warning("health_check.degraded", open_breakers=open_breakers)
    else:
        logger.debug("health_check.success")

    return {
        "status": "degraded" if open_breakers else "healthy",
        "database": "ok",
        "circuit_breakers": snapshots,
    }


@router.get("/commerce")
async def commerce_health(
    response: Response,
    client: CommercePlatformClient = Depends(get_commerce_client),
):
    """Probe the commerce platform API.

    Returns:
        200: Platform reachable and API key accepted
        503: Not configured, unreachable, key rejected or breaker open
    """
    if not client.configured:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "unconfigured", "message": "COMMERCE_API_KEY is not set"}

    try:
        result = await client.check_connectivity()
    except CircuitOpenError as e:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {
            "status": "circuit_open",
            "retry_after_seconds": round(e.retry_after, 3),
        }
    except ServiceError as e:
        logger.warning("health_check.commerce_failed", error=str(e), error_type=type(e).__name__)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {
            "status": "unhealthy",
            "error": {
                "type": type(e).__name__,
                "message": str(e),
            },
        }

    return {"status": "healthy", **result}
