"""Commerce platform API client (identity and billing provider).

Only the connectivity probe lives here; checkout and authentication are
handled by the platform itself. Calls go through the ``commerce-platform``
circuit breaker so an outage there fails fast instead of tying up requests.
"""

import time
from typing import Any

import httpx
import structlog

from mockgen.core.config import COMMERCE_PLATFORM
from mockgen.services.exceptions import CommercePlatformError, PermanentError
from mockgen.services.resilience.circuit_breaker import CircuitBreakerRegistry

logger = structlog.get_logger(__name__)


class CommercePlatformAuthError(PermanentError):
    """API key rejected by the commerce platform (401/403)."""

    pass


class CommercePlatformClient:
    """Thin async client for the commerce platform REST API."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        breakers: CircuitBreakerRegistry,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 5.0,
    ):
        """Initialize client.

        Args:
            api_key: Commerce platform API key (COMMERCE_API_KEY)
            base_url: API base URL (COMMERCE_API_BASE_URL)
            breakers: Process-wide breaker registry
            transport: Optional httpx transport (tests inject a MockTransport)
            timeout: HTTP timeout in seconds
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.breakers = breakers
        self._transport = transport
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def check_connectivity(self) -> dict[str, Any]:
        """Call the platform's ``/me`` endpoint through the breaker.

        Returns:
            Dict with ``status_code`` and ``latency_ms``

        Raises:
            CommercePlatformAuthError: API key rejected
            CommercePlatformError: Network error or unexpected status
            CircuitOpenError: Breaker open
            CircuitTimeoutError: Breaker timeout elapsed
        """
        return await self.breakers.execute(COMMERCE_PLATFORM, self._get_me)

    async def _get_me(self) -> dict[str, Any]:
        start_time = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.get(
                    f"{self.base_url}/me",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.TimeoutException as e:
            raise CommercePlatformError(f"Request timeout after {self._timeout}s: {e}") from e
        except httpx.HTTPError as e:
            raise CommercePlatformError(f"Network error: {e}") from e

        if response.status_code in (401, 403):
            raise CommercePlatformAuthError(
                f"Commerce platform rejected API key ({response.status_code}). "
                "Check COMMERCE_API_KEY configuration."
            )
        if response.status_code >= 400:
            raise CommercePlatformError(
                f"Unexpected status {response.status_code}: {response.text[:200]}"
            )

        return {
            "status_code": response.status_code,
            "latency_ms": int((time.monotonic() - start_time) * 1000),
        }
