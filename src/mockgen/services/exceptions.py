"""Service error hierarchy for generation, resilience and billing operations.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts, open breaker)
- PermanentError: Non-retryable errors (authentication, validation, bad input)
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (5xx)
    - Circuit breaker open
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Content policy rejections
    """

    pass


# Circuit breaker errors
class CircuitOpenError(TransientError):
    """Call rejected without reaching the dependency because its breaker is open."""

    def __init__(self, dependency: str, retry_after: float = 0.0):
        self.dependency = dependency
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            f"Circuit breaker [{dependency}] is OPEN. Service unavailable "
            f"(retry in {self.retry_after:.1f}s)."
        )


class CircuitTimeoutError(TransientError):
    """Call exceeded the breaker-enforced timeout."""

    def __init__(self, dependency: str, timeout_seconds: float):
        self.dependency = dependency
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Operation on [{dependency}] timed out after {timeout_seconds * 1000:.0f}ms"
        )


# Generation service errors
class GenerationUnavailableError(TransientError):
    """Generation service unreachable, rate limited or returned 5xx."""

    pass


class GenerationRejectedError(PermanentError):
    """Generation service rejected the request (auth, validation, bad output)."""

    pass


class ContentPolicyError(GenerationRejectedError):
    """Generation service refused the prompt or image on content policy grounds."""

    pass


# Commerce platform errors
class CommercePlatformError(TransientError):
    """Commerce platform unreachable or returned an unexpected status."""

    pass


# Billing / webhook errors
class InvalidSignatureError(PermanentError):
    """Webhook signature header missing, malformed or not matching the payload."""

    pass


class MalformedWebhookError(PermanentError):
    """Webhook payload is not valid JSON or lacks required fields."""

    pass


class InsufficientCreditsError(PermanentError):
    """User does not have enough credits for the requested work."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits: {required} required, {available} available")


class JobNotFoundError(PermanentError):
    """Requested generation job or mockup does not exist."""

    pass


class AccountNotFoundError(PermanentError):
    """No ledger account exists for the given user."""

    pass
