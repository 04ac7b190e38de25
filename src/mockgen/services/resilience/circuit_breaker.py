"""Per-dependency circuit breaker.

The breaker protects unreliable downstream dependencies (the generation service,
the commerce platform) from pile-ups while they are failing, and protects our own
workers from waiting on calls that are bound to fail.

Behaviour:
- CLOSED: calls pass through. Consecutive failures inside the monitoring period
  are counted; reaching ``failure_threshold`` opens the breaker.
- OPEN: calls are rejected with :class:`CircuitOpenError` without invoking the
  operation until ``reset_timeout`` has elapsed.
- HALF_OPEN: the first call after the cool-down is let through as a probe. Only
  one probe is in flight at a time; other callers are rejected until it
  resolves. A probe failure reopens the breaker immediately; ``success_threshold``
  consecutive probe successes close it.

State lives in a :class:`StateStore` keyed by dependency name, so the in-memory
default can be replaced by a shared store for multi-instance deployments.
Transitions are serialized per dependency with an ``asyncio.Lock``.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

import structlog

from mockgen.core.clock import MonotonicClock, monotonic
from mockgen.services.exceptions import CircuitOpenError, CircuitTimeoutError
from mockgen.services.resilience.state_store import InMemoryStateStore, StateStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

STATE_KEY_PREFIX = "circuit_breaker:"


class CircuitState(str, Enum):
    """Breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Tuning for one dependency."""

    failure_threshold: int = 3
    timeout_ms: int = 5_000
    reset_timeout_ms: int = 60_000
    monitoring_period_ms: int = 60_000
    success_threshold: int = 2
    # Exceptions that say nothing about dependency health (e.g. a rejected prompt)
    ignored_exceptions: tuple[type[Exception], ...] = ()

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def reset_timeout_seconds(self) -> float:
        return self.reset_timeout_ms / 1000

    @property
    def monitoring_period_seconds(self) -> float:
        return self.monitoring_period_ms / 1000


@dataclass
class CircuitBreakerState:
    """Mutable breaker state as persisted in the state store."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float = 0.0
    next_attempt_time: float = 0.0
    probe_in_flight: bool = False


class CircuitBreaker:
    """Async circuit breaker for a single named dependency."""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        store: StateStore | None = None,
        clock: MonotonicClock = monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._store = store if store is not None else InMemoryStateStore()
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def _key(self) -> str:
        return f"{STATE_KEY_PREFIX}{self.name}"

    async def _load(self) -> CircuitBreakerState:
        state = await self._store.get(self._key)
        if state is None:
            state = CircuitBreakerState()
            await self._store.set(self._key, state)
        return state

    async def call(
        self, operation: Callable[[], Awaitable[T]], timeout: float | None = None
    ) -> T:
        """Run ``operation`` through the breaker.

        Args:
            operation: Zero-argument coroutine function performing the external call
            timeout: Per-call timeout in seconds (defaults to the dependency's timeout_ms)

        Returns:
            Whatever the operation returns

        Raises:
            CircuitOpenError: Breaker open (or a probe is already in flight)
            CircuitTimeoutError: Operation exceeded the timeout
            Exception: Any error raised by the operation itself
        """
        is_probe = await self._before_call()
        effective_timeout = timeout if timeout is not None else self.config.timeout_seconds

        try:
            result = await asyncio.wait_for(operation(), timeout=effective_timeout)
        except asyncio.TimeoutError as e:
            await self._on_failure(is_probe, e)
            raise CircuitTimeoutError(self.name, effective_timeout) from None
        except asyncio.CancelledError:
            await self._release_probe(is_probe)
            raise
        except self.config.ignored_exceptions:
            await self._release_probe(is_probe)
            raise
        except Exception as e:
            await self._on_failure(is_probe, e)
            raise

        await self._on_success(is_probe)
        return result

    async def _before_call(self) -> bool:
        """Admit or reject a call. Returns True when the admitted call is the probe."""
        async with self._lock:
            state = await self._load()
            now = self._clock()

            if state.state == CircuitState.OPEN:
                if now < state.next_attempt_time:
                    raise CircuitOpenError(self.name, retry_after=state.next_attempt_time - now)
                self._transition(state, CircuitState.HALF_OPEN)
                state.failure_count = 0
                state.success_count = 0

            if state.state == CircuitState.HALF_OPEN:
                if state.probe_in_flight:
                    raise CircuitOpenError(self.name)
                state.probe_in_flight = True
                await self._store.set(self._key, state)
                return True

            return False

    async def _on_success(self, is_probe: bool) -> None:
        async with self._lock:
            state = await self._load()

            if state.state == CircuitState.HALF_OPEN and is_probe:
                state.probe_in_flight = False
                state.success_count += 1
                if state.success_count >= self.config.success_threshold:
                    self._transition(state, CircuitState.CLOSED)
                    state.failure_count = 0
                    state.success_count = 0
            elif state.state == CircuitState.CLOSED:
                state.failure_count = 0

            await self._store.set(self._key, state)

    async def _on_failure(self, is_probe: bool, error: BaseException) -> None:
        async with self._lock:
            state = await self._load()
            now = self._clock()

            if state.state == CircuitState.HALF_OPEN:
                # Results of calls admitted before the breaker opened do not judge the probe
                if not is_probe:
                    return
                state.probe_in_flight = False
                state.failure_count += 1
                state.last_failure_time = now
                self._open(state, now)
            elif state.state == CircuitState.CLOSED:
                window = self.config.monitoring_period_seconds
                if state.failure_count and now - state.last_failure_time > window:
                    state.failure_count = 0
                state.failure_count += 1
                state.last_failure_time = now

                logger.warning(
                    "circuit_breaker.failure",
                    dependency=self.name,
                    failure_count=state.failure_count,
                    failure_threshold=self.config.failure_threshold,
                    error=str(error) or type(error).__name__,
                    error_type=type(error).__name__,
                )

                if state.failure_count >= self.config.failure_threshold:
                    self._open(state, now)
            else:
                state.failure_count += 1
                state.last_failure_time = now

            await self._store.set(self._key, state)

    async def _release_probe(self, is_probe: bool) -> None:
        if not is_probe:
            return
        async with self._lock:
            state = await self._load()
            state.probe_in_flight = False
            await self._store.set(self._key, state)

    def _open(self, state: CircuitBreakerState, now: float) -> None:
        self._transition(state, CircuitState.OPEN)
        state.success_count = 0
        state.next_attempt_time = now + self.config.reset_timeout_seconds

    def _transition(self, state: CircuitBreakerState, new_state: CircuitState) -> None:
        previous = state.state
        state.state = new_state
        log = logger.error if new_state == CircuitState.OPEN else logger.info
        log(
            f"circuit_breaker.{'opened' if new_state == CircuitState.OPEN else new_state.value}",
            dependency=self.name,
            previous_state=previous.value,
            state=new_state.value,
            failure_count=state.failure_count,
            success_count=state.success_count,
        )

    async def get_state(self) -> CircuitBreakerState:
        """Return a copy of the current state."""
        state = await self._load()
        return CircuitBreakerState(**asdict(state))

    async def is_available(self) -> bool:
        """True when a call made now would not be rejected for an open breaker."""
        state = await self._load()
        if state.state == CircuitState.OPEN:
            return self._clock() >= state.next_attempt_time
        if state.state == CircuitState.HALF_OPEN:
            return not state.probe_in_flight
        return True

    async def snapshot(self) -> dict:
        """Serializable view of the breaker for health reporting."""
        state = await self._load()
        now = self._clock()
        retry_after = (
            max(0.0, state.next_attempt_time - now) if state.state == CircuitState.OPEN else 0.0
        )
        return {
            "state": state.state.value,
            "failure_count": state.failure_count,
            "success_count": state.success_count,
            "failure_threshold": self.config.failure_threshold,
            "retry_after_seconds": round(retry_after, 3),
            "available": await self.is_available(),
        }

    async def force_close(self) -> None:
        """Force the breaker closed (operator reset)."""
        async with self._lock:
            await self._store.set(self._key, CircuitBreakerState())
        logger.info("circuit_breaker.force_closed", dependency=self.name)


class CircuitBreakerRegistry:
    """Process-wide map of dependency name to breaker.

    Each dependency gets its own breaker and its own tuning, so an outage of one
    dependency never opens another dependency's breaker.
    """

    def __init__(
        self,
        configs: dict[str, CircuitBreakerConfig] | None = None,
        store: StateStore | None = None,
        clock: MonotonicClock = monotonic,
    ):
        self._configs = dict(configs or {})
        self._store = store if store is not None else InMemoryStateStore()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        for name in self._configs:
            self.get(name)

    def get(self, name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        """Return the breaker for ``name``, creating it on first use."""
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                config or self._configs.get(name),
                store=self._store,
                clock=self._clock,
            )
            self._breakers[name] = breaker
        return breaker

    async def execute(
        self,
        dependency_name: str,
        operation: Callable[[], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Run ``operation`` through the breaker of ``dependency_name``."""
        return await self.get(dependency_name).call(operation, timeout=timeout)

    @property
    def names(self) -> list[str]:
        return sorted(self._breakers)

    async def snapshots(self) -> dict[str, dict]:
        return {name: await self._breakers[name].snapshot() for name in self.names}
