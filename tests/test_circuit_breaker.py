"""Circuit breaker tests.

Tests focus on the breaker state machine:
- closed -> open after failure_threshold failures
- open rejects without invoking the operation until reset_timeout elapses
- half_open admits a single probe; one failure reopens, two successes close
- per-dependency isolation in the registry
"""

import asyncio

import pytest
from structlog.testing import capture_logs

from mockgen.services.exceptions import (
    CircuitOpenError,
    CircuitTimeoutError,
    ContentPolicyError,
    GenerationUnavailableError,
)
from mockgen.services.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from mockgen.services.resilience.state_store import InMemoryStateStore

TRANSITION_EVENTS = (
    "circuit_breaker.opened",
    "circuit_breaker.half_open",
    "circuit_breaker.closed",
)


class CountingOperation:
    """Async operation that records invocations and fails on demand."""

    def __init__(self, fail: bool = False, result: str = "ok"):
        self.fail = fail
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.fail:
            raise GenerationUnavailableError("503 Service Unavailable")
        return self.result


@pytest.fixture
def config() -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        failure_threshold=3,
        timeout_ms=1_000,
        reset_timeout_ms=60_000,
        monitoring_period_ms=60_000,
    )


@pytest.fixture
def breaker(config, mono_clock) -> CircuitBreaker:
    return CircuitBreaker("generation-service", config, clock=mono_clock)


async def trip(breaker: CircuitBreaker, failures: int) -> None:
    failing = CountingOperation(fail=True)
    for _ in range(failures):
        with pytest.raises(GenerationUnavailableError):
            await breaker.call(failing)


@pytest.mark.asyncio
class TestClosedState:
    async def test_success_passes_result_through(self, breaker):
        operation = CountingOperation(result="image-url")

        result = await breaker.call(operation)

        assert result == "image-url"
        assert operation.calls == 1
        assert (await breaker.get_state()).state == CircuitState.CLOSED

    async def test_opens_after_failure_threshold(self, breaker):
        await trip(breaker, 3)

        state = await breaker.get_state()
        assert state.state == CircuitState.OPEN
        assert state.failure_count == 3

    async def test_stays_closed_below_threshold(self, breaker):
        await trip(breaker, 2)

        state = await breaker.get_state()
        assert state.state == CircuitState.CLOSED
        assert state.failure_count == 2

    async def test_success_resets_failure_count(self, breaker):
        await trip(breaker, 2)

        await breaker.call(CountingOperation())
        await trip(breaker, 2)

        state = await breaker.get_state()
        assert state.state == CircuitState.CLOSED
        assert state.failure_count == 2

    async def test_failures_outside_monitoring_period_are_forgotten(self, breaker, mono_clock):
        await trip(breaker, 2)

        mono_clock.advance(61)
        await trip(breaker, 1)

        state = await breaker.get_state()
        assert state.state == CircuitState.CLOSED
        assert state.failure_count == 1

    async def test_ignored_exceptions_do_not_count(self, mono_clock):
        breaker = CircuitBreaker(
            "generation-service",
            CircuitBreakerConfig(failure_threshold=1, ignored_exceptions=(ContentPolicyError,)),
            clock=mono_clock,
        )

        async def rejected():
            raise ContentPolicyError("nsfw")

        with pytest.raises(ContentPolicyError):
            await breaker.call(rejected)

        assert (await breaker.get_state()).state == CircuitState.CLOSED


@pytest.mark.asyncio
class TestOpenState:
    async def test_rejects_without_invoking_operation(self, breaker, mono_clock):
        await trip(breaker, 3)
        operation = CountingOperation()

        # Five seconds later, well inside reset_timeout
        mono_clock.advance(5)
        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(operation)

        assert operation.calls == 0
        assert exc_info.value.dependency == "generation-service"
        assert exc_info.value.retry_after == pytest.approx(55)

    async def test_probe_allowed_after_reset_timeout(self, breaker, mono_clock):
        await trip(breaker, 3)
        mono_clock.advance(60)

        result = await breaker.call(CountingOperation(result="probe"))

        assert result == "probe"
        state = await breaker.get_state()
        assert state.state == CircuitState.HALF_OPEN
        assert state.success_count == 1
        assert state.probe_in_flight is False


@pytest.mark.asyncio
class TestHalfOpenState:
    async def test_two_probe_successes_close_breaker(self, breaker, mono_clock):
        await trip(breaker, 3)
        mono_clock.advance(60)

        await breaker.call(CountingOperation())
        await breaker.call(CountingOperation())

        state = await breaker.get_state()
        assert state.state == CircuitState.CLOSED
        assert state.failure_count == 0
        assert state.success_count == 0

    async def test_single_probe_failure_reopens(self, breaker, mono_clock):
        await trip(breaker, 3)
        mono_clock.advance(60)

        await trip(breaker, 1)

        state = await breaker.get_state()
        assert state.state == CircuitState.OPEN
        assert state.next_attempt_time == pytest.approx(mono_clock() + 60)

        # Rejected again until the new reset timeout elapses
        operation = CountingOperation()
        with pytest.raises(CircuitOpenError):
            await breaker.call(operation)
        assert operation.calls == 0

    async def test_failure_after_one_probe_success_reopens(self, breaker, mono_clock):
        await trip(breaker, 3)
        mono_clock.advance(60)

        await breaker.call(CountingOperation())
        await trip(breaker, 1)

        assert (await breaker.get_state()).state == CircuitState.OPEN

    async def test_only_one_concurrent_probe(self, breaker, mono_clock):
        await trip(breaker, 3)
        mono_clock.advance(60)

        release = asyncio.Event()
        started = asyncio.Event()

        async def slow_probe():
            started.set()
            await release.wait()
            return "probe"

        probe_task = asyncio.create_task(breaker.call(slow_probe))
        await started.wait()

        other = CountingOperation()
        with pytest.raises(CircuitOpenError):
            await breaker.call(other)
        assert other.calls == 0

        release.set()
        assert await probe_task == "probe"

        # Probe resolved; the next caller becomes the next probe
        await breaker.call(CountingOperation())
        assert (await breaker.get_state()).state == CircuitState.CLOSED

    async def test_cancelled_probe_releases_slot(self, breaker, mono_clock):
        await trip(breaker, 3)
        mono_clock.advance(60)

        started = asyncio.Event()

        async def hanging_probe():
            started.set()
            await asyncio.sleep(3600)

        probe_task = asyncio.create_task(breaker.call(hanging_probe))
        await started.wait()
        probe_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await probe_task

        state = await breaker.get_state()
        assert state.state == CircuitState.HALF_OPEN
        assert state.probe_in_flight is False


@pytest.mark.asyncio
class TestTimeout:
    async def test_timeout_counts_as_failure(self, mono_clock):
        breaker = CircuitBreaker(
            "commerce-platform",
            CircuitBreakerConfig(failure_threshold=1, timeout_ms=10),
            clock=mono_clock,
        )

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(CircuitTimeoutError) as exc_info:
            await breaker.call(slow)

        assert exc_info.value.timeout_seconds == pytest.approx(0.01)
        assert (await breaker.get_state()).state == CircuitState.OPEN

    async def test_per_call_timeout_overrides_config(self, breaker):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(CircuitTimeoutError):
            await breaker.call(slow, timeout=0.01)

        assert (await breaker.get_state()).failure_count == 1


@pytest.mark.asyncio
class TestRegistry:
    async def test_dependencies_are_isolated(self, mono_clock):
        registry = CircuitBreakerRegistry(
            {
                "generation-service": CircuitBreakerConfig(failure_threshold=1),
                "commerce-platform": CircuitBreakerConfig(failure_threshold=2),
            },
            clock=mono_clock,
        )

        with pytest.raises(GenerationUnavailableError):
            await registry.execute("generation-service", CountingOperation(fail=True))

        assert (await registry.get("generation-service").get_state()).state == CircuitState.OPEN
        result = await registry.execute("commerce-platform", CountingOperation(result="me"))
        assert result == "me"

    async def test_snapshots_report_each_dependency(self, mono_clock):
        registry = CircuitBreakerRegistry(
            {"generation-service": CircuitBreakerConfig(failure_threshold=1)}, clock=mono_clock
        )
        with pytest.raises(GenerationUnavailableError):
            await registry.execute("generation-service", CountingOperation(fail=True))

        snapshots = await registry.snapshots()

        assert registry.names == ["generation-service"]
        assert snapshots["generation-service"]["state"] == "open"
        assert snapshots["generation-service"]["available"] is False
        assert snapshots["generation-service"]["retry_after_seconds"] == pytest.approx(60)

    async def test_unknown_dependency_gets_default_config(self):
        registry = CircuitBreakerRegistry()

        breaker = registry.get("storage")

        assert breaker.config == CircuitBreakerConfig()
        assert registry.get("storage") is breaker

    async def test_force_close(self, breaker):
        await trip(breaker, 3)

        await breaker.force_close()

        assert (await breaker.get_state()).state == CircuitState.CLOSED
        assert await breaker.is_available() is True

    async def test_injected_store_holds_breaker_state(self, mono_clock):
        store = InMemoryStateStore()
        registry = CircuitBreakerRegistry(
            {"generation-service": CircuitBreakerConfig(failure_threshold=1)},
            store=store,
            clock=mono_clock,
        )

        with pytest.raises(GenerationUnavailableError):
            await registry.execute("generation-service", CountingOperation(fail=True))

        stored = await store.get("circuit_breaker:generation-service")
        assert stored is not None
        assert stored.state == CircuitState.OPEN


@pytest.mark.asyncio
class TestTransitionLogging:
    async def test_every_transition_is_logged(self, breaker, mono_clock):
        with capture_logs() as logs:
            await trip(breaker, 3)
            mono_clock.advance(60)
            await breaker.call(CountingOperation())
            await breaker.call(CountingOperation())

        transitions = [entry for entry in logs if entry["event"] in TRANSITION_EVENTS]
        assert [entry["event"] for entry in transitions] == list(TRANSITION_EVENTS)
        assert all(entry["dependency"] == "generation-service" for entry in transitions)
        opened = transitions[0]
        assert opened["log_level"] == "error"
        assert opened["failure_count"] == 3
        assert opened["previous_state"] == "closed"

    async def test_rejection_in_open_state_logs_no_transition(self, breaker, mono_clock):
        await trip(breaker, 3)

        with capture_logs() as logs:
            with pytest.raises(CircuitOpenError):
                await breaker.call(CountingOperation())

        assert not [entry for entry in logs if entry["event"] in TRANSITION_EVENTS]
