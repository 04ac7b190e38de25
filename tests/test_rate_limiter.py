"""Fixed-window rate limiter tests."""

import pytest

from mockgen.app import build_rate_limiters
from mockgen.core.config import Settings
from mockgen.services.resilience.rate_limiter import RateLimiter, RateLimitRule
from mockgen.services.resilience.state_store import InMemoryStateStore


@pytest.fixture
def limiter(mono_clock) -> RateLimiter:
    return RateLimiter(RateLimitRule(window_seconds=60, max_requests=3), clock=mono_clock, name="jobs")


@pytest.mark.asyncio
class TestFixedWindow:
    async def test_exactly_max_requests_allowed(self, limiter):
        decisions = [await limiter.allow("1.2.3.4") for _ in range(3)]

        assert all(d.allowed for d in decisions)
        assert [d.remaining for d in decisions] == [2, 1, 0]
        assert all(d.limit == 3 for d in decisions)

    async def test_request_over_limit_rejected_with_retry_after(self, limiter, mono_clock):
        for _ in range(3):
            await limiter.allow("1.2.3.4")
        mono_clock.advance(10.5)

        decision = await limiter.allow("1.2.3.4")

        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.retry_after == 50  # ceil(49.5)
        assert decision.reset_after == pytest.approx(49.5)

    async def test_rejected_requests_do_not_consume_count(self, limiter, mono_clock):
        for _ in range(3):
            await limiter.allow("1.2.3.4")
        for _ in range(5):
            await limiter.allow("1.2.3.4")

        mono_clock.advance(60)
        decision = await limiter.allow("1.2.3.4")

        assert decision.allowed is True
        assert decision.remaining == 2

    async def test_counter_resets_after_window(self, limiter, mono_clock):
        for _ in range(3):
            await limiter.allow("1.2.3.4")
        assert (await limiter.allow("1.2.3.4")).allowed is False

        mono_clock.advance(60)

        decisions = [await limiter.allow("1.2.3.4") for _ in range(3)]
        assert all(d.allowed for d in decisions)

    async def test_clients_are_counted_separately(self, limiter):
        for _ in range(3):
            await limiter.allow("1.2.3.4")

        decision = await limiter.allow("5.6.7.8")

        assert decision.allowed is True
        assert decision.remaining == 2

    async def test_retry_after_is_at_least_one_second(self, limiter, mono_clock):
        for _ in range(3):
            await limiter.allow("1.2.3.4")
        mono_clock.advance(59.9)

        decision = await limiter.allow("1.2.3.4")

        assert decision.allowed is False
        assert decision.retry_after == 1


@pytest.mark.asyncio
class TestCleanup:
    async def test_cleanup_removes_expired_entries(self, mono_clock):
        store = InMemoryStateStore()
        limiter = RateLimiter(RateLimitRule(60, 3), store=store, clock=mono_clock, name="jobs")
        await limiter.allow("1.2.3.4")
        await limiter.allow("5.6.7.8")

        mono_clock.advance(61)
        removed = await limiter.cleanup_expired()

        assert removed == 2
        assert len(store) == 0

    async def test_cleanup_keeps_live_entries(self, mono_clock):
        store = InMemoryStateStore()
        limiter = RateLimiter(RateLimitRule(60, 3), store=store, clock=mono_clock, name="jobs")
        await limiter.allow("1.2.3.4")
        mono_clock.advance(30)
        await limiter.allow("5.6.7.8")

        mono_clock.advance(31)
        removed = await limiter.cleanup_expired()

        assert removed == 1
        assert len(store) == 1

    async def test_cleanup_runs_automatically_once_per_window(self, mono_clock):
        store = InMemoryStateStore()
        limiter = RateLimiter(RateLimitRule(60, 3), store=store, clock=mono_clock, name="jobs")
        for client in ("a", "b", "c"):
            await limiter.allow(client)

        mono_clock.advance(60)
        await limiter.allow("d")

        # Stale a, b and c were purged; only d's fresh window remains
        assert [key for key, _ in await store.items()] == ["rate_limit:jobs:d"]

    async def test_cleanup_only_touches_own_route(self, mono_clock):
        store = InMemoryStateStore()
        jobs = RateLimiter(RateLimitRule(60, 3), store=store, clock=mono_clock, name="jobs")
        status = RateLimiter(RateLimitRule(600, 3), store=store, clock=mono_clock, name="status")
        await jobs.allow("a")
        await status.allow("a")

        mono_clock.advance(61)
        await jobs.cleanup_expired()

        assert [key for key, _ in await store.items()] == ["rate_limit:status:a"]


@pytest.mark.asyncio
class TestSharedStore:
    async def test_injected_empty_store_holds_windows(self, mono_clock):
        store = InMemoryStateStore()
        limiter = RateLimiter(RateLimitRule(60, 3), store=store, clock=mono_clock, name="jobs")

        await limiter.allow("1.2.3.4")

        assert limiter.store is store
        assert [key for key, _ in await store.items()] == ["rate_limit:jobs:1.2.3.4"]

    async def test_app_limiters_share_one_store(self):
        limiters = build_rate_limiters(Settings(APP_ENV="test"))

        await limiters["jobs"].allow("a")
        await limiters["webhooks"].allow("a")

        stores = {id(limiter.store) for limiter in limiters.values()}
        assert len(stores) == 1
        keys = [key for key, _ in await limiters["status"].store.items()]
        assert sorted(keys) == ["rate_limit:jobs:a", "rate_limit:webhooks:a"]
