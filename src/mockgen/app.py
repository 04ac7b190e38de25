"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mockgen.api.routes import health, jobs, webhooks
from mockgen.core.config import Settings, configure_logging
from mockgen.core.database import dispose_db_session, setup_db_session
from mockgen.services.commerce_client import CommercePlatformClient
from mockgen.services.generation.replicate_client import ReplicateGenerator
from mockgen.services.resilience.circuit_breaker import CircuitBreakerRegistry
from mockgen.services.resilience.rate_limiter import RateLimiter
from mockgen.services.resilience.state_store import InMemoryStateStore
from mockgen.uow import create_uow_factory
from mockgen.workers.generation_scheduler import JobScheduler, run_generation_scheduler

logger = structlog.get_logger()


class ResilientWorker:
    """Handle on a self-restarting worker; always points at the live incarnation."""

    def __init__(self, worker_name: str, shutdown_event: asyncio.Event):
        self.name = worker_name
        self.shutdown_event = shutdown_event
        self.task: Optional[asyncio.Task] = None
        self.restart_task: Optional[asyncio.Task] = None
        self.restarts = 0

    async def stop(self) -> None:
        """Signal shutdown, cancel the current task and any pending restart, and wait."""
        self.shutdown_event.set()
        pending = [t for t in (self.task, self.restart_task) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


def create_resilient_worker(
    coro_factory: Callable[[], Awaitable[None]],
    worker_name: str,
    shutdown_event: asyncio.Event,
    restart_delay: float = 1.0,
) -> ResilientWorker:
    """Run a long-lived loop as a task that is recreated whenever it dies.

    The scheduler loop already survives per-tick errors; this covers anything
    that escapes it. Nothing is restarted once ``shutdown_event`` is set.
    """
    worker = ResilientWorker(worker_name, shutdown_event)

    def spawn() -> None:
        worker.task = asyncio.create_task(coro_factory(), name=worker_name)
        worker.task.add_done_callback(on_worker_done)

    async def restart_later() -> None:
        await asyncio.sleep(restart_delay)
        if not shutdown_event.is_set():
            worker.restarts += 1
            logger.info("worker.restarting", worker=worker_name, restarts=worker.restarts)
            spawn()

    def on_worker_done(task: asyncio.Task) -> None:
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return
        if task.cancelled():
            # Event loop teardown without a shutdown signal
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc is None:
            logger.warning(
                "worker.stopped_unexpectedly", worker=worker_name, retry_in_seconds=restart_delay
            )
        else:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=restart_delay,
                exc_info=exc,
            )
        worker.restart_task = asyncio.create_task(restart_later())

    spawn()
    return worker


def build_rate_limiters(settings: Settings) -> dict[str, RateLimiter]:
    """One limiter per protected route, sharing a single state store."""
    store = InMemoryStateStore()
    return {
        name: RateLimiter(rule, store=store, name=name)
        for name, rule in settings.rate_limit_rules().items()
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the job store and run the generation scheduler for the app's lifetime.

    Breakers, rate limiters and the commerce client are created in create_app,
    so routes work without the lifespan (tests use ASGITransport, which skips it).
    """
    settings: Settings = app.state.settings

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    app.state.session_factory = session_factory
    app.state.uow_factory = create_uow_factory(session_factory)

    scheduler = JobScheduler.from_settings(
        settings,
        app.state.uow_factory,
        ReplicateGenerator(settings.replicate_api_token, settings.replicate_model_version),
        app.state.breakers,
    )

    shutdown_event = asyncio.Event()
    scheduler_worker = create_resilient_worker(
        lambda: run_generation_scheduler(scheduler, settings),
        "generation_scheduler",
        shutdown_event,
    )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        environment=settings.app_env,
        worker_concurrency=settings.worker_concurrency,
    )

    yield

    logger.info("application.shutdown")

    # In-flight attempts are abandoned; the stuck sweep requeues them on next start
    await scheduler_worker.stop()
    await dispose_db_session(session_factory)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the API app with its own breakers, rate limiters and commerce client.

    Each call yields independent resilience state, so tests can build an app
    per case. ``settings`` defaults to the environment.
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Mockgen Backend API",
        description="AI mockup generation jobs, credits and payment webhooks",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Resilience state lives per process; routes read it from app.state
    app.state.settings = settings
    app.state.breakers = CircuitBreakerRegistry(settings.breaker_configs())
    app.state.rate_limiters = build_rate_limiters(settings)
    app.state.commerce_client = CommercePlatformClient(
        settings.commerce_api_key, settings.commerce_api_base_url, app.state.breakers
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(jobs.router)
    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(health.router)

    return app


# Create app instance for uvicorn
app = create_app()
