"""Async engine and session factory for the job store."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Seconds a SQLite writer waits on a locked database before failing
SQLITE_BUSY_TIMEOUT = 30


def setup_db_session(db_url: str, pool_size: int = 50) -> async_sessionmaker[AsyncSession]:
    """Build the session factory every Unit of Work draws its session from.

    Args:
        db_url: postgresql+psycopg://... in production, sqlite+aiosqlite://... locally
        pool_size: Connection pool size for server databases. Scheduler workers
            and request handlers share this pool, so it must cover
            WORKER_CONCURRENCY plus request traffic.

    Returns:
        Async session factory bound to a new engine
    """
    if db_url.startswith("sqlite"):
        # Concurrent claims/ledger writes queue on the file lock instead of erroring
        engine = create_async_engine(
            db_url, connect_args={"timeout": SQLITE_BUSY_TIMEOUT}, echo=False
        )
    else:
        engine = create_async_engine(
            db_url,
            pool_size=pool_size,
            max_overflow=0,
            pool_pre_ping=True,
            echo=False,
        )

    # Jobs and snapshots are read after commit when building API responses
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def dispose_db_session(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Close every pooled connection of the engine behind ``session_factory``."""
    engine = session_factory.kw.get("bind")
    if engine is not None:
        await engine.dispose()
