"""
Engine and session factory for the donation database.

One engine per process, created on first use. Production runs on
PostgreSQL through asyncpg; tests point ``DATABASE_URL`` at SQLite.
"""
from typing import Any, Dict, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from donation_webhooks.config import Settings, get_settings
from donation_webhooks.database.models import Base

# Seconds before a pooled connection is replaced
POOL_RECYCLE_SECONDS = 3600

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _engine_options(settings: Settings) -> Dict[str, Any]:
    """
    Keyword arguments for ``create_async_engine``.

    Args:
        settings: Application settings

    Returns:
        Dict[str, Any]: Echo flag, plus pool sizing for server databases
    """
    options: Dict[str, Any] = {"echo": settings.database_echo}
    if make_url(settings.database_url).get_backend_name() == "sqlite":
        # SQLite pools take no sizing arguments
        return options
    options.update(
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
        pool_recycle=POOL_RECYCLE_SECONDS,
    )
    return options


def get_engine() -> AsyncEngine:
    """
    Get or create the process-wide engine.

    Returns:
        AsyncEngine: Engine built from the current settings
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **_engine_options(settings))
    return _engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Build a session factory bound to ``engine``.

    Objects stay readable after commit: the store hands loaded rows to
    callers outside the transaction that produced them.

    Args:
        engine: Engine the sessions connect through

    Returns:
        async_sessionmaker: Factory for ``AsyncSession`` objects
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get or create the session factory over ``get_engine()``.

    Returns:
        async_sessionmaker: Shared session factory
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


async def init_db() -> None:
    """Create any missing tables."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine; the next ``get_engine()`` call builds a new one."""
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
