"""
Async SQLAlchemy engine and sessions.

Two ways in: get_db() for request handlers (commits on success) and
async_session_factory() for the pipeline, relay forwards and workers, which
outlive the request that scheduled them and commit explicitly.
"""
import logging
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine = None
_async_session_factory = None


class Base(DeclarativeBase):
    pass


def _engine_options(settings) -> dict:
    options = {"echo": settings.app_env == "development"}
    if settings.database_url.startswith("sqlite"):
        return options
    options.update(
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
    )
    return options


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        from src.config import get_settings

        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **_engine_options(settings))
    return _engine


def _get_session_factory() -> async_sessionmaker:
    global _async_session_factory
    if _async_session_factory is None:
        # expire_on_commit=False: ORM objects stay readable after commit in async code
        _async_session_factory = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _async_session_factory


def async_session_factory() -> AsyncSession:
    """New session for work outside a request."""
    return _get_session_factory()()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, committed when the handler returns."""
    async with _get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
