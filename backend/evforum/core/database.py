"""
Database engine and session management.

The content store is reached only through async SQLAlchemy sessions.
One session (and one transaction) is opened per request by ``get_db``.
"""

from typing import Any, AsyncGenerator

from loguru import logger
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from evforum.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for all forum models."""


def build_engine(url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine, applying pool settings where the driver supports them."""
    options: dict[str, Any] = {"echo": settings.database_echo}
    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
        )
    options.update(kwargs)
    return create_async_engine(url, **options)


engine = build_engine(settings.database_url)
async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a session bound to a single transaction.

    Commits when the request handler returns, rolls back if it raises.
    """
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create tables that do not exist yet."""
    # Import models so they register on Base.metadata
    from evforum.models import forum, user  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("Database schema ensured")


async def close_db() -> None:
    """Dispose of the connection pool."""
    await engine.dispose()
