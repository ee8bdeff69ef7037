"""
Call-site retry helpers for the content store.

``with_store_retry`` retries transient connection failures with exponential
backoff and raises ``StoreUnavailable`` once attempts run out.
``retry_on_conflict`` reruns a write once inside a fresh savepoint when a
unique constraint race is lost, then raises ``ConflictError``.
"""

import asyncio
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from evforum.core.config import settings
from evforum.core.errors import ConflictError, StoreUnavailable

T = TypeVar("T")


async def with_store_retry(
    operation: Callable[[], Awaitable[T]],
    db: AsyncSession | None = None,
    attempts: int | None = None,
    backoff: float | None = None,
) -> T:
    """
    Run a read against the store, retrying transient failures.

    Args:
        operation: Zero-argument coroutine factory
        db: Session to roll back between attempts
        attempts: Max attempts (default from settings)
        backoff: Initial delay in seconds, doubled after each failure

    Returns:
        Whatever the operation returns
    """
    attempts = attempts or settings.store_retry_attempts
    delay = settings.store_retry_backoff_seconds if backoff is None else backoff

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except (OperationalError, InterfaceError) as e:
            if attempt == attempts:
                logger.error(f"Store unavailable after {attempts} attempts: {e}")
                raise StoreUnavailable() from e
            logger.warning(f"Store error (attempt {attempt}/{attempts}), retrying: {e}")
            if db is not None:
                await db.rollback()
            await asyncio.sleep(delay)
            delay *= 2

    raise StoreUnavailable()


async def retry_on_conflict(
    db: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    detail: str = "Conflicting update",
) -> T:
    """
    Run a write in a savepoint; on a unique-constraint race retry once with fresh state.

    The operation must re-read whatever it depends on, since the retry
    happens after the losing savepoint was rolled back.
    """
    for attempt in (1, 2):
        try:
            async with db.begin_nested():
                return await operation()
        except IntegrityError as e:
            if attempt == 2:
                logger.warning(f"Conflict persisted after retry: {e.orig}")
                raise ConflictError(detail) from e
            logger.info("Write lost a uniqueness race, retrying with fresh state")

    raise ConflictError(detail)
