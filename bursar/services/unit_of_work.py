"""Transaction scope with bounded retry on concurrency conflicts.

Every mutating API call runs its service function through
``run_in_transaction``: one session, one transaction, committed on success.
Lost updates (``StaleDataError`` from a mapped ``version`` column),
serialization failures, deadlocks and lock timeouts are retried on a fresh
session up to ``settings.conflict_retry_attempts`` times before surfacing as
``ConcurrencyConflict``.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from bursar.config import settings
from bursar.database import async_session
from bursar.services.exceptions import ConcurrencyConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected, lock_not_available
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01", "55P03"})

_BACKOFF_SECONDS = 0.05


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, DBAPIError):
        return _sqlstate(exc) in RETRYABLE_SQLSTATES
    return False


async def run_in_transaction(
    fn: Callable[[AsyncSession], Awaitable[T]],
    *,
    attempts: int | None = None,
    session_factory=None,
) -> T:
    """Run ``fn(db)`` in its own transaction, retrying on conflict."""
    factory = session_factory or async_session
    max_attempts = attempts or settings.conflict_retry_attempts
    last_exc: BaseException | None = None

    for attempt in range(1, max_attempts + 1):
        async with factory() as db:
            try:
                result = await fn(db)
                await db.commit()
                return result
            except Exception as exc:
                await db.rollback()
                if not is_retryable(exc):
                    raise
                last_exc = exc
                logger.warning(
                    "Concurrency conflict on attempt %d/%d: %s",
                    attempt, max_attempts, type(exc).__name__,
                )
        await asyncio.sleep(_BACKOFF_SECONDS * attempt)

    raise ConcurrencyConflict(
        f"Conflicting update did not resolve after {max_attempts} attempts; retry later"
    ) from last_exc
