"""Celery periodic tasks: overdue escalation and promissory note expiry."""

import asyncio
import logging
from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from bursar.clock import school_today
from bursar.config import settings
from bursar.services.actor import SYSTEM_ACTOR
from bursar.services.overdue_engine import OverdueScope, bulk_mark_overdue
from bursar.services.promissory_notes import expire_lapsed_notes
from bursar.services.unit_of_work import run_in_transaction
from bursar.tasks import celery_app

logger = logging.getLogger(__name__)

__all__ = ["mark_overdue_ledgers", "expire_promissory_notes"]


def _run_async(fn):
    """Run ``fn(session_factory)`` on a fresh engine and event loop.

    asyncpg connections belong to the loop that opened them, so each task run
    builds and disposes its own engine.
    """
    async def _run():
        engine = create_async_engine(settings.database_url)
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        try:
            return await fn(factory)
        finally:
            await engine.dispose()

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(_run())
    finally:
        loop.close()


@celery_app.task(name="bursar.tasks.ledger_tasks.mark_overdue_ledgers")
def mark_overdue_ledgers(cutoff: str | None = None) -> dict:
    """Flag every ledger with a balance due on or before ``cutoff`` (default today)."""
    cutoff_date = date.fromisoformat(cutoff) if cutoff else school_today()
    # One transaction per ledger; see bulk_mark_overdue.
    marked = _run_async(
        lambda factory: bulk_mark_overdue(
            OverdueScope(), cutoff_date, SYSTEM_ACTOR, session_factory=factory
        )
    )
    logger.info("Daily overdue run for %s marked %d ledgers", cutoff_date, marked)
    return {"cutoff": cutoff_date.isoformat(), "marked": marked}


@celery_app.task(name="bursar.tasks.ledger_tasks.expire_promissory_notes")
def expire_promissory_notes() -> dict:
    today = school_today()
    expired = _run_async(
        lambda factory: run_in_transaction(
            lambda db: expire_lapsed_notes(db, today), session_factory=factory
        )
    )
    return {"date": today.isoformat(), "expired": expired}
