"""Tests for the Celery periodic tasks (run eagerly, unit of work mocked)."""

import pytest
from datetime import date
from unittest.mock import AsyncMock, patch

from bursar.services.actor import SYSTEM_ACTOR
from bursar.services.overdue_engine import OverdueScope
from bursar.tasks import celery_app
from bursar.tasks.ledger_tasks import expire_promissory_notes, mark_overdue_ledgers


class TestBeatSchedule:

    def test_daily_jobs_registered(self):
        schedule = celery_app.conf.beat_schedule
        assert schedule["mark-overdue-daily"]["task"] == "bursar.tasks.ledger_tasks.mark_overdue_ledgers"
        assert schedule["expire-promissory-notes-daily"]["task"] == (
            "bursar.tasks.ledger_tasks.expire_promissory_notes"
        )


class TestLedgerTasks:

    def test_mark_overdue_with_explicit_cutoff(self):
        with patch("bursar.tasks.ledger_tasks._run_async", return_value=7) as run:
            result = mark_overdue_ledgers("2024-10-01")
        assert result == {"cutoff": "2024-10-01", "marked": 7}
        run.assert_called_once()

    @pytest.mark.asyncio
    async def test_mark_overdue_hands_session_factory_to_batch(self):
        with patch("bursar.tasks.ledger_tasks._run_async", return_value=0) as run:
            mark_overdue_ledgers("2024-10-01")
        run_batch = run.call_args.args[0]
        factory = object()
        with patch(
            "bursar.tasks.ledger_tasks.bulk_mark_overdue", new=AsyncMock(return_value=4)
        ) as bulk:
            assert await run_batch(factory) == 4
        bulk.assert_awaited_once_with(
            OverdueScope(), date(2024, 10, 1), SYSTEM_ACTOR, session_factory=factory
        )

    def test_mark_overdue_defaults_to_today(self):
        with patch("bursar.tasks.ledger_tasks._run_async", return_value=0), \
             patch("bursar.tasks.ledger_tasks.school_today", return_value=date(2024, 11, 4)):
            result = mark_overdue_ledgers()
        assert result["cutoff"] == "2024-11-04"

    def test_expire_notes(self):
        with patch("bursar.tasks.ledger_tasks._run_async", return_value=2), \
             patch("bursar.tasks.ledger_tasks.school_today", return_value=date(2024, 11, 4)):
            assert expire_promissory_notes() == {"date": "2024-11-04", "expired": 2}
