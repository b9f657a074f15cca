"""Tests for overdue escalation: single-ledger flags, the candidate query and the batch sweep."""

import pytest
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from bursar.config import settings
from bursar.models.ledger import StudentLedger
from bursar.models.student import Classification
from bursar.services.actor import SYSTEM_ACTOR, Actor, Role
from bursar.services.exceptions import InvalidStateTransition, ResourceNotFound
from bursar.services.overdue_engine import (
    OverdueScope,
    _candidate_ids,
    bulk_mark_overdue,
    candidate_query,
    clear_overdue,
    mark_overdue,
)

ACCOUNTING = Actor(user_id=4, role=Role.ACCOUNTING)
CUTOFF = date(2024, 10, 1)


def _mock_db() -> AsyncMock:
    db = AsyncMock()
    db.add = MagicMock()
    return db


def _ledger(ledger_id=11, owed="1000", **overrides) -> StudentLedger:
    ledger = StudentLedger.blank(student_id=3, school_year="2024-2025")
    ledger.id = ledger_id
    ledger.total_assessed = Decimal(owed)
    for k, v in overrides.items():
        setattr(ledger, k, v)
    return ledger


class TestMarkOverdue:

    @pytest.mark.asyncio
    async def test_marks_ledger_with_balance(self):
        ledger = _ledger()
        with patch("bursar.services.overdue_engine.lock_ledger", return_value=ledger):
            result = await mark_overdue(_mock_db(), 11, ACCOUNTING)
        assert result.is_overdue is True
        assert result.overdue_since is not None

    @pytest.mark.asyncio
    async def test_already_overdue_is_noop(self):
        since = object()
        ledger = _ledger(is_overdue=True, overdue_since=since)
        db = _mock_db()
        with patch("bursar.services.overdue_engine.lock_ledger", return_value=ledger):
            await mark_overdue(db, 11, ACCOUNTING)
        assert ledger.overdue_since is since
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_nothing_owed_is_noop(self):
        ledger = _ledger(owed="0")
        db = _mock_db()
        with patch("bursar.services.overdue_engine.lock_ledger", return_value=ledger):
            result = await mark_overdue(db, 11, ACCOUNTING)
        assert result is ledger
        assert ledger.is_overdue is False
        assert ledger.overdue_since is None
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_retired(self):
        with patch(
            "bursar.services.overdue_engine.lock_ledger",
            return_value=_ledger(is_retired=True),
        ):
            with pytest.raises(InvalidStateTransition):
                await mark_overdue(_mock_db(), 11, ACCOUNTING)

    @pytest.mark.asyncio
    async def test_clear(self):
        ledger = _ledger(is_overdue=True)
        with patch("bursar.services.overdue_engine.lock_ledger", return_value=ledger):
            result = await clear_overdue(_mock_db(), 11, ACCOUNTING)
        assert result.is_overdue is False
        assert result.overdue_since is None

    @pytest.mark.asyncio
    async def test_clear_not_overdue_is_noop(self):
        db = _mock_db()
        with patch("bursar.services.overdue_engine.lock_ledger", return_value=_ledger()):
            await clear_overdue(db, 11, ACCOUNTING)
        db.add.assert_not_called()



class _SessionFactory:
    """Stands in for async_sessionmaker: each call yields a fresh mock session."""

    def __init__(self):
        self.sessions: list[AsyncMock] = []

    def __call__(self):
        session = _mock_db()
        self.sessions.append(session)
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=session)
        context.__aexit__ = AsyncMock(return_value=False)
        return context


@pytest.fixture
def factory():
    with patch("bursar.services.unit_of_work._BACKOFF_SECONDS", 0):
        yield _SessionFactory()


class TestBulkMarkOverdue:

    @pytest.mark.asyncio
    async def test_marks_each_candidate_in_its_own_transaction(self, factory):
        ledgers = {1: _ledger(1), 2: _ledger(2), 3: _ledger(3)}
        with patch("bursar.services.overdue_engine._candidate_ids", return_value=[1, 2, 3]), \
             patch(
                 "bursar.services.overdue_engine.lock_ledger",
                 side_effect=lambda db, ledger_id: ledgers[ledger_id],
             ):
            marked = await bulk_mark_overdue(
                OverdueScope(), CUTOFF, SYSTEM_ACTOR, session_factory=factory
            )
        assert marked == 3
        assert all(l.is_overdue for l in ledgers.values())
        # one read session, then one committed session per ledger
        assert len(factory.sessions) == 4
        factory.sessions[0].commit.assert_not_awaited()
        for session in factory.sessions[1:]:
            session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_zero_balance_ledgers_untouched(self, factory):
        owing = [_ledger(1), _ledger(3)]
        settled = [_ledger(2, owed="0"), _ledger(4, owed="500", total_paid=Decimal("500"))]
        by_id = {l.id: l for l in owing + settled}
        with patch("bursar.services.overdue_engine._candidate_ids", return_value=[1, 2, 3, 4]), \
             patch(
                 "bursar.services.overdue_engine.lock_ledger",
                 side_effect=lambda db, ledger_id: by_id[ledger_id],
             ):
            marked = await bulk_mark_overdue(
                OverdueScope(), CUTOFF, SYSTEM_ACTOR, session_factory=factory
            )
        assert marked == 2
        assert all(l.is_overdue for l in owing)
        assert not any(l.is_overdue for l in settled)
        assert all(l.overdue_since is None for l in settled)

    @pytest.mark.asyncio
    async def test_paid_between_select_and_lock_is_skipped(self, factory):
        settled = _ledger(1)
        settled.total_paid = Decimal("1000")
        owing = _ledger(2)
        with patch("bursar.services.overdue_engine._candidate_ids", return_value=[1, 2]), \
             patch("bursar.services.overdue_engine.lock_ledger", side_effect=[settled, owing]):
            marked = await bulk_mark_overdue(
                OverdueScope(), CUTOFF, SYSTEM_ACTOR, session_factory=factory
            )
        assert marked == 1
        assert settled.is_overdue is False
        assert owing.is_overdue is True

    @pytest.mark.asyncio
    async def test_retired_between_select_and_lock_is_skipped(self, factory):
        with patch("bursar.services.overdue_engine._candidate_ids", return_value=[1]), \
             patch(
                 "bursar.services.overdue_engine.lock_ledger",
                 return_value=_ledger(1, is_retired=True),
             ):
            marked = await bulk_mark_overdue(
                OverdueScope(), CUTOFF, SYSTEM_ACTOR, session_factory=factory
            )
        assert marked == 0

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_batch(self, factory):
        good = _ledger(2)
        with patch("bursar.services.overdue_engine._candidate_ids", return_value=[1, 2, 3]), \
             patch(
                 "bursar.services.overdue_engine.lock_ledger",
                 side_effect=[
                     ResourceNotFound("Ledger 1 not found"),
                     good,
                     OperationalError("SELECT", {}, Exception("lock timeout")),
                 ],
             ):
            marked = await bulk_mark_overdue(
                OverdueScope(), CUTOFF, SYSTEM_ACTOR, session_factory=factory
            )
        assert marked == 1
        assert good.is_overdue is True
        failed_first, committed, failed_last = factory.sessions[1:]
        failed_first.rollback.assert_awaited_once()
        committed.commit.assert_awaited_once()
        failed_last.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lost_update_skips_only_that_ledger(self, factory):
        good = _ledger(2)

        def _lock(db, ledger_id):
            if ledger_id == 1:
                raise StaleDataError("version mismatch")
            return good

        with patch("bursar.services.overdue_engine._candidate_ids", return_value=[1, 2]), \
             patch("bursar.services.overdue_engine.lock_ledger", side_effect=_lock), \
             patch.object(settings, "conflict_retry_attempts", 2):
            marked = await bulk_mark_overdue(
                OverdueScope(), CUTOFF, SYSTEM_ACTOR, session_factory=factory
            )
        assert marked == 1
        assert good.is_overdue is True
        # read session, two attempts on ledger 1, one on ledger 2
        assert len(factory.sessions) == 4

    @pytest.mark.asyncio
    async def test_no_candidates(self, factory):
        with patch("bursar.services.overdue_engine._candidate_ids", return_value=[]):
            assert await bulk_mark_overdue(
                OverdueScope(), CUTOFF, SYSTEM_ACTOR, session_factory=factory
            ) == 0
        assert len(factory.sessions) == 1


class TestCandidateQuery:

    def _sql(self, scope: OverdueScope):
        compiled = candidate_query(scope, CUTOFF).compile(dialect=postgresql.dialect())
        return str(compiled), compiled.params

    def test_owing_not_overdue_not_retired_due_by_cutoff(self):
        sql, params = self._sql(OverdueScope())
        where = sql.split("WHERE", 1)[1]
        assert "CASE WHEN" in where
        for column in ("total_assessed", "grant_discount", "total_paid"):
            assert f"student_ledgers.{column}" in where
        assert "student_ledgers.is_overdue IS false" in where
        assert "student_ledgers.is_retired IS false" in where
        assert "student_ledgers.due_date IS NULL OR student_ledgers.due_date <=" in where
        assert CUTOFF in params.values()

    def test_unscoped_has_no_student_filters(self):
        sql, _ = self._sql(OverdueScope())
        where = sql.split("WHERE", 1)[1]
        assert "students." not in where
        assert "student_ledgers.school_year" not in where

    def test_scope_filters(self):
        scope = OverdueScope(
            school_year="2024-2025",
            classification=Classification.COLLEGE,
            department_id=2,
            year_level_id=5,
        )
        sql, params = self._sql(scope)
        where = sql.split("WHERE", 1)[1]
        assert "student_ledgers.school_year =" in where
        assert "students.classification =" in where
        assert "students.department_id =" in where
        assert "students.year_level_id =" in where
        values = list(params.values())
        assert "2024-2025" in values
        assert Classification.COLLEGE in values
        assert 2 in values and 5 in values

    @pytest.mark.asyncio
    async def test_candidate_ids_runs_query(self):
        db = _mock_db()
        result = MagicMock()
        result.scalars.return_value.all.return_value = [4, 9]
        db.execute.return_value = result
        assert await _candidate_ids(db, OverdueScope(), CUTOFF) == [4, 9]
        db.execute.assert_awaited_once()
