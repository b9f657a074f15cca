"""Tests for promissory notes."""

import pytest
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from bursar.models.ledger import StudentLedger
from bursar.models.promissory_note import NoteStatus, PromissoryNote
from bursar.services.actor import Actor, Role
from bursar.services.exceptions import (
    InvalidStateTransition,
    InvariantViolation,
    PreconditionFailed,
    ValidationError,
)
from bursar.services.promissory_notes import (
    approve_note,
    decline_note,
    expire_lapsed_notes,
    fulfill_note,
    submit_note,
)

TODAY = date(2024, 9, 15)
STUDENT = Actor(user_id=30, role=Role.STUDENT, student_id=3)
ACCOUNTING = Actor(user_id=5, role=Role.ACCOUNTING)


def _mock_db() -> AsyncMock:
    db = AsyncMock()
    db.add = MagicMock()
    return db


def _ledger(**overrides) -> StudentLedger:
    ledger = StudentLedger.blank(student_id=3, school_year="2024-2025")
    ledger.id = 11
    ledger.total_assessed = Decimal("10000")
    ledger.total_paid = Decimal("4000")
    for k, v in overrides.items():
        setattr(ledger, k, v)
    return ledger


def _note(status=NoteStatus.PENDING, **overrides) -> PromissoryNote:
    note = PromissoryNote(
        id=90,
        ledger_id=11,
        student_id=3,
        amount=None,
        paid_at_submission=Decimal("4000"),
        submitted_date=TODAY,
        due_date=TODAY + timedelta(days=30),
        reason="Waiting for harvest income",
        status=status,
    )
    for k, v in overrides.items():
        setattr(note, k, v)
    return note


@pytest.fixture(autouse=True)
def _fixed_today():
    with patch("bursar.services.promissory_notes.school_today", return_value=TODAY):
        yield


class TestSubmit:

    @pytest.mark.asyncio
    async def test_submit(self):
        with patch("bursar.services.promissory_notes.lock_ledger", return_value=_ledger()), \
             patch("bursar.services.promissory_notes._open_note_for", return_value=None):
            note = await submit_note(
                _mock_db(), 11, TODAY + timedelta(days=20), " Job starts next month ",
                STUDENT, amount="2000",
            )
        assert note.status == NoteStatus.PENDING
        assert note.reason == "Job starts next month"
        assert note.amount == Decimal("2000.00")
        assert note.paid_at_submission == Decimal("4000.00")
        assert note.submitted_date == TODAY

    @pytest.mark.asyncio
    async def test_due_date_must_be_future(self):
        with pytest.raises(ValidationError, match="after today"):
            await submit_note(_mock_db(), 11, TODAY, "reason", STUDENT)

    @pytest.mark.asyncio
    async def test_one_open_note_per_ledger(self):
        with patch("bursar.services.promissory_notes.lock_ledger", return_value=_ledger()), \
             patch("bursar.services.promissory_notes._open_note_for", return_value=_note()):
            with pytest.raises(InvariantViolation, match="already has an open"):
                await submit_note(_mock_db(), 11, TODAY + timedelta(days=5), "again", STUDENT)

    @pytest.mark.asyncio
    async def test_nothing_owed(self):
        settled = _ledger(total_paid=Decimal("10000"))
        with patch("bursar.services.promissory_notes.lock_ledger", return_value=settled):
            with pytest.raises(PreconditionFailed, match="no outstanding balance"):
                await submit_note(_mock_db(), 11, TODAY + timedelta(days=5), "r", STUDENT)

    @pytest.mark.asyncio
    async def test_amount_above_balance(self):
        with patch("bursar.services.promissory_notes.lock_ledger", return_value=_ledger()):
            with pytest.raises(ValidationError, match="exceeds the balance"):
                await submit_note(
                    _mock_db(), 11, TODAY + timedelta(days=5), "r", STUDENT, amount="6000.01"
                )

    @pytest.mark.asyncio
    async def test_other_students_ledger(self):
        other = Actor(user_id=31, role=Role.STUDENT, student_id=4)
        with patch("bursar.services.promissory_notes.lock_ledger", return_value=_ledger()):
            with pytest.raises(PreconditionFailed, match="their own ledger"):
                await submit_note(_mock_db(), 11, TODAY + timedelta(days=5), "r", other)


class TestReview:

    @pytest.mark.asyncio
    async def test_approve(self):
        note = _note()
        with patch("bursar.services.promissory_notes.lock_note", return_value=note):
            result = await approve_note(_mock_db(), 90, ACCOUNTING, "ok")
        assert result.status == NoteStatus.APPROVED
        assert result.reviewed_by == 5
        assert result.review_notes == "ok"

    @pytest.mark.asyncio
    async def test_decline_needs_notes(self):
        with pytest.raises(ValidationError):
            await decline_note(_mock_db(), 90, ACCOUNTING, None)

    @pytest.mark.asyncio
    async def test_review_twice(self):
        with patch(
            "bursar.services.promissory_notes.lock_note",
            return_value=_note(NoteStatus.DECLINED),
        ):
            with pytest.raises(InvalidStateTransition, match="expected pending"):
                await approve_note(_mock_db(), 90, ACCOUNTING)


class TestFulfill:

    @pytest.mark.asyncio
    async def test_fulfilled_when_balance_cleared(self):
        note = _note(NoteStatus.APPROVED)
        db = _mock_db()
        db.get.return_value = _ledger(total_paid=Decimal("10000"))
        with patch("bursar.services.promissory_notes.lock_note", return_value=note):
            result = await fulfill_note(db, 90, ACCOUNTING)
        assert result.status == NoteStatus.FULFILLED

    @pytest.mark.asyncio
    async def test_fulfilled_when_promised_amount_paid(self):
        note = _note(NoteStatus.APPROVED, amount=Decimal("2000"))
        db = _mock_db()
        db.get.return_value = _ledger(total_paid=Decimal("6000"))
        with patch("bursar.services.promissory_notes.lock_note", return_value=note):
            result = await fulfill_note(db, 90, ACCOUNTING)
        assert result.status == NoteStatus.FULFILLED

    @pytest.mark.asyncio
    async def test_not_kept_yet(self):
        note = _note(NoteStatus.APPROVED, amount=Decimal("2000"))
        db = _mock_db()
        db.get.return_value = _ledger(total_paid=Decimal("5000"))
        with patch("bursar.services.promissory_notes.lock_note", return_value=note):
            with pytest.raises(PreconditionFailed, match="not kept yet"):
                await fulfill_note(db, 90, ACCOUNTING)

    @pytest.mark.asyncio
    async def test_pending_cannot_be_fulfilled(self):
        with patch("bursar.services.promissory_notes.lock_note", return_value=_note()):
            with pytest.raises(InvalidStateTransition):
                await fulfill_note(_mock_db(), 90, ACCOUNTING)


class TestExpiry:

    def test_is_lapsed(self):
        note = _note(due_date=TODAY - timedelta(days=1))
        assert note.is_lapsed(TODAY) is True
        assert _note(NoteStatus.FULFILLED, due_date=TODAY - timedelta(days=1)).is_lapsed(TODAY) is False

    @pytest.mark.asyncio
    async def test_expire_returns_rowcount(self):
        db = _mock_db()
        db.execute.return_value = MagicMock(rowcount=4)
        assert await expire_lapsed_notes(db) == 4
        db.execute.assert_awaited_once()
