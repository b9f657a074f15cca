"""Tests for exam eligibility approvals."""

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from bursar.models.exam_approval import ExamApproval, ExamApprovalStatus, ExamType
from bursar.models.ledger import StudentLedger
from bursar.services.actor import Actor, Role
from bursar.services.exam_eligibility import (
    approve,
    bulk_approve,
    create_exam_approval,
    deny,
    update_paid_amount,
)
from bursar.services.exceptions import (
    InvalidStateTransition,
    PreconditionFailed,
    ResourceNotFound,
    ValidationError,
)

ACCOUNTING = Actor(user_id=8, role=Role.ACCOUNTING)


class _Savepoint:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


def _mock_db() -> AsyncMock:
    db = AsyncMock()
    db.add = MagicMock()
    db.begin_nested = MagicMock(side_effect=lambda: _Savepoint())
    return db


def _approval(approval_id=1, required="3000", paid="3000", **overrides) -> ExamApproval:
    approval = ExamApproval(
        id=approval_id,
        student_id=3,
        school_year="2024-2025",
        exam_type=ExamType.MIDTERM,
        required_amount=Decimal(required),
        paid_amount=Decimal(paid),
        status=ExamApprovalStatus.PENDING,
    )
    for k, v in overrides.items():
        setattr(approval, k, v)
    return approval


def _ledger(**overrides) -> StudentLedger:
    ledger = StudentLedger.blank(student_id=3, school_year="2024-2025")
    ledger.id = 11
    ledger.total_assessed = Decimal("10000")
    ledger.total_paid = Decimal("2500")
    for k, v in overrides.items():
        setattr(ledger, k, v)
    return ledger


class TestCreate:

    @pytest.mark.asyncio
    async def test_snapshot_of_total_paid(self):
        with patch("bursar.services.exam_eligibility.find_ledger", return_value=_ledger()):
            approval = await create_exam_approval(
                _mock_db(), 3, "2024-2025", "midterm", ACCOUNTING,
                required_amount="3000", term="1st_semester",
            )
        assert approval.paid_amount == Decimal("2500.00")
        assert approval.required_amount == Decimal("3000.00")
        assert approval.status == ExamApprovalStatus.PENDING
        assert approval.is_eligible is False
        assert approval.remaining_amount == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_required_defaults_to_overdue_balance(self):
        with patch(
            "bursar.services.exam_eligibility.find_ledger",
            return_value=_ledger(is_overdue=True),
        ):
            approval = await create_exam_approval(
                _mock_db(), 3, "2024-2025", ExamType.FINALS, ACCOUNTING,
            )
        assert approval.required_amount == Decimal("7500.00")

    @pytest.mark.asyncio
    async def test_required_needed_when_not_overdue(self):
        with patch("bursar.services.exam_eligibility.find_ledger", return_value=_ledger()):
            with pytest.raises(ValidationError, match="required_amount is required"):
                await create_exam_approval(_mock_db(), 3, "2024-2025", "prelim", ACCOUNTING)

    @pytest.mark.asyncio
    async def test_unknown_exam_type(self):
        with pytest.raises(ValidationError, match="Unknown exam type"):
            await create_exam_approval(_mock_db(), 3, "2024-2025", "oral", ACCOUNTING)

    @pytest.mark.asyncio
    async def test_unknown_term(self):
        with pytest.raises(ValidationError, match="Unknown term"):
            await create_exam_approval(
                _mock_db(), 3, "2024-2025", "prelim", ACCOUNTING,
                required_amount=100, term="summer",
            )


class TestApproveDeny:

    @pytest.mark.asyncio
    async def test_approve_when_eligible(self):
        approval = _approval()
        with patch("bursar.services.exam_eligibility.lock_approval", return_value=approval):
            result = await approve(_mock_db(), 1, ACCOUNTING)
        assert result.status == ExamApprovalStatus.APPROVED
        assert result.approver_id == 8
        assert result.acted_at is not None

    @pytest.mark.asyncio
    async def test_approve_below_required(self):
        with patch(
            "bursar.services.exam_eligibility.lock_approval",
            return_value=_approval(paid="2999.99"),
        ):
            with pytest.raises(PreconditionFailed, match="below required"):
                await approve(_mock_db(), 1, ACCOUNTING)

    @pytest.mark.asyncio
    async def test_approve_non_pending(self):
        with patch(
            "bursar.services.exam_eligibility.lock_approval",
            return_value=_approval(status=ExamApprovalStatus.DENIED),
        ):
            with pytest.raises(InvalidStateTransition, match="expected pending"):
                await approve(_mock_db(), 1, ACCOUNTING)

    @pytest.mark.asyncio
    async def test_deny_needs_remarks(self):
        with pytest.raises(ValidationError, match="Remarks are required"):
            await deny(_mock_db(), 1, ACCOUNTING, " ")

    @pytest.mark.asyncio
    async def test_deny(self):
        approval = _approval(paid="0")
        with patch("bursar.services.exam_eligibility.lock_approval", return_value=approval):
            result = await deny(_mock_db(), 1, ACCOUNTING, "No payment on file")
        assert result.status == ExamApprovalStatus.DENIED
        assert result.remarks == "No payment on file"


class TestBulkApprove:

    @pytest.mark.asyncio
    async def test_mixed_results(self):
        approvals = {
            1: _approval(1),
            2: _approval(2, paid="100"),
            3: _approval(3, status=ExamApprovalStatus.APPROVED),
        }

        async def _lock(db, approval_id):
            if approval_id not in approvals:
                raise ResourceNotFound(f"Exam approval {approval_id} not found")
            return approvals[approval_id]

        with patch("bursar.services.exam_eligibility.lock_approval", side_effect=_lock):
            results = await bulk_approve(_mock_db(), [1, 2, 3, 4, 1], ACCOUNTING)

        assert [r.approval_id for r in results] == [1, 2, 3, 4]
        assert [r.ok for r in results] == [True, False, False, False]
        assert results[1].code == "precondition_failed"
        assert results[2].code == "invalid_state_transition"
        assert results[3].code == "not_found"
        assert approvals[1].status == ExamApprovalStatus.APPROVED


class TestUpdatePaidAmount:

    @pytest.mark.asyncio
    async def test_refresh_from_ledger_auto_approves(self):
        approval = _approval(paid="0", required="2500")
        with patch("bursar.services.exam_eligibility.lock_approval", return_value=approval), \
             patch("bursar.services.exam_eligibility.find_ledger", return_value=_ledger()):
            result = await update_paid_amount(_mock_db(), 1, ACCOUNTING)
        assert result.paid_amount == Decimal("2500.00")
        assert result.status == ExamApprovalStatus.APPROVED
        assert result.remarks == "Auto-approved after payment update"

    @pytest.mark.asyncio
    async def test_explicit_amount_still_short(self):
        approval = _approval(paid="0", required="2500")
        with patch("bursar.services.exam_eligibility.lock_approval", return_value=approval):
            result = await update_paid_amount(_mock_db(), 1, ACCOUNTING, paid_amount="1000")
        assert result.paid_amount == Decimal("1000.00")
        assert result.status == ExamApprovalStatus.PENDING

    @pytest.mark.asyncio
    async def test_negative_amount(self):
        with patch("bursar.services.exam_eligibility.lock_approval", return_value=_approval()):
            with pytest.raises(ValidationError, match="cannot be negative"):
                await update_paid_amount(_mock_db(), 1, ACCOUNTING, paid_amount="-1")

    @pytest.mark.asyncio
    async def test_only_pending(self):
        with patch(
            "bursar.services.exam_eligibility.lock_approval",
            return_value=_approval(status=ExamApprovalStatus.APPROVED),
        ):
            with pytest.raises(InvalidStateTransition):
                await update_paid_amount(_mock_db(), 1, ACCOUNTING, paid_amount="1")
