"""Tests for the ledger store.

Tests cover:
- School year and amount validation
- Ledger creation (idempotent, race on the unique constraint)
- Assessment posting and percentage grant re-derivation
- Grant application / removal and the discount ceiling
- Derived balance and payment status
- Retirement
"""

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy.exc import IntegrityError

from bursar.models.grant import Grant, GrantRecipient, GrantType, RecipientStatus
from bursar.models.ledger import PaymentStatus, StudentLedger
from bursar.models.student import Classification, Student
from bursar.services.actor import Actor, Role
from bursar.services.exceptions import (
    InvalidStateTransition,
    InvariantViolation,
    PreconditionFailed,
    ResourceNotFound,
    ValidationError,
)
from bursar.services.ledger_store import (
    apply_grant,
    create_grant,
    get_balance,
    get_or_create_ledger,
    parse_amount,
    post_assessment,
    remove_grant,
    retire_ledger,
    validate_school_year,
)

ACCOUNTING = Actor(user_id=7, role=Role.ACCOUNTING)


class _Savepoint:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


def _mock_db() -> AsyncMock:
    db = AsyncMock()
    db.add = MagicMock()
    db.begin_nested = MagicMock(return_value=_Savepoint())
    return db


def _ledger(**overrides) -> StudentLedger:
    ledger = StudentLedger.blank(student_id=3, school_year="2024-2025")
    ledger.id = 11
    ledger.due_date = None
    for k, v in overrides.items():
        setattr(ledger, k, v)
    return ledger


def _grant(grant_type=GrantType.FIXED, value="2000", **overrides) -> Grant:
    grant = Grant(
        id=5,
        name="Academic Scholar",
        code="ACAD",
        type=grant_type,
        value=Decimal(value),
        school_year=None,
        is_active=True,
    )
    for k, v in overrides.items():
        setattr(grant, k, v)
    return grant


# ===================================================================
# Validation helpers (pure functions, no DB)
# ===================================================================


class TestValidation:

    def test_valid_school_year(self):
        assert validate_school_year("2024-2025") == "2024-2025"

    @pytest.mark.parametrize("value", ["2024-2026", "2024/2025", "24-25", "", None])
    def test_invalid_school_year(self, value):
        with pytest.raises(ValidationError, match="Invalid school year"):
            validate_school_year(value)

    def test_parse_amount_rounds_half_up(self):
        assert parse_amount("10.005") == Decimal("10.01")

    def test_parse_amount_rejects_garbage(self):
        with pytest.raises(ValidationError, match="tuition_fee must be a number"):
            parse_amount("ten", "tuition_fee")

    @pytest.mark.parametrize("value", ["NaN", "-NaN", "Infinity", "-inf", "sNaN", float("nan")])
    def test_parse_amount_rejects_non_finite(self, value):
        with pytest.raises(ValidationError, match="misc_fee must be a"):
            parse_amount(value, "misc_fee")


# ===================================================================
# Derived balance / payment status
# ===================================================================


class TestDerivedBalance:

    def test_nothing_assessed_is_unpaid(self):
        ledger = _ledger()
        assert ledger.balance == Decimal("0.00")
        assert ledger.payment_status == PaymentStatus.UNPAID

    def test_partial(self):
        ledger = _ledger(total_assessed=Decimal("10000"), total_paid=Decimal("2500"))
        assert ledger.balance == Decimal("7500.00")
        assert ledger.payment_status == PaymentStatus.PARTIAL

    def test_fully_covered_by_grant_is_paid(self):
        ledger = _ledger(total_assessed=Decimal("5000"), grant_discount=Decimal("5000"))
        assert ledger.balance == Decimal("0.00")
        assert ledger.payment_status == PaymentStatus.PAID

    def test_overpayment_floors_at_zero(self):
        ledger = _ledger(total_assessed=Decimal("1000"), total_paid=Decimal("1500"))
        assert ledger.balance == Decimal("0.00")
        assert ledger.payment_status == PaymentStatus.PAID


# ===================================================================
# Ledger creation
# ===================================================================


class TestGetOrCreateLedger:

    @pytest.mark.asyncio
    async def test_returns_existing(self):
        existing = _ledger()
        db = _mock_db()
        with patch("bursar.services.ledger_store.find_ledger", return_value=existing):
            result = await get_or_create_ledger(db, 3, "2024-2025")
        assert result is existing
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_creates_zeroed_ledger(self):
        db = _mock_db()
        db.get.return_value = Student(id=3, classification=Classification.COLLEGE)
        with patch("bursar.services.ledger_store.find_ledger", return_value=None):
            result = await get_or_create_ledger(db, 3, "2024-2025")
        assert result.student_id == 3
        assert result.total_assessed == Decimal("0")
        assert result.is_overdue is False
        db.add.assert_called_once_with(result)

    @pytest.mark.asyncio
    async def test_unknown_student(self):
        db = _mock_db()
        db.get.return_value = None
        with patch("bursar.services.ledger_store.find_ledger", return_value=None):
            with pytest.raises(ResourceNotFound, match="Student 3"):
                await get_or_create_ledger(db, 3, "2024-2025")

    @pytest.mark.asyncio
    async def test_lost_race_rereads_winner(self):
        winner = _ledger()
        db = _mock_db()
        db.get.return_value = Student(id=3, classification=Classification.K12)
        db.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))
        with patch(
            "bursar.services.ledger_store.find_ledger",
            side_effect=[None, winner],
        ):
            result = await get_or_create_ledger(db, 3, "2024-2025")
        assert result is winner

    @pytest.mark.asyncio
    async def test_bad_school_year(self):
        with pytest.raises(ValidationError):
            await get_or_create_ledger(_mock_db(), 3, "2024")


# ===================================================================
# Assessment
# ===================================================================


class TestPostAssessment:

    @pytest.mark.asyncio
    async def test_totals_recomputed(self):
        ledger = _ledger()
        db = _mock_db()
        with patch("bursar.services.ledger_store.lock_ledger", return_value=ledger), \
             patch("bursar.services.ledger_store._active_grant_lines", return_value=[]):
            result = await post_assessment(
                db, 11, {"tuition_fee": "10000", "misc_fee": 500}, ACCOUNTING
            )
        assert result.total_assessed == Decimal("10500.00")
        assert result.grant_discount == Decimal("0.00")
        assert result.payment_status == PaymentStatus.UNPAID

    @pytest.mark.asyncio
    async def test_percentage_grant_follows_assessment(self):
        ledger = _ledger(tuition_fee=Decimal("10000"), total_assessed=Decimal("10000"),
                         grant_discount=Decimal("1000"))
        grant = _grant(GrantType.PERCENTAGE, "10")
        recipient = GrantRecipient(discount_amount=Decimal("1000"), status=RecipientStatus.ACTIVE)
        db = _mock_db()
        with patch("bursar.services.ledger_store.lock_ledger", return_value=ledger), \
             patch(
                 "bursar.services.ledger_store._active_grant_lines",
                 return_value=[(recipient, grant)],
             ):
            await post_assessment(db, 11, {"tuition_fee": "20000"}, ACCOUNTING)
        assert recipient.discount_amount == Decimal("2000.00")
        assert ledger.grant_discount == Decimal("2000.00")

    @pytest.mark.asyncio
    async def test_fixed_grants_above_new_total_rejected(self):
        ledger = _ledger(tuition_fee=Decimal("10000"), total_assessed=Decimal("10000"),
                         grant_discount=Decimal("5000"))
        recipient = GrantRecipient(discount_amount=Decimal("5000"), status=RecipientStatus.ACTIVE)
        db = _mock_db()
        with patch("bursar.services.ledger_store.lock_ledger", return_value=ledger), \
             patch(
                 "bursar.services.ledger_store._active_grant_lines",
                 return_value=[(recipient, _grant(value="5000"))],
             ):
            with pytest.raises(InvariantViolation, match="exceed assessed total"):
                await post_assessment(db, 11, {"tuition_fee": "3000"}, ACCOUNTING)

    @pytest.mark.asyncio
    async def test_unknown_line_item(self):
        with pytest.raises(ValidationError, match="Unknown fee line items: lab_fee"):
            await post_assessment(_mock_db(), 11, {"lab_fee": 100}, ACCOUNTING)

    @pytest.mark.asyncio
    async def test_negative_line_item(self):
        with pytest.raises(ValidationError, match="cannot be negative"):
            await post_assessment(_mock_db(), 11, {"books_fee": "-1"}, ACCOUNTING)

    @pytest.mark.asyncio
    async def test_nothing_to_assess(self):
        with pytest.raises(ValidationError, match="Nothing to assess"):
            await post_assessment(_mock_db(), 11, {}, ACCOUNTING)

    @pytest.mark.asyncio
    async def test_retired_ledger_refuses(self):
        ledger = _ledger(is_retired=True)
        with patch("bursar.services.ledger_store.lock_ledger", return_value=ledger):
            with pytest.raises(InvalidStateTransition, match="retired"):
                await post_assessment(_mock_db(), 11, {"tuition_fee": 1}, ACCOUNTING)


# ===================================================================
# Grants
# ===================================================================


class TestGrants:

    @pytest.mark.asyncio
    async def test_apply_fixed_grant(self):
        ledger = _ledger(total_assessed=Decimal("10500"))
        db = _mock_db()
        db.get.return_value = _grant()
        with patch("bursar.services.ledger_store.lock_ledger", return_value=ledger), \
             patch("bursar.services.ledger_store._find_active_recipient", return_value=None):
            recipient = await apply_grant(db, 11, 5, ACCOUNTING)
        assert recipient.discount_amount == Decimal("2000.00")
        assert recipient.assigned_by == 7
        assert ledger.grant_discount == Decimal("2000.00")
        assert ledger.balance == Decimal("8500.00")

    @pytest.mark.asyncio
    async def test_apply_percentage_grant(self):
        ledger = _ledger(total_assessed=Decimal("10500"))
        db = _mock_db()
        db.get.return_value = _grant(GrantType.PERCENTAGE, "50")
        with patch("bursar.services.ledger_store.lock_ledger", return_value=ledger), \
             patch("bursar.services.ledger_store._find_active_recipient", return_value=None):
            recipient = await apply_grant(db, 11, 5, ACCOUNTING)
        assert recipient.discount_amount == Decimal("5250.00")

    @pytest.mark.asyncio
    async def test_discount_ceiling(self):
        ledger = _ledger(total_assessed=Decimal("10500"), grant_discount=Decimal("2000"))
        db = _mock_db()
        db.get.return_value = _grant(value="9000", code="BIG")
        with patch("bursar.services.ledger_store.lock_ledger", return_value=ledger), \
             patch("bursar.services.ledger_store._find_active_recipient", return_value=None):
            with pytest.raises(InvariantViolation, match="exceed assessed total"):
                await apply_grant(db, 11, 5, ACCOUNTING)
        assert ledger.grant_discount == Decimal("2000")

    @pytest.mark.asyncio
    async def test_already_active(self):
        db = _mock_db()
        db.get.return_value = _grant()
        with patch("bursar.services.ledger_store.lock_ledger", return_value=_ledger()), \
             patch(
                 "bursar.services.ledger_store._find_active_recipient",
                 return_value=GrantRecipient(),
             ):
            with pytest.raises(InvariantViolation, match="already active"):
                await apply_grant(db, 11, 5, ACCOUNTING)

    @pytest.mark.asyncio
    async def test_inactive_grant(self):
        db = _mock_db()
        db.get.return_value = _grant(is_active=False)
        with patch("bursar.services.ledger_store.lock_ledger", return_value=_ledger()):
            with pytest.raises(PreconditionFailed, match="inactive"):
                await apply_grant(db, 11, 5, ACCOUNTING)

    @pytest.mark.asyncio
    async def test_grant_for_other_year(self):
        db = _mock_db()
        db.get.return_value = _grant(school_year="2023-2024")
        with patch("bursar.services.ledger_store.lock_ledger", return_value=_ledger()):
            with pytest.raises(PreconditionFailed, match="2023-2024"):
                await apply_grant(db, 11, 5, ACCOUNTING)

    @pytest.mark.asyncio
    async def test_missing_grant(self):
        db = _mock_db()
        db.get.return_value = None
        with patch("bursar.services.ledger_store.lock_ledger", return_value=_ledger()):
            with pytest.raises(ResourceNotFound):
                await apply_grant(db, 11, 5, ACCOUNTING)

    @pytest.mark.asyncio
    async def test_remove_grant_subtracts_discount(self):
        ledger = _ledger(total_assessed=Decimal("10500"), grant_discount=Decimal("2000"))
        recipient = GrantRecipient(
            ledger_id=11, grant_id=5, discount_amount=Decimal("2000"),
            status=RecipientStatus.ACTIVE,
        )
        db = _mock_db()
        with patch("bursar.services.ledger_store.lock_ledger", return_value=ledger), \
             patch("bursar.services.ledger_store._find_active_recipient", return_value=recipient):
            result = await remove_grant(db, 11, 5, ACCOUNTING, RecipientStatus.GRADUATED)
        assert result.status == RecipientStatus.GRADUATED
        assert result.removed_at is not None
        assert ledger.grant_discount == Decimal("0.00")
        assert ledger.balance == Decimal("10500.00")

    @pytest.mark.asyncio
    async def test_remove_grant_not_active(self):
        with patch("bursar.services.ledger_store.lock_ledger", return_value=_ledger()), \
             patch("bursar.services.ledger_store._find_active_recipient", return_value=None):
            with pytest.raises(ResourceNotFound, match="not active"):
                await remove_grant(_mock_db(), 11, 5, ACCOUNTING)

    @pytest.mark.asyncio
    async def test_create_percentage_grant_over_100(self):
        with pytest.raises(ValidationError, match="exceed 100"):
            await create_grant(
                _mock_db(), name="Too much", code="X", grant_type=GrantType.PERCENTAGE,
                value="150", actor=ACCOUNTING,
            )

    @pytest.mark.asyncio
    async def test_create_duplicate_code(self):
        db = _mock_db()
        result = MagicMock()
        result.scalar_one_or_none.return_value = 1
        db.execute.return_value = result
        with pytest.raises(InvariantViolation, match="already exists"):
            await create_grant(
                db, name="Dup", code="ACAD", grant_type=GrantType.FIXED,
                value="100", actor=ACCOUNTING,
            )


# ===================================================================
# Balance and retirement
# ===================================================================


class TestBalanceAndRetirement:

    @pytest.mark.asyncio
    async def test_get_balance(self):
        ledger = _ledger(total_assessed=Decimal("10500"), grant_discount=Decimal("2000"),
                         total_paid=Decimal("500"))
        db = _mock_db()
        db.get.return_value = ledger
        balance = await get_balance(db, 11)
        assert balance.balance == Decimal("8000.00")
        assert balance.payment_status == PaymentStatus.PARTIAL
        assert balance.is_overdue is False

    @pytest.mark.asyncio
    async def test_get_balance_missing(self):
        db = _mock_db()
        db.get.return_value = None
        with pytest.raises(ResourceNotFound):
            await get_balance(db, 99)

    @pytest.mark.asyncio
    async def test_retire(self):
        ledger = _ledger()
        with patch("bursar.services.ledger_store.lock_ledger", return_value=ledger):
            result = await retire_ledger(_mock_db(), 11, ACCOUNTING)
        assert result.is_retired is True
        assert result.retired_at is not None

    @pytest.mark.asyncio
    async def test_retire_twice(self):
        with patch("bursar.services.ledger_store.lock_ledger", return_value=_ledger(is_retired=True)):
            with pytest.raises(InvalidStateTransition, match="already retired"):
                await retire_ledger(_mock_db(), 11, ACCOUNTING)
