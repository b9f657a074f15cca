"""Ledger entity store: the single source of truth for student balances.

One ``StudentLedger`` exists per (student, school year).  Every mutation
happens inside ``lock_ledger`` (``SELECT ... FOR UPDATE``) within the caller's
transaction, and the mapped ``version`` column turns any update that slipped
past the lock into a ``StaleDataError`` for the unit of work to retry.

Invariants maintained here:

* ``total_assessed`` is the sum of the fee line items.
* ``grant_discount`` is the sum of active grant recipients' discounts and
  never exceeds ``total_assessed``.
* Retired ledgers refuse every mutation.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select, func as sa_func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bursar.clock import utcnow
from bursar.models.grant import Grant, GrantRecipient, GrantType, RecipientStatus
from bursar.models.ledger import FEE_LINE_ITEMS, PaymentStatus, StudentLedger
from bursar.models.student import Classification, Student
from bursar.money import ZERO, to_money
from bursar.services.actor import Actor
from bursar.services.audit_trail import record_audit
from bursar.services.exceptions import (
    InvalidStateTransition,
    InvariantViolation,
    PreconditionFailed,
    ResourceNotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)

_SCHOOL_YEAR_RE = re.compile(r"^(\d{4})-(\d{4})$")


@dataclass
class LedgerFilters:
    school_year: str | None = None
    department_id: int | None = None
    classification: Classification | None = None
    year_level_id: int | None = None
    payment_status: PaymentStatus | None = None
    is_overdue: bool | None = None
    include_retired: bool = False


@dataclass(frozen=True)
class LedgerBalance:
    ledger_id: int
    total_assessed: Decimal
    grant_discount: Decimal
    total_paid: Decimal
    balance: Decimal
    payment_status: PaymentStatus
    is_overdue: bool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def validate_school_year(school_year: str) -> str:
    """Accept ``YYYY-YYYY`` where the second year follows the first."""
    match = _SCHOOL_YEAR_RE.match(school_year or "")
    if not match or int(match.group(2)) != int(match.group(1)) + 1:
        raise ValidationError(f"Invalid school year {school_year!r}; expected e.g. 2024-2025")
    return school_year


def parse_amount(value: Any, field: str = "amount") -> Decimal:
    try:
        amount = to_money(value)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number, got {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number, got {value!r}")
    return amount


def ensure_active(ledger: StudentLedger) -> None:
    if ledger.is_retired:
        raise InvalidStateTransition(f"Ledger {ledger.id} is retired")


def ledger_scope_conditions(
    *,
    school_year: str | None = None,
    classification: Classification | None = None,
    department_id: int | None = None,
    year_level_id: int | None = None,
) -> list:
    """WHERE clauses for a ledger query joined to ``Student``."""
    conditions = []
    if school_year:
        conditions.append(StudentLedger.school_year == school_year)
    if classification:
        conditions.append(Student.classification == classification)
    if department_id:
        conditions.append(Student.department_id == department_id)
    if year_level_id:
        conditions.append(Student.year_level_id == year_level_id)
    return conditions


def _snapshot(ledger: StudentLedger) -> dict:
    return {
        **ledger.fee_breakdown(),
        "total_assessed": ledger.total_assessed,
        "grant_discount": ledger.grant_discount,
        "total_paid": ledger.total_paid,
        "due_date": ledger.due_date,
    }


async def _active_grant_lines(
    db: AsyncSession, ledger_id: int
) -> list[tuple[GrantRecipient, Grant]]:
    result = await db.execute(
        select(GrantRecipient, Grant)
        .join(Grant, Grant.id == GrantRecipient.grant_id)
        .where(
            GrantRecipient.ledger_id == ledger_id,
            GrantRecipient.status == RecipientStatus.ACTIVE,
        )
        .order_by(GrantRecipient.id)
    )
    return list(result.tuples().all())


async def _find_active_recipient(
    db: AsyncSession, ledger_id: int, grant_id: int
) -> GrantRecipient | None:
    result = await db.execute(
        select(GrantRecipient).where(
            GrantRecipient.ledger_id == ledger_id,
            GrantRecipient.grant_id == grant_id,
            GrantRecipient.status == RecipientStatus.ACTIVE,
        )
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def get_ledger(db: AsyncSession, ledger_id: int) -> StudentLedger:
    """Lock-free read."""
    ledger = await db.get(StudentLedger, ledger_id)
    if ledger is None:
        raise ResourceNotFound(f"Ledger {ledger_id} not found")
    return ledger


async def lock_ledger(db: AsyncSession, ledger_id: int) -> StudentLedger:
    """Load the ledger row under an exclusive row lock for this transaction."""
    result = await db.execute(
        select(StudentLedger)
        .where(StudentLedger.id == ledger_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    ledger = result.scalar_one_or_none()
    if ledger is None:
        raise ResourceNotFound(f"Ledger {ledger_id} not found")
    return ledger


async def find_ledger(
    db: AsyncSession, student_id: int, school_year: str
) -> StudentLedger | None:
    result = await db.execute(
        select(StudentLedger).where(
            StudentLedger.student_id == student_id,
            StudentLedger.school_year == school_year,
        )
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def get_or_create_ledger(
    db: AsyncSession, student_id: int, school_year: str
) -> StudentLedger:
    """Return the student's ledger for the year, creating a zeroed one if absent.

    Two callers racing to create the same ledger both end up with the row the
    winner inserted: the loser's insert fails the unique constraint inside a
    savepoint and it re-reads.
    """
    validate_school_year(school_year)
    ledger = await find_ledger(db, student_id, school_year)
    if ledger is not None:
        return ledger

    if await db.get(Student, student_id) is None:
        raise ResourceNotFound(f"Student {student_id} not found")

    ledger = StudentLedger.blank(student_id, school_year)
    try:
        async with db.begin_nested():
            db.add(ledger)
            await db.flush()
    except IntegrityError:
        existing = await find_ledger(db, student_id, school_year)
        if existing is None:
            raise
        return existing

    logger.info("Created ledger %d for student %d (%s)", ledger.id, student_id, school_year)
    return ledger


async def post_assessment(
    db: AsyncSession,
    ledger_id: int,
    fee_line_items: dict[str, Any],
    actor: Actor,
    due_date: date | None = None,
) -> StudentLedger:
    """Set assessed fee components and recompute totals and grant discounts."""
    if not fee_line_items and due_date is None:
        raise ValidationError("Nothing to assess")
    unknown = sorted(set(fee_line_items) - set(FEE_LINE_ITEMS))
    if unknown:
        raise ValidationError(f"Unknown fee line items: {', '.join(unknown)}")
    amounts = {}
    for name, raw in fee_line_items.items():
        amount = parse_amount(raw, name)
        if amount < 0:
            raise ValidationError(f"{name} cannot be negative")
        amounts[name] = amount

    ledger = await lock_ledger(db, ledger_id)
    ensure_active(ledger)
    before = _snapshot(ledger)

    for name, amount in amounts.items():
        setattr(ledger, name, amount)
    ledger.total_assessed = sum(ledger.fee_breakdown().values(), ZERO)
    if due_date is not None:
        ledger.due_date = due_date

    # Percentage grants follow the assessed total
    discount = ZERO
    for recipient, grant in await _active_grant_lines(db, ledger.id):
        if grant.type == GrantType.PERCENTAGE:
            recipient.discount_amount = grant.calculate_discount(ledger.total_assessed)
        discount += to_money(recipient.discount_amount)
    if discount > ledger.total_assessed:
        raise InvariantViolation(
            f"Grant discounts {discount} would exceed assessed total {ledger.total_assessed}"
        )
    ledger.grant_discount = discount

    record_audit(
        db, actor, "student_ledger", ledger.id, "assessment_posted",
        old_values=before, new_values=_snapshot(ledger),
    )
    await db.flush()
    logger.info(
        "Posted assessment on ledger %d: assessed=%s discount=%s by user %s",
        ledger.id, ledger.total_assessed, ledger.grant_discount, actor.user_id,
    )
    return ledger


async def apply_grant(
    db: AsyncSession,
    ledger_id: int,
    grant_id: int,
    actor: Actor,
    discount_amount: Any = None,
    notes: str | None = None,
) -> GrantRecipient:
    """Attach a grant to a ledger and add its discount."""
    override = None
    if discount_amount is not None:
        override = parse_amount(discount_amount, "discount_amount")
        if override < 0:
            raise ValidationError("discount_amount cannot be negative")

    ledger = await lock_ledger(db, ledger_id)
    ensure_active(ledger)

    grant = await db.get(Grant, grant_id)
    if grant is None:
        raise ResourceNotFound(f"Grant {grant_id} not found")
    if not grant.is_active:
        raise PreconditionFailed(f"Grant {grant.code} is inactive")
    if not grant.applies_to(ledger.school_year):
        raise PreconditionFailed(
            f"Grant {grant.code} is for {grant.school_year}, not {ledger.school_year}"
        )
    if await _find_active_recipient(db, ledger.id, grant.id) is not None:
        raise InvariantViolation(f"Grant {grant.code} is already active on ledger {ledger.id}")

    discount = override if override is not None else grant.calculate_discount(ledger.total_assessed)
    new_total = to_money(ledger.grant_discount) + discount
    if new_total > to_money(ledger.total_assessed):
        raise InvariantViolation(
            f"Grant discounts {new_total} would exceed assessed total {ledger.total_assessed}"
        )

    recipient = GrantRecipient(
        ledger_id=ledger.id,
        grant_id=grant.id,
        discount_amount=discount,
        status=RecipientStatus.ACTIVE,
        notes=notes,
        assigned_by=actor.user_id,
        assigned_at=utcnow(),
    )
    db.add(recipient)
    old_discount = ledger.grant_discount
    ledger.grant_discount = new_total

    record_audit(
        db, actor, "student_ledger", ledger.id, "grant_applied",
        old_values={"grant_discount": old_discount},
        new_values={"grant_discount": new_total, "grant_id": grant.id, "discount": discount},
    )
    await db.flush()
    logger.info(
        "Applied grant %s (%s) to ledger %d by user %s",
        grant.code, discount, ledger.id, actor.user_id,
    )
    return recipient


async def remove_grant(
    db: AsyncSession,
    ledger_id: int,
    grant_id: int,
    actor: Actor,
    status: RecipientStatus = RecipientStatus.INACTIVE,
) -> GrantRecipient:
    """Soft-deactivate a grant recipient and subtract its discount."""
    if status == RecipientStatus.ACTIVE:
        raise ValidationError("Removal status must not be active")

    ledger = await lock_ledger(db, ledger_id)
    ensure_active(ledger)

    recipient = await _find_active_recipient(db, ledger.id, grant_id)
    if recipient is None:
        raise ResourceNotFound(f"Grant {grant_id} is not active on ledger {ledger.id}")

    recipient.status = status
    recipient.removed_at = utcnow()
    old_discount = to_money(ledger.grant_discount)
    remaining = old_discount - to_money(recipient.discount_amount)
    ledger.grant_discount = remaining if remaining > 0 else ZERO

    record_audit(
        db, actor, "student_ledger", ledger.id, "grant_removed",
        old_values={"grant_discount": old_discount},
        new_values={"grant_discount": ledger.grant_discount, "grant_id": grant_id},
    )
    await db.flush()
    logger.info("Removed grant %d from ledger %d by user %s", grant_id, ledger.id, actor.user_id)
    return recipient


async def get_balance(db: AsyncSession, ledger_id: int) -> LedgerBalance:
    ledger = await get_ledger(db, ledger_id)
    return LedgerBalance(
        ledger_id=ledger.id,
        total_assessed=to_money(ledger.total_assessed),
        grant_discount=to_money(ledger.grant_discount),
        total_paid=to_money(ledger.total_paid),
        balance=ledger.balance,
        payment_status=ledger.payment_status,
        is_overdue=ledger.is_overdue,
    )


async def retire_ledger(db: AsyncSession, ledger_id: int, actor: Actor) -> StudentLedger:
    ledger = await lock_ledger(db, ledger_id)
    if ledger.is_retired:
        raise InvalidStateTransition(f"Ledger {ledger.id} is already retired")
    ledger.is_retired = True
    ledger.retired_at = utcnow()
    record_audit(db, actor, "student_ledger", ledger.id, "retired")
    await db.flush()
    logger.info("Retired ledger %d by user %s", ledger.id, actor.user_id)
    return ledger


async def list_ledgers(
    db: AsyncSession,
    filters: LedgerFilters,
    page: int = 1,
    page_size: int = 50,
) -> tuple[list[StudentLedger], int]:
    """Filtered, paginated ledger listing.  Returns (rows, total)."""
    conditions = ledger_scope_conditions(
        school_year=filters.school_year,
        classification=filters.classification,
        department_id=filters.department_id,
        year_level_id=filters.year_level_id,
    )
    if filters.payment_status is not None:
        conditions.append(StudentLedger.payment_status == filters.payment_status.value)
    if filters.is_overdue is not None:
        conditions.append(StudentLedger.is_overdue.is_(filters.is_overdue))
    if not filters.include_retired:
        conditions.append(StudentLedger.is_retired.is_(False))

    base = select(StudentLedger).join(Student, Student.id == StudentLedger.student_id)
    if conditions:
        base = base.where(*conditions)

    total = await db.scalar(select(sa_func.count()).select_from(base.subquery()))
    result = await db.execute(
        base.order_by(StudentLedger.school_year.desc(), StudentLedger.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total or 0


# ---------------------------------------------------------------------------
# Grant catalog
# ---------------------------------------------------------------------------

async def create_grant(
    db: AsyncSession,
    *,
    name: str,
    code: str,
    grant_type: GrantType,
    value: Any,
    actor: Actor,
    school_year: str | None = None,
    description: str | None = None,
) -> Grant:
    amount = parse_amount(value, "value")
    if amount < 0:
        raise ValidationError("Grant value cannot be negative")
    if grant_type == GrantType.PERCENTAGE and amount > 100:
        raise ValidationError("Percentage grants cannot exceed 100")
    if school_year:
        validate_school_year(school_year)

    existing = await db.execute(select(Grant.id).where(Grant.code == code))
    if existing.scalar_one_or_none() is not None:
        raise InvariantViolation(f"Grant code {code} already exists")

    grant = Grant(
        name=name,
        code=code,
        type=grant_type,
        value=amount,
        school_year=school_year,
        description=description,
        is_active=True,
    )
    db.add(grant)
    await db.flush()
    record_audit(db, actor, "grant", grant.id, "created", new_values={"code": code, "value": amount})
    logger.info("Created grant %s (%s %s) by user %s", code, grant_type.value, amount, actor.user_id)
    return grant


async def list_grants(
    db: AsyncSession, school_year: str | None = None, active_only: bool = True
) -> list[Grant]:
    stmt = select(Grant)
    if active_only:
        stmt = stmt.where(Grant.is_active.is_(True))
    if school_year:
        stmt = stmt.where(or_(Grant.school_year.is_(None), Grant.school_year == school_year))
    result = await db.execute(stmt.order_by(Grant.name))
    return list(result.scalars().all())


async def list_grant_lines(
    db: AsyncSession, ledger_id: int
) -> list[tuple[GrantRecipient, Grant]]:
    """Active (recipient, grant) pairs on a ledger."""
    return await _active_grant_lines(db, ledger_id)
