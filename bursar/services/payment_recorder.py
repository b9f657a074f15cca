"""Payment recorder: the only writer of ``StudentLedger.total_paid``.

Payments are append-only.  A correction is a second row of kind
``reversal`` carrying the negated amount and pointing at the payment it
undoes; a payment can be reversed at most once.  ``total_paid`` therefore
always equals the sum of the ledger's payment rows.
"""

import logging
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bursar.clock import school_today
from bursar.models.ledger import (
    RECEIPT_NUMBER_SEQ,
    LedgerPayment,
    PaymentKind,
    PaymentMethod,
)
from bursar.money import ZERO, to_money
from bursar.services.actor import Actor
from bursar.services.audit_trail import record_audit
from bursar.services.exceptions import (
    InvariantViolation,
    ResourceNotFound,
    ValidationError,
    require_remarks,
)
from bursar.services.ledger_store import ensure_active, get_ledger, lock_ledger, parse_amount

logger = logging.getLogger(__name__)


async def _next_receipt_number(db: AsyncSession) -> str:
    """Next official receipt number: OR-YYYY-NNNNNN."""
    seq = await db.scalar(select(RECEIPT_NUMBER_SEQ.next_value()))
    return f"OR-{school_today().year}-{seq:06d}"


async def _get_payment(db: AsyncSession, payment_id: int) -> LedgerPayment | None:
    return await db.get(LedgerPayment, payment_id)


async def _find_reversal(db: AsyncSession, payment_id: int) -> LedgerPayment | None:
    result = await db.execute(
        select(LedgerPayment).where(LedgerPayment.reverses_payment_id == payment_id)
    )
    return result.scalar_one_or_none()


def _coerce_method(method: Any) -> PaymentMethod:
    try:
        return PaymentMethod(method)
    except ValueError:
        raise ValidationError(f"Unknown payment method {method!r}")


async def record_payment(
    db: AsyncSession,
    ledger_id: int,
    amount: Any,
    method: PaymentMethod | str,
    actor: Actor,
    reference: str | None = None,
    payment_date: date | None = None,
    receipt_number: str | None = None,
) -> LedgerPayment:
    """Append a payment and credit it to the ledger in the same locked unit.

    A payment that brings the balance to zero also clears the overdue flag.
    Overpayment is accepted; the balance floors at zero.
    """
    value = parse_amount(amount)
    if value <= 0:
        raise ValidationError(f"Payment amount must be positive, got {value}")
    payment_method = _coerce_method(method)

    ledger = await lock_ledger(db, ledger_id)
    ensure_active(ledger)

    payment = LedgerPayment(
        ledger_id=ledger.id,
        amount=value,
        kind=PaymentKind.PAYMENT,
        method=payment_method,
        receipt_number=receipt_number or await _next_receipt_number(db),
        reference=reference,
        payment_date=payment_date or school_today(),
        recorded_by=actor.user_id,
    )
    db.add(payment)

    old_paid = to_money(ledger.total_paid)
    ledger.total_paid = old_paid + value
    if ledger.is_overdue and ledger.balance == ZERO:
        ledger.is_overdue = False
        ledger.overdue_since = None
        logger.info("Cleared overdue flag on ledger %d after full payment", ledger.id)

    await db.flush()
    record_audit(
        db, actor, "student_ledger", ledger.id, "payment_recorded",
        old_values={"total_paid": old_paid},
        new_values={
            "total_paid": ledger.total_paid,
            "payment_id": payment.id,
            "receipt_number": payment.receipt_number,
        },
    )
    logger.info(
        "Recorded payment %s of %s on ledger %d by user %s",
        payment.receipt_number, value, ledger.id, actor.user_id,
    )
    return payment


async def reverse_payment(
    db: AsyncSession,
    ledger_id: int,
    original_payment_id: int,
    reason: str | None,
    actor: Actor,
) -> LedgerPayment:
    """Record a negative correction for exactly one earlier payment."""
    reason = require_remarks(reason, "reverse a payment")

    ledger = await lock_ledger(db, ledger_id)
    ensure_active(ledger)

    original = await _get_payment(db, original_payment_id)
    if original is None or original.ledger_id != ledger.id:
        raise ResourceNotFound(
            f"Payment {original_payment_id} not found on ledger {ledger.id}"
        )
    if original.kind != PaymentKind.PAYMENT:
        raise InvariantViolation(f"Payment {original.receipt_number} is itself a reversal")
    if await _find_reversal(db, original.id) is not None:
        raise InvariantViolation(f"Payment {original.receipt_number} is already reversed")

    amount = to_money(original.amount)
    reversal = LedgerPayment(
        ledger_id=ledger.id,
        amount=-amount,
        kind=PaymentKind.REVERSAL,
        method=original.method,
        receipt_number=await _next_receipt_number(db),
        reference=original.receipt_number,
        payment_date=school_today(),
        reverses_payment_id=original.id,
        reason=reason,
        recorded_by=actor.user_id,
    )
    db.add(reversal)

    old_paid = to_money(ledger.total_paid)
    ledger.total_paid = old_paid - amount

    await db.flush()
    record_audit(
        db, actor, "student_ledger", ledger.id, "payment_reversed",
        old_values={"total_paid": old_paid},
        new_values={"total_paid": ledger.total_paid, "reversed_payment_id": original.id},
        details=reason,
    )
    logger.info(
        "Reversed payment %s (%s) on ledger %d by user %s",
        original.receipt_number, amount, ledger.id, actor.user_id,
    )
    return reversal


async def list_payments(db: AsyncSession, ledger_id: int) -> list[LedgerPayment]:
    await get_ledger(db, ledger_id)
    result = await db.execute(
        select(LedgerPayment)
        .where(LedgerPayment.ledger_id == ledger_id)
        .order_by(LedgerPayment.created_at, LedgerPayment.id)
    )
    return list(result.scalars().all())
