"""Online transaction verifier.

State machine::

    pending --verify--> verified --refund--> refunded
       \\
        --mark_failed--> failed

``failed`` and ``refunded`` are terminal.  Verify credits the net amount
through the payment recorder; refund reverses exactly that payment.  Each
transition locks the transaction row first and the ledger row second.
"""

import enum
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bursar.clock import utcnow
from bursar.models.ledger import PaymentMethod
from bursar.models.online_transaction import (
    TERMINAL_STATUSES,
    OnlineTransaction,
    PaymentProvider,
    TransactionStatus,
)
from bursar.money import to_money
from bursar.services.actor import SYSTEM_ACTOR, Actor
from bursar.services.audit_trail import record_audit
from bursar.services.exceptions import (
    InvalidStateTransition,
    InvariantViolation,
    ResourceNotFound,
    ValidationError,
    require_remarks,
)
from bursar.services.ledger_store import get_or_create_ledger, parse_amount
from bursar.services.payment_recorder import record_payment, reverse_payment

logger = logging.getLogger(__name__)

PROVIDER_METHODS = {
    PaymentProvider.GCASH: PaymentMethod.GCASH,
    PaymentProvider.PAYMAYA: PaymentMethod.PAYMAYA,
    PaymentProvider.BANK: PaymentMethod.BANK_TRANSFER,
    PaymentProvider.CARD: PaymentMethod.CARD,
    PaymentProvider.OTHER: PaymentMethod.ONLINE,
}

SUCCESS_STATUSES = frozenset({"success", "succeeded", "paid", "completed"})
FAILURE_STATUSES = frozenset({"failed", "declined", "cancelled", "expired"})
IN_FLIGHT_STATUSES = frozenset({"pending", "processing"})


class CallbackAction(str, enum.Enum):
    VERIFIED = "verified"
    FAILED = "failed"
    ACKNOWLEDGED = "acknowledged"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _validate_amounts(gross: Any, fee: Any):
    gross_amount = parse_amount(gross, "gross_amount")
    processing_fee = parse_amount(fee or 0, "processing_fee")
    if gross_amount <= 0:
        raise ValidationError("gross_amount must be positive")
    if processing_fee < 0:
        raise ValidationError("processing_fee cannot be negative")
    if processing_fee >= gross_amount:
        raise ValidationError("processing_fee must be less than gross_amount")
    return gross_amount, processing_fee


def _check_provider(txn: OnlineTransaction, provider: Any) -> None:
    if provider is None:
        return
    try:
        reported = PaymentProvider(provider)
    except ValueError:
        raise ValidationError(f"Unknown provider {provider!r}")
    if reported != txn.provider:
        raise InvariantViolation(
            f"Transaction {txn.reference_code} was submitted via {txn.provider.value}, "
            f"not {reported.value}"
        )


async def _find_by_reference(db: AsyncSession, reference_code: str) -> OnlineTransaction | None:
    result = await db.execute(
        select(OnlineTransaction).where(OnlineTransaction.reference_code == reference_code)
    )
    return result.scalar_one_or_none()


async def lock_transaction(db: AsyncSession, transaction_id: int) -> OnlineTransaction:
    result = await db.execute(
        select(OnlineTransaction)
        .where(OnlineTransaction.id == transaction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    txn = result.scalar_one_or_none()
    if txn is None:
        raise ResourceNotFound(f"Online transaction {transaction_id} not found")
    return txn


async def _lock_by_reference(db: AsyncSession, reference_code: str) -> OnlineTransaction:
    result = await db.execute(
        select(OnlineTransaction)
        .where(OnlineTransaction.reference_code == reference_code)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    txn = result.scalar_one_or_none()
    if txn is None:
        raise ResourceNotFound(f"Online transaction {reference_code} not found")
    return txn


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def submit_transaction(
    db: AsyncSession,
    *,
    student_id: int,
    school_year: str,
    reference_code: str,
    provider: PaymentProvider,
    gross_amount: Any,
    actor: Actor,
    processing_fee: Any = 0,
    account_name: str | None = None,
    account_number: str | None = None,
    payment_proof_path: str | None = None,
    transaction_date: datetime | None = None,
) -> OnlineTransaction:
    """Register a pending online payment against the student's ledger.

    Re-submitting a known reference for the same student returns the
    existing row unchanged.
    """
    reference_code = (reference_code or "").strip()
    if not reference_code:
        raise ValidationError("reference_code is required")
    gross, fee = _validate_amounts(gross_amount, processing_fee)

    existing = await _find_by_reference(db, reference_code)
    if existing is not None:
        if existing.student_id != student_id:
            raise InvariantViolation(
                f"Reference {reference_code} already belongs to another student"
            )
        return existing

    ledger = await get_or_create_ledger(db, student_id, school_year)
    txn = OnlineTransaction(
        reference_code=reference_code,
        provider=provider,
        student_id=student_id,
        ledger_id=ledger.id,
        gross_amount=gross,
        processing_fee=fee,
        net_amount=gross - fee,
        status=TransactionStatus.PENDING,
        account_name=account_name,
        account_number=account_number,
        payment_proof_path=payment_proof_path,
        transaction_date=transaction_date or utcnow(),
    )
    db.add(txn)
    await db.flush()
    record_audit(
        db, actor, "online_transaction", txn.id, "submitted",
        new_values={"reference_code": reference_code, "gross": gross, "fee": fee},
    )
    logger.info("Submitted online transaction %s (%s) for ledger %d", reference_code, gross, ledger.id)
    return txn


async def verify(db: AsyncSession, transaction_id: int, actor: Actor) -> OnlineTransaction:
    """pending -> verified, crediting the net amount exactly once."""
    txn = await lock_transaction(db, transaction_id)
    if txn.status == TransactionStatus.VERIFIED:
        logger.info("Transaction %s already verified; nothing to do", txn.reference_code)
        return txn
    if txn.status in TERMINAL_STATUSES:
        raise InvalidStateTransition(
            f"Cannot verify: transaction is {txn.status.value}, expected pending"
        )
    net = to_money(txn.net_amount)
    if net <= 0:
        raise ValidationError(f"Transaction {txn.reference_code} has no positive net amount")

    payment = await record_payment(
        db,
        txn.ledger_id,
        net,
        PROVIDER_METHODS.get(txn.provider, PaymentMethod.ONLINE),
        actor,
        reference=txn.reference_code,
        payment_date=txn.transaction_date.date() if txn.transaction_date else None,
    )

    txn.status = TransactionStatus.VERIFIED
    txn.verified_at = utcnow()
    txn.verified_by = actor.user_id
    txn.payment_id = payment.id
    record_audit(
        db, actor, "online_transaction", txn.id, "verified",
        old_values={"status": TransactionStatus.PENDING},
        new_values={"status": TransactionStatus.VERIFIED, "payment_id": payment.id},
    )
    await db.flush()
    logger.info("Verified transaction %s by user %s", txn.reference_code, actor.user_id)
    return txn


async def mark_failed(
    db: AsyncSession, transaction_id: int, reason: str | None, actor: Actor
) -> OnlineTransaction:
    reason = require_remarks(reason, "mark a transaction failed")
    txn = await lock_transaction(db, transaction_id)
    if txn.status != TransactionStatus.PENDING:
        raise InvalidStateTransition(
            f"Cannot mark failed: transaction is {txn.status.value}, expected pending"
        )
    txn.status = TransactionStatus.FAILED
    txn.failed_at = utcnow()
    txn.failure_reason = reason
    record_audit(
        db, actor, "online_transaction", txn.id, "failed",
        old_values={"status": TransactionStatus.PENDING},
        new_values={"status": TransactionStatus.FAILED},
        details=reason,
    )
    await db.flush()
    logger.info("Marked transaction %s failed by user %s", txn.reference_code, actor.user_id)
    return txn


async def refund(
    db: AsyncSession, transaction_id: int, actor: Actor, remarks: str | None = None
) -> OnlineTransaction:
    """verified -> refunded, reversing the payment verify recorded."""
    txn = await lock_transaction(db, transaction_id)
    if txn.status != TransactionStatus.VERIFIED:
        raise InvalidStateTransition(
            f"Cannot refund: transaction is {txn.status.value}, expected verified"
        )
    if txn.payment_id is None:
        raise InvariantViolation(f"Verified transaction {txn.reference_code} has no payment")

    reason = (remarks or "").strip() or f"Refund of online transaction {txn.reference_code}"
    reversal = await reverse_payment(db, txn.ledger_id, txn.payment_id, reason, actor)

    txn.status = TransactionStatus.REFUNDED
    txn.refunded_at = utcnow()
    txn.refunded_by = actor.user_id
    txn.reversal_payment_id = reversal.id
    txn.remarks = reason
    record_audit(
        db, actor, "online_transaction", txn.id, "refunded",
        old_values={"status": TransactionStatus.VERIFIED},
        new_values={"status": TransactionStatus.REFUNDED, "reversal_payment_id": reversal.id},
    )
    await db.flush()
    logger.info("Refunded transaction %s by user %s", txn.reference_code, actor.user_id)
    return txn


async def handle_provider_callback(db: AsyncSession, payload: dict) -> dict:
    """Apply a payment provider's status notification.

    Retries of the same success callback are harmless: the second verify finds
    the transaction already verified.
    """
    provider_status = str(payload.get("provider_status") or "").strip().lower()
    if provider_status not in SUCCESS_STATUSES | FAILURE_STATUSES | IN_FLIGHT_STATUSES:
        raise ValidationError(f"Unknown provider status {provider_status!r}")

    reference = str(payload.get("reference") or "").strip()
    txn = await _lock_by_reference(db, reference)
    _check_provider(txn, payload.get("provider"))
    txn.provider_status = provider_status

    if provider_status in IN_FLIGHT_STATUSES:
        action = CallbackAction.ACKNOWLEDGED
    elif provider_status in SUCCESS_STATUSES:
        if txn.status == TransactionStatus.PENDING and payload.get("gross_amount") is not None:
            # A callback without a fee keeps the fee already on file.
            reported_fee = payload.get("fee")
            gross, fee = _validate_amounts(
                payload["gross_amount"],
                txn.processing_fee if reported_fee is None else reported_fee,
            )
            txn.gross_amount = gross
            txn.processing_fee = fee
            txn.net_amount = gross - fee
        await verify(db, txn.id, SYSTEM_ACTOR)
        action = CallbackAction.VERIFIED
    elif txn.status == TransactionStatus.FAILED:
        action = CallbackAction.ACKNOWLEDGED
    else:
        await mark_failed(db, txn.id, f"Provider reported {provider_status}", SYSTEM_ACTOR)
        action = CallbackAction.FAILED

    await db.flush()
    logger.info(
        "Provider callback for %s: %s -> %s", reference, provider_status, action.value
    )
    return {"reference": reference, "status": txn.status.value, "action": action.value}


async def get_transaction(db: AsyncSession, transaction_id: int) -> OnlineTransaction:
    txn = await db.get(OnlineTransaction, transaction_id)
    if txn is None:
        raise ResourceNotFound(f"Online transaction {transaction_id} not found")
    return txn


async def list_transactions(
    db: AsyncSession,
    status: TransactionStatus | None = None,
    student_id: int | None = None,
    limit: int = 100,
) -> list[OnlineTransaction]:
    stmt = select(OnlineTransaction)
    if status is not None:
        stmt = stmt.where(OnlineTransaction.status == status)
    if student_id is not None:
        stmt = stmt.where(OnlineTransaction.student_id == student_id)
    result = await db.execute(stmt.order_by(OnlineTransaction.created_at.desc()).limit(limit))
    return list(result.scalars().all())
