"""Promissory notes: a dated promise from a student to settle a balance."""

import logging
from datetime import date
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bursar.clock import school_today, utcnow
from bursar.models.promissory_note import OPEN_NOTE_STATUSES, NoteStatus, PromissoryNote
from bursar.money import ZERO, to_money
from bursar.services.actor import Actor
from bursar.services.audit_trail import record_audit
from bursar.services.exceptions import (
    InvalidStateTransition,
    InvariantViolation,
    PreconditionFailed,
    ResourceNotFound,
    ValidationError,
    require_remarks,
)
from bursar.services.ledger_store import ensure_active, get_ledger, lock_ledger, parse_amount

logger = logging.getLogger(__name__)


async def lock_note(db: AsyncSession, note_id: int) -> PromissoryNote:
    result = await db.execute(
        select(PromissoryNote)
        .where(PromissoryNote.id == note_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    note = result.scalar_one_or_none()
    if note is None:
        raise ResourceNotFound(f"Promissory note {note_id} not found")
    return note


async def _open_note_for(db: AsyncSession, ledger_id: int) -> PromissoryNote | None:
    result = await db.execute(
        select(PromissoryNote).where(
            PromissoryNote.ledger_id == ledger_id,
            PromissoryNote.status.in_(OPEN_NOTE_STATUSES),
        )
    )
    return result.scalars().first()


def _review(note: PromissoryNote, status: NoteStatus, actor: Actor, notes: str | None) -> None:
    if note.status != NoteStatus.PENDING:
        raise InvalidStateTransition(
            f"Cannot review: note is {note.status.value}, expected pending"
        )
    note.status = status
    note.reviewed_by = actor.user_id
    note.reviewed_at = utcnow()
    note.review_notes = notes


async def submit_note(
    db: AsyncSession,
    ledger_id: int,
    due_date: date,
    reason: str,
    actor: Actor,
    amount: Any = None,
) -> PromissoryNote:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("reason is required")
    today = school_today()
    if due_date <= today:
        raise ValidationError("due_date must be after today")

    ledger = await lock_ledger(db, ledger_id)
    ensure_active(ledger)
    if actor.student_id is not None and actor.student_id != ledger.student_id:
        raise PreconditionFailed("A student can only submit notes for their own ledger")
    balance = ledger.balance
    if balance <= ZERO:
        raise PreconditionFailed(f"Ledger {ledger.id} has no outstanding balance")

    promised = None
    if amount is not None:
        promised = parse_amount(amount, "amount")
        if promised <= 0:
            raise ValidationError("amount must be positive")
        if promised > balance:
            raise ValidationError(f"amount {promised} exceeds the balance {balance}")

    if await _open_note_for(db, ledger.id) is not None:
        raise InvariantViolation(f"Ledger {ledger.id} already has an open promissory note")

    note = PromissoryNote(
        ledger_id=ledger.id,
        student_id=ledger.student_id,
        amount=promised,
        paid_at_submission=to_money(ledger.total_paid),
        submitted_date=today,
        due_date=due_date,
        reason=reason,
        status=NoteStatus.PENDING,
    )
    db.add(note)
    await db.flush()
    record_audit(
        db, actor, "promissory_note", note.id, "submitted",
        new_values={"amount": promised, "due_date": due_date},
    )
    logger.info("Submitted promissory note %d on ledger %d due %s", note.id, ledger.id, due_date)
    return note


async def approve_note(
    db: AsyncSession, note_id: int, actor: Actor, notes: str | None = None
) -> PromissoryNote:
    note = await lock_note(db, note_id)
    _review(note, NoteStatus.APPROVED, actor, notes)
    record_audit(db, actor, "promissory_note", note.id, "approved", details=notes)
    await db.flush()
    logger.info("Approved promissory note %d by user %s", note.id, actor.user_id)
    return note


async def decline_note(
    db: AsyncSession, note_id: int, actor: Actor, notes: str | None
) -> PromissoryNote:
    notes = require_remarks(notes, "decline a promissory note")
    note = await lock_note(db, note_id)
    _review(note, NoteStatus.DECLINED, actor, notes)
    record_audit(db, actor, "promissory_note", note.id, "declined", details=notes)
    await db.flush()
    logger.info("Declined promissory note %d by user %s", note.id, actor.user_id)
    return note


async def fulfill_note(db: AsyncSession, note_id: int, actor: Actor) -> PromissoryNote:
    note = await lock_note(db, note_id)
    if note.status != NoteStatus.APPROVED:
        raise InvalidStateTransition(
            f"Cannot fulfill: note is {note.status.value}, expected approved"
        )
    ledger = await get_ledger(db, note.ledger_id)
    paid_since = to_money(ledger.total_paid) - to_money(note.paid_at_submission)
    settled = ledger.balance == ZERO or (
        note.amount is not None and paid_since >= to_money(note.amount)
    )
    if not settled:
        raise PreconditionFailed(
            f"Promise not kept yet: paid {paid_since} since submission, balance {ledger.balance}"
        )
    note.status = NoteStatus.FULFILLED
    record_audit(db, actor, "promissory_note", note.id, "fulfilled")
    await db.flush()
    logger.info("Fulfilled promissory note %d", note.id)
    return note


async def expire_lapsed_notes(db: AsyncSession, today: date | None = None) -> int:
    """Expire every open note whose due date has passed.  Returns the count."""
    today = today or school_today()
    result = await db.execute(
        update(PromissoryNote)
        .where(
            PromissoryNote.due_date < today,
            PromissoryNote.status.in_(OPEN_NOTE_STATUSES),
        )
        .values(status=NoteStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )
    count = result.rowcount or 0
    logger.info("Expired %d lapsed promissory notes (as of %s)", count, today)
    return count


async def list_notes(
    db: AsyncSession,
    status: NoteStatus | None = None,
    ledger_id: int | None = None,
    student_id: int | None = None,
) -> list[PromissoryNote]:
    stmt = select(PromissoryNote)
    if status is not None:
        stmt = stmt.where(PromissoryNote.status == status)
    if ledger_id is not None:
        stmt = stmt.where(PromissoryNote.ledger_id == ledger_id)
    if student_id is not None:
        stmt = stmt.where(PromissoryNote.student_id == student_id)
    result = await db.execute(stmt.order_by(PromissoryNote.created_at.desc()))
    return list(result.scalars().all())
