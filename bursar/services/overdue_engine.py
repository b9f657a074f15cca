"""Overdue escalation: flags ledgers that still owe money past their due date."""

import enum
import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import Select, or_, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from bursar.clock import utcnow
from bursar.database import async_session
from bursar.models.ledger import StudentLedger
from bursar.models.student import Classification, Student
from bursar.money import ZERO
from bursar.services.actor import Actor
from bursar.services.audit_trail import record_audit
from bursar.services.exceptions import BursarError
from bursar.services.ledger_store import ensure_active, ledger_scope_conditions, lock_ledger
from bursar.services.unit_of_work import run_in_transaction

logger = logging.getLogger(__name__)


class FlagOutcome(str, enum.Enum):
    MARKED = "marked"
    ALREADY_OVERDUE = "already_overdue"
    NOTHING_DUE = "nothing_due"
    RETIRED = "retired"


@dataclass
class OverdueScope:
    school_year: str | None = None
    classification: Classification | None = None
    department_id: int | None = None
    year_level_id: int | None = None


def _flag(ledger: StudentLedger, actor: Actor, db: AsyncSession) -> FlagOutcome:
    if ledger.is_overdue:
        return FlagOutcome.ALREADY_OVERDUE
    if ledger.balance <= ZERO:
        return FlagOutcome.NOTHING_DUE
    ledger.is_overdue = True
    ledger.overdue_since = utcnow()
    record_audit(
        db, actor, "student_ledger", ledger.id, "marked_overdue",
        new_values={"balance": ledger.balance},
    )
    return FlagOutcome.MARKED


def candidate_query(scope: OverdueScope, cutoff_date: date) -> Select:
    """Ledgers in scope that owe money, are not yet overdue and are due by the cutoff."""
    conditions = ledger_scope_conditions(
        school_year=scope.school_year,
        classification=scope.classification,
        department_id=scope.department_id,
        year_level_id=scope.year_level_id,
    )
    return (
        select(StudentLedger.id)
        .join(Student, Student.id == StudentLedger.student_id)
        .where(
            StudentLedger.balance > 0,
            StudentLedger.is_overdue.is_(False),
            StudentLedger.is_retired.is_(False),
            or_(StudentLedger.due_date.is_(None), StudentLedger.due_date <= cutoff_date),
            *conditions,
        )
        .order_by(StudentLedger.id)
    )


async def _candidate_ids(db: AsyncSession, scope: OverdueScope, cutoff_date: date) -> list[int]:
    result = await db.execute(candidate_query(scope, cutoff_date))
    return list(result.scalars().all())


async def mark_overdue(db: AsyncSession, ledger_id: int, actor: Actor) -> StudentLedger:
    """Flag the ledger overdue when it owes money.

    Already-overdue and fully-settled ledgers are returned unchanged.
    """
    ledger = await lock_ledger(db, ledger_id)
    ensure_active(ledger)
    outcome = _flag(ledger, actor, db)
    await db.flush()
    if outcome == FlagOutcome.MARKED:
        logger.info("Marked ledger %d overdue by user %s", ledger.id, actor.user_id)
    elif outcome == FlagOutcome.NOTHING_DUE:
        logger.info("Ledger %d has no outstanding balance; not marked overdue", ledger.id)
    return ledger


async def clear_overdue(db: AsyncSession, ledger_id: int, actor: Actor) -> StudentLedger:
    ledger = await lock_ledger(db, ledger_id)
    ensure_active(ledger)
    if not ledger.is_overdue:
        return ledger
    since = ledger.overdue_since
    ledger.is_overdue = False
    ledger.overdue_since = None
    record_audit(
        db, actor, "student_ledger", ledger.id, "cleared_overdue",
        old_values={"overdue_since": since},
    )
    await db.flush()
    logger.info("Cleared overdue on ledger %d by user %s", ledger.id, actor.user_id)
    return ledger


async def _mark_candidate(db: AsyncSession, ledger_id: int, actor: Actor) -> FlagOutcome:
    ledger = await lock_ledger(db, ledger_id)
    if ledger.is_retired:
        return FlagOutcome.RETIRED
    outcome = _flag(ledger, actor, db)
    if outcome == FlagOutcome.MARKED:
        await db.flush()
    return outcome


async def bulk_mark_overdue(
    scope: OverdueScope,
    cutoff_date: date,
    actor: Actor,
    *,
    session_factory=None,
) -> int:
    """Flag every in-scope ledger with a balance whose due date has passed.

    Candidates are read once without locks.  Each one is then re-checked and
    marked in its own transaction, which releases its row lock before the next
    ledger is touched.  A failing ledger is logged and skipped.  Returns the
    number of ledgers newly marked.
    """
    factory = session_factory or async_session
    async with factory() as db:
        candidate_ids = await _candidate_ids(db, scope, cutoff_date)

    marked = 0
    skipped = 0
    for ledger_id in candidate_ids:
        try:
            outcome = await run_in_transaction(
                lambda db, ledger_id=ledger_id: _mark_candidate(db, ledger_id, actor),
                session_factory=factory,
            )
        except (BursarError, DBAPIError) as e:
            skipped += 1
            logger.warning("Skipped ledger %d in overdue batch: %s", ledger_id, e)
            continue
        if outcome == FlagOutcome.MARKED:
            marked += 1

    logger.info(
        "Overdue batch (cutoff %s): %d candidates, %d marked, %d skipped",
        cutoff_date, len(candidate_ids), marked, skipped,
    )
    return marked
