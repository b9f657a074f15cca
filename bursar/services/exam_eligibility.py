"""Exam eligibility approvals.

An approval compares two snapshot amounts: ``required_amount`` (what the
student must have paid to sit the exam) and ``paid_amount`` (the ledger's
total paid when the approval was created or last refreshed).  Payments made
after the snapshot do not count until staff refresh it.
"""

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bursar.clock import utcnow
from bursar.models.exam_approval import EXAM_TERMS, ExamApproval, ExamApprovalStatus, ExamType
from bursar.money import ZERO, to_money
from bursar.services.actor import Actor
from bursar.services.audit_trail import record_audit
from bursar.services.exceptions import (
    BursarError,
    InvalidStateTransition,
    PreconditionFailed,
    ResourceNotFound,
    ValidationError,
    require_remarks,
)
from bursar.services.ledger_store import find_ledger, parse_amount, validate_school_year

logger = logging.getLogger(__name__)


@dataclass
class BulkResult:
    approval_id: int
    ok: bool
    code: str | None = None
    message: str | None = None


async def lock_approval(db: AsyncSession, approval_id: int) -> ExamApproval:
    result = await db.execute(
        select(ExamApproval)
        .where(ExamApproval.id == approval_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    approval = result.scalar_one_or_none()
    if approval is None:
        raise ResourceNotFound(f"Exam approval {approval_id} not found")
    return approval


def _ensure_pending(approval: ExamApproval, action: str) -> None:
    if approval.status != ExamApprovalStatus.PENDING:
        raise InvalidStateTransition(
            f"Cannot {action}: exam approval is {approval.status.value}, expected pending"
        )


def _stamp_approved(approval: ExamApproval, actor: Actor, remarks: str | None = None) -> None:
    approval.status = ExamApprovalStatus.APPROVED
    approval.approver_id = actor.user_id
    approval.acted_at = utcnow()
    if remarks:
        approval.remarks = remarks


async def create_exam_approval(
    db: AsyncSession,
    student_id: int,
    school_year: str,
    exam_type: ExamType | str,
    actor: Actor,
    required_amount: Any = None,
    term: str | None = None,
    remarks: str | None = None,
) -> ExamApproval:
    validate_school_year(school_year)
    try:
        exam = ExamType(exam_type)
    except ValueError:
        raise ValidationError(f"Unknown exam type {exam_type!r}")
    if term is not None and term not in EXAM_TERMS:
        raise ValidationError(f"Unknown term {term!r}")

    ledger = await find_ledger(db, student_id, school_year)
    if required_amount is None:
        if ledger is None or not ledger.is_overdue:
            raise ValidationError("required_amount is required unless the ledger is overdue")
        required = ledger.balance
    else:
        required = parse_amount(required_amount, "required_amount")
    if required <= 0:
        raise ValidationError("required_amount must be positive")

    approval = ExamApproval(
        student_id=student_id,
        school_year=school_year,
        exam_type=exam,
        term=term,
        required_amount=required,
        paid_amount=to_money(ledger.total_paid) if ledger is not None else ZERO,
        status=ExamApprovalStatus.PENDING,
        remarks=remarks,
        created_by=actor.user_id,
    )
    db.add(approval)
    await db.flush()
    record_audit(
        db, actor, "exam_approval", approval.id, "created",
        new_values={"required": required, "paid": approval.paid_amount},
    )
    logger.info(
        "Created %s exam approval %d for student %d (required %s, paid %s)",
        exam.value, approval.id, student_id, required, approval.paid_amount,
    )
    return approval


async def approve(db: AsyncSession, approval_id: int, actor: Actor) -> ExamApproval:
    approval = await lock_approval(db, approval_id)
    _ensure_pending(approval, "approve")
    if not approval.is_eligible:
        raise PreconditionFailed(
            f"Paid {to_money(approval.paid_amount)} is below required "
            f"{to_money(approval.required_amount)}"
        )
    _stamp_approved(approval, actor)
    record_audit(db, actor, "exam_approval", approval.id, "approved")
    await db.flush()
    logger.info("Approved exam approval %d by user %s", approval.id, actor.user_id)
    return approval


async def deny(
    db: AsyncSession, approval_id: int, actor: Actor, remarks: str | None
) -> ExamApproval:
    remarks = require_remarks(remarks, "deny an exam approval")
    approval = await lock_approval(db, approval_id)
    _ensure_pending(approval, "deny")
    approval.status = ExamApprovalStatus.DENIED
    approval.approver_id = actor.user_id
    approval.acted_at = utcnow()
    approval.remarks = remarks
    record_audit(db, actor, "exam_approval", approval.id, "denied", details=remarks)
    await db.flush()
    logger.info("Denied exam approval %d by user %s", approval.id, actor.user_id)
    return approval


async def bulk_approve(
    db: AsyncSession, approval_ids: list[int], actor: Actor
) -> list[BulkResult]:
    """Approve each id independently; failures are reported, not raised."""
    results: list[BulkResult] = []
    for approval_id in dict.fromkeys(approval_ids):
        try:
            async with db.begin_nested():
                await approve(db, approval_id, actor)
            results.append(BulkResult(approval_id=approval_id, ok=True))
        except BursarError as e:
            results.append(
                BulkResult(approval_id=approval_id, ok=False, code=e.code, message=e.message)
            )
    approved = sum(1 for r in results if r.ok)
    logger.info("Bulk exam approval: %d of %d approved", approved, len(results))
    return results


async def update_paid_amount(
    db: AsyncSession, approval_id: int, actor: Actor, paid_amount: Any = None
) -> ExamApproval:
    """Refresh the payment snapshot; a pending approval that becomes eligible
    is approved on the spot."""
    approval = await lock_approval(db, approval_id)
    _ensure_pending(approval, "update paid amount")

    if paid_amount is None:
        ledger = await find_ledger(db, approval.student_id, approval.school_year)
        paid = to_money(ledger.total_paid) if ledger is not None else ZERO
    else:
        paid = parse_amount(paid_amount, "paid_amount")
        if paid < 0:
            raise ValidationError("paid_amount cannot be negative")

    old_paid = approval.paid_amount
    approval.paid_amount = paid
    record_audit(
        db, actor, "exam_approval", approval.id, "paid_amount_updated",
        old_values={"paid": old_paid}, new_values={"paid": paid},
    )
    if approval.is_eligible:
        _stamp_approved(approval, actor, "Auto-approved after payment update")
        logger.info("Auto-approved exam approval %d after snapshot refresh", approval.id)
    await db.flush()
    return approval


async def list_approvals(
    db: AsyncSession,
    status: ExamApprovalStatus | None = None,
    student_id: int | None = None,
    school_year: str | None = None,
    limit: int = 100,
) -> list[ExamApproval]:
    stmt = select(ExamApproval)
    if status is not None:
        stmt = stmt.where(ExamApproval.status == status)
    if student_id is not None:
        stmt = stmt.where(ExamApproval.student_id == student_id)
    if school_year:
        stmt = stmt.where(ExamApproval.school_year == school_year)
    result = await db.execute(stmt.order_by(ExamApproval.created_at.desc()).limit(limit))
    return list(result.scalars().all())
