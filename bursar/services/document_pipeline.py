"""Document request approval pipeline.

A request needs two sign-offs in order: the registrar (is the student entitled
to the document?) then accounting (has the fee been paid?).  A rejection at
either stage is terminal and cancels the request.  After both approvals the
request moves through fulfillment: processing -> ready -> released.
"""

import logging
from datetime import timedelta
from typing import BinaryIO

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bursar.clock import school_today, utcnow
from bursar.models.document_request import (
    ApprovalStage,
    DocumentFeeItem,
    DocumentRequest,
    FulfillmentStatus,
    StageStatus,
)
from bursar.models.student import Student
from bursar.money import to_money
from bursar.services.actor import Actor
from bursar.services.audit_trail import record_audit
from bursar.services.exceptions import (
    InvalidStateTransition,
    PreconditionFailed,
    ResourceNotFound,
    ValidationError,
    require_remarks,
)
from bursar.services.file_storage import ReceiptStorage

logger = logging.getLogger(__name__)

MAX_COPIES = 10


async def lock_request(db: AsyncSession, request_id: int) -> DocumentRequest:
    result = await db.execute(
        select(DocumentRequest)
        .where(DocumentRequest.id == request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise ResourceNotFound(f"Document request {request_id} not found")
    return request


async def get_request(db: AsyncSession, request_id: int) -> DocumentRequest:
    request = await db.get(DocumentRequest, request_id)
    if request is None:
        raise ResourceNotFound(f"Document request {request_id} not found")
    return request


def _ensure_registrar_pending(request: DocumentRequest, action: str) -> None:
    if request.status == FulfillmentStatus.CANCELLED:
        raise InvalidStateTransition(f"Cannot {action}: request is cancelled")
    if request.registrar_status != StageStatus.PENDING:
        raise InvalidStateTransition(
            f"Cannot {action}: registrar stage is {request.registrar_status.value}, expected pending"
        )


def _ensure_accounting_pending(request: DocumentRequest, action: str) -> None:
    if request.registrar_status == StageStatus.REJECTED:
        raise PreconditionFailed(f"Cannot {action}: registrar rejected this request")
    if request.registrar_status != StageStatus.APPROVED:
        raise PreconditionFailed(f"Cannot {action}: registrar has not approved yet")
    if request.accounting_status != StageStatus.PENDING:
        raise InvalidStateTransition(
            f"Cannot {action}: accounting stage is {request.accounting_status.value}, expected pending"
        )


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

async def create_request(
    db: AsyncSession,
    student_id: int,
    fee_item_id: int,
    copies: int,
    purpose: str,
    actor: Actor,
    receipt_number: str | None = None,
    receipt_file_path: str | None = None,
) -> DocumentRequest:
    if not 1 <= copies <= MAX_COPIES:
        raise ValidationError(f"copies must be between 1 and {MAX_COPIES}")
    purpose = (purpose or "").strip()
    if not purpose:
        raise ValidationError("purpose is required")

    item = await db.get(DocumentFeeItem, fee_item_id)
    if item is None:
        raise ResourceNotFound(f"Document fee item {fee_item_id} not found")
    if not item.is_active:
        raise PreconditionFailed(f"{item.name} is not currently offered")
    if await db.get(Student, student_id) is None:
        raise ResourceNotFound(f"Student {student_id} not found")

    unit_fee = to_money(item.price)
    request = DocumentRequest(
        student_id=student_id,
        fee_item_id=item.id,
        document_type=item.document_type,
        copies=copies,
        purpose=purpose,
        processing_type=item.processing_type,
        processing_days=item.processing_days,
        unit_fee=unit_fee,
        total_fee=to_money(unit_fee * copies),
        receipt_number=receipt_number,
        receipt_file_path=receipt_file_path,
        is_paid=False,
        registrar_status=StageStatus.PENDING,
        accounting_status=StageStatus.PENDING,
        status=FulfillmentStatus.PENDING,
        request_date=school_today(),
    )
    db.add(request)
    await db.flush()
    record_audit(
        db, actor, "document_request", request.id, "created",
        new_values={"fee_item_id": item.id, "copies": copies, "total_fee": request.total_fee},
    )
    logger.info(
        "Created document request %d (%s x%d) for student %d",
        request.id, item.document_type, copies, student_id,
    )
    return request


# ---------------------------------------------------------------------------
# Registrar stage
# ---------------------------------------------------------------------------

async def registrar_approve(
    db: AsyncSession, request_id: int, actor: Actor, remarks: str | None = None
) -> DocumentRequest:
    request = await lock_request(db, request_id)
    _ensure_registrar_pending(request, "approve")
    request.registrar_status = StageStatus.APPROVED
    request.registrar_actor_id = actor.user_id
    request.registrar_acted_at = utcnow()
    request.registrar_remarks = remarks
    record_audit(db, actor, "document_request", request.id, "registrar_approved", details=remarks)
    await db.flush()
    logger.info("Registrar approved document request %d by user %s", request.id, actor.user_id)
    return request


async def registrar_reject(
    db: AsyncSession, request_id: int, actor: Actor, remarks: str | None
) -> DocumentRequest:
    remarks = require_remarks(remarks, "reject a document request")
    request = await lock_request(db, request_id)
    _ensure_registrar_pending(request, "reject")
    request.registrar_status = StageStatus.REJECTED
    request.registrar_actor_id = actor.user_id
    request.registrar_acted_at = utcnow()
    request.registrar_remarks = remarks
    request.status = FulfillmentStatus.CANCELLED
    record_audit(db, actor, "document_request", request.id, "registrar_rejected", details=remarks)
    await db.flush()
    logger.info("Registrar rejected document request %d by user %s", request.id, actor.user_id)
    return request


# ---------------------------------------------------------------------------
# Accounting stage
# ---------------------------------------------------------------------------

async def accounting_approve(
    db: AsyncSession,
    request_id: int,
    actor: Actor,
    storage: ReceiptStorage,
    remarks: str | None = None,
    or_number: str | None = None,
) -> DocumentRequest:
    """Confirm payment; the attached receipt, if any, must exist in storage."""
    request = await lock_request(db, request_id)
    _ensure_accounting_pending(request, "approve")
    if request.receipt_file_path and not storage.exists(request.receipt_file_path):
        raise ResourceNotFound(f"Receipt file for document request {request.id} not found")

    today = school_today()
    request.accounting_status = StageStatus.APPROVED
    request.accounting_actor_id = actor.user_id
    request.accounting_acted_at = utcnow()
    request.accounting_remarks = remarks
    request.is_paid = True
    if or_number:
        request.or_number = or_number
    request.status = FulfillmentStatus.PROCESSING
    request.expected_completion_date = today + timedelta(days=request.processing_days)
    record_audit(
        db, actor, "document_request", request.id, "accounting_approved",
        new_values={"or_number": or_number, "expected": request.expected_completion_date},
        details=remarks,
    )
    await db.flush()
    logger.info("Accounting approved document request %d by user %s", request.id, actor.user_id)
    return request


async def accounting_reject(
    db: AsyncSession, request_id: int, actor: Actor, remarks: str | None
) -> DocumentRequest:
    remarks = require_remarks(remarks, "reject a document request")
    request = await lock_request(db, request_id)
    _ensure_accounting_pending(request, "reject")
    request.accounting_status = StageStatus.REJECTED
    request.accounting_actor_id = actor.user_id
    request.accounting_acted_at = utcnow()
    request.accounting_remarks = remarks
    request.status = FulfillmentStatus.CANCELLED
    record_audit(db, actor, "document_request", request.id, "accounting_rejected", details=remarks)
    await db.flush()
    logger.info("Accounting rejected document request %d by user %s", request.id, actor.user_id)
    return request


# ---------------------------------------------------------------------------
# Fulfillment
# ---------------------------------------------------------------------------

async def cancel_request(db: AsyncSession, request_id: int, actor: Actor) -> DocumentRequest:
    """Owner withdraws a request nobody has acted on yet."""
    request = await lock_request(db, request_id)
    if actor.student_id != request.student_id:
        raise PreconditionFailed("Only the requesting student can cancel this request")
    if request.is_closed or request.approval_stage != ApprovalStage.AWAITING_REGISTRAR:
        raise InvalidStateTransition(
            f"Cannot cancel: request is {request.approval_stage.value}"
        )
    request.status = FulfillmentStatus.CANCELLED
    record_audit(db, actor, "document_request", request.id, "cancelled")
    await db.flush()
    logger.info("Student %d cancelled document request %d", request.student_id, request.id)
    return request


async def mark_ready(db: AsyncSession, request_id: int, actor: Actor) -> DocumentRequest:
    request = await lock_request(db, request_id)
    if request.status != FulfillmentStatus.PROCESSING:
        raise InvalidStateTransition(
            f"Cannot mark ready: request is {request.status.value}, expected processing"
        )
    request.status = FulfillmentStatus.READY
    record_audit(db, actor, "document_request", request.id, "ready")
    await db.flush()
    logger.info("Document request %d ready for release", request.id)
    return request


async def release(db: AsyncSession, request_id: int, actor: Actor) -> DocumentRequest:
    request = await lock_request(db, request_id)
    if request.status != FulfillmentStatus.READY:
        raise InvalidStateTransition(
            f"Cannot release: request is {request.status.value}, expected ready"
        )
    request.status = FulfillmentStatus.RELEASED
    request.release_date = school_today()
    request.released_by = actor.user_id
    record_audit(db, actor, "document_request", request.id, "released")
    await db.flush()
    logger.info("Released document request %d by user %s", request.id, actor.user_id)
    return request


async def open_receipt(
    db: AsyncSession, request_id: int, storage: ReceiptStorage
) -> BinaryIO:
    request = await get_request(db, request_id)
    if not request.receipt_file_path:
        raise ResourceNotFound(f"Document request {request.id} has no receipt attached")
    return storage.open(request.receipt_file_path)


async def list_requests(
    db: AsyncSession,
    stage: ApprovalStage | None = None,
    student_id: int | None = None,
    limit: int = 100,
) -> list[DocumentRequest]:
    """Queue listing; ``stage`` narrows to one approval stage."""
    stmt = select(DocumentRequest)
    if student_id is not None:
        stmt = stmt.where(DocumentRequest.student_id == student_id)
    if stage == ApprovalStage.AWAITING_REGISTRAR:
        stmt = stmt.where(
            DocumentRequest.registrar_status == StageStatus.PENDING,
            DocumentRequest.status != FulfillmentStatus.CANCELLED,
        )
    elif stage == ApprovalStage.AWAITING_ACCOUNTING:
        stmt = stmt.where(
            DocumentRequest.registrar_status == StageStatus.APPROVED,
            DocumentRequest.accounting_status == StageStatus.PENDING,
        )
    elif stage == ApprovalStage.APPROVED:
        stmt = stmt.where(
            DocumentRequest.registrar_status == StageStatus.APPROVED,
            DocumentRequest.accounting_status == StageStatus.APPROVED,
        )
    elif stage == ApprovalStage.REJECTED:
        stmt = stmt.where(
            (DocumentRequest.registrar_status == StageStatus.REJECTED)
            | (DocumentRequest.accounting_status == StageStatus.REJECTED)
        )
    result = await db.execute(stmt.order_by(DocumentRequest.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def list_fee_items(db: AsyncSession) -> list[DocumentFeeItem]:
    result = await db.execute(
        select(DocumentFeeItem)
        .where(DocumentFeeItem.is_active.is_(True))
        .order_by(DocumentFeeItem.category, DocumentFeeItem.name)
    )
    return list(result.scalars().all())
