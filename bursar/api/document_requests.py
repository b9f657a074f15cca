"""Document request endpoints: submission, two-stage approval, fulfillment."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from bursar.auth_utils import ensure_owner_or_staff, get_current_actor, require_roles
from bursar.database import get_db
from bursar.models.document_request import ApprovalStage
from bursar.schemas import (
    DocumentFeeItemResponse,
    DocumentRequestCreate,
    DocumentRequestResponse,
    RejectRequest,
    StageApproveRequest,
)
from bursar.services import document_pipeline
from bursar.services.actor import Actor, Role
from bursar.services.error_logger import log_error_standalone
from bursar.services.exceptions import BursarError, ValidationError
from bursar.services.file_storage import ReceiptStorage, get_receipt_storage
from bursar.services.unit_of_work import run_in_transaction

router = APIRouter()


async def _transition(fn, function_name: str) -> DocumentRequestResponse:
    try:
        request = await run_in_transaction(fn)
        return DocumentRequestResponse.model_validate(request)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.document_requests", function_name=function_name)
        raise


@router.get("/fee-items", response_model=list[DocumentFeeItemResponse])
async def list_fee_items(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    items = await document_pipeline.list_fee_items(db)
    return [DocumentFeeItemResponse.model_validate(i) for i in items]


@router.post("", response_model=DocumentRequestResponse, status_code=201)
async def create_request(
    data: DocumentRequestCreate,
    actor: Actor = Depends(get_current_actor),
):
    student_id = data.student_id if data.student_id is not None else actor.student_id
    if student_id is None:
        raise ValidationError("student_id is required")
    ensure_owner_or_staff(actor, student_id)
    return await _transition(
        lambda db: document_pipeline.create_request(
            db,
            student_id,
            data.fee_item_id,
            data.copies,
            data.purpose,
            actor,
            receipt_number=data.receipt_number,
            receipt_file_path=data.receipt_file_path,
        ),
        "create_request",
    )


@router.get("", response_model=list[DocumentRequestResponse])
async def list_requests(
    stage: Optional[ApprovalStage] = None,
    student_id: Optional[int] = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    if actor.role == Role.STUDENT:
        student_id = actor.student_id
    rows = await document_pipeline.list_requests(db, stage=stage, student_id=student_id)
    return [DocumentRequestResponse.model_validate(r) for r in rows]


@router.get("/{request_id}", response_model=DocumentRequestResponse)
async def get_request(
    request_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    request = await document_pipeline.get_request(db, request_id)
    ensure_owner_or_staff(actor, request.student_id)
    return DocumentRequestResponse.model_validate(request)


@router.get("/{request_id}/receipt")
async def get_receipt(
    request_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: ReceiptStorage = Depends(get_receipt_storage),
):
    request = await document_pipeline.get_request(db, request_id)
    ensure_owner_or_staff(actor, request.student_id)
    stream = await document_pipeline.open_receipt(db, request_id, storage)
    return StreamingResponse(stream, media_type="application/octet-stream")


@router.post("/{request_id}/registrar/approve", response_model=DocumentRequestResponse)
async def registrar_approve(
    request_id: int,
    data: StageApproveRequest = StageApproveRequest(),
    actor: Actor = Depends(require_roles(Role.REGISTRAR)),
):
    return await _transition(
        lambda db: document_pipeline.registrar_approve(db, request_id, actor, remarks=data.remarks),
        "registrar_approve",
    )


@router.post("/{request_id}/registrar/reject", response_model=DocumentRequestResponse)
async def registrar_reject(
    request_id: int,
    data: RejectRequest,
    actor: Actor = Depends(require_roles(Role.REGISTRAR)),
):
    return await _transition(
        lambda db: document_pipeline.registrar_reject(db, request_id, actor, data.remarks),
        "registrar_reject",
    )


@router.post("/{request_id}/accounting/approve", response_model=DocumentRequestResponse)
async def accounting_approve(
    request_id: int,
    data: StageApproveRequest = StageApproveRequest(),
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
    storage: ReceiptStorage = Depends(get_receipt_storage),
):
    return await _transition(
        lambda db: document_pipeline.accounting_approve(
            db, request_id, actor, storage, remarks=data.remarks, or_number=data.or_number
        ),
        "accounting_approve",
    )


@router.post("/{request_id}/accounting/reject", response_model=DocumentRequestResponse)
async def accounting_reject(
    request_id: int,
    data: RejectRequest,
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    return await _transition(
        lambda db: document_pipeline.accounting_reject(db, request_id, actor, data.remarks),
        "accounting_reject",
    )


@router.post("/{request_id}/cancel", response_model=DocumentRequestResponse)
async def cancel_request(
    request_id: int,
    actor: Actor = Depends(require_roles(Role.STUDENT)),
):
    return await _transition(
        lambda db: document_pipeline.cancel_request(db, request_id, actor),
        "cancel_request",
    )


@router.post("/{request_id}/ready", response_model=DocumentRequestResponse)
async def mark_ready(
    request_id: int,
    actor: Actor = Depends(require_roles(Role.REGISTRAR)),
):
    return await _transition(
        lambda db: document_pipeline.mark_ready(db, request_id, actor),
        "mark_ready",
    )


@router.post("/{request_id}/release", response_model=DocumentRequestResponse)
async def release(
    request_id: int,
    actor: Actor = Depends(require_roles(Role.REGISTRAR)),
):
    return await _transition(
        lambda db: document_pipeline.release(db, request_id, actor),
        "release",
    )
