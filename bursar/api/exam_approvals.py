"""Exam eligibility endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from bursar.auth_utils import get_current_actor, require_roles
from bursar.database import get_db
from bursar.models.exam_approval import ExamApprovalStatus
from bursar.schemas import (
    BulkResultResponse,
    ExamApprovalCreate,
    ExamApprovalResponse,
    ExamBulkApproveRequest,
    ExamPaidAmountUpdate,
    RejectRequest,
)
from bursar.services import exam_eligibility
from bursar.services.actor import Actor, Role
from bursar.services.error_logger import log_error_standalone
from bursar.services.exceptions import BursarError
from bursar.services.unit_of_work import run_in_transaction

router = APIRouter()

APPROVERS = (Role.ACCOUNTING,)
CREATORS = (Role.REGISTRAR, Role.ACCOUNTING)


@router.get("", response_model=list[ExamApprovalResponse])
async def list_approvals(
    status: Optional[ExamApprovalStatus] = None,
    student_id: Optional[int] = None,
    school_year: Optional[str] = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    if actor.role == Role.STUDENT:
        student_id = actor.student_id
    rows = await exam_eligibility.list_approvals(
        db, status=status, student_id=student_id, school_year=school_year
    )
    return [ExamApprovalResponse.model_validate(r) for r in rows]


@router.post("", response_model=ExamApprovalResponse, status_code=201)
async def create_exam_approval(
    data: ExamApprovalCreate,
    actor: Actor = Depends(require_roles(*CREATORS)),
):
    try:
        approval = await run_in_transaction(
            lambda db: exam_eligibility.create_exam_approval(
                db,
                data.student_id,
                data.school_year,
                data.exam_type,
                actor,
                required_amount=data.required_amount,
                term=data.term,
                remarks=data.remarks,
            )
        )
        return ExamApprovalResponse.model_validate(approval)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.exam_approvals", function_name="create_exam_approval")
        raise


@router.post("/bulk-approve", response_model=list[BulkResultResponse])
async def bulk_approve(
    data: ExamBulkApproveRequest,
    actor: Actor = Depends(require_roles(*APPROVERS)),
):
    try:
        results = await run_in_transaction(
            lambda db: exam_eligibility.bulk_approve(db, data.approval_ids, actor)
        )
        return [BulkResultResponse.model_validate(r) for r in results]
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.exam_approvals", function_name="bulk_approve")
        raise


@router.post("/{approval_id}/approve", response_model=ExamApprovalResponse)
async def approve(
    approval_id: int,
    actor: Actor = Depends(require_roles(*APPROVERS)),
):
    try:
        approval = await run_in_transaction(
            lambda db: exam_eligibility.approve(db, approval_id, actor)
        )
        return ExamApprovalResponse.model_validate(approval)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.exam_approvals", function_name="approve")
        raise


@router.post("/{approval_id}/deny", response_model=ExamApprovalResponse)
async def deny(
    approval_id: int,
    data: RejectRequest,
    actor: Actor = Depends(require_roles(*APPROVERS)),
):
    try:
        approval = await run_in_transaction(
            lambda db: exam_eligibility.deny(db, approval_id, actor, data.remarks)
        )
        return ExamApprovalResponse.model_validate(approval)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.exam_approvals", function_name="deny")
        raise


@router.post("/{approval_id}/paid-amount", response_model=ExamApprovalResponse)
async def update_paid_amount(
    approval_id: int,
    data: ExamPaidAmountUpdate = ExamPaidAmountUpdate(),
    actor: Actor = Depends(require_roles(*APPROVERS)),
):
    try:
        approval = await run_in_transaction(
            lambda db: exam_eligibility.update_paid_amount(
                db, approval_id, actor, paid_amount=data.paid_amount
            )
        )
        return ExamApprovalResponse.model_validate(approval)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.exam_approvals", function_name="update_paid_amount")
        raise
