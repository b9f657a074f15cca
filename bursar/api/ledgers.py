"""Ledger endpoints: creation, assessment, grants, balances and role views."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from bursar.auth_utils import ensure_owner_or_staff, get_current_actor, require_roles
from bursar.database import get_db
from bursar.models.ledger import PaymentStatus
from bursar.models.student import Classification
from bursar.schemas import (
    AssessmentRequest,
    BalanceResponse,
    GrantApplyRequest,
    GrantRecipientResponse,
    GrantRemoveRequest,
    LedgerCreate,
    LedgerListResponse,
    LedgerResponse,
)
from bursar.services import ledger_store, projections
from bursar.services.actor import Actor, Role
from bursar.services.error_logger import log_error, log_error_standalone
from bursar.services.exceptions import BursarError
from bursar.services.unit_of_work import run_in_transaction

logger = logging.getLogger(__name__)
router = APIRouter()

STAFF = (Role.REGISTRAR, Role.ACCOUNTING)


@router.post("", response_model=LedgerResponse, status_code=201)
async def create_ledger(
    data: LedgerCreate,
    actor: Actor = Depends(require_roles(*STAFF)),
):
    try:
        ledger = await run_in_transaction(
            lambda db: ledger_store.get_or_create_ledger(db, data.student_id, data.school_year)
        )
        return LedgerResponse.model_validate(ledger)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.ledgers", function_name="create_ledger")
        raise


@router.get("", response_model=LedgerListResponse)
async def list_ledgers(
    school_year: Optional[str] = None,
    department_id: Optional[int] = None,
    classification: Optional[Classification] = None,
    year_level_id: Optional[int] = None,
    payment_status: Optional[PaymentStatus] = None,
    is_overdue: Optional[bool] = None,
    include_retired: bool = False,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(require_roles(*STAFF)),
    db: AsyncSession = Depends(get_db),
):
    try:
        filters = ledger_store.LedgerFilters(
            school_year=school_year,
            department_id=department_id,
            classification=classification,
            year_level_id=year_level_id,
            payment_status=payment_status,
            is_overdue=is_overdue,
            include_retired=include_retired,
        )
        rows, total = await ledger_store.list_ledgers(db, filters, page, page_size)
        return LedgerListResponse(
            items=[LedgerResponse.model_validate(r) for r in rows],
            total=total,
            page=page,
            page_size=page_size,
        )
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error(e, db=db, module="api.ledgers", function_name="list_ledgers")
        raise


@router.get("/{ledger_id}", response_model=LedgerResponse)
async def get_ledger(
    ledger_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    ledger = await ledger_store.get_ledger(db, ledger_id)
    ensure_owner_or_staff(actor, ledger.student_id)
    return LedgerResponse.model_validate(ledger)


@router.get("/{ledger_id}/balance", response_model=BalanceResponse)
async def get_balance(
    ledger_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    ledger = await ledger_store.get_ledger(db, ledger_id)
    ensure_owner_or_staff(actor, ledger.student_id)
    return BalanceResponse.model_validate(await ledger_store.get_balance(db, ledger_id))


@router.get("/{ledger_id}/view")
async def get_ledger_view(
    ledger_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """The ledger as the caller's role sees it."""
    ledger = await ledger_store.get_ledger(db, ledger_id)
    ensure_owner_or_staff(actor, ledger.student_id)
    return await projections.load_view(db, ledger_id, actor.role)


@router.post("/{ledger_id}/assessment", response_model=LedgerResponse)
async def post_assessment(
    ledger_id: int,
    data: AssessmentRequest,
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    try:
        ledger = await run_in_transaction(
            lambda db: ledger_store.post_assessment(
                db, ledger_id, data.fee_line_items(), actor, due_date=data.due_date
            )
        )
        return LedgerResponse.model_validate(ledger)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.ledgers", function_name="post_assessment")
        raise


@router.post("/{ledger_id}/grants", response_model=GrantRecipientResponse, status_code=201)
async def apply_grant(
    ledger_id: int,
    data: GrantApplyRequest,
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    try:
        recipient = await run_in_transaction(
            lambda db: ledger_store.apply_grant(
                db, ledger_id, data.grant_id, actor,
                discount_amount=data.discount_amount, notes=data.notes,
            )
        )
        return GrantRecipientResponse.model_validate(recipient)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.ledgers", function_name="apply_grant")
        raise


@router.post("/{ledger_id}/grants/{grant_id}/remove", response_model=GrantRecipientResponse)
async def remove_grant(
    ledger_id: int,
    grant_id: int,
    data: GrantRemoveRequest = GrantRemoveRequest(),
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    try:
        recipient = await run_in_transaction(
            lambda db: ledger_store.remove_grant(db, ledger_id, grant_id, actor, status=data.status)
        )
        return GrantRecipientResponse.model_validate(recipient)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.ledgers", function_name="remove_grant")
        raise


@router.post("/{ledger_id}/retire", response_model=LedgerResponse)
async def retire_ledger(
    ledger_id: int,
    actor: Actor = Depends(require_roles(Role.ADMIN)),
):
    try:
        ledger = await run_in_transaction(lambda db: ledger_store.retire_ledger(db, ledger_id, actor))
        return LedgerResponse.model_validate(ledger)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.ledgers", function_name="retire_ledger")
        raise
