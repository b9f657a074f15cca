"""Overdue escalation endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from bursar.auth_utils import require_roles
from bursar.clock import school_today
from bursar.schemas import LedgerResponse, OverdueBatchRequest, OverdueBatchResponse
from bursar.services import overdue_engine
from bursar.services.actor import Actor, Role
from bursar.services.error_logger import log_error_standalone
from bursar.services.exceptions import BursarError
from bursar.services.unit_of_work import run_in_transaction

router = APIRouter()


@router.post("/ledgers/{ledger_id}/mark", response_model=LedgerResponse)
async def mark_overdue(
    ledger_id: int,
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    try:
        ledger = await run_in_transaction(
            lambda db: overdue_engine.mark_overdue(db, ledger_id, actor)
        )
        return LedgerResponse.model_validate(ledger)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.overdue", function_name="mark_overdue")
        raise


@router.post("/ledgers/{ledger_id}/clear", response_model=LedgerResponse)
async def clear_overdue(
    ledger_id: int,
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    try:
        ledger = await run_in_transaction(
            lambda db: overdue_engine.clear_overdue(db, ledger_id, actor)
        )
        return LedgerResponse.model_validate(ledger)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.overdue", function_name="clear_overdue")
        raise


@router.post("/batch", response_model=OverdueBatchResponse)
async def bulk_mark_overdue(
    data: OverdueBatchRequest,
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    cutoff = data.cutoff_date or school_today()
    scope = overdue_engine.OverdueScope(
        school_year=data.school_year,
        classification=data.classification,
        department_id=data.department_id,
        year_level_id=data.year_level_id,
    )
    try:
        marked = await overdue_engine.bulk_mark_overdue(scope, cutoff, actor)
        return OverdueBatchResponse(cutoff_date=cutoff, marked=marked)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.overdue", function_name="bulk_mark_overdue")
        raise
