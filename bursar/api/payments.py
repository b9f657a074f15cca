"""Payment endpoints: record, list and reverse ledger payments."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from bursar.auth_utils import ensure_owner_or_staff, get_current_actor, require_roles
from bursar.database import get_db
from bursar.schemas import PaymentCreate, PaymentResponse, PaymentReversalRequest
from bursar.services import ledger_store, payment_recorder
from bursar.services.actor import Actor, Role
from bursar.services.error_logger import log_error_standalone
from bursar.services.exceptions import BursarError
from bursar.services.unit_of_work import run_in_transaction

router = APIRouter()


@router.post("/ledgers/{ledger_id}", response_model=PaymentResponse, status_code=201)
async def record_payment(
    ledger_id: int,
    data: PaymentCreate,
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    try:
        payment = await run_in_transaction(
            lambda db: payment_recorder.record_payment(
                db,
                ledger_id,
                data.amount,
                data.method,
                actor,
                reference=data.reference,
                payment_date=data.payment_date,
                receipt_number=data.receipt_number,
            )
        )
        return PaymentResponse.model_validate(payment)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.payments", function_name="record_payment")
        raise


@router.get("/ledgers/{ledger_id}", response_model=list[PaymentResponse])
async def list_payments(
    ledger_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    ledger = await ledger_store.get_ledger(db, ledger_id)
    ensure_owner_or_staff(actor, ledger.student_id)
    payments = await payment_recorder.list_payments(db, ledger_id)
    return [PaymentResponse.model_validate(p) for p in payments]


@router.post(
    "/ledgers/{ledger_id}/{payment_id}/reverse",
    response_model=PaymentResponse,
    status_code=201,
)
async def reverse_payment(
    ledger_id: int,
    payment_id: int,
    data: PaymentReversalRequest,
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    try:
        reversal = await run_in_transaction(
            lambda db: payment_recorder.reverse_payment(
                db, ledger_id, payment_id, data.reason, actor
            )
        )
        return PaymentResponse.model_validate(reversal)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.payments", function_name="reverse_payment")
        raise
