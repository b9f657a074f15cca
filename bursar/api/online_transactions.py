"""Online transaction endpoints and the payment provider callback."""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from bursar.auth_utils import ensure_owner_or_staff, get_current_actor, require_roles
from bursar.config import settings
from bursar.database import get_db
from bursar.models.online_transaction import TransactionStatus
from bursar.schemas import (
    OnlineTransactionCreate,
    OnlineTransactionResponse,
    ProviderCallback,
    ProviderCallbackResponse,
    TransactionFailRequest,
    TransactionRefundRequest,
)
from bursar.services import online_verifier
from bursar.services.actor import Actor, Role
from bursar.services.error_logger import log_error_standalone
from bursar.services.exceptions import BursarError
from bursar.services.unit_of_work import run_in_transaction

logger = logging.getLogger(__name__)
router = APIRouter()
limiter = Limiter(key_func=get_remote_address)


def _check_provider_token(token: Optional[str]) -> None:
    expected = settings.provider_callback_token
    if not expected or not token or not hmac.compare_digest(token.encode(), expected.encode()):
        logger.warning("Rejected provider callback with missing or bad token")
        raise HTTPException(status_code=403, detail="Invalid provider token")


@router.post("/callback", response_model=ProviderCallbackResponse)
@limiter.limit(settings.provider_callback_rate_limit)
async def provider_callback(
    data: ProviderCallback,
    request: Request,
    x_provider_token: Optional[str] = Header(None),
):
    _check_provider_token(x_provider_token)
    try:
        result = await run_in_transaction(
            lambda db: online_verifier.handle_provider_callback(db, data.model_dump())
        )
        return ProviderCallbackResponse(**result)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(
            e, module="api.online_transactions", function_name="provider_callback"
        )
        raise


@router.post("", response_model=OnlineTransactionResponse, status_code=201)
async def submit_transaction(
    data: OnlineTransactionCreate,
    actor: Actor = Depends(get_current_actor),
):
    ensure_owner_or_staff(actor, data.student_id)
    try:
        txn = await run_in_transaction(
            lambda db: online_verifier.submit_transaction(
                db,
                student_id=data.student_id,
                school_year=data.school_year,
                reference_code=data.reference_code,
                provider=data.provider,
                gross_amount=data.gross_amount,
                processing_fee=data.processing_fee,
                actor=actor,
                account_name=data.account_name,
                account_number=data.account_number,
                payment_proof_path=data.payment_proof_path,
                transaction_date=data.transaction_date,
            )
        )
        return OnlineTransactionResponse.model_validate(txn)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(
            e, module="api.online_transactions", function_name="submit_transaction"
        )
        raise


@router.get("", response_model=list[OnlineTransactionResponse])
async def list_transactions(
    status: Optional[TransactionStatus] = None,
    student_id: Optional[int] = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    if actor.role == Role.STUDENT:
        student_id = actor.student_id
    rows = await online_verifier.list_transactions(db, status=status, student_id=student_id)
    return [OnlineTransactionResponse.model_validate(t) for t in rows]


@router.get("/{transaction_id}", response_model=OnlineTransactionResponse)
async def get_transaction(
    transaction_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    txn = await online_verifier.get_transaction(db, transaction_id)
    ensure_owner_or_staff(actor, txn.student_id)
    return OnlineTransactionResponse.model_validate(txn)


@router.post("/{transaction_id}/verify", response_model=OnlineTransactionResponse)
async def verify_transaction(
    transaction_id: int,
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    try:
        txn = await run_in_transaction(
            lambda db: online_verifier.verify(db, transaction_id, actor)
        )
        return OnlineTransactionResponse.model_validate(txn)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(
            e, module="api.online_transactions", function_name="verify_transaction"
        )
        raise


@router.post("/{transaction_id}/fail", response_model=OnlineTransactionResponse)
async def fail_transaction(
    transaction_id: int,
    data: TransactionFailRequest,
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    try:
        txn = await run_in_transaction(
            lambda db: online_verifier.mark_failed(db, transaction_id, data.reason, actor)
        )
        return OnlineTransactionResponse.model_validate(txn)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(
            e, module="api.online_transactions", function_name="fail_transaction"
        )
        raise


@router.post("/{transaction_id}/refund", response_model=OnlineTransactionResponse)
async def refund_transaction(
    transaction_id: int,
    data: TransactionRefundRequest = TransactionRefundRequest(),
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    try:
        txn = await run_in_transaction(
            lambda db: online_verifier.refund(db, transaction_id, actor, remarks=data.remarks)
        )
        return OnlineTransactionResponse.model_validate(txn)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(
            e, module="api.online_transactions", function_name="refund_transaction"
        )
        raise
