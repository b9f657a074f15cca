"""Grant catalog endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from bursar.auth_utils import require_roles
from bursar.database import get_db
from bursar.schemas import GrantCreate, GrantResponse
from bursar.services import ledger_store
from bursar.services.actor import Actor, Role
from bursar.services.error_logger import log_error_standalone
from bursar.services.exceptions import BursarError
from bursar.services.unit_of_work import run_in_transaction

router = APIRouter()


@router.get("", response_model=list[GrantResponse])
async def list_grants(
    school_year: Optional[str] = None,
    active_only: bool = True,
    actor: Actor = Depends(require_roles(Role.REGISTRAR, Role.ACCOUNTING)),
    db: AsyncSession = Depends(get_db),
):
    grants = await ledger_store.list_grants(db, school_year=school_year, active_only=active_only)
    return [GrantResponse.model_validate(g) for g in grants]


@router.post("", response_model=GrantResponse, status_code=201)
async def create_grant(
    data: GrantCreate,
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    try:
        grant = await run_in_transaction(
            lambda db: ledger_store.create_grant(
                db,
                name=data.name,
                code=data.code,
                grant_type=data.type,
                value=data.value,
                actor=actor,
                school_year=data.school_year,
                description=data.description,
            )
        )
        return GrantResponse.model_validate(grant)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.grants", function_name="create_grant")
        raise
