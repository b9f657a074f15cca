"""Promissory note endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from bursar.auth_utils import get_current_actor, require_roles
from bursar.database import get_db
from bursar.models.promissory_note import NoteStatus
from bursar.schemas import NoteReviewRequest, PromissoryNoteCreate, PromissoryNoteResponse
from bursar.services import promissory_notes
from bursar.services.actor import Actor, Role
from bursar.services.error_logger import log_error_standalone
from bursar.services.exceptions import BursarError
from bursar.services.unit_of_work import run_in_transaction

router = APIRouter()


async def _mutate(fn, function_name: str) -> PromissoryNoteResponse:
    try:
        note = await run_in_transaction(fn)
        return PromissoryNoteResponse.model_validate(note)
    except (HTTPException, BursarError):
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.promissory_notes", function_name=function_name)
        raise


@router.get("", response_model=list[PromissoryNoteResponse])
async def list_notes(
    status: Optional[NoteStatus] = None,
    ledger_id: Optional[int] = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    student_id = actor.student_id if actor.role == Role.STUDENT else None
    rows = await promissory_notes.list_notes(
        db, status=status, ledger_id=ledger_id, student_id=student_id
    )
    return [PromissoryNoteResponse.model_validate(n) for n in rows]


@router.post("", response_model=PromissoryNoteResponse, status_code=201)
async def submit_note(
    data: PromissoryNoteCreate,
    actor: Actor = Depends(require_roles(Role.STUDENT, Role.ACCOUNTING)),
):
    return await _mutate(
        lambda db: promissory_notes.submit_note(
            db, data.ledger_id, data.due_date, data.reason, actor, amount=data.amount
        ),
        "submit_note",
    )


@router.post("/{note_id}/approve", response_model=PromissoryNoteResponse)
async def approve_note(
    note_id: int,
    data: NoteReviewRequest = NoteReviewRequest(),
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    return await _mutate(
        lambda db: promissory_notes.approve_note(db, note_id, actor, notes=data.notes),
        "approve_note",
    )


@router.post("/{note_id}/decline", response_model=PromissoryNoteResponse)
async def decline_note(
    note_id: int,
    data: NoteReviewRequest,
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    return await _mutate(
        lambda db: promissory_notes.decline_note(db, note_id, actor, data.notes),
        "decline_note",
    )


@router.post("/{note_id}/fulfill", response_model=PromissoryNoteResponse)
async def fulfill_note(
    note_id: int,
    actor: Actor = Depends(require_roles(Role.ACCOUNTING)),
):
    return await _mutate(
        lambda db: promissory_notes.fulfill_note(db, note_id, actor),
        "fulfill_note",
    )
