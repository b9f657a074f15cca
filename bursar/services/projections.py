"""Role-specific read views of a ledger.

Registrars see enrollment-relevant status, accounting sees the full money
breakdown with payment history, students see what they owe.  The view for a
role comes from ``VIEWS``; callers never branch on ledger internals.
"""

from decimal import Decimal
from typing import Callable, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from bursar.models.grant import Grant, GrantRecipient
from bursar.models.ledger import LedgerPayment, StudentLedger
from bursar.money import to_money
from bursar.services.actor import Role
from bursar.services.exceptions import PreconditionFailed
from bursar.services.ledger_store import get_ledger, list_grant_lines
from bursar.services.payment_recorder import list_payments

GrantLines = Iterable[tuple[GrantRecipient, Grant]]


def _money(value) -> str:
    return str(to_money(value))


def _grant_summaries(grants: GrantLines) -> list[dict]:
    return [
        {
            "grant_id": grant.id,
            "code": grant.code,
            "name": grant.name,
            "type": grant.type.value,
            "discount_amount": _money(recipient.discount_amount),
        }
        for recipient, grant in grants
    ]


def registrar_view(ledger: StudentLedger, grants: GrantLines = ()) -> dict:
    return {
        "ledger_id": ledger.id,
        "student_id": ledger.student_id,
        "school_year": ledger.school_year,
        "payment_status": ledger.payment_status.value,
        "is_overdue": ledger.is_overdue,
        "has_balance": ledger.balance > 0,
        "grants": [g["code"] for g in _grant_summaries(grants)],
    }


def accounting_view(
    ledger: StudentLedger,
    grants: GrantLines = (),
    payments: Iterable[LedgerPayment] = (),
) -> dict:
    return {
        "ledger_id": ledger.id,
        "student_id": ledger.student_id,
        "school_year": ledger.school_year,
        "fees": {name: _money(v) for name, v in ledger.fee_breakdown().items()},
        "total_assessed": _money(ledger.total_assessed),
        "grant_discount": _money(ledger.grant_discount),
        "total_paid": _money(ledger.total_paid),
        "balance": _money(ledger.balance),
        "payment_status": ledger.payment_status.value,
        "due_date": ledger.due_date.isoformat() if ledger.due_date else None,
        "is_overdue": ledger.is_overdue,
        "overdue_since": ledger.overdue_since.isoformat() if ledger.overdue_since else None,
        "is_retired": ledger.is_retired,
        "version": ledger.version,
        "grants": _grant_summaries(grants),
        "payments": [
            {
                "id": p.id,
                "receipt_number": p.receipt_number,
                "kind": p.kind.value,
                "method": p.method.value,
                "amount": _money(p.amount),
                "payment_date": p.payment_date.isoformat(),
                "reverses_payment_id": p.reverses_payment_id,
            }
            for p in payments
        ],
    }


def student_view(ledger: StudentLedger, grants: GrantLines = ()) -> dict:
    discount: Decimal = to_money(ledger.grant_discount)
    return {
        "school_year": ledger.school_year,
        "fees": {name: _money(v) for name, v in ledger.fee_breakdown().items()},
        "total_assessed": _money(ledger.total_assessed),
        "discount": _money(discount),
        "amount_due": _money(to_money(ledger.total_assessed) - discount),
        "total_paid": _money(ledger.total_paid),
        "balance": _money(ledger.balance),
        "payment_status": ledger.payment_status.value,
        "due_date": ledger.due_date.isoformat() if ledger.due_date else None,
        "is_overdue": ledger.is_overdue,
        "grants": [g["name"] for g in _grant_summaries(grants)],
    }


VIEWS: dict[Role, Callable[..., dict]] = {
    Role.REGISTRAR: registrar_view,
    Role.ACCOUNTING: accounting_view,
    Role.ADMIN: accounting_view,
    Role.STUDENT: student_view,
}


async def load_view(db: AsyncSession, ledger_id: int, role: Role) -> dict:
    """Fetch a ledger and render it for ``role``."""
    view = VIEWS.get(role)
    if view is None:
        raise PreconditionFailed(f"No ledger view for role {role.value}")
    ledger = await get_ledger(db, ledger_id)
    grants = await list_grant_lines(db, ledger.id)
    if view is accounting_view:
        payments = await list_payments(db, ledger.id)
        return accounting_view(ledger, grants, payments)
    return view(ledger, grants)
