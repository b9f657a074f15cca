"""Student ledger and payment models.

A ``StudentLedger`` is one student's account for one school year.  The
balance and payment status are derived (hybrid properties usable in Python
and in SQL) and never stored, so they cannot drift from the raw totals.

``LedgerPayment`` rows are append-only: corrections are new rows with a
negative amount that point at the payment they reverse.
"""

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Numeric,
    Integer,
    Boolean,
    Enum,
    DateTime,
    Date,
    ForeignKey,
    Text,
    CheckConstraint,
    UniqueConstraint,
    Sequence,
    case,
    event,
    func,
    literal,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column

from bursar.database import Base
from bursar.money import ZERO, to_money
from bursar.services.exceptions import InvariantViolation


# ===================================================================
# Enumerations
# ===================================================================


class PaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


class PaymentKind(str, enum.Enum):
    PAYMENT = "payment"
    REVERSAL = "reversal"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CHECK = "check"
    BANK_TRANSFER = "bank_transfer"
    GCASH = "gcash"
    PAYMAYA = "paymaya"
    CARD = "card"
    ONLINE = "online"
    ADJUSTMENT = "adjustment"


FEE_LINE_ITEMS = (
    "registration_fee",
    "tuition_fee",
    "misc_fee",
    "books_fee",
    "other_fees",
)

# Shared across all ledgers; feeds OR-YYYY-NNNNNN receipt numbers.
RECEIPT_NUMBER_SEQ = Sequence("ledger_receipt_number_seq", metadata=Base.metadata)


# ===================================================================
# Ledger
# ===================================================================


class StudentLedger(Base):
    __tablename__ = "student_ledgers"
    __table_args__ = (
        UniqueConstraint("student_id", "school_year", name="uq_ledger_student_year"),
        CheckConstraint(
            "registration_fee >= 0 AND tuition_fee >= 0 AND misc_fee >= 0 "
            "AND books_fee >= 0 AND other_fees >= 0",
            name="ck_ledger_fees_non_negative",
        ),
        CheckConstraint(
            "grant_discount >= 0 AND grant_discount <= total_assessed",
            name="ck_ledger_discount_within_assessed",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id"), nullable=False, index=True
    )
    school_year: Mapped[str] = mapped_column(String(9), nullable=False, index=True)

    # Assessed fee components
    registration_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO, nullable=False)
    tuition_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO, nullable=False)
    misc_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO, nullable=False)
    books_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO, nullable=False)
    other_fees: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO, nullable=False)

    # Running totals (written only by the ledger services)
    total_assessed: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO, nullable=False)
    grant_discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO, nullable=False)
    total_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO, nullable=False)

    # Overdue tracking
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_overdue: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    overdue_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Soft retirement
    is_retired: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    retired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    @classmethod
    def blank(cls, student_id: int, school_year: str) -> "StudentLedger":
        """A new ledger with every amount explicitly zero."""
        fields = {name: ZERO for name in FEE_LINE_ITEMS}
        return cls(
            student_id=student_id,
            school_year=school_year,
            total_assessed=ZERO,
            grant_discount=ZERO,
            total_paid=ZERO,
            is_overdue=False,
            overdue_since=None,
            is_retired=False,
            **fields,
        )

    def fee_breakdown(self) -> dict[str, Decimal]:
        return {name: to_money(getattr(self, name)) for name in FEE_LINE_ITEMS}

    @hybrid_property
    def balance(self) -> Decimal:
        raw = to_money(self.total_assessed) - to_money(self.grant_discount) - to_money(self.total_paid)
        return raw if raw > 0 else ZERO

    @balance.expression
    def balance(cls):
        raw = cls.total_assessed - cls.grant_discount - cls.total_paid
        return case((raw > 0, raw), else_=literal(0))

    @hybrid_property
    def payment_status(self) -> PaymentStatus:
        if to_money(self.total_assessed) <= 0:
            return PaymentStatus.UNPAID
        if self.balance == 0:
            return PaymentStatus.PAID
        if to_money(self.total_paid) <= 0:
            return PaymentStatus.UNPAID
        return PaymentStatus.PARTIAL

    @payment_status.expression
    def payment_status(cls):
        return case(
            (cls.total_assessed <= 0, literal(PaymentStatus.UNPAID.value)),
            (
                cls.total_assessed - cls.grant_discount - cls.total_paid <= 0,
                literal(PaymentStatus.PAID.value),
            ),
            (cls.total_paid <= 0, literal(PaymentStatus.UNPAID.value)),
            else_=literal(PaymentStatus.PARTIAL.value),
        )


# ===================================================================
# Payments
# ===================================================================


class LedgerPayment(Base):
    __tablename__ = "ledger_payments"
    __table_args__ = (
        CheckConstraint(
            "(kind = 'PAYMENT' AND amount > 0) OR (kind = 'REVERSAL' AND amount < 0)",
            name="ck_payment_sign_matches_kind",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    ledger_id: Mapped[int] = mapped_column(
        ForeignKey("student_ledgers.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    kind: Mapped[PaymentKind] = mapped_column(
        Enum(PaymentKind), default=PaymentKind.PAYMENT, nullable=False
    )
    method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod), nullable=False)
    receipt_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    reverses_payment_id: Mapped[int | None] = mapped_column(
        ForeignKey("ledger_payments.id"), nullable=True, unique=True
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


@event.listens_for(LedgerPayment, "before_update")
def _refuse_payment_edit(mapper, connection, target: LedgerPayment) -> None:
    raise InvariantViolation(
        f"Payment {target.receipt_number} is immutable; record a reversal instead"
    )
