"""Exam eligibility approvals gated on a payment snapshot."""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Numeric,
    Integer,
    Enum,
    DateTime,
    ForeignKey,
    Text,
    CheckConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from bursar.database import Base
from bursar.money import ZERO, to_money


class ExamType(str, enum.Enum):
    PRELIM = "prelim"
    QUARTERLY = "quarterly"
    MIDTERM = "midterm"
    FINALS = "finals"


class ExamApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


EXAM_TERMS = {
    "1st_quarter": "1st Quarter",
    "2nd_quarter": "2nd Quarter",
    "3rd_quarter": "3rd Quarter",
    "4th_quarter": "4th Quarter",
    "1st_semester": "1st Semester",
    "2nd_semester": "2nd Semester",
}


class ExamApproval(Base):
    """Eligibility to sit an exam.

    ``paid_amount`` is a snapshot of the ledger's total paid taken when the
    approval is created (or explicitly refreshed by staff).  Payments recorded
    later do not move it.
    """

    __tablename__ = "exam_approvals"
    __table_args__ = (
        CheckConstraint("required_amount > 0", name="ck_exam_required_positive"),
        CheckConstraint("paid_amount >= 0", name="ck_exam_paid_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("students.id"), nullable=False, index=True)
    school_year: Mapped[str] = mapped_column(String(9), nullable=False, index=True)
    exam_type: Mapped[ExamType] = mapped_column(Enum(ExamType), nullable=False)
    term: Mapped[str | None] = mapped_column(String(20), nullable=True)
    required_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[ExamApprovalStatus] = mapped_column(
        Enum(ExamApprovalStatus), default=ExamApprovalStatus.PENDING, nullable=False, index=True
    )
    approver_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    acted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    @property
    def is_eligible(self) -> bool:
        return to_money(self.paid_amount) >= to_money(self.required_amount)

    @property
    def remaining_amount(self) -> Decimal:
        remaining = to_money(self.required_amount) - to_money(self.paid_amount)
        return remaining if remaining > 0 else ZERO
