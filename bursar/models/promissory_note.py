"""Promissory notes: a student's dated promise to settle a ledger balance."""

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Numeric,
    Integer,
    Enum,
    DateTime,
    Date,
    ForeignKey,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from bursar.database import Base


class NoteStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"


OPEN_NOTE_STATUSES = (NoteStatus.PENDING, NoteStatus.APPROVED)


class PromissoryNote(Base):
    __tablename__ = "promissory_notes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    ledger_id: Mapped[int] = mapped_column(
        ForeignKey("student_ledgers.id"), nullable=False, index=True
    )
    student_id: Mapped[int] = mapped_column(ForeignKey("students.id"), nullable=False, index=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    paid_at_submission: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    submitted_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[NoteStatus] = mapped_column(
        Enum(NoteStatus), default=NoteStatus.PENDING, nullable=False, index=True
    )
    reviewed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def is_lapsed(self, today: date) -> bool:
        return self.due_date < today and self.status in OPEN_NOTE_STATUSES
