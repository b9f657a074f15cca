"""Grant definitions and their assignment to student ledgers."""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Numeric,
    Integer,
    Boolean,
    Enum,
    DateTime,
    ForeignKey,
    Text,
    CheckConstraint,
    Index,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from bursar.database import Base
from bursar.money import ZERO, to_money


class GrantType(str, enum.Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class RecipientStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    GRADUATED = "graduated"
    WITHDRAWN = "withdrawn"


class Grant(Base):
    __tablename__ = "grants"
    __table_args__ = (
        CheckConstraint("value >= 0", name="ck_grant_value_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    code: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[GrantType] = mapped_column(Enum(GrantType), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    school_year: Mapped[str | None] = mapped_column(String(9), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def calculate_discount(self, total_assessed: Decimal) -> Decimal:
        """Discount this grant yields against an assessed total."""
        if self.type == GrantType.FIXED:
            return to_money(self.value)
        total = to_money(total_assessed)
        if total <= 0:
            return ZERO
        return to_money(total * to_money(self.value) / Decimal(100))

    def applies_to(self, school_year: str) -> bool:
        return self.school_year is None or self.school_year == school_year


class GrantRecipient(Base):
    __tablename__ = "grant_recipients"
    __table_args__ = (
        # A grant is active at most once per ledger
        Index(
            "uq_grant_recipient_active",
            "ledger_id",
            "grant_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    ledger_id: Mapped[int] = mapped_column(
        ForeignKey("student_ledgers.id"), nullable=False, index=True
    )
    grant_id: Mapped[int] = mapped_column(ForeignKey("grants.id"), nullable=False, index=True)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[RecipientStatus] = mapped_column(
        Enum(RecipientStatus), default=RecipientStatus.ACTIVE, nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    removed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
