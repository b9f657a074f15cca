"""Online (e-wallet / bank / card) payment attempts awaiting verification."""

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


class PaymentProvider(str, enum.Enum):
    GCASH = "gcash"
    PAYMAYA = "paymaya"
    BANK = "bank"
    CARD = "card"
    OTHER = "other"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"
    REFUNDED = "refunded"


TERMINAL_STATUSES = frozenset({TransactionStatus.FAILED, TransactionStatus.REFUNDED})


class OnlineTransaction(Base):
    __tablename__ = "online_transactions"
    __table_args__ = (
        CheckConstraint("gross_amount > 0", name="ck_txn_gross_positive"),
        CheckConstraint("processing_fee >= 0", name="ck_txn_fee_non_negative"),
        CheckConstraint("net_amount = gross_amount - processing_fee", name="ck_txn_net_amount"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    reference_code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    provider: Mapped[PaymentProvider] = mapped_column(Enum(PaymentProvider), nullable=False)
    student_id: Mapped[int] = mapped_column(ForeignKey("students.id"), nullable=False, index=True)
    ledger_id: Mapped[int] = mapped_column(
        ForeignKey("student_ledgers.id"), nullable=False, index=True
    )

    gross_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    processing_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus), default=TransactionStatus.PENDING, nullable=False, index=True
    )
    provider_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    account_name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    account_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_proof_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    transaction_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Transition stamps
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Ledger side effects
    payment_id: Mapped[int | None] = mapped_column(
        ForeignKey("ledger_payments.id"), nullable=True, unique=True
    )
    reversal_payment_id: Mapped[int | None] = mapped_column(
        ForeignKey("ledger_payments.id"), nullable=True, unique=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version}
