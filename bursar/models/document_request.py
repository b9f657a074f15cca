"""Document fee catalog and two-stage (registrar → accounting) document requests."""

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
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from bursar.database import Base


class ProcessingType(str, enum.Enum):
    NORMAL = "normal"
    RUSH = "rush"


class StageStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class FulfillmentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    RELEASED = "released"
    CANCELLED = "cancelled"


class ApprovalStage(str, enum.Enum):
    AWAITING_REGISTRAR = "awaiting_registrar"
    AWAITING_ACCOUNTING = "awaiting_accounting"
    APPROVED = "approved"
    REJECTED = "rejected"


DOCUMENT_TYPES = {
    "transcript": "Transcript of Records",
    "certificate_good_moral": "Certificate of Good Moral",
    "certificate_enrollment": "Certificate of Enrollment",
    "certificate_completion": "Certificate of Completion",
    "honorable_dismissal": "Honorable Dismissal",
    "diploma": "Diploma",
    "form_137": "Form 137",
    "form_138": "Form 138/Report Card",
    "cav": "CAV (Certification, Authentication, Verification)",
    "other": "Other",
}


class DocumentFeeItem(Base):
    __tablename__ = "document_fee_items"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    document_type: Mapped[str] = mapped_column(String(50), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    processing_type: Mapped[ProcessingType] = mapped_column(
        Enum(ProcessingType), default=ProcessingType.NORMAL, nullable=False
    )
    processing_days: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class DocumentRequest(Base):
    __tablename__ = "document_requests"
    __table_args__ = (
        CheckConstraint("copies BETWEEN 1 AND 10", name="ck_docreq_copies"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("students.id"), nullable=False, index=True)
    fee_item_id: Mapped[int] = mapped_column(ForeignKey("document_fee_items.id"), nullable=False)
    document_type: Mapped[str] = mapped_column(String(50), nullable=False)
    copies: Mapped[int] = mapped_column(Integer, nullable=False)
    purpose: Mapped[str] = mapped_column(Text, nullable=False)
    processing_type: Mapped[ProcessingType] = mapped_column(Enum(ProcessingType), nullable=False)
    processing_days: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # Payment proof
    receipt_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    receipt_file_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    or_number: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Registrar stage
    registrar_status: Mapped[StageStatus] = mapped_column(
        Enum(StageStatus, name="docstagestatus"), default=StageStatus.PENDING, nullable=False, index=True
    )
    registrar_actor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    registrar_acted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    registrar_remarks: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Accounting stage
    accounting_status: Mapped[StageStatus] = mapped_column(
        Enum(StageStatus, name="docstagestatus"), default=StageStatus.PENDING, nullable=False, index=True
    )
    accounting_actor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    accounting_acted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accounting_remarks: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Fulfillment
    status: Mapped[FulfillmentStatus] = mapped_column(
        Enum(FulfillmentStatus), default=FulfillmentStatus.PENDING, nullable=False
    )
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_date: Mapped[date] = mapped_column(Date, nullable=False)
    expected_completion_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    release_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    released_by: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def approval_stage(self) -> ApprovalStage:
        if StageStatus.REJECTED in (self.registrar_status, self.accounting_status):
            return ApprovalStage.REJECTED
        if self.registrar_status == StageStatus.PENDING:
            return ApprovalStage.AWAITING_REGISTRAR
        if self.accounting_status == StageStatus.PENDING:
            return ApprovalStage.AWAITING_ACCOUNTING
        return ApprovalStage.APPROVED

    @property
    def is_fulfilled(self) -> bool:
        return (
            self.registrar_status == StageStatus.APPROVED
            and self.accounting_status == StageStatus.APPROVED
        )

    @property
    def is_closed(self) -> bool:
        return (
            self.approval_stage == ApprovalStage.REJECTED
            or self.status == FulfillmentStatus.CANCELLED
        )

    @property
    def document_type_label(self) -> str:
        return DOCUMENT_TYPES.get(self.document_type, self.document_type)
