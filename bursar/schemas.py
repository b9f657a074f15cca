"""Pydantic schemas for request/response validation."""

from datetime import datetime, date
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from bursar.models.document_request import (
    ApprovalStage,
    FulfillmentStatus,
    ProcessingType,
    StageStatus,
)
from bursar.models.exam_approval import ExamApprovalStatus, ExamType
from bursar.models.grant import GrantType, RecipientStatus
from bursar.models.ledger import FEE_LINE_ITEMS, PaymentKind, PaymentMethod, PaymentStatus
from bursar.models.online_transaction import PaymentProvider, TransactionStatus
from bursar.models.promissory_note import NoteStatus
from bursar.models.student import Classification

SCHOOL_YEAR_PATTERN = r"^\d{4}-\d{4}$"
Money = Decimal


def _strip_required(value: Optional[str]) -> str:
    text = (value or "").strip()
    if not text:
        raise ValueError("must not be blank")
    return text


# ── Ledgers ───────────────────────────────────────────

class LedgerCreate(BaseModel):
    student_id: int
    school_year: str = Field(pattern=SCHOOL_YEAR_PATTERN)


class AssessmentRequest(BaseModel):
    registration_fee: Optional[Money] = Field(None, ge=0)
    tuition_fee: Optional[Money] = Field(None, ge=0)
    misc_fee: Optional[Money] = Field(None, ge=0)
    books_fee: Optional[Money] = Field(None, ge=0)
    other_fees: Optional[Money] = Field(None, ge=0)
    due_date: Optional[date] = None

    def fee_line_items(self) -> dict[str, Decimal]:
        return {
            name: getattr(self, name)
            for name in FEE_LINE_ITEMS
            if getattr(self, name) is not None
        }

    @model_validator(mode="after")
    def _something_to_assess(self) -> "AssessmentRequest":
        if not self.fee_line_items() and self.due_date is None:
            raise ValueError("Provide at least one fee line item or a due date")
        return self


class LedgerResponse(BaseModel):
    id: int
    student_id: int
    school_year: str
    registration_fee: Decimal
    tuition_fee: Decimal
    misc_fee: Decimal
    books_fee: Decimal
    other_fees: Decimal
    total_assessed: Decimal
    grant_discount: Decimal
    total_paid: Decimal
    balance: Decimal
    payment_status: PaymentStatus
    due_date: Optional[date] = None
    is_overdue: bool
    overdue_since: Optional[datetime] = None
    is_retired: bool
    version: int

    model_config = {"from_attributes": True}


class LedgerListResponse(BaseModel):
    items: list[LedgerResponse]
    total: int
    page: int
    page_size: int


class BalanceResponse(BaseModel):
    ledger_id: int
    total_assessed: Decimal
    grant_discount: Decimal
    total_paid: Decimal
    balance: Decimal
    payment_status: PaymentStatus
    is_overdue: bool

    model_config = {"from_attributes": True}


# ── Payments ──────────────────────────────────────────

class PaymentCreate(BaseModel):
    amount: Money = Field(gt=0)
    method: PaymentMethod
    reference: Optional[str] = Field(None, max_length=100)
    payment_date: Optional[date] = None
    receipt_number: Optional[str] = Field(None, max_length=30)


class PaymentReversalRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)

    strip_reason = field_validator("reason")(_strip_required)


class PaymentResponse(BaseModel):
    id: int
    ledger_id: int
    amount: Decimal
    kind: PaymentKind
    method: PaymentMethod
    receipt_number: str
    reference: Optional[str] = None
    payment_date: date
    reverses_payment_id: Optional[int] = None
    reason: Optional[str] = None
    recorded_by: Optional[int] = None

    model_config = {"from_attributes": True}


# ── Grants ────────────────────────────────────────────

class GrantCreate(BaseModel):
    name: str = Field(min_length=1, max_length=150)
    code: str = Field(min_length=1, max_length=30)
    type: GrantType
    value: Money = Field(ge=0)
    school_year: Optional[str] = Field(None, pattern=SCHOOL_YEAR_PATTERN)
    description: Optional[str] = None

    @model_validator(mode="after")
    def _percentage_cap(self) -> "GrantCreate":
        if self.type == GrantType.PERCENTAGE and self.value > 100:
            raise ValueError("Percentage grants cannot exceed 100")
        return self


class GrantResponse(BaseModel):
    id: int
    name: str
    code: str
    type: GrantType
    value: Decimal
    school_year: Optional[str] = None
    description: Optional[str] = None
    is_active: bool

    model_config = {"from_attributes": True}


class GrantApplyRequest(BaseModel):
    grant_id: int
    discount_amount: Optional[Money] = Field(None, ge=0)
    notes: Optional[str] = None


class GrantRemoveRequest(BaseModel):
    status: RecipientStatus = RecipientStatus.INACTIVE


class GrantRecipientResponse(BaseModel):
    id: int
    ledger_id: int
    grant_id: int
    discount_amount: Decimal
    status: RecipientStatus
    notes: Optional[str] = None
    assigned_by: Optional[int] = None
    removed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ── Online transactions ───────────────────────────────

class OnlineTransactionCreate(BaseModel):
    student_id: int
    school_year: str = Field(pattern=SCHOOL_YEAR_PATTERN)
    reference_code: str = Field(min_length=1, max_length=100)
    provider: PaymentProvider
    gross_amount: Money = Field(gt=0)
    processing_fee: Money = Field(default=Decimal("0"), ge=0)
    account_name: Optional[str] = Field(None, max_length=150)
    account_number: Optional[str] = Field(None, max_length=50)
    payment_proof_path: Optional[str] = Field(None, max_length=500)
    transaction_date: Optional[datetime] = None

    @model_validator(mode="after")
    def _fee_below_gross(self) -> "OnlineTransactionCreate":
        if self.processing_fee >= self.gross_amount:
            raise ValueError("processing_fee must be less than gross_amount")
        return self


class TransactionFailRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)

    strip_reason = field_validator("reason")(_strip_required)


class TransactionRefundRequest(BaseModel):
    remarks: Optional[str] = Field(None, max_length=1000)


class ProviderCallback(BaseModel):
    reference: str = Field(min_length=1, max_length=100)
    provider: Optional[PaymentProvider] = None
    provider_status: str = Field(min_length=1, max_length=30)
    gross_amount: Optional[Money] = Field(None, gt=0)
    fee: Optional[Money] = Field(None, ge=0)


class ProviderCallbackResponse(BaseModel):
    reference: str
    status: str
    action: str


class OnlineTransactionResponse(BaseModel):
    id: int
    reference_code: str
    provider: PaymentProvider
    student_id: int
    ledger_id: int
    gross_amount: Decimal
    processing_fee: Decimal
    net_amount: Decimal
    status: TransactionStatus
    provider_status: Optional[str] = None
    transaction_date: datetime
    verified_at: Optional[datetime] = None
    verified_by: Optional[int] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    refunded_by: Optional[int] = None
    remarks: Optional[str] = None
    payment_id: Optional[int] = None
    reversal_payment_id: Optional[int] = None

    model_config = {"from_attributes": True}


# ── Overdue ───────────────────────────────────────────

class OverdueBatchRequest(BaseModel):
    cutoff_date: Optional[date] = None
    school_year: Optional[str] = Field(None, pattern=SCHOOL_YEAR_PATTERN)
    classification: Optional[Classification] = None
    department_id: Optional[int] = None
    year_level_id: Optional[int] = None


class OverdueBatchResponse(BaseModel):
    cutoff_date: date
    marked: int


# ── Document requests ─────────────────────────────────

class DocumentRequestCreate(BaseModel):
    student_id: Optional[int] = None
    fee_item_id: int
    copies: int = Field(ge=1, le=10, default=1)
    purpose: str = Field(min_length=1, max_length=1000)
    receipt_number: Optional[str] = Field(None, max_length=100)
    receipt_file_path: Optional[str] = Field(None, max_length=500)

    strip_purpose = field_validator("purpose")(_strip_required)


class StageApproveRequest(BaseModel):
    remarks: Optional[str] = Field(None, max_length=1000)
    or_number: Optional[str] = Field(None, max_length=50)


class RejectRequest(BaseModel):
    remarks: str = Field(min_length=1, max_length=1000)

    strip_remarks = field_validator("remarks")(_strip_required)


class DocumentFeeItemResponse(BaseModel):
    id: int
    category: str
    name: str
    document_type: str
    price: Decimal
    processing_type: ProcessingType
    processing_days: int

    model_config = {"from_attributes": True}


class DocumentRequestResponse(BaseModel):
    id: int
    student_id: int
    fee_item_id: int
    document_type: str
    document_type_label: str
    copies: int
    purpose: str
    processing_type: ProcessingType
    unit_fee: Decimal
    total_fee: Decimal
    receipt_number: Optional[str] = None
    is_paid: bool
    or_number: Optional[str] = None
    registrar_status: StageStatus
    registrar_remarks: Optional[str] = None
    registrar_acted_at: Optional[datetime] = None
    accounting_status: StageStatus
    accounting_remarks: Optional[str] = None
    accounting_acted_at: Optional[datetime] = None
    approval_stage: ApprovalStage
    is_fulfilled: bool
    is_closed: bool
    status: FulfillmentStatus
    request_date: date
    expected_completion_date: Optional[date] = None
    release_date: Optional[date] = None

    model_config = {"from_attributes": True}


# ── Exam approvals ────────────────────────────────────

class ExamApprovalCreate(BaseModel):
    student_id: int
    school_year: str = Field(pattern=SCHOOL_YEAR_PATTERN)
    exam_type: ExamType
    required_amount: Optional[Money] = Field(None, gt=0)
    term: Optional[str] = None
    remarks: Optional[str] = None


class ExamBulkApproveRequest(BaseModel):
    approval_ids: list[int] = Field(min_length=1, max_length=500)


class ExamPaidAmountUpdate(BaseModel):
    paid_amount: Optional[Money] = Field(None, ge=0)


class ExamApprovalResponse(BaseModel):
    id: int
    student_id: int
    school_year: str
    exam_type: ExamType
    term: Optional[str] = None
    required_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    is_eligible: bool
    status: ExamApprovalStatus
    approver_id: Optional[int] = None
    acted_at: Optional[datetime] = None
    remarks: Optional[str] = None

    model_config = {"from_attributes": True}


class BulkResultResponse(BaseModel):
    approval_id: int
    ok: bool
    code: Optional[str] = None
    message: Optional[str] = None

    model_config = {"from_attributes": True}


# ── Promissory notes ──────────────────────────────────

class PromissoryNoteCreate(BaseModel):
    ledger_id: int
    due_date: date
    reason: str = Field(min_length=1, max_length=2000)
    amount: Optional[Money] = Field(None, gt=0)

    strip_reason = field_validator("reason")(_strip_required)


class NoteReviewRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)


class PromissoryNoteResponse(BaseModel):
    id: int
    ledger_id: int
    student_id: int
    amount: Optional[Decimal] = None
    paid_at_submission: Decimal
    submitted_date: date
    due_date: date
    reason: str
    status: NoteStatus
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None

    model_config = {"from_attributes": True}
