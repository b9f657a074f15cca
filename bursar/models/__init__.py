"""SQLAlchemy models for the student ledger and its approval workflows."""

from bursar.models.student import Student, Department, YearLevel, Classification
from bursar.models.ledger import (
    StudentLedger,
    LedgerPayment,
    PaymentStatus,
    PaymentKind,
    PaymentMethod,
    FEE_LINE_ITEMS,
)
from bursar.models.grant import Grant, GrantRecipient, GrantType, RecipientStatus
from bursar.models.online_transaction import (
    OnlineTransaction,
    PaymentProvider,
    TransactionStatus,
)
from bursar.models.document_request import (
    DocumentFeeItem,
    DocumentRequest,
    ProcessingType,
    StageStatus,
    FulfillmentStatus,
    ApprovalStage,
)
from bursar.models.exam_approval import ExamApproval, ExamType, ExamApprovalStatus
from bursar.models.promissory_note import PromissoryNote, NoteStatus
from bursar.models.audit import AuditLog
from bursar.models.error_log import ErrorLog, ErrorSeverity

__all__ = [
    # Reference data
    "Student",
    "Department",
    "YearLevel",
    "Classification",
    # Ledger
    "StudentLedger",
    "LedgerPayment",
    "PaymentStatus",
    "PaymentKind",
    "PaymentMethod",
    "FEE_LINE_ITEMS",
    # Grants
    "Grant",
    "GrantRecipient",
    "GrantType",
    "RecipientStatus",
    # Online payments
    "OnlineTransaction",
    "PaymentProvider",
    "TransactionStatus",
    # Document requests
    "DocumentFeeItem",
    "DocumentRequest",
    "ProcessingType",
    "StageStatus",
    "FulfillmentStatus",
    "ApprovalStage",
    # Exams
    "ExamApproval",
    "ExamType",
    "ExamApprovalStatus",
    # Promissory notes
    "PromissoryNote",
    "NoteStatus",
    # Monitoring
    "AuditLog",
    "ErrorLog",
    "ErrorSeverity",
]
