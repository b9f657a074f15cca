"""Initial schema: students, ledgers, payments, grants and approval workflows.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


# Enum types store member names, matching the ORM's sa.Enum defaults
ENUMS = {
    "classification": ("K12", "COLLEGE"),
    "paymentkind": ("PAYMENT", "REVERSAL"),
    "paymentmethod": (
        "CASH", "CHECK", "BANK_TRANSFER", "GCASH", "PAYMAYA", "CARD", "ONLINE", "ADJUSTMENT",
    ),
    "granttype": ("FIXED", "PERCENTAGE"),
    "recipientstatus": ("ACTIVE", "INACTIVE", "GRADUATED", "WITHDRAWN"),
    "paymentprovider": ("GCASH", "PAYMAYA", "BANK", "CARD", "OTHER"),
    "transactionstatus": ("PENDING", "VERIFIED", "FAILED", "REFUNDED"),
    "processingtype": ("NORMAL", "RUSH"),
    "docstagestatus": ("PENDING", "APPROVED", "REJECTED"),
    "fulfillmentstatus": ("PENDING", "PROCESSING", "READY", "RELEASED", "CANCELLED"),
    "examtype": ("PRELIM", "QUARTERLY", "MIDTERM", "FINALS"),
    "examapprovalstatus": ("PENDING", "APPROVED", "DENIED"),
    "notestatus": ("PENDING", "APPROVED", "DECLINED", "FULFILLED", "EXPIRED"),
    "errorseverity": ("WARNING", "ERROR", "CRITICAL"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _money(name: str, nullable: bool = False, zero_default: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(12, 2),
        nullable=nullable,
        server_default="0" if zero_default else None,
    )


def _timestamps(updated: bool = False) -> list[sa.Column]:
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()))
    return cols


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.execute("CREATE SEQUENCE IF NOT EXISTS ledger_receipt_number_seq")

    # ── Reference data ──────────────────────────────────
    op.create_table(
        "departments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(20), nullable=False, unique=True),
        sa.Column("name", sa.String(150), nullable=False),
        sa.Column("classification", _enum("classification"), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
    )
    op.create_table(
        "year_levels",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("department_id", sa.Integer(), sa.ForeignKey("departments.id"), nullable=False),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("level_order", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_year_levels_department_id", "year_levels", ["department_id"])
    op.create_table(
        "students",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), nullable=True, unique=True),
        sa.Column("student_number", sa.String(30), nullable=False, unique=True),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("classification", _enum("classification"), nullable=False),
        sa.Column("department_id", sa.Integer(), sa.ForeignKey("departments.id"), nullable=True),
        sa.Column("year_level_id", sa.Integer(), sa.ForeignKey("year_levels.id"), nullable=True),
        sa.Column("enrollment_status", sa.String(30), nullable=False, server_default="enrolled"),
        *_timestamps(),
    )
    op.create_index("ix_students_classification", "students", ["classification"])
    op.create_index("ix_students_department_id", "students", ["department_id"])
    op.create_index("ix_students_year_level_id", "students", ["year_level_id"])

    # ── Ledgers and payments ────────────────────────────
    op.create_table(
        "student_ledgers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("students.id"), nullable=False),
        sa.Column("school_year", sa.String(9), nullable=False),
        _money("registration_fee", zero_default=True),
        _money("tuition_fee", zero_default=True),
        _money("misc_fee", zero_default=True),
        _money("books_fee", zero_default=True),
        _money("other_fees", zero_default=True),
        _money("total_assessed", zero_default=True),
        _money("grant_discount", zero_default=True),
        _money("total_paid", zero_default=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("is_overdue", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("overdue_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_retired", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("retired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(updated=True),
        sa.UniqueConstraint("student_id", "school_year", name="uq_ledger_student_year"),
        sa.CheckConstraint(
            "registration_fee >= 0 AND tuition_fee >= 0 AND misc_fee >= 0 "
            "AND books_fee >= 0 AND other_fees >= 0",
            name="ck_ledger_fees_non_negative",
        ),
        sa.CheckConstraint(
            "grant_discount >= 0 AND grant_discount <= total_assessed",
            name="ck_ledger_discount_within_assessed",
        ),
    )
    op.create_index("ix_student_ledgers_student_id", "student_ledgers", ["student_id"])
    op.create_index("ix_student_ledgers_school_year", "student_ledgers", ["school_year"])
    op.create_index("ix_student_ledgers_is_overdue", "student_ledgers", ["is_overdue"])

    op.create_table(
        "ledger_payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("ledger_id", sa.Integer(), sa.ForeignKey("student_ledgers.id"), nullable=False),
        _money("amount"),
        sa.Column("kind", _enum("paymentkind"), nullable=False),
        sa.Column("method", _enum("paymentmethod"), nullable=False),
        sa.Column("receipt_number", sa.String(30), nullable=False, unique=True),
        sa.Column("reference", sa.String(100), nullable=True),
        sa.Column("payment_date", sa.Date(), nullable=False),
        sa.Column(
            "reverses_payment_id", sa.Integer(),
            sa.ForeignKey("ledger_payments.id"), nullable=True, unique=True,
        ),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("recorded_by", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "(kind = 'PAYMENT' AND amount > 0) OR (kind = 'REVERSAL' AND amount < 0)",
            name="ck_payment_sign_matches_kind",
        ),
    )
    op.create_index("ix_ledger_payments_ledger_id", "ledger_payments", ["ledger_id"])

    # ── Grants ──────────────────────────────────────────
    op.create_table(
        "grants",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(150), nullable=False),
        sa.Column("code", sa.String(30), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", _enum("granttype"), nullable=False),
        _money("value"),
        sa.Column("school_year", sa.String(9), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        *_timestamps(),
        sa.CheckConstraint("value >= 0", name="ck_grant_value_non_negative"),
    )
    op.create_table(
        "grant_recipients",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("ledger_id", sa.Integer(), sa.ForeignKey("student_ledgers.id"), nullable=False),
        sa.Column("grant_id", sa.Integer(), sa.ForeignKey("grants.id"), nullable=False),
        _money("discount_amount"),
        sa.Column("status", _enum("recipientstatus"), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("assigned_by", sa.Integer(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("removed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_grant_recipients_ledger_id", "grant_recipients", ["ledger_id"])
    op.create_index("ix_grant_recipients_grant_id", "grant_recipients", ["grant_id"])
    op.create_index(
        "uq_grant_recipient_active",
        "grant_recipients",
        ["ledger_id", "grant_id"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )

    # ── Online transactions ─────────────────────────────
    op.create_table(
        "online_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("reference_code", sa.String(100), nullable=False, unique=True),
        sa.Column("provider", _enum("paymentprovider"), nullable=False),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("students.id"), nullable=False),
        sa.Column("ledger_id", sa.Integer(), sa.ForeignKey("student_ledgers.id"), nullable=False),
        _money("gross_amount"),
        _money("processing_fee"),
        _money("net_amount"),
        sa.Column("status", _enum("transactionstatus"), nullable=False),
        sa.Column("provider_status", sa.String(30), nullable=True),
        sa.Column("account_name", sa.String(150), nullable=True),
        sa.Column("account_number", sa.String(50), nullable=True),
        sa.Column("payment_proof_path", sa.String(500), nullable=True),
        sa.Column("transaction_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verified_by", sa.Integer(), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_by", sa.Integer(), nullable=True),
        sa.Column("remarks", sa.Text(), nullable=True),
        sa.Column(
            "payment_id", sa.Integer(),
            sa.ForeignKey("ledger_payments.id"), nullable=True, unique=True,
        ),
        sa.Column(
            "reversal_payment_id", sa.Integer(),
            sa.ForeignKey("ledger_payments.id"), nullable=True, unique=True,
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(updated=True),
        sa.CheckConstraint("gross_amount > 0", name="ck_txn_gross_positive"),
        sa.CheckConstraint("processing_fee >= 0", name="ck_txn_fee_non_negative"),
        sa.CheckConstraint("net_amount = gross_amount - processing_fee", name="ck_txn_net_amount"),
    )
    op.create_index("ix_online_transactions_student_id", "online_transactions", ["student_id"])
    op.create_index("ix_online_transactions_ledger_id", "online_transactions", ["ledger_id"])
    op.create_index("ix_online_transactions_status", "online_transactions", ["status"])

    # ── Document requests ───────────────────────────────
    op.create_table(
        "document_fee_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("category", sa.String(100), nullable=False),
        sa.Column("name", sa.String(150), nullable=False),
        sa.Column("document_type", sa.String(50), nullable=False),
        _money("price"),
        sa.Column("processing_type", _enum("processingtype"), nullable=False),
        sa.Column("processing_days", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
    )
    op.create_table(
        "document_requests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("students.id"), nullable=False),
        sa.Column("fee_item_id", sa.Integer(), sa.ForeignKey("document_fee_items.id"), nullable=False),
        sa.Column("document_type", sa.String(50), nullable=False),
        sa.Column("copies", sa.Integer(), nullable=False),
        sa.Column("purpose", sa.Text(), nullable=False),
        sa.Column("processing_type", _enum("processingtype"), nullable=False),
        sa.Column("processing_days", sa.Integer(), nullable=False),
        _money("unit_fee"),
        _money("total_fee"),
        sa.Column("receipt_number", sa.String(100), nullable=True),
        sa.Column("receipt_file_path", sa.String(500), nullable=True),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("or_number", sa.String(50), nullable=True),
        sa.Column("registrar_status", _enum("docstagestatus"), nullable=False),
        sa.Column("registrar_actor_id", sa.Integer(), nullable=True),
        sa.Column("registrar_acted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("registrar_remarks", sa.Text(), nullable=True),
        sa.Column("accounting_status", _enum("docstagestatus"), nullable=False),
        sa.Column("accounting_actor_id", sa.Integer(), nullable=True),
        sa.Column("accounting_acted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accounting_remarks", sa.Text(), nullable=True),
        sa.Column("status", _enum("fulfillmentstatus"), nullable=False),
        sa.Column("remarks", sa.Text(), nullable=True),
        sa.Column("request_date", sa.Date(), nullable=False),
        sa.Column("expected_completion_date", sa.Date(), nullable=True),
        sa.Column("release_date", sa.Date(), nullable=True),
        sa.Column("released_by", sa.Integer(), nullable=True),
        *_timestamps(updated=True),
        sa.CheckConstraint("copies BETWEEN 1 AND 10", name="ck_docreq_copies"),
    )
    op.create_index("ix_document_requests_student_id", "document_requests", ["student_id"])
    op.create_index("ix_document_requests_registrar_status", "document_requests", ["registrar_status"])
    op.create_index("ix_document_requests_accounting_status", "document_requests", ["accounting_status"])

    # ── Exam approvals ──────────────────────────────────
    op.create_table(
        "exam_approvals",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("students.id"), nullable=False),
        sa.Column("school_year", sa.String(9), nullable=False),
        sa.Column("exam_type", _enum("examtype"), nullable=False),
        sa.Column("term", sa.String(20), nullable=True),
        _money("required_amount"),
        _money("paid_amount"),
        sa.Column("status", _enum("examapprovalstatus"), nullable=False),
        sa.Column("approver_id", sa.Integer(), nullable=True),
        sa.Column("acted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remarks", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("required_amount > 0", name="ck_exam_required_positive"),
        sa.CheckConstraint("paid_amount >= 0", name="ck_exam_paid_non_negative"),
    )
    op.create_index("ix_exam_approvals_student_id", "exam_approvals", ["student_id"])
    op.create_index("ix_exam_approvals_school_year", "exam_approvals", ["school_year"])
    op.create_index("ix_exam_approvals_status", "exam_approvals", ["status"])

    # ── Promissory notes ────────────────────────────────
    op.create_table(
        "promissory_notes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("ledger_id", sa.Integer(), sa.ForeignKey("student_ledgers.id"), nullable=False),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("students.id"), nullable=False),
        _money("amount", nullable=True),
        _money("paid_at_submission"),
        sa.Column("submitted_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", _enum("notestatus"), nullable=False),
        sa.Column("reviewed_by", sa.Integer(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_promissory_notes_ledger_id", "promissory_notes", ["ledger_id"])
    op.create_index("ix_promissory_notes_student_id", "promissory_notes", ["student_id"])
    op.create_index("ix_promissory_notes_status", "promissory_notes", ["status"])

    # ── Audit and error monitoring ──────────────────────
    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("actor_role", sa.String(20), nullable=True),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_audit_log_entity_type", "audit_log", ["entity_type"])
    op.create_index("ix_audit_log_entity_id", "audit_log", ["entity_id"])

    op.create_table(
        "error_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("severity", _enum("errorseverity"), nullable=False),
        sa.Column("error_type", sa.String(200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("traceback", sa.Text(), nullable=True),
        sa.Column("module", sa.String(300), nullable=True),
        sa.Column("function_name", sa.String(200), nullable=True),
        sa.Column("line_number", sa.Integer(), nullable=True),
        sa.Column("request_method", sa.String(10), nullable=True),
        sa.Column("request_path", sa.String(500), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("response_time_ms", sa.Float(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_error_logs_created_at", "error_logs", ["created_at"])
    op.create_index("ix_error_logs_severity", "error_logs", ["severity"])


def downgrade() -> None:
    for table in (
        "error_logs",
        "audit_log",
        "promissory_notes",
        "exam_approvals",
        "document_requests",
        "document_fee_items",
        "online_transactions",
        "grant_recipients",
        "grants",
        "ledger_payments",
        "student_ledgers",
        "students",
        "year_levels",
        "departments",
    ):
        op.drop_table(table)
    op.execute("DROP SEQUENCE IF EXISTS ledger_receipt_number_seq")
    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
