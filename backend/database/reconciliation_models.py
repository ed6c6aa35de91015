"""
Bankrec Core - Reconciliation Database Models

Canonical storage for the bank reconciliation engine.
Supports: bank statement movements, the accounting ledger they are matched against,
invoices/payments, reconciliation records, balance discrepancies and lettrage rules.

Tables:
- bank_accounts: Bank accounts and their opening balance
- bank_transactions: Normalised bank-statement movements
- ledger_accounts: Chart of accounts per company (512 = bank control account)
- accounting_entries: Double-entry records (debit account / credit account)
- invoices, invoice_payments: Receivables matched against incoming transfers
- bank_reconciliations: Proposed/confirmed links (accounting or invoice counterpart)
- reconciliation_discrepancies: Persisted balance gaps (écarts)
- matching_rules: Ordered lettrage automation rules
- reconciliation_audit_log: Immutable audit trail of engine decisions
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Text, Integer, Boolean, Date, DateTime,
    ForeignKey, Index, UniqueConstraint, Enum as SQLEnum, JSON, Numeric, text
)
from sqlalchemy.orm import relationship

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== ENUMS (FROZEN) ====================

class TransactionDirection(str, PyEnum):
    """Direction of a bank movement"""
    DEBIT = "DEBIT"    # Money leaving the account
    CREDIT = "CREDIT"  # Money entering the account


class CounterpartKind(str, PyEnum):
    """What a bank transaction is reconciled against"""
    ACCOUNTING = "ACCOUNTING"  # Accounting entry or ledger account
    INVOICE = "INVOICE"        # Invoice (optionally a specific payment)


class ReconciliationStatus(str, PyEnum):
    """Reconciliation lifecycle status"""
    PENDING = "PENDING"
    VALIDATED = "VALIDATED"
    REJECTED = "REJECTED"


# Statuses that block a new reconciliation of the same kind
ACTIVE_STATUSES = (ReconciliationStatus.PENDING, ReconciliationStatus.VALIDATED)


class InvoiceStatus(str, PyEnum):
    """Invoice status (owned by the invoicing module, PAID set by validation)"""
    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class DiscrepancyType(str, PyEnum):
    """Classification of a balance gap"""
    DUPLICATE = "DUPLICATE"                # Same movement imported twice
    MISSING_MOVEMENT = "MISSING_MOVEMENT"  # Bank movement without accounting entry
    MISC_ENTRY = "MISC_ENTRY"              # OD on the control account (67x / 77x)
    OTHER = "OTHER"                        # Unexplained gap


# ==================== DATABASE MODELS ====================

class BankAccountDB(Base):
    """Bank account owned by a company."""
    __tablename__ = "bank_accounts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    iban = Column(String(64), nullable=True)
    currency = Column(String(3), nullable=False, default="XOF")
    opening_balance = Column(Numeric(14, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    transactions = relationship("BankTransactionDB", back_populates="bank_account", cascade="all, delete-orphan")


class BankTransactionDB(Base):
    """
    A single bank-statement movement.

    Produced by the import/normalisation step. The engine only writes the
    `reconciled` flag.
    """
    __tablename__ = "bank_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    bank_account_id = Column(String(36), ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False, index=True)

    date = Column(Date, nullable=False, index=True)
    amount = Column(Numeric(14, 2), nullable=False)
    direction = Column(
        SQLEnum(TransactionDirection, name='transaction_direction_enum', native_enum=False, length=10),
        nullable=False
    )
    label = Column(Text, nullable=False, default="")
    reference = Column(String(255), nullable=True)
    category = Column(String(100), nullable=True)

    reconciled = Column(Boolean, nullable=False, default=False, index=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    bank_account = relationship("BankAccountDB", back_populates="transactions")

    __table_args__ = (
        Index('ix_bank_transactions_account_date', 'bank_account_id', 'date'),
        Index('ix_bank_transactions_account_reconciled', 'bank_account_id', 'reconciled'),
    )


class LedgerAccountDB(Base):
    """Chart of accounts entry."""
    __tablename__ = "ledger_accounts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    code = Column(String(20), nullable=False)
    label = Column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint('company_id', 'code', name='uq_ledger_accounts_company_code'),
    )


class AccountingEntryDB(Base):
    """
    Double-entry accounting record.

    Read-only for the engine; only entries touching the bank control account
    are considered.
    """
    __tablename__ = "accounting_entries"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    amount = Column(Numeric(14, 2), nullable=False)
    label = Column(Text, nullable=False, default="")
    debit_account_id = Column(String(36), ForeignKey("ledger_accounts.id"), nullable=False, index=True)
    credit_account_id = Column(String(36), ForeignKey("ledger_accounts.id"), nullable=False, index=True)
    document_reference = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    debit_account = relationship("LedgerAccountDB", foreign_keys=[debit_account_id], lazy="joined")
    credit_account = relationship("LedgerAccountDB", foreign_keys=[credit_account_id], lazy="joined")

    __table_args__ = (
        Index('ix_accounting_entries_company_date', 'company_id', 'date'),
    )


class InvoiceDB(Base):
    """Customer invoice. The engine only promotes `status` to PAID."""
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    number = Column(String(50), nullable=False)
    client_name = Column(String(255), nullable=False, default="")
    issue_date = Column(Date, nullable=False)
    total_amount = Column(Numeric(14, 2), nullable=False)
    status = Column(
        SQLEnum(InvoiceStatus, name='invoice_status_enum', native_enum=False, length=20),
        nullable=False,
        default=InvoiceStatus.SENT,
        index=True
    )
    created_at = Column(DateTime(timezone=True), default=utc_now)

    payments = relationship(
        "PaymentDB",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PaymentDB.date"
    )


class PaymentDB(Base):
    """Payment recorded against an invoice."""
    __tablename__ = "invoice_payments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    invoice_id = Column(String(36), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    reference = Column(String(255), nullable=True)

    invoice = relationship("InvoiceDB", back_populates="payments")


class BankReconciliationDB(Base):
    """
    Link between a bank transaction and its counterpart.

    ACCOUNTING: entry_id or ledger_account_id is set.
    INVOICE: invoice_id is set, payment_id optionally.

    The partial unique index guarantees at most one active (PENDING/VALIDATED)
    record per (transaction, counterpart kind), including under concurrent inserts.
    """
    __tablename__ = "bank_reconciliations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    transaction_id = Column(String(36), ForeignKey("bank_transactions.id", ondelete="CASCADE"), nullable=False, index=True)
    counterpart_kind = Column(
        SQLEnum(CounterpartKind, name='counterpart_kind_enum', native_enum=False, length=20),
        nullable=False
    )

    entry_id = Column(String(36), ForeignKey("accounting_entries.id"), nullable=True, index=True)
    ledger_account_id = Column(String(36), ForeignKey("ledger_accounts.id"), nullable=True)
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=True, index=True)
    payment_id = Column(String(36), ForeignKey("invoice_payments.id"), nullable=True)

    amount = Column(Numeric(14, 2), nullable=False)
    confidence_score = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(
        SQLEnum(ReconciliationStatus, name='reconciliation_status_enum', native_enum=False, length=20),
        nullable=False,
        default=ReconciliationStatus.PENDING,
        index=True
    )

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    transaction = relationship("BankTransactionDB", lazy="joined")

    __table_args__ = (
        Index(
            'uq_bank_reconciliations_active',
            'transaction_id', 'counterpart_kind',
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'VALIDATED')"),
            sqlite_where=text("status IN ('PENDING', 'VALIDATED')"),
        ),
        Index('ix_bank_reconciliations_company_status', 'company_id', 'status'),
    )


class DiscrepancyDB(Base):
    """Persisted balance gap. Only a manual action marks it resolved."""
    __tablename__ = "reconciliation_discrepancies"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    bank_account_id = Column(String(36), ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    accounting_balance = Column(Numeric(14, 2), nullable=False)
    bank_balance = Column(Numeric(14, 2), nullable=False)
    gap = Column(Numeric(14, 2), nullable=False)
    discrepancy_type = Column(
        SQLEnum(DiscrepancyType, name='discrepancy_type_enum', native_enum=False, length=30),
        nullable=False
    )
    description = Column(Text, nullable=True)
    # {"transaction_ids": [...], "entry_ids": [...]}
    evidence = Column(JSON, nullable=True, default=dict)
    resolved = Column(Boolean, nullable=False, default=False, index=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class MatchingRuleDB(Base):
    """
    Lettrage rule. `criteria` and `action` hold validated tagged payloads
    (see reconciliation.matching_rules.lettrage_criteria).
    """
    __tablename__ = "matching_rules"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    priority = Column(Integer, nullable=False, default=100)
    active = Column(Boolean, nullable=False, default=True)
    criteria = Column(JSON, nullable=False, default=list)
    action = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_matching_rules_company_active_priority', 'company_id', 'active', 'priority'),
    )


class ReconciliationAuditLogDB(Base):
    """Immutable audit trail of reconciliation decisions."""
    __tablename__ = "reconciliation_audit_log"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    reconciliation_id = Column(String(36), nullable=True, index=True)
    action = Column(String(100), nullable=False)
    actor = Column(String(100), nullable=False, default="system")
    details = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utc_now, index=True)
