from .connection import (
    Base, get_engine, get_session_factory, make_session_factory,
    session_scope, init_db, dispose_engine
)

# Import reconciliation models to ensure they are registered with Base
from .reconciliation_models import (
    BankAccountDB, BankTransactionDB, LedgerAccountDB, AccountingEntryDB,
    InvoiceDB, PaymentDB, BankReconciliationDB, DiscrepancyDB,
    MatchingRuleDB, ReconciliationAuditLogDB,
    TransactionDirection, CounterpartKind, ReconciliationStatus, ACTIVE_STATUSES,
    InvoiceStatus, DiscrepancyType
)

__all__ = [
    'Base', 'get_engine', 'get_session_factory', 'make_session_factory',
    'session_scope', 'init_db', 'dispose_engine',
    # Reconciliation models
    'BankAccountDB', 'BankTransactionDB', 'LedgerAccountDB', 'AccountingEntryDB',
    'InvoiceDB', 'PaymentDB', 'BankReconciliationDB', 'DiscrepancyDB',
    'MatchingRuleDB', 'ReconciliationAuditLogDB',
    # Enums
    'TransactionDirection', 'CounterpartKind', 'ReconciliationStatus', 'ACTIVE_STATUSES',
    'InvoiceStatus', 'DiscrepancyType',
]
