"""
Reconciliation Services
"""

from .balance_service import BalanceService, BankIndicators, replay_bank_balance, replay_accounting_balance
from .discrepancy_service import DiscrepancyService, DiscrepancyFinding
from .reconciliation_service import ReconciliationService
from .invoice_reconciliation_service import InvoiceReconciliationService
from .lettrage_service import LettrageService, LettrageResult
from .auto_reconciliation_service import AutoReconciliationService, AutoReconciliationReport

__all__ = [
    "BalanceService", "BankIndicators", "replay_bank_balance", "replay_accounting_balance",
    "DiscrepancyService", "DiscrepancyFinding",
    "ReconciliationService",
    "InvoiceReconciliationService",
    "LettrageService", "LettrageResult",
    "AutoReconciliationService", "AutoReconciliationReport",
]
