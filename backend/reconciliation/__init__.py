"""
Bank Reconciliation Engine

Provides transaction matching and reconciliation capabilities:
- Bank and accounting balances, discrepancy detection
- Scored matching against accounting entries and invoices
- Rule-based automatic lettrage with exact-amount and scored fallbacks
- PENDING -> VALIDATED / REJECTED lifecycle with an audit trail
"""

from reconciliation.errors import (
    ReconciliationError,
    NotFoundError,
    ConflictError,
    InvalidRuleError,
    ConfigurationMissingError
)
from reconciliation.source_registry import (
    MatchType,
    LettrageStrategy,
    CounterpartConfig,
    CounterpartRegistry,
    counterpart_registry
)
from reconciliation.matching_rules import (
    EntryMatchingRules,
    InvoiceMatchingRules,
    MatchCandidate,
    MatchResult,
    InvoiceCandidate,
    RuleDefinition,
    entry_rules,
    invoice_rules
)
from reconciliation.services import (
    BalanceService,
    DiscrepancyService,
    DiscrepancyFinding,
    ReconciliationService,
    InvoiceReconciliationService,
    LettrageService,
    LettrageResult,
    AutoReconciliationService,
    AutoReconciliationReport
)

__all__ = [
    # Errors
    'ReconciliationError',
    'NotFoundError',
    'ConflictError',
    'InvalidRuleError',
    'ConfigurationMissingError',
    # Registry
    'MatchType',
    'LettrageStrategy',
    'CounterpartConfig',
    'CounterpartRegistry',
    'counterpart_registry',
    # Matching Rules
    'EntryMatchingRules',
    'InvoiceMatchingRules',
    'MatchCandidate',
    'MatchResult',
    'InvoiceCandidate',
    'RuleDefinition',
    'entry_rules',
    'invoice_rules',
    # Services
    'BalanceService',
    'DiscrepancyService',
    'DiscrepancyFinding',
    'ReconciliationService',
    'InvoiceReconciliationService',
    'LettrageService',
    'LettrageResult',
    'AutoReconciliationService',
    'AutoReconciliationReport',
]
