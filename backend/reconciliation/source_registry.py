"""
Reconciliation Counterpart Registry

Central registry of the counterpart kinds a bank transaction can be
reconciled against. Each kind has:
- Admission threshold (minimum score for a candidate to be surfaced)
- Auto-apply threshold (minimum score for unattended reconciliation)
- Candidate date window

Supported Counterparts:
- ACCOUNTING: Accounting entries posted on the bank control account
- INVOICE: Unpaid customer invoices (incoming transfers only)
"""

from enum import Enum
from typing import Dict, Optional
from dataclasses import dataclass

from database.reconciliation_models import CounterpartKind


class MatchType(str, Enum):
    """
    Types of matches.
    """
    EXACT = "EXACT"             # Amount and date match exactly
    AMOUNT_DATE = "AMOUNT_DATE" # Amount and date close
    AMOUNT_ONLY = "AMOUNT_ONLY" # Only amount matches
    FUZZY = "FUZZY"             # Label / partial evidence


class LettrageStrategy(str, Enum):
    """
    How an automatic reconciliation was produced.
    """
    RULE_ASSIGN_ACCOUNT = "RULE_ASSIGN_ACCOUNT"  # Rule assigned a fixed ledger account
    RULE_SCORER = "RULE_SCORER"                  # Rule deferred to the scorer
    EXACT_AMOUNT = "EXACT_AMOUNT"                # Strict amount equality fallback
    SCORED = "SCORED"                            # Scored search fallback
    LABEL = "LABEL"                              # Keyword search on entry labels


# Confidence assigned by the non-scored strategies
RULE_ASSIGN_CONFIDENCE = 80
EXACT_AMOUNT_CONFIDENCE = 90
LABEL_MATCH_CONFIDENCE = 70


@dataclass
class CounterpartConfig:
    """
    Configuration for a counterpart kind.
    """
    kind: CounterpartKind
    suggest_threshold: int  # Score needed to surface a candidate
    auto_apply_threshold: Optional[int]  # Score needed to reconcile without review
    candidate_window_days: int  # Days either side of the transaction date


class CounterpartRegistry:
    """
    Central registry for counterpart kinds.

    Provides threshold lookups for the matching engine.
    """

    _default_configs: Dict[CounterpartKind, CounterpartConfig] = {
        CounterpartKind.ACCOUNTING: CounterpartConfig(
            kind=CounterpartKind.ACCOUNTING,
            suggest_threshold=30,
            auto_apply_threshold=70,
            candidate_window_days=7
        ),
        # Never applied without review
        CounterpartKind.INVOICE: CounterpartConfig(
            kind=CounterpartKind.INVOICE,
            suggest_threshold=40,
            auto_apply_threshold=None,
            candidate_window_days=30
        ),
    }

    def __init__(self):
        self._configs = {
            kind: CounterpartConfig(**vars(cfg))
            for kind, cfg in self._default_configs.items()
        }

    def get_config(self, kind: CounterpartKind) -> CounterpartConfig:
        """Get configuration for a counterpart kind."""
        return self._configs[kind]

    def get_suggest_threshold(self, kind: CounterpartKind) -> int:
        return self._configs[kind].suggest_threshold

    def get_auto_apply_threshold(self, kind: CounterpartKind) -> Optional[int]:
        return self._configs[kind].auto_apply_threshold

    def update_config(self, kind: CounterpartKind, **kwargs):
        """Update configuration for a counterpart kind."""
        cfg = self._configs[kind]
        for key, value in kwargs.items():
            if hasattr(cfg, key):
                setattr(cfg, key, value)


# Global registry instance
counterpart_registry = CounterpartRegistry()
