"""
Matching Rules Module
"""

from .entry_rules import EntryMatchingRules, entry_rules, MatchCandidate, MatchResult, to_decimal
from .invoice_rules import InvoiceMatchingRules, invoice_rules, InvoiceCandidate, normalize_text
from .lettrage_criteria import (
    RuleDefinition, parse_rule_definition, rule_definition_from_db,
    AmountRangeCriterion, TransactionTypeCriterion, CategoryCriterion, LabelContainsAnyCriterion,
    AssignAccountAction, ScorerAssistedAction
)

__all__ = [
    "EntryMatchingRules", "entry_rules", "MatchCandidate", "MatchResult", "to_decimal",
    "InvoiceMatchingRules", "invoice_rules", "InvoiceCandidate", "normalize_text",
    "RuleDefinition", "parse_rule_definition", "rule_definition_from_db",
    "AmountRangeCriterion", "TransactionTypeCriterion", "CategoryCriterion", "LabelContainsAnyCriterion",
    "AssignAccountAction", "ScorerAssistedAction",
]
