"""
Invoice Matching Rules

Scores incoming bank transfers (CREDIT) against unpaid invoices.

Primary Match Keys:
- amount against the invoice remainder
- days since the invoice issue date

Secondary Heuristics (searched in the alphanumeric-normalised label):
- invoice number
- client name
- payment references already recorded on the invoice

Admission threshold is 40, higher than for accounting entries: the two
ledgers are independent and correlate weakly.
"""

import re
from datetime import date
from decimal import Decimal
from typing import Dict, Any, List, Optional, Set, Tuple
from dataclasses import dataclass, field

from database.reconciliation_models import CounterpartKind, TransactionDirection
from reconciliation.matching_rules.entry_rules import to_decimal
from reconciliation.source_registry import CounterpartRegistry, counterpart_registry


_NON_ALNUM = re.compile(r'[^a-z0-9]')


def normalize_text(value: Optional[str]) -> str:
    """Lower-case and strip everything but [a-z0-9]."""
    return _NON_ALNUM.sub('', (value or '').lower())


@dataclass
class InvoiceCandidate:
    """
    A potential invoice for an incoming transfer.
    """
    transaction_id: str
    invoice_id: str
    invoice_number: str
    remainder: Decimal
    score: int
    reasons: List[str]
    transaction_date: Optional[date] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "remainder": str(self.remainder),
            "score": self.score,
            "reason": ", ".join(self.reasons)
        }


class InvoiceMatchingRules:
    """
    Scoring engine for transaction ↔ invoice pairs.
    """

    AMOUNT_TOLERANCE = Decimal("0.01")
    POINTS_AMOUNT_EXACT = 50
    POINTS_AMOUNT_WITHIN_5_PCT = 30
    POINTS_AMOUNT_WITHIN_10_PCT = 15

    POINTS_DATE_WITHIN_3_DAYS = 30
    POINTS_DATE_WITHIN_7_DAYS = 15
    POINTS_DATE_WITHIN_30_DAYS = 5

    POINTS_INVOICE_NUMBER = 20
    POINTS_CLIENT_NAME = 10
    POINTS_PAYMENT_REFERENCE = 15
    MIN_CLIENT_NAME_LENGTH = 4

    def __init__(self, registry: CounterpartRegistry = counterpart_registry):
        self.kind = CounterpartKind.INVOICE
        self.registry = registry

    @property
    def suggest_threshold(self) -> int:
        return self.registry.get_suggest_threshold(self.kind)

    def find_matches(
        self,
        transactions: List[Any],
        invoices: List[Tuple[Any, Decimal]],
        excluded_pairs: Optional[Set[Tuple[str, str]]] = None
    ) -> List[InvoiceCandidate]:
        """
        Find admissible (transaction, invoice) pairs.

        Args:
            transactions: Bank transactions (non-CREDIT ones are ignored)
            invoices: (invoice, remainder) tuples
            excluded_pairs: (transaction_id, invoice_id) pairs that already
                carry an active reconciliation

        Returns:
            Candidates sorted by score, then most recent transaction, then ids
        """
        excluded_pairs = excluded_pairs or set()
        candidates = []

        for transaction in transactions:
            if transaction.direction != TransactionDirection.CREDIT:
                continue

            for invoice, remainder in invoices:
                if remainder <= 0:
                    continue
                if (str(transaction.id), str(invoice.id)) in excluded_pairs:
                    continue

                score, reasons = self.score(transaction, invoice, remainder)
                if score >= self.suggest_threshold:
                    candidates.append(InvoiceCandidate(
                        transaction_id=str(transaction.id),
                        invoice_id=str(invoice.id),
                        invoice_number=invoice.number,
                        remainder=remainder,
                        score=score,
                        reasons=reasons,
                        transaction_date=transaction.date
                    ))

        candidates.sort(key=lambda c: (
            -c.score,
            -(c.transaction_date.toordinal() if c.transaction_date else 0),
            c.transaction_id,
            c.invoice_id
        ))
        return candidates

    def score(self, transaction: Any, invoice: Any, remainder: Decimal) -> Tuple[int, List[str]]:
        """Score a transaction against an invoice's outstanding remainder."""
        score = 0
        reasons: List[str] = []

        amount_points, amount_reason = self._score_amount(transaction.amount, remainder)
        score += amount_points
        if amount_reason:
            reasons.append(amount_reason)

        date_points, date_reason = self._score_date(transaction.date, invoice.issue_date)
        score += date_points
        if date_reason:
            reasons.append(date_reason)

        label = normalize_text(transaction.label)

        number = normalize_text(invoice.number)
        if number and number in label:
            score += self.POINTS_INVOICE_NUMBER
            reasons.append("Invoice number in label")

        client = normalize_text(invoice.client_name)
        if len(client) >= self.MIN_CLIENT_NAME_LENGTH and client in label:
            score += self.POINTS_CLIENT_NAME
            reasons.append("Client name in label")

        for payment in invoice.payments or []:
            reference = normalize_text(payment.reference)
            if reference and reference in label:
                score += self.POINTS_PAYMENT_REFERENCE
                reasons.append("Payment reference in label")
                break

        return score, reasons

    def _score_amount(self, transaction_amount: Any, remainder: Decimal) -> Tuple[int, Optional[str]]:
        amount = abs(to_decimal(transaction_amount))
        remainder = to_decimal(remainder)
        deviation = abs(amount - remainder)

        if deviation <= self.AMOUNT_TOLERANCE:
            return self.POINTS_AMOUNT_EXACT, "Exact amount"

        if remainder <= 0:
            return 0, None

        ratio = deviation / remainder
        if ratio <= Decimal("0.05"):
            return self.POINTS_AMOUNT_WITHIN_5_PCT, "Amount within 5%"
        if ratio <= Decimal("0.10"):
            return self.POINTS_AMOUNT_WITHIN_10_PCT, "Amount within 10%"
        return 0, None

    def _score_date(self, transaction_date: Optional[date], issue_date: Optional[date]) -> Tuple[int, Optional[str]]:
        if not transaction_date or not issue_date:
            return 0, None

        days = abs((transaction_date - issue_date).days)
        if days <= 3:
            return self.POINTS_DATE_WITHIN_3_DAYS, f"Date close ({days} days)"
        if days <= 7:
            return self.POINTS_DATE_WITHIN_7_DAYS, f"Date close ({days} days)"
        if days <= 30:
            return self.POINTS_DATE_WITHIN_30_DAYS, "Date within the month"
        return 0, None


invoice_rules = InvoiceMatchingRules()
