"""
Accounting Entry Matching Rules

Scores a bank transaction against accounting entries posted on the bank
control account.

Scoring (additive, 0-100):
- amount: exact (<= 0.01) 50, within 5% 30, within 10% 15
- date: same day 30, 1 day 20, 3 days 10
- label: 5 points per shared token (> 3 chars), capped at 20

Thresholds (see source_registry):
- >= 70: automatic reconciliation
- >= 30: surfaced as a candidate
- < 30: discarded
"""

from datetime import date
from decimal import Decimal
from typing import Dict, Any, List, Optional, Tuple
from dataclasses import dataclass, field

from database.reconciliation_models import CounterpartKind
from reconciliation.source_registry import (
    MatchType,
    CounterpartRegistry,
    counterpart_registry
)


def to_decimal(value: Any) -> Decimal:
    """Coerce a stored amount (Decimal, float, str) to Decimal."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass
class MatchCandidate:
    """
    A potential counterpart for a bank transaction.
    """
    target_id: str
    target_kind: CounterpartKind
    target_reference: Optional[str]
    target_date: Optional[date]
    confidence_score: int
    match_type: MatchType
    scoring_breakdown: Dict[str, int]
    target: Any = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_id": self.target_id,
            "target_kind": self.target_kind.value,
            "target_reference": self.target_reference,
            "target_date": self.target_date.isoformat() if self.target_date else None,
            "confidence_score": self.confidence_score,
            "match_type": self.match_type.value,
            "scoring_breakdown": self.scoring_breakdown
        }


@dataclass
class MatchResult:
    """
    Result of a candidate search for one transaction.
    """
    transaction_id: str
    counterpart_kind: CounterpartKind
    candidates: List[MatchCandidate]
    best_match: Optional[MatchCandidate]
    auto_matched: bool
    suggested_match: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "counterpart_kind": self.counterpart_kind.value,
            "candidates_count": len(self.candidates),
            "candidates": [c.to_dict() for c in self.candidates],
            "best_match": {
                "target_id": self.best_match.target_id,
                "confidence_score": self.best_match.confidence_score
            } if self.best_match else None,
            "auto_matched": self.auto_matched,
            "suggested_match": self.suggested_match
        }


class EntryMatchingRules:
    """
    Scoring engine for transaction ↔ accounting entry pairs.

    Pure: reads transaction/entry attributes (amount, date, label) and never
    writes to either.
    """

    # Amount
    AMOUNT_TOLERANCE = Decimal("0.01")
    POINTS_AMOUNT_EXACT = 50
    POINTS_AMOUNT_WITHIN_5_PCT = 30
    POINTS_AMOUNT_WITHIN_10_PCT = 15

    # Date
    POINTS_DATE_SAME_DAY = 30
    POINTS_DATE_WITHIN_1_DAY = 20
    POINTS_DATE_WITHIN_3_DAYS = 10

    # Label
    MIN_TOKEN_LENGTH = 4
    POINTS_PER_SHARED_TOKEN = 5
    MAX_LABEL_POINTS = 20

    def __init__(self, registry: CounterpartRegistry = counterpart_registry):
        self.kind = CounterpartKind.ACCOUNTING
        self.registry = registry

    @property
    def suggest_threshold(self) -> int:
        return self.registry.get_suggest_threshold(self.kind)

    @property
    def auto_apply_threshold(self) -> int:
        return self.registry.get_auto_apply_threshold(self.kind)

    def find_matches(self, transaction: Any, entries: List[Any]) -> MatchResult:
        """
        Score every entry against the transaction and keep the admissible ones.

        Candidates are ordered by score, then most recent entry, then id, so
        equal scores rank deterministically.
        """
        candidates = []

        for entry in entries:
            total, breakdown = self.score_with_breakdown(transaction, entry)

            if total >= self.suggest_threshold:
                candidates.append(MatchCandidate(
                    target_id=str(entry.id),
                    target_kind=self.kind,
                    target_reference=getattr(entry, 'document_reference', None),
                    target_date=entry.date,
                    confidence_score=total,
                    match_type=self._determine_match_type(breakdown),
                    scoring_breakdown=breakdown,
                    target=entry
                ))

        candidates.sort(key=lambda c: (
            -c.confidence_score,
            -(c.target_date.toordinal() if c.target_date else 0),
            c.target_id
        ))

        best_match = candidates[0] if candidates else None
        auto_matched = (
            best_match is not None and
            best_match.confidence_score >= self.auto_apply_threshold
        )

        return MatchResult(
            transaction_id=str(transaction.id),
            counterpart_kind=self.kind,
            candidates=candidates,
            best_match=best_match,
            auto_matched=auto_matched,
            suggested_match=best_match is not None and not auto_matched
        )

    def score(self, transaction: Any, entry: Any) -> int:
        """Confidence score between a transaction and an entry (0-100)."""
        total, _ = self.score_with_breakdown(transaction, entry)
        return total

    def score_with_breakdown(self, transaction: Any, entry: Any) -> Tuple[int, Dict[str, int]]:
        breakdown = {
            'amount': self._score_amount(transaction.amount, entry.amount),
            'date': self._score_date(transaction.date, entry.date),
            'label': self._score_label(transaction.label, entry.label),
        }
        total = sum(breakdown.values())
        breakdown['total'] = total
        return total, breakdown

    def _score_amount(self, transaction_amount: Any, entry_amount: Any) -> int:
        """Score amount proximity, relative to the transaction amount."""
        tx_amount = abs(to_decimal(transaction_amount))
        target_amount = abs(to_decimal(entry_amount))
        deviation = abs(target_amount - tx_amount)

        if deviation <= self.AMOUNT_TOLERANCE:
            return self.POINTS_AMOUNT_EXACT

        if tx_amount == 0:
            return 0

        percent = deviation / tx_amount * 100
        if percent <= 5:
            return self.POINTS_AMOUNT_WITHIN_5_PCT
        if percent <= 10:
            return self.POINTS_AMOUNT_WITHIN_10_PCT
        return 0

    def _score_date(self, transaction_date: Optional[date], entry_date: Optional[date]) -> int:
        """Score calendar-day proximity."""
        if not transaction_date or not entry_date:
            return 0

        days = abs((entry_date - transaction_date).days)
        if days == 0:
            return self.POINTS_DATE_SAME_DAY
        if days <= 1:
            return self.POINTS_DATE_WITHIN_1_DAY
        if days <= 3:
            return self.POINTS_DATE_WITHIN_3_DAYS
        return 0

    def _score_label(self, transaction_label: Optional[str], entry_label: Optional[str]) -> int:
        """5 points per transaction token found in the entry label, capped."""
        entry_text = (entry_label or '').lower()
        if not entry_text:
            return 0

        shared = [
            token for token in (transaction_label or '').lower().split()
            if len(token) >= self.MIN_TOKEN_LENGTH and token in entry_text
        ]
        return min(len(shared) * self.POINTS_PER_SHARED_TOKEN, self.MAX_LABEL_POINTS)

    def _determine_match_type(self, breakdown: Dict[str, int]) -> MatchType:
        """Determine the type of match based on scoring breakdown."""
        amount_score = breakdown.get('amount', 0)
        date_score = breakdown.get('date', 0)

        if amount_score == self.POINTS_AMOUNT_EXACT and date_score == self.POINTS_DATE_SAME_DAY:
            return MatchType.EXACT

        if amount_score >= self.POINTS_AMOUNT_WITHIN_5_PCT and date_score > 0:
            return MatchType.AMOUNT_DATE

        if amount_score >= self.POINTS_AMOUNT_WITHIN_5_PCT:
            return MatchType.AMOUNT_ONLY

        return MatchType.FUZZY


# Instantiate rules engine
entry_rules = EntryMatchingRules()
