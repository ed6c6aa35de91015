"""
Lettrage Rule Definitions

Typed criteria and actions for automatic lettrage rules. Criteria form a
closed set evaluated in a fixed order with short-circuit:

1. amount_range        transaction amount within [min_amount, max_amount]
2. type_equals         transaction direction (DEBIT / CREDIT)
3. category_equals     transaction category
4. label_contains_any  any keyword found in the label (case-insensitive)

Actions:
- assign_account       reconcile directly against a ledger account code
- scorer_assisted      defer to the entry scorer (applied only at >= 70)

Payloads are validated when a rule is written, so a malformed rule is
rejected with InvalidRuleError instead of silently never matching.
"""

from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from database.reconciliation_models import TransactionDirection
from reconciliation.errors import InvalidRuleError
from reconciliation.matching_rules.entry_rules import to_decimal


# ==================== CRITERIA ====================

class AmountRangeCriterion(BaseModel):
    kind: Literal["amount_range"] = "amount_range"
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None

    @model_validator(mode="after")
    def check_bounds(self):
        if self.min_amount is None and self.max_amount is None:
            raise ValueError("amount_range needs min_amount or max_amount")
        if (
            self.min_amount is not None and self.max_amount is not None
            and self.min_amount > self.max_amount
        ):
            raise ValueError("min_amount cannot exceed max_amount")
        return self

    def matches(self, transaction: Any) -> bool:
        amount = to_decimal(transaction.amount)
        if self.min_amount is not None and amount < self.min_amount:
            return False
        if self.max_amount is not None and amount > self.max_amount:
            return False
        return True


class TransactionTypeCriterion(BaseModel):
    kind: Literal["type_equals"] = "type_equals"
    direction: TransactionDirection

    def matches(self, transaction: Any) -> bool:
        return transaction.direction == self.direction


class CategoryCriterion(BaseModel):
    kind: Literal["category_equals"] = "category_equals"
    category: str = Field(..., min_length=1)

    def matches(self, transaction: Any) -> bool:
        return transaction.category == self.category


class LabelContainsAnyCriterion(BaseModel):
    kind: Literal["label_contains_any"] = "label_contains_any"
    keywords: List[str]

    @field_validator("keywords", mode="before")
    @classmethod
    def split_keywords(cls, value):
        # Accept the comma-separated form users type in the rule editor
        if isinstance(value, str):
            value = value.split(",")
        return value

    @field_validator("keywords")
    @classmethod
    def normalize_keywords(cls, value: List[str]) -> List[str]:
        keywords = [k.strip().lower() for k in value if k and k.strip()]
        if not keywords:
            raise ValueError("label_contains_any needs at least one keyword")
        return keywords

    def matches(self, transaction: Any) -> bool:
        label = (transaction.label or "").lower()
        return any(keyword in label for keyword in self.keywords)


Criterion = Annotated[
    Union[AmountRangeCriterion, TransactionTypeCriterion, CategoryCriterion, LabelContainsAnyCriterion],
    Field(discriminator="kind")
]

EVALUATION_ORDER = {
    "amount_range": 0,
    "type_equals": 1,
    "category_equals": 2,
    "label_contains_any": 3,
}


# ==================== ACTIONS ====================

class AssignAccountAction(BaseModel):
    kind: Literal["assign_account"] = "assign_account"
    account_code: str = Field(..., min_length=1)


class ScorerAssistedAction(BaseModel):
    kind: Literal["scorer_assisted"] = "scorer_assisted"


RuleAction = Annotated[
    Union[AssignAccountAction, ScorerAssistedAction],
    Field(discriminator="kind")
]


# ==================== RULE ====================

class RuleDefinition(BaseModel):
    """Validated lettrage rule."""
    name: str = Field(..., min_length=1)
    priority: int = Field(default=100, ge=0)
    active: bool = True
    criteria: List[Criterion] = Field(default_factory=list)
    action: RuleAction

    @field_validator("criteria")
    @classmethod
    def one_criterion_per_kind(cls, value: List[Any]) -> List[Any]:
        kinds = [c.kind for c in value]
        if len(kinds) != len(set(kinds)):
            raise ValueError("each criterion kind may appear only once")
        return sorted(value, key=lambda c: EVALUATION_ORDER[c.kind])

    def matches(self, transaction: Any) -> bool:
        """True if every criterion holds; stops at the first failing one."""
        for criterion in self.criteria:
            if not criterion.matches(transaction):
                return False
        return True

    def criteria_payload(self) -> List[Dict[str, Any]]:
        return [c.model_dump(mode="json", exclude_none=True) for c in self.criteria]

    def action_payload(self) -> Dict[str, Any]:
        return self.action.model_dump(mode="json")


def parse_rule_definition(payload: Dict[str, Any]) -> RuleDefinition:
    """Validate a raw rule payload, raising InvalidRuleError on failure."""
    try:
        return RuleDefinition.model_validate(payload)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'rule'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidRuleError(f"Invalid lettrage rule: {problems}")


def rule_definition_from_db(rule: Any) -> RuleDefinition:
    """Rebuild the typed definition of a stored rule."""
    try:
        return RuleDefinition.model_validate({
            "name": rule.name,
            "priority": rule.priority,
            "active": rule.active,
            "criteria": rule.criteria or [],
            "action": rule.action,
        })
    except ValidationError as e:
        raise InvalidRuleError(
            f"Stored lettrage rule {rule.id} is malformed: {e.error_count()} error(s)",
            resource_id=str(rule.id)
        )
