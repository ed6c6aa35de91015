"""
Lettrage Service

Automatic matching of bank transactions against the books:

1. User rules, active only, ascending priority; the first rule whose
   action produces a reconciliation wins
2. Exact amount on the control account (confidence 90)
3. Scored search (applied only at >= 70)

Nothing is ever forced: a transaction that passes all three without a
result stays unreconciled. Rule management (create / update / list /
deactivate) validates payloads at write time.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import BankReconciliationDB, MatchingRuleDB, generate_uuid, utc_now
from reconciliation.errors import ConflictError, InvalidRuleError, NotFoundError
from reconciliation.matching_rules.entry_rules import to_decimal
from reconciliation.matching_rules.lettrage_criteria import (
    AssignAccountAction, RuleDefinition, parse_rule_definition, rule_definition_from_db
)
from reconciliation.services.audit import ReconciliationAuditEvent, log_reconciliation_event, record_audit_event
from reconciliation.services.queries import (
    get_ledger_account_by_code, get_control_entries, require_control_account, require_transaction
)
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.source_registry import (
    EXACT_AMOUNT_CONFIDENCE, LABEL_MATCH_CONFIDENCE, RULE_ASSIGN_CONFIDENCE, LettrageStrategy
)

logger = logging.getLogger(__name__)

LABEL_MATCH_ENTRY_LIMIT = 10


@dataclass
class LettrageResult:
    """A reconciliation produced automatically, with the strategy that produced it."""
    reconciliation: BankReconciliationDB
    strategy: LettrageStrategy
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reconciliation_id": self.reconciliation.id,
            "transaction_id": self.reconciliation.transaction_id,
            "strategy": self.strategy.value,
            "confidence_score": self.reconciliation.confidence_score,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name
        }


class LettrageService:
    """
    Rule-based and fallback automatic lettrage.
    """

    def __init__(self, db: AsyncSession, reconciliation_service: Optional[ReconciliationService] = None):
        self.db = db
        self.lifecycle = reconciliation_service or ReconciliationService(db)

    # ==================== Rule Management ====================

    async def create_rule(self, company_id: str, payload: Dict[str, Any], actor: str = "system") -> MatchingRuleDB:
        """
        Validate and store a lettrage rule.

        Raises:
            InvalidRuleError: malformed payload, or an assign_account code
                not provisioned for the company
        """
        definition = parse_rule_definition(payload)
        await self._check_action_target(company_id, definition)

        rule = MatchingRuleDB(
            id=generate_uuid(),
            company_id=company_id,
            name=definition.name,
            priority=definition.priority,
            active=definition.active,
            criteria=definition.criteria_payload(),
            action=definition.action_payload(),
        )
        self.db.add(rule)

        record_audit_event(
            self.db,
            ReconciliationAuditEvent.RULE_CREATED,
            company_id,
            {"rule_id": rule.id, "name": rule.name, "priority": rule.priority},
            actor=actor
        )

        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        return rule

    async def update_rule(
        self,
        company_id: str,
        rule_id: str,
        changes: Dict[str, Any],
        actor: str = "system"
    ) -> MatchingRuleDB:
        """
        Apply a partial update; the merged rule is re-validated as a whole.

        Raises:
            NotFoundError: unknown rule
            InvalidRuleError: the merged rule is malformed
        """
        rule = await self._get_rule(company_id, rule_id)

        merged = {
            "name": rule.name,
            "priority": rule.priority,
            "active": rule.active,
            "criteria": rule.criteria or [],
            "action": rule.action,
        }
        merged.update(changes)

        definition = parse_rule_definition(merged)
        await self._check_action_target(company_id, definition)

        rule.name = definition.name
        rule.priority = definition.priority
        rule.active = definition.active
        rule.criteria = definition.criteria_payload()
        rule.action = definition.action_payload()
        rule.updated_at = utc_now()

        record_audit_event(
            self.db,
            ReconciliationAuditEvent.RULE_UPDATED,
            company_id,
            {"rule_id": rule_id, "changed": sorted(changes.keys())},
            actor=actor
        )

        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        return rule

    async def deactivate_rule(self, company_id: str, rule_id: str, actor: str = "system") -> MatchingRuleDB:
        return await self.update_rule(company_id, rule_id, {"active": False}, actor=actor)

    async def list_rules(self, company_id: str, active_only: bool = False) -> List[MatchingRuleDB]:
        """Rules in evaluation order."""
        query = select(MatchingRuleDB).where(MatchingRuleDB.company_id == company_id)
        if active_only:
            query = query.where(MatchingRuleDB.active.is_(True))
        query = query.order_by(MatchingRuleDB.priority, MatchingRuleDB.created_at, MatchingRuleDB.id)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ==================== Matching ====================

    async def apply_rules(self, company_id: str, transaction_id: str) -> Optional[LettrageResult]:
        """
        Evaluate active rules in priority order.

        A matching rule whose action yields nothing (low score, conflict,
        account removed since the rule was written) lets evaluation continue.

        Raises:
            NotFoundError: unknown transaction
            InvalidRuleError: a stored rule no longer parses
        """
        transaction = await require_transaction(self.db, company_id, transaction_id)
        rules = await self._get_active_definitions(company_id)

        for rule_id, definition in rules:
            if not definition.matches(transaction):
                continue

            result = await self._execute_action(company_id, transaction_id, rule_id, definition)
            if result:
                log_reconciliation_event(
                    ReconciliationAuditEvent.RULE_APPLIED,
                    company_id,
                    {
                        "rule_id": rule_id,
                        "rule_name": definition.name,
                        "transaction_id": transaction_id,
                        "strategy": result.strategy.value
                    },
                    reconciliation_id=result.reconciliation.id
                )
                return result

            # A conflicting insert rolls the session back and expires the transaction
            transaction = await require_transaction(self.db, company_id, transaction_id)

        return None

    async def match_by_exact_amount(self, company_id: str, transaction_id: str) -> Optional[LettrageResult]:
        """
        Most recent unmatched control-account entry with exactly the same
        amount. Date and label are not considered.
        """
        transaction = await require_transaction(self.db, company_id, transaction_id)
        control = await require_control_account(self.db, company_id)

        entries = await get_control_entries(
            self.db, company_id, control.id,
            amount=to_decimal(transaction.amount), exclude_reconciled=True, newest_first=True, limit=1
        )
        if not entries:
            return None
        entry = entries[0]

        reconciliation = await self._try_create(
            company_id,
            transaction_id,
            entry_id=entry.id,
            confidence_score=EXACT_AMOUNT_CONFIDENCE,
            notes="Automatic lettrage: exact amount"
        )
        if not reconciliation:
            return None
        return LettrageResult(reconciliation=reconciliation, strategy=LettrageStrategy.EXACT_AMOUNT)

    async def match_by_score(self, company_id: str, transaction_id: str) -> Optional[LettrageResult]:
        """Best scored candidate, applied only above the auto-apply threshold."""
        reconciliation = await self._apply_best_candidate(
            company_id, transaction_id, notes="Automatic lettrage: scored match"
        )
        if not reconciliation:
            return None
        return LettrageResult(reconciliation=reconciliation, strategy=LettrageStrategy.SCORED)

    async def match_by_label(
        self,
        company_id: str,
        transaction_id: str,
        keywords: List[str]
    ) -> Optional[LettrageResult]:
        """
        Match on keywords: the first of the ten most recent unmatched
        control-account entries whose label holds at least half the keywords.
        """
        keywords = [k.strip().lower() for k in keywords if k and k.strip()]
        if not keywords:
            return None

        await require_transaction(self.db, company_id, transaction_id)
        control = await require_control_account(self.db, company_id)

        entries = await get_control_entries(
            self.db, company_id, control.id,
            exclude_reconciled=True, newest_first=True, limit=LABEL_MATCH_ENTRY_LIMIT
        )
        for entry in entries:
            label = (entry.label or "").lower()
            hits = sum(1 for keyword in keywords if keyword in label)
            if hits < len(keywords) * 0.5:
                continue

            reconciliation = await self._try_create(
                company_id,
                transaction_id,
                entry_id=entry.id,
                confidence_score=LABEL_MATCH_CONFIDENCE,
                notes=f"Automatic lettrage: label ({hits}/{len(keywords)} keywords)"
            )
            if not reconciliation:
                return None
            return LettrageResult(reconciliation=reconciliation, strategy=LettrageStrategy.LABEL)

        return None

    async def reconcile_transaction(self, company_id: str, transaction_id: str) -> Optional[LettrageResult]:
        """Rules, then exact amount, then scored search."""
        result = await self.apply_rules(company_id, transaction_id)
        if result:
            return result

        result = await self.match_by_exact_amount(company_id, transaction_id)
        if result:
            return result

        return await self.match_by_score(company_id, transaction_id)

    # ==================== Private Methods ====================

    async def _get_rule(self, company_id: str, rule_id: str) -> MatchingRuleDB:
        result = await self.db.execute(
            select(MatchingRuleDB).where(
                MatchingRuleDB.id == rule_id,
                MatchingRuleDB.company_id == company_id
            )
        )
        rule = result.scalar_one_or_none()
        if not rule:
            raise NotFoundError(f"Matching rule {rule_id} not found", resource_id=rule_id)
        return rule

    async def _get_active_definitions(self, company_id: str) -> List[Tuple[str, RuleDefinition]]:
        rules = await self.list_rules(company_id, active_only=True)
        return [(rule.id, rule_definition_from_db(rule)) for rule in rules]

    async def _check_action_target(self, company_id: str, definition: RuleDefinition):
        if isinstance(definition.action, AssignAccountAction):
            code = definition.action.account_code
            if not await get_ledger_account_by_code(self.db, company_id, code):
                raise InvalidRuleError(f"Ledger account {code} is not provisioned for company {company_id}")

    async def _execute_action(
        self,
        company_id: str,
        transaction_id: str,
        rule_id: str,
        definition: RuleDefinition
    ) -> Optional[LettrageResult]:
        note = f"Automatic lettrage by rule '{definition.name}'"

        if isinstance(definition.action, AssignAccountAction):
            code = definition.action.account_code
            account = await get_ledger_account_by_code(self.db, company_id, code)
            if not account:
                logger.warning(f"Rule {rule_id} targets ledger account {code}, which no longer exists")
                return None

            reconciliation = await self._try_create(
                company_id,
                transaction_id,
                ledger_account_id=account.id,
                confidence_score=RULE_ASSIGN_CONFIDENCE,
                notes=note
            )
            strategy = LettrageStrategy.RULE_ASSIGN_ACCOUNT
        else:
            reconciliation = await self._apply_best_candidate(company_id, transaction_id, notes=note)
            strategy = LettrageStrategy.RULE_SCORER

        if not reconciliation:
            return None
        return LettrageResult(
            reconciliation=reconciliation,
            strategy=strategy,
            rule_id=rule_id,
            rule_name=definition.name
        )

    async def _apply_best_candidate(
        self,
        company_id: str,
        transaction_id: str,
        notes: str
    ) -> Optional[BankReconciliationDB]:
        match = await self.lifecycle.find_candidates(company_id, transaction_id)
        if not match.auto_matched:
            return None

        best = match.best_match
        return await self._try_create(
            company_id,
            transaction_id,
            entry_id=best.target_id,
            confidence_score=best.confidence_score,
            notes=notes
        )

    async def _try_create(self, company_id: str, transaction_id: str, **kwargs) -> Optional[BankReconciliationDB]:
        try:
            return await self.lifecycle.create_reconciliation(company_id, transaction_id, **kwargs)
        except ConflictError as e:
            logger.info(f"Lettrage skipped for transaction {transaction_id}: {e.message}")
            return None
