"""
Invoice Reconciliation Service

Links incoming bank transfers to unpaid invoices.

Remainder of an invoice = total - direct payments - validated invoice
reconciliations. Only SENT/PAID invoices with a positive remainder and
CREDIT transactions without an active invoice reconciliation are paired.
Validation (shared with accounting reconciliations) promotes the invoice to
PAID once the remainder is covered.
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import select, exists
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import (
    BankAccountDB, BankReconciliationDB, BankTransactionDB, InvoiceDB,
    CounterpartKind, InvoiceStatus, ReconciliationStatus, TransactionDirection, ACTIVE_STATUSES
)
from reconciliation.errors import ConflictError, NotFoundError
from reconciliation.matching_rules.entry_rules import to_decimal
from reconciliation.matching_rules.invoice_rules import InvoiceCandidate, InvoiceMatchingRules, invoice_rules
from reconciliation.services.audit import ReconciliationAuditEvent, log_reconciliation_event
from reconciliation.services.queries import require_transaction
from reconciliation.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

OPEN_INVOICE_STATUSES = (InvoiceStatus.SENT, InvoiceStatus.PAID)


class InvoiceReconciliationService:
    """
    Service for reconciling bank transactions against invoices.
    """

    def __init__(
        self,
        db: AsyncSession,
        rules: InvoiceMatchingRules = invoice_rules,
        reconciliation_service: Optional[ReconciliationService] = None
    ):
        self.db = db
        self.rules = rules
        self.lifecycle = reconciliation_service or ReconciliationService(db)

    async def find_invoice_candidates(
        self,
        company_id: str,
        bank_account_id: Optional[str] = None
    ) -> List[InvoiceCandidate]:
        """
        Score open invoices against incoming transfers.

        Returns:
            Candidates scoring at least the admission threshold, best first
        """
        transactions = await self._get_open_credits(company_id, bank_account_id)
        if not transactions:
            return []

        invoices = await self._get_open_invoices(company_id)
        if not invoices:
            return []

        excluded = await self._get_active_pairs(company_id)
        candidates = self.rules.find_matches(transactions, invoices, excluded)

        log_reconciliation_event(
            ReconciliationAuditEvent.INVOICE_CANDIDATES_FOUND,
            company_id,
            {
                "bank_account_id": bank_account_id,
                "transactions": len(transactions),
                "invoices": len(invoices),
                "candidates_count": len(candidates)
            }
        )
        return candidates

    async def create_invoice_reconciliation(
        self,
        company_id: str,
        transaction_id: str,
        invoice_id: str,
        payment_id: Optional[str] = None,
        confidence_score: Optional[int] = None,
        notes: Optional[str] = None,
        actor: str = "system"
    ) -> BankReconciliationDB:
        """
        Propose an invoice reconciliation (PENDING).

        The matched amount is the transaction amount, capped at the invoice
        remainder while one is outstanding.

        Raises:
            NotFoundError: transaction, invoice or payment unknown
            ConflictError: the invoice is DRAFT or CANCELLED, or an active
                invoice reconciliation already exists
        """
        transaction = await require_transaction(self.db, company_id, transaction_id)

        invoice = await self._get_invoice(company_id, invoice_id)
        if not invoice:
            raise NotFoundError(f"Invoice {invoice_id} not found", resource_id=invoice_id)
        if invoice.status not in OPEN_INVOICE_STATUSES:
            raise ConflictError(
                f"Invoice {invoice_id} is {invoice.status.value} and cannot be reconciled",
                resource_id=invoice_id
            )

        if payment_id and not any(p.id == payment_id for p in invoice.payments):
            raise NotFoundError(f"Payment {payment_id} not found on invoice {invoice_id}", resource_id=payment_id)

        amount = to_decimal(transaction.amount)
        remainder = await self.invoice_remainder(invoice)
        if remainder > 0:
            amount = min(amount, remainder)

        reconciliation = BankReconciliationDB(
            company_id=company_id,
            transaction_id=transaction_id,
            counterpart_kind=CounterpartKind.INVOICE,
            invoice_id=invoice_id,
            payment_id=payment_id,
            amount=amount,
            confidence_score=confidence_score,
            notes=notes,
            status=ReconciliationStatus.PENDING,
        )
        return await self.lifecycle.persist_new_reconciliation(reconciliation, actor)

    async def validate(self, company_id: str, reconciliation_id: str, actor: str = "system") -> BankReconciliationDB:
        return await self.lifecycle.validate(company_id, reconciliation_id, actor=actor)

    async def reject(
        self,
        company_id: str,
        reconciliation_id: str,
        reason: Optional[str] = None,
        actor: str = "system"
    ) -> BankReconciliationDB:
        return await self.lifecycle.reject(company_id, reconciliation_id, reason=reason, actor=actor)

    async def list_pending_invoice_reconciliations(self, company_id: str) -> List[BankReconciliationDB]:
        """PENDING invoice reconciliations awaiting review, newest first."""
        return await self.lifecycle.list_reconciliations(
            company_id,
            status=ReconciliationStatus.PENDING,
            counterpart_kind=CounterpartKind.INVOICE
        )

    async def invoice_remainder(self, invoice: InvoiceDB) -> Decimal:
        validated = await self._validated_amounts([invoice.id])
        return self._remainder(invoice, validated.get(invoice.id, Decimal("0")))

    # ==================== Private Methods ====================

    def _remainder(self, invoice: InvoiceDB, validated: Decimal) -> Decimal:
        paid = sum((to_decimal(p.amount) for p in invoice.payments), Decimal("0"))
        return to_decimal(invoice.total_amount) - paid - validated

    async def _get_invoice(self, company_id: str, invoice_id: str) -> Optional[InvoiceDB]:
        result = await self.db.execute(
            select(InvoiceDB).where(InvoiceDB.id == invoice_id, InvoiceDB.company_id == company_id)
        )
        return result.scalar_one_or_none()

    async def _get_open_credits(self, company_id: str, bank_account_id: Optional[str]) -> List[BankTransactionDB]:
        has_active_invoice_link = exists().where(
            BankReconciliationDB.transaction_id == BankTransactionDB.id,
            BankReconciliationDB.counterpart_kind == CounterpartKind.INVOICE,
            BankReconciliationDB.status.in_(ACTIVE_STATUSES)
        )
        query = (
            select(BankTransactionDB)
            .join(BankAccountDB, BankTransactionDB.bank_account_id == BankAccountDB.id)
            .where(
                BankAccountDB.company_id == company_id,
                BankTransactionDB.direction == TransactionDirection.CREDIT,
                ~has_active_invoice_link
            )
        )
        if bank_account_id:
            query = query.where(BankTransactionDB.bank_account_id == bank_account_id)
        query = query.order_by(BankTransactionDB.date.desc(), BankTransactionDB.id)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _get_open_invoices(self, company_id: str) -> List[Tuple[InvoiceDB, Decimal]]:
        result = await self.db.execute(
            select(InvoiceDB)
            .where(
                InvoiceDB.company_id == company_id,
                InvoiceDB.status.in_(OPEN_INVOICE_STATUSES)
            )
            .order_by(InvoiceDB.issue_date.desc(), InvoiceDB.id)
        )
        invoices = list(result.scalars().all())

        validated = await self._validated_amounts([i.id for i in invoices])
        open_invoices = []
        for invoice in invoices:
            remainder = self._remainder(invoice, validated.get(invoice.id, Decimal("0")))
            if remainder > 0:
                open_invoices.append((invoice, remainder))
        return open_invoices

    async def _validated_amounts(self, invoice_ids: List[str]) -> Dict[str, Decimal]:
        if not invoice_ids:
            return {}
        result = await self.db.execute(
            select(BankReconciliationDB.invoice_id, BankReconciliationDB.amount).where(
                BankReconciliationDB.invoice_id.in_(invoice_ids),
                BankReconciliationDB.counterpart_kind == CounterpartKind.INVOICE,
                BankReconciliationDB.status == ReconciliationStatus.VALIDATED
            )
        )
        totals: Dict[str, Decimal] = {}
        for invoice_id, amount in result.all():
            totals[invoice_id] = totals.get(invoice_id, Decimal("0")) + to_decimal(amount)
        return totals

    async def _get_active_pairs(self, company_id: str) -> Set[Tuple[str, str]]:
        result = await self.db.execute(
            select(BankReconciliationDB.transaction_id, BankReconciliationDB.invoice_id).where(
                BankReconciliationDB.company_id == company_id,
                BankReconciliationDB.counterpart_kind == CounterpartKind.INVOICE,
                BankReconciliationDB.status.in_(ACTIVE_STATUSES)
            )
        )
        return {(str(tx_id), str(inv_id)) for tx_id, inv_id in result.all()}
