"""
Reconciliation Service

Lifecycle of bank reconciliations:
- Finding accounting entry candidates for a transaction
- Creating PENDING reconciliations (accounting entry or ledger account)
- Validating / rejecting them
- Querying and statistics

State machine: PENDING -> VALIDATED | REJECTED, both terminal.

At most one PENDING/VALIDATED reconciliation may exist per (transaction,
counterpart kind). The database enforces this with a partial unique index,
so two concurrent creates yield one row and one ConflictError.
"""

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Any, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import (
    AccountingEntryDB, BankReconciliationDB, BankTransactionDB, InvoiceDB, LedgerAccountDB,
    CounterpartKind, InvoiceStatus, ReconciliationStatus, generate_uuid, utc_now
)
from reconciliation.errors import ConflictError, NotFoundError
from reconciliation.matching_rules.entry_rules import EntryMatchingRules, MatchResult, entry_rules, to_decimal
from reconciliation.services.audit import ReconciliationAuditEvent, log_reconciliation_event, record_audit_event
from reconciliation.services.queries import (
    require_transaction, require_control_account, get_control_entries, has_active_reconciliation
)

logger = logging.getLogger(__name__)


class ReconciliationService:
    """
    Service for reconciling bank transactions.

    Every create / validate / reject is a single unit of work: the state
    change, its side effects and the audit row are committed together.
    """

    def __init__(self, db: AsyncSession, rules: EntryMatchingRules = entry_rules):
        self.db = db
        self.rules = rules

    async def find_candidates(self, company_id: str, transaction_id: str) -> MatchResult:
        """
        Find accounting entry candidates for a single transaction.

        Searches entries touching the control account within the candidate
        window that are not already held by an active reconciliation.

        Raises:
            NotFoundError: unknown transaction
            ConfigurationMissingError: control account not provisioned
        """
        transaction = await require_transaction(self.db, company_id, transaction_id)
        control = await require_control_account(self.db, company_id)

        window = timedelta(
            days=self.rules.registry.get_config(CounterpartKind.ACCOUNTING).candidate_window_days
        )
        entries = await get_control_entries(
            self.db,
            company_id,
            control.id,
            date_from=transaction.date - window,
            date_to=transaction.date + window,
            exclude_reconciled=True
        )

        result = self.rules.find_matches(transaction, entries)

        log_reconciliation_event(
            ReconciliationAuditEvent.CANDIDATES_FOUND,
            company_id,
            {
                "transaction_id": transaction_id,
                "candidates_count": len(result.candidates),
                "auto_matched": result.auto_matched,
                "suggested_match": result.suggested_match
            }
        )

        return result

    async def create_reconciliation(
        self,
        company_id: str,
        transaction_id: str,
        entry_id: Optional[str] = None,
        ledger_account_id: Optional[str] = None,
        confidence_score: Optional[int] = None,
        notes: Optional[str] = None,
        actor: str = "system"
    ) -> BankReconciliationDB:
        """
        Propose an accounting reconciliation (PENDING).

        The counterpart is either an accounting entry or a ledger account.
        The matched amount is always the transaction amount. The transaction
        is not flagged as reconciled until validation.

        Raises:
            NotFoundError: transaction, entry or ledger account unknown
            ConflictError: an active accounting reconciliation already exists
        """
        if bool(entry_id) == bool(ledger_account_id):
            raise ValueError("Exactly one of entry_id or ledger_account_id is required")

        transaction = await require_transaction(self.db, company_id, transaction_id)

        amount = to_decimal(transaction.amount)
        if entry_id:
            entry = await self._get_scoped(AccountingEntryDB, company_id, entry_id)
            if not entry:
                raise NotFoundError(f"Accounting entry {entry_id} not found", resource_id=entry_id)
        else:
            account = await self._get_scoped(LedgerAccountDB, company_id, ledger_account_id)
            if not account:
                raise NotFoundError(f"Ledger account {ledger_account_id} not found", resource_id=ledger_account_id)

        reconciliation = BankReconciliationDB(
            company_id=company_id,
            transaction_id=transaction_id,
            counterpart_kind=CounterpartKind.ACCOUNTING,
            entry_id=entry_id,
            ledger_account_id=ledger_account_id,
            amount=amount,
            confidence_score=confidence_score,
            notes=notes,
            status=ReconciliationStatus.PENDING,
        )
        return await self.persist_new_reconciliation(reconciliation, actor)

    async def persist_new_reconciliation(
        self,
        reconciliation: BankReconciliationDB,
        actor: str = "system"
    ) -> BankReconciliationDB:
        """
        Insert a PENDING reconciliation with its audit row.

        Raises:
            ConflictError: an active reconciliation exists for the same
                (transaction, counterpart kind), including one committed by a
                concurrent caller after our check
        """
        kind = reconciliation.counterpart_kind
        transaction_id = reconciliation.transaction_id
        if await has_active_reconciliation(self.db, transaction_id, kind):
            raise self._active_conflict(transaction_id, kind)

        if not reconciliation.id:
            reconciliation.id = generate_uuid()
        self.db.add(reconciliation)

        record_audit_event(
            self.db,
            ReconciliationAuditEvent.RECONCILIATION_CREATED,
            reconciliation.company_id,
            {
                "transaction_id": transaction_id,
                "counterpart_kind": kind,
                "entry_id": reconciliation.entry_id,
                "ledger_account_id": reconciliation.ledger_account_id,
                "invoice_id": reconciliation.invoice_id,
                "payment_id": reconciliation.payment_id,
                "amount": reconciliation.amount,
                "confidence_score": reconciliation.confidence_score
            },
            reconciliation_id=reconciliation.id,
            actor=actor
        )

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise self._active_conflict(transaction_id, kind)

        await self.db.refresh(reconciliation)
        return reconciliation

    async def validate(
        self,
        company_id: str,
        reconciliation_id: str,
        actor: str = "system"
    ) -> BankReconciliationDB:
        """
        Validate a PENDING reconciliation.

        In one commit: status becomes VALIDATED, the transaction is flagged
        as reconciled and, for an invoice reconciliation, the invoice is
        promoted to PAID once payments plus validated reconciliations cover
        its total.

        Raises:
            NotFoundError: unknown reconciliation
            ConflictError: the reconciliation is not PENDING
        """
        reconciliation = await self.get_reconciliation(company_id, reconciliation_id)

        try:
            await self._transition(reconciliation, ReconciliationStatus.VALIDATED)

            await self.db.execute(
                update(BankTransactionDB)
                .where(BankTransactionDB.id == reconciliation.transaction_id)
                .values(reconciled=True, updated_at=utc_now())
            )

            invoice_paid = False
            if reconciliation.counterpart_kind == CounterpartKind.INVOICE:
                invoice_paid = await self._promote_invoice_if_settled(company_id, reconciliation.invoice_id, actor)

            record_audit_event(
                self.db,
                ReconciliationAuditEvent.RECONCILIATION_VALIDATED,
                company_id,
                {
                    "transaction_id": reconciliation.transaction_id,
                    "counterpart_kind": reconciliation.counterpart_kind,
                    "invoice_paid": invoice_paid
                },
                reconciliation_id=reconciliation_id,
                actor=actor
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(reconciliation)
        await self.db.refresh(reconciliation.transaction)
        return reconciliation

    async def reject(
        self,
        company_id: str,
        reconciliation_id: str,
        reason: Optional[str] = None,
        actor: str = "system"
    ) -> BankReconciliationDB:
        """
        Reject a PENDING reconciliation. The transaction flag is left untouched.

        Raises:
            NotFoundError: unknown reconciliation
            ConflictError: the reconciliation is not PENDING
        """
        reconciliation = await self.get_reconciliation(company_id, reconciliation_id)

        notes = reconciliation.notes
        if reason:
            notes = f"{notes}\nRejected: {reason}" if notes else f"Rejected: {reason}"

        try:
            await self._transition(reconciliation, ReconciliationStatus.REJECTED, notes=notes)

            record_audit_event(
                self.db,
                ReconciliationAuditEvent.RECONCILIATION_REJECTED,
                company_id,
                {
                    "transaction_id": reconciliation.transaction_id,
                    "counterpart_kind": reconciliation.counterpart_kind,
                    "reason": reason
                },
                reconciliation_id=reconciliation_id,
                actor=actor
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(reconciliation)
        return reconciliation

    async def get_reconciliation(self, company_id: str, reconciliation_id: str) -> BankReconciliationDB:
        result = await self.db.execute(
            select(BankReconciliationDB).where(
                BankReconciliationDB.id == reconciliation_id,
                BankReconciliationDB.company_id == company_id
            )
        )
        reconciliation = result.scalar_one_or_none()
        if not reconciliation:
            raise NotFoundError(f"Reconciliation {reconciliation_id} not found", resource_id=reconciliation_id)
        return reconciliation

    async def list_reconciliations(
        self,
        company_id: str,
        status: Optional[ReconciliationStatus] = None,
        bank_account_id: Optional[str] = None,
        counterpart_kind: Optional[CounterpartKind] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[BankReconciliationDB]:
        """Reconciliations of a company, newest first. Dates filter on the transaction date."""
        query = (
            select(BankReconciliationDB)
            .join(BankTransactionDB, BankReconciliationDB.transaction_id == BankTransactionDB.id)
            .where(BankReconciliationDB.company_id == company_id)
        )
        if status:
            query = query.where(BankReconciliationDB.status == status)
        if counterpart_kind:
            query = query.where(BankReconciliationDB.counterpart_kind == counterpart_kind)
        if bank_account_id:
            query = query.where(BankTransactionDB.bank_account_id == bank_account_id)
        if date_from:
            query = query.where(BankTransactionDB.date >= date_from)
        if date_to:
            query = query.where(BankTransactionDB.date <= date_to)

        query = query.order_by(
            BankReconciliationDB.created_at.desc(), BankReconciliationDB.id
        ).limit(limit).offset(offset)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_reconciliation_stats(self, company_id: str) -> Dict[str, Any]:
        """Get reconciliation statistics for a company."""
        result = await self.db.execute(
            select(
                BankReconciliationDB.counterpart_kind,
                BankReconciliationDB.status,
                func.count(BankReconciliationDB.id)
            )
            .where(BankReconciliationDB.company_id == company_id)
            .group_by(BankReconciliationDB.counterpart_kind, BankReconciliationDB.status)
        )

        by_status = {status.value: 0 for status in ReconciliationStatus}
        by_kind = {kind.value: 0 for kind in CounterpartKind}
        for kind, status, count in result.all():
            by_status[status.value] += count
            by_kind[kind.value] += count

        total = sum(by_status.values())
        decided = by_status["VALIDATED"] + by_status["REJECTED"]

        return {
            "company_id": company_id,
            "total_reconciliations": total,
            "by_status": by_status,
            "by_counterpart_kind": by_kind,
            "validation_rate": round(by_status["VALIDATED"] / decided * 100, 2) if decided > 0 else 0
        }

    # ==================== Private Methods ====================

    async def _get_scoped(self, model, company_id: str, object_id: str):
        result = await self.db.execute(
            select(model).where(model.id == object_id, model.company_id == company_id)
        )
        return result.scalar_one_or_none()

    async def _transition(
        self,
        reconciliation: BankReconciliationDB,
        target: ReconciliationStatus,
        notes: Optional[str] = None
    ):
        """Compare-and-set PENDING -> target; a concurrent transition makes this a conflict."""
        if reconciliation.status != ReconciliationStatus.PENDING:
            raise ConflictError(
                f"Reconciliation {reconciliation.id} is already {reconciliation.status.value}",
                resource_id=reconciliation.id
            )

        values = {"status": target, "updated_at": utc_now()}
        if notes is not None:
            values["notes"] = notes

        result = await self.db.execute(
            update(BankReconciliationDB)
            .where(
                BankReconciliationDB.id == reconciliation.id,
                BankReconciliationDB.status == ReconciliationStatus.PENDING
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Reconciliation {reconciliation.id} is no longer PENDING",
                resource_id=reconciliation.id
            )

    async def _promote_invoice_if_settled(self, company_id: str, invoice_id: str, actor: str) -> bool:
        invoice = await self._get_scoped(InvoiceDB, company_id, invoice_id)
        if not invoice or invoice.status != InvoiceStatus.SENT:
            return False

        paid = sum((to_decimal(p.amount) for p in invoice.payments), Decimal("0"))
        reconciled = await self._validated_invoice_amount(invoice_id)
        if paid + reconciled < to_decimal(invoice.total_amount):
            return False

        await self.db.execute(
            update(InvoiceDB)
            .where(InvoiceDB.id == invoice_id)
            .values(status=InvoiceStatus.PAID)
        )
        record_audit_event(
            self.db,
            ReconciliationAuditEvent.INVOICE_PAID,
            company_id,
            {
                "invoice_id": invoice_id,
                "total_amount": invoice.total_amount,
                "payments": paid,
                "reconciled": reconciled
            },
            actor=actor
        )
        return True

    async def _validated_invoice_amount(self, invoice_id: str) -> Decimal:
        result = await self.db.execute(
            select(BankReconciliationDB.amount).where(
                BankReconciliationDB.invoice_id == invoice_id,
                BankReconciliationDB.counterpart_kind == CounterpartKind.INVOICE,
                BankReconciliationDB.status == ReconciliationStatus.VALIDATED
            )
        )
        return sum((to_decimal(amount) for amount in result.scalars().all()), Decimal("0"))

    def _active_conflict(self, transaction_id: str, kind: CounterpartKind) -> ConflictError:
        return ConflictError(
            f"Transaction {transaction_id} already has an active {kind.value.lower()} reconciliation",
            resource_id=transaction_id
        )
