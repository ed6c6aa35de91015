"""
Auto Reconciliation Service

Batch driver: runs automatic lettrage over every unreconciled transaction of
one bank account, sequentially. Transactions awaiting review are skipped
before the batch limit is applied; transactions beyond the limit are counted
in the report as `remaining`.

Partial-failure semantics: an error on one transaction is rolled back,
logged, reported to Sentry and recorded in the run report as
"Transaction <id>: <message>"; the run continues with the next transaction.
The only run-level failures are an unknown bank account and a missing
control account, both raised before anything is processed.
"""

import uuid
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select, exists, func
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.reconciliation_models import (
    BankReconciliationDB, BankTransactionDB, CounterpartKind, ReconciliationStatus
)
from logging_config import set_reconciliation_context, clear_reconciliation_context
from reconciliation.services.audit import ReconciliationAuditEvent, log_reconciliation_event, record_audit_event
from reconciliation.services.lettrage_service import LettrageService
from reconciliation.services.queries import require_bank_account, require_control_account
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.source_registry import LettrageStrategy
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)


@dataclass
class AutoReconciliationReport:
    """Result of an auto-reconciliation run."""
    run_id: str
    company_id: str
    bank_account_id: str
    total_transactions: int = 0
    reconciled: int = 0
    skipped: int = 0
    unmatched: int = 0
    remaining: int = 0
    by_strategy: Dict[str, int] = field(
        default_factory=lambda: {strategy.value: 0 for strategy in LettrageStrategy}
    )
    reconciliation_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "company_id": self.company_id,
            "bank_account_id": self.bank_account_id,
            "total_transactions": self.total_transactions,
            "reconciled": self.reconciled,
            "skipped": self.skipped,
            "unmatched": self.unmatched,
            "remaining": self.remaining,
            "by_strategy": self.by_strategy,
            "reconciliation_ids": self.reconciliation_ids,
            "errors": self.errors
        }


class AutoReconciliationService:
    """
    Service running automatic lettrage over a bank account.
    """

    def __init__(self, db: AsyncSession, lettrage_service: Optional[LettrageService] = None):
        self.db = db
        self.lettrage = lettrage_service or LettrageService(db, ReconciliationService(db))

    async def run_auto_reconciliation(
        self,
        company_id: str,
        bank_account_id: str,
        transaction_ids: Optional[List[str]] = None,
        actor: str = "system"
    ) -> AutoReconciliationReport:
        """
        Run automatic lettrage over a bank account.

        Args:
            company_id: Company scope
            bank_account_id: Account whose unreconciled transactions are processed
            transaction_ids: Optional subset of transactions to process
            actor: Recorded in the audit log

        Returns:
            AutoReconciliationReport with counts and per-transaction errors

        Raises:
            NotFoundError: unknown bank account
            ConfigurationMissingError: control account not provisioned
        """
        report = AutoReconciliationReport(
            run_id=str(uuid.uuid4()),
            company_id=company_id,
            bank_account_id=bank_account_id
        )

        await require_bank_account(self.db, company_id, bank_account_id)
        await require_control_account(self.db, company_id)

        set_reconciliation_context(company_id, bank_account_id, report.run_id)
        try:
            log_reconciliation_event(
                ReconciliationAuditEvent.RUN_STARTED,
                company_id,
                {"run_id": report.run_id, "bank_account_id": bank_account_id},
                actor=actor
            )

            # Plain ids: a rollback after a failed item expires every loaded object
            pending_ids = await self._get_unreconciled_ids(bank_account_id, transaction_ids)
            report.skipped = await self._count_unreconciled(bank_account_id, transaction_ids, awaiting_review=True)
            eligible = await self._count_unreconciled(bank_account_id, transaction_ids, awaiting_review=False)
            report.remaining = eligible - len(pending_ids)
            report.total_transactions = len(pending_ids) + report.skipped
            if report.remaining:
                logger.warning(
                    f"Batch limit reached: {report.remaining} transactions left for the next run"
                )

            for transaction_id in pending_ids:
                try:
                    result = await self.lettrage.reconcile_transaction(company_id, transaction_id)
                except Exception as e:
                    await self.db.rollback()
                    message = getattr(e, "message", None) or str(e)
                    report.errors.append(f"Transaction {transaction_id}: {message}")
                    logger.warning(f"Auto-reconciliation failed for transaction {transaction_id}: {message}")
                    capture_exception(
                        e,
                        company_id=company_id,
                        bank_account_id=bank_account_id,
                        run_id=report.run_id,
                        transaction_id=transaction_id
                    )
                    continue

                if result:
                    report.reconciled += 1
                    report.by_strategy[result.strategy.value] += 1
                    report.reconciliation_ids.append(result.reconciliation.id)
                else:
                    report.unmatched += 1

            record_audit_event(
                self.db,
                ReconciliationAuditEvent.RUN_COMPLETED,
                company_id,
                {
                    "run_id": report.run_id,
                    "bank_account_id": bank_account_id,
                    "total": report.total_transactions,
                    "reconciled": report.reconciled,
                    "skipped": report.skipped,
                    "unmatched": report.unmatched,
                    "remaining": report.remaining,
                    "errors": len(report.errors)
                },
                actor=actor
            )
            try:
                await self.db.commit()
            except Exception as e:
                logger.error(f"Failed to commit auto-reconciliation run: {e}")
                await self.db.rollback()
                raise
        finally:
            clear_reconciliation_context()

        logger.info(
            f"Auto-reconciliation run {report.run_id}: {report.reconciled}/{report.total_transactions} "
            f"reconciled, {report.skipped} skipped, {len(report.errors)} errors"
        )
        return report

    # ==================== Private Methods ====================

    def _unreconciled_conditions(
        self,
        bank_account_id: str,
        transaction_ids: Optional[List[str]],
        awaiting_review: bool
    ) -> list:
        """Unreconciled transactions of the account, with or without a PENDING accounting reconciliation."""
        pending_review = exists().where(
            BankReconciliationDB.transaction_id == BankTransactionDB.id,
            BankReconciliationDB.counterpart_kind == CounterpartKind.ACCOUNTING,
            BankReconciliationDB.status == ReconciliationStatus.PENDING
        )
        conditions = [
            BankTransactionDB.bank_account_id == bank_account_id,
            BankTransactionDB.reconciled.is_(False),
            pending_review if awaiting_review else ~pending_review
        ]
        if transaction_ids:
            conditions.append(BankTransactionDB.id.in_(transaction_ids))
        return conditions

    async def _get_unreconciled_ids(
        self,
        bank_account_id: str,
        transaction_ids: Optional[List[str]] = None
    ) -> List[str]:
        """Oldest first, capped at the batch limit; transactions awaiting review are left out."""
        query = (
            select(BankTransactionDB.id)
            .where(*self._unreconciled_conditions(bank_account_id, transaction_ids, awaiting_review=False))
            .order_by(BankTransactionDB.date, BankTransactionDB.id)
            .limit(get_settings().AUTO_RECONCILIATION_BATCH_LIMIT)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _count_unreconciled(
        self,
        bank_account_id: str,
        transaction_ids: Optional[List[str]],
        awaiting_review: bool
    ) -> int:
        result = await self.db.execute(
            select(func.count(BankTransactionDB.id)).where(
                *self._unreconciled_conditions(bank_account_id, transaction_ids, awaiting_review)
            )
        )
        return result.scalar_one()
