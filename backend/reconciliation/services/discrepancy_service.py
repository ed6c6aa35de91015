"""
Discrepancy Service

Explains a gap between the accounting and bank balances of an account.

Detection runs only when |accounting - bank| exceeds the rounding tolerance,
then looks for:
- DUPLICATE: transactions sharing day, amount and label prefix
- MISSING_MOVEMENT: unreconciled transactions with no matching entry on the
  control account in the surrounding window
- MISC_ENTRY: unmatched entries whose counterpart is an exceptional
  charge/income account (67x / 77x)
- OTHER: nothing above applies but the gap remains

Findings may overlap; they are a diagnostic overlay, not a partition of the gap.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.reconciliation_models import (
    BankTransactionDB, DiscrepancyDB, DiscrepancyType, LedgerAccountDB, TransactionDirection, utc_now
)
from reconciliation.errors import NotFoundError
from reconciliation.matching_rules.entry_rules import to_decimal
from reconciliation.services.audit import ReconciliationAuditEvent, log_reconciliation_event, record_audit_event
from reconciliation.services.balance_service import BalanceService
from reconciliation.services.queries import (
    get_bank_account, require_control_account, get_control_entries
)

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")


@dataclass
class DiscrepancyFinding:
    """An explanation candidate for a balance gap; not persisted by itself."""
    bank_account_id: str
    date: date
    discrepancy_type: DiscrepancyType
    accounting_balance: Decimal
    bank_balance: Decimal
    gap: Decimal
    description: str
    transaction_ids: List[str] = field(default_factory=list)
    entry_ids: List[str] = field(default_factory=list)

    @property
    def evidence(self) -> Dict[str, List[str]]:
        return {"transaction_ids": self.transaction_ids, "entry_ids": self.entry_ids}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bank_account_id": self.bank_account_id,
            "date": self.date.isoformat(),
            "type": self.discrepancy_type.value,
            "accounting_balance": str(self.accounting_balance),
            "bank_balance": str(self.bank_balance),
            "gap": str(self.gap),
            "description": self.description,
            "evidence": self.evidence,
        }


# ==================== Detectors ====================

def find_duplicates(
    bank_account_id: str,
    transactions: Iterable[Any],
    label_length: int = 50
) -> List[DiscrepancyFinding]:
    """Group by (day, exact amount, label prefix); every group of two or more is a duplicate."""
    groups: "OrderedDict[tuple, List[Any]]" = OrderedDict()
    for transaction in transactions:
        key = (transaction.date, to_decimal(transaction.amount), (transaction.label or "")[:label_length])
        groups.setdefault(key, []).append(transaction)

    findings = []
    for (day, amount, label), members in groups.items():
        if len(members) < 2:
            continue
        combined = sum((to_decimal(t.amount) for t in members), Decimal("0"))
        findings.append(DiscrepancyFinding(
            bank_account_id=bank_account_id,
            date=day,
            discrepancy_type=DiscrepancyType.DUPLICATE,
            accounting_balance=Decimal("0"),
            bank_balance=combined,
            gap=combined,
            description=f"{len(members)} identical transactions detected ({label})",
            transaction_ids=[str(t.id) for t in members],
        ))
    return findings


def find_missing_movements(
    bank_account_id: str,
    transactions: Iterable[Any],
    entries: List[Any],
    window_days: int = 7
) -> List[DiscrepancyFinding]:
    """Unreconciled transactions with no same-amount entry within the window."""
    window = timedelta(days=window_days)
    findings = []

    for transaction in transactions:
        if transaction.reconciled:
            continue
        amount = to_decimal(transaction.amount)
        has_entry = any(
            abs(entry.date - transaction.date) <= window
            and abs(to_decimal(entry.amount) - amount) <= AMOUNT_TOLERANCE
            for entry in entries
        )
        if has_entry:
            continue

        signed = amount if transaction.direction == TransactionDirection.CREDIT else -amount
        findings.append(DiscrepancyFinding(
            bank_account_id=bank_account_id,
            date=transaction.date,
            discrepancy_type=DiscrepancyType.MISSING_MOVEMENT,
            accounting_balance=Decimal("0"),
            bank_balance=signed,
            gap=-signed,
            description=f"Bank movement without accounting entry: {transaction.label}",
            transaction_ids=[str(transaction.id)],
        ))
    return findings


def find_misc_entries(
    bank_account_id: str,
    control_account_id: str,
    entries: Iterable[Any],
    account_codes: Dict[str, str],
    prefixes: List[str]
) -> List[DiscrepancyFinding]:
    """Control-account entries whose counterpart account is an exceptional charge/income."""
    findings = []

    for entry in entries:
        if entry.debit_account_id == control_account_id:
            counterpart_id = entry.credit_account_id
            signed = to_decimal(entry.amount)
        else:
            counterpart_id = entry.debit_account_id
            signed = -to_decimal(entry.amount)

        code = account_codes.get(counterpart_id, "")
        if not any(code.startswith(prefix) for prefix in prefixes):
            continue

        findings.append(DiscrepancyFinding(
            bank_account_id=bank_account_id,
            date=entry.date,
            discrepancy_type=DiscrepancyType.MISC_ENTRY,
            accounting_balance=signed,
            bank_balance=Decimal("0"),
            gap=signed,
            description=f"Miscellaneous entry on account {code}: {entry.label}",
            entry_ids=[str(entry.id)],
        ))
    return findings


class DiscrepancyService:
    """Detects, persists and resolves balance discrepancies."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.settings = get_settings()
        self.balances = BalanceService(db)

    async def detect_discrepancies(
        self,
        company_id: str,
        bank_account_id: str,
        as_of: Optional[date] = None
    ) -> List[DiscrepancyFinding]:
        """
        Explain the gap between accounting and bank balances as of a date.

        Returns:
            [] when the gap is within tolerance, otherwise at least one finding

        Raises:
            ConfigurationMissingError: the control account is not provisioned
        """
        as_of = as_of or date.today()

        account = await get_bank_account(self.db, company_id, bank_account_id)
        if not account:
            return []

        bank = await self.balances.bank_balance(bank_account_id, as_of)
        accounting = await self.balances.accounting_balance(company_id, bank_account_id, as_of)
        gap = accounting - bank

        if abs(gap) <= self.settings.BALANCE_TOLERANCE:
            return []

        control = await require_control_account(self.db, company_id)
        transactions = await self._get_transactions(bank_account_id, as_of)
        open_entries = await get_control_entries(
            self.db, company_id, control.id, date_to=as_of, exclude_reconciled=True
        )

        findings: List[DiscrepancyFinding] = []
        findings.extend(find_duplicates(
            bank_account_id, transactions, self.settings.DUPLICATE_LABEL_LENGTH
        ))
        findings.extend(find_missing_movements(
            bank_account_id, transactions, open_entries, self.settings.MISSING_MOVEMENT_WINDOW_DAYS
        ))
        findings.extend(find_misc_entries(
            bank_account_id, control.id, open_entries,
            await self._get_account_codes(company_id), self.settings.exceptional_account_prefixes
        ))

        if not findings:
            findings.append(DiscrepancyFinding(
                bank_account_id=bank_account_id,
                date=as_of,
                discrepancy_type=DiscrepancyType.OTHER,
                accounting_balance=accounting,
                bank_balance=bank,
                gap=gap,
                description=f"Unexplained gap of {gap} between accounting and bank balances",
            ))

        log_reconciliation_event(
            ReconciliationAuditEvent.DISCREPANCIES_DETECTED,
            company_id,
            {
                "bank_account_id": bank_account_id,
                "as_of": as_of,
                "gap": gap,
                "findings": [f.discrepancy_type.value for f in findings],
            }
        )
        return findings

    async def detect_and_persist(
        self,
        company_id: str,
        bank_account_id: str,
        as_of: Optional[date] = None,
        persist_types: Optional[Iterable[DiscrepancyType]] = None
    ) -> List[DiscrepancyDB]:
        """
        Detect and store findings.

        OTHER is always stored; the remaining types only when listed in
        persist_types. A finding already recorded as an unresolved
        discrepancy (same account, date, type and evidence) is not stored twice.
        """
        findings = await self.detect_discrepancies(company_id, bank_account_id, as_of)

        wanted = set(persist_types or [])
        wanted.add(DiscrepancyType.OTHER)

        stored = []
        for finding in findings:
            if finding.discrepancy_type not in wanted:
                continue
            if await self._already_recorded(company_id, finding):
                continue

            discrepancy = DiscrepancyDB(
                company_id=company_id,
                bank_account_id=finding.bank_account_id,
                date=finding.date,
                accounting_balance=finding.accounting_balance,
                bank_balance=finding.bank_balance,
                gap=finding.gap,
                discrepancy_type=finding.discrepancy_type,
                description=finding.description,
                evidence=finding.evidence,
                resolved=False,
            )
            self.db.add(discrepancy)
            stored.append(discrepancy)

        if not stored:
            return []

        try:
            await self.db.commit()
        except Exception as e:
            logger.error(f"Failed to persist discrepancies: {e}")
            await self.db.rollback()
            raise

        logger.info(f"Stored {len(stored)} discrepancies for bank account {bank_account_id}")
        return stored

    async def resolve_discrepancy(
        self,
        company_id: str,
        discrepancy_id: str,
        actor: str = "system"
    ) -> DiscrepancyDB:
        """Mark a discrepancy as resolved; resolving twice changes nothing."""
        result = await self.db.execute(
            select(DiscrepancyDB).where(
                DiscrepancyDB.id == discrepancy_id,
                DiscrepancyDB.company_id == company_id
            )
        )
        discrepancy = result.scalar_one_or_none()
        if not discrepancy:
            raise NotFoundError(f"Discrepancy {discrepancy_id} not found", resource_id=discrepancy_id)

        if discrepancy.resolved:
            return discrepancy

        discrepancy.resolved = True
        discrepancy.resolved_at = utc_now()
        record_audit_event(
            self.db,
            ReconciliationAuditEvent.DISCREPANCY_RESOLVED,
            company_id,
            {
                "discrepancy_id": discrepancy_id,
                "type": discrepancy.discrepancy_type,
                "gap": discrepancy.gap,
            },
            actor=actor
        )

        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        return discrepancy

    async def list_unresolved(
        self,
        company_id: str,
        bank_account_id: Optional[str] = None
    ) -> List[DiscrepancyDB]:
        query = select(DiscrepancyDB).where(
            DiscrepancyDB.company_id == company_id,
            DiscrepancyDB.resolved.is_(False)
        )
        if bank_account_id:
            query = query.where(DiscrepancyDB.bank_account_id == bank_account_id)
        query = query.order_by(DiscrepancyDB.date.desc(), DiscrepancyDB.created_at.desc())

        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ==================== Private Methods ====================

    async def _get_transactions(self, bank_account_id: str, as_of: date) -> List[BankTransactionDB]:
        result = await self.db.execute(
            select(BankTransactionDB)
            .where(
                BankTransactionDB.bank_account_id == bank_account_id,
                BankTransactionDB.date <= as_of
            )
            .order_by(BankTransactionDB.date, BankTransactionDB.id)
        )
        return list(result.scalars().all())

    async def _get_account_codes(self, company_id: str) -> Dict[str, str]:
        result = await self.db.execute(
            select(LedgerAccountDB.id, LedgerAccountDB.code).where(LedgerAccountDB.company_id == company_id)
        )
        return {account_id: code for account_id, code in result.all()}

    async def _already_recorded(self, company_id: str, finding: DiscrepancyFinding) -> bool:
        result = await self.db.execute(
            select(DiscrepancyDB).where(
                DiscrepancyDB.company_id == company_id,
                DiscrepancyDB.bank_account_id == finding.bank_account_id,
                DiscrepancyDB.date == finding.date,
                DiscrepancyDB.discrepancy_type == finding.discrepancy_type,
                DiscrepancyDB.resolved.is_(False)
            )
        )
        for existing in result.scalars().all():
            if finding.discrepancy_type == DiscrepancyType.OTHER:
                return True
            if (existing.evidence or {}) == finding.evidence:
                return True
        return False
