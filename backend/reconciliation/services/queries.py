"""
Shared ledger lookups for the reconciliation services.

Every lookup is scoped to a company: an id that exists but belongs to
another company resolves to None, exactly like an unknown id.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, or_, exists, and_
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.reconciliation_models import (
    BankAccountDB, BankTransactionDB, LedgerAccountDB, AccountingEntryDB,
    BankReconciliationDB, CounterpartKind, ACTIVE_STATUSES
)
from reconciliation.errors import NotFoundError, ConfigurationMissingError


async def get_bank_account(db: AsyncSession, company_id: str, bank_account_id: str) -> Optional[BankAccountDB]:
    result = await db.execute(
        select(BankAccountDB).where(
            BankAccountDB.id == bank_account_id,
            BankAccountDB.company_id == company_id
        )
    )
    return result.scalar_one_or_none()


async def require_bank_account(db: AsyncSession, company_id: str, bank_account_id: str) -> BankAccountDB:
    account = await get_bank_account(db, company_id, bank_account_id)
    if not account:
        raise NotFoundError(f"Bank account {bank_account_id} not found", resource_id=bank_account_id)
    return account


async def get_transaction(db: AsyncSession, company_id: str, transaction_id: str) -> Optional[BankTransactionDB]:
    result = await db.execute(
        select(BankTransactionDB)
        .join(BankAccountDB, BankTransactionDB.bank_account_id == BankAccountDB.id)
        .where(
            BankTransactionDB.id == transaction_id,
            BankAccountDB.company_id == company_id
        )
    )
    return result.scalar_one_or_none()


async def require_transaction(db: AsyncSession, company_id: str, transaction_id: str) -> BankTransactionDB:
    transaction = await get_transaction(db, company_id, transaction_id)
    if not transaction:
        raise NotFoundError(f"Bank transaction {transaction_id} not found", resource_id=transaction_id)
    return transaction


async def get_ledger_account_by_code(db: AsyncSession, company_id: str, code: str) -> Optional[LedgerAccountDB]:
    result = await db.execute(
        select(LedgerAccountDB).where(
            LedgerAccountDB.company_id == company_id,
            LedgerAccountDB.code == code
        )
    )
    return result.scalar_one_or_none()


async def require_control_account(db: AsyncSession, company_id: str) -> LedgerAccountDB:
    """The bank control account (512 by default); its absence is a configuration error, not a zero balance."""
    code = get_settings().BANK_CONTROL_ACCOUNT_CODE
    account = await get_ledger_account_by_code(db, company_id, code)
    if not account:
        raise ConfigurationMissingError(
            f"Bank control account {code} is not provisioned for company {company_id}",
            resource_id=company_id
        )
    return account


def entry_has_active_reconciliation():
    """Correlated EXISTS: the entry is already held by a PENDING/VALIDATED reconciliation."""
    return exists().where(
        BankReconciliationDB.entry_id == AccountingEntryDB.id,
        BankReconciliationDB.status.in_(ACTIVE_STATUSES)
    )


async def get_control_entries(
    db: AsyncSession,
    company_id: str,
    control_account_id: str,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    amount: Optional[Decimal] = None,
    exclude_reconciled: bool = False,
    newest_first: bool = False,
    limit: Optional[int] = None
) -> List[AccountingEntryDB]:
    """Entries with the control account on either side."""
    conditions = [
        AccountingEntryDB.company_id == company_id,
        or_(
            AccountingEntryDB.debit_account_id == control_account_id,
            AccountingEntryDB.credit_account_id == control_account_id
        )
    ]
    if date_from:
        conditions.append(AccountingEntryDB.date >= date_from)
    if date_to:
        conditions.append(AccountingEntryDB.date <= date_to)
    if amount is not None:
        conditions.append(AccountingEntryDB.amount == amount)
    if exclude_reconciled:
        conditions.append(~entry_has_active_reconciliation())

    query = select(AccountingEntryDB).where(and_(*conditions))
    if newest_first:
        query = query.order_by(AccountingEntryDB.date.desc(), AccountingEntryDB.id)
    else:
        query = query.order_by(AccountingEntryDB.date, AccountingEntryDB.id)
    if limit:
        query = query.limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())


async def has_active_reconciliation(
    db: AsyncSession,
    transaction_id: str,
    kind: CounterpartKind
) -> bool:
    result = await db.execute(
        select(BankReconciliationDB.id).where(
            BankReconciliationDB.transaction_id == transaction_id,
            BankReconciliationDB.counterpart_kind == kind,
            BankReconciliationDB.status.in_(ACTIVE_STATUSES)
        ).limit(1)
    )
    return result.first() is not None
