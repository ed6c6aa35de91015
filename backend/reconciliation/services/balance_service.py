"""
Balance Service

Bank-side and accounting-side balances of a bank account as of a date.

- bank balance: opening balance + credits - debits
- accounting balance: entries debiting the control account minus entries
  crediting it

Both are straight replays over immutable rows, so computing them twice over
the same data gives the same Decimal.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import BankAccountDB, BankTransactionDB, TransactionDirection
from reconciliation.matching_rules.entry_rules import to_decimal
from reconciliation.services.queries import (
    get_bank_account, require_control_account, get_control_entries
)

logger = logging.getLogger(__name__)


def replay_bank_balance(opening_balance: Any, transactions: Iterable[Any]) -> Decimal:
    """Opening balance plus every CREDIT minus every DEBIT."""
    balance = to_decimal(opening_balance)
    for transaction in transactions:
        amount = to_decimal(transaction.amount)
        if transaction.direction == TransactionDirection.CREDIT:
            balance += amount
        else:
            balance -= amount
    return balance


def replay_accounting_balance(control_account_id: str, entries: Iterable[Any]) -> Decimal:
    """Debits minus credits on the control account."""
    balance = Decimal("0")
    for entry in entries:
        amount = to_decimal(entry.amount)
        if entry.debit_account_id == control_account_id:
            balance += amount
        if entry.credit_account_id == control_account_id:
            balance -= amount
    return balance


@dataclass
class BankIndicators:
    """Dashboard figures for one bank account."""
    bank_account_id: str
    as_of: date
    bank_balance: Decimal
    accounting_balance: Decimal
    gap: Decimal
    reconciled_count: int
    unreconciled_count: int
    monthly_receipts: Decimal
    monthly_expenses: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bank_account_id": self.bank_account_id,
            "as_of": self.as_of.isoformat(),
            "bank_balance": str(self.bank_balance),
            "accounting_balance": str(self.accounting_balance),
            "gap": str(self.gap),
            "reconciled_count": self.reconciled_count,
            "unreconciled_count": self.unreconciled_count,
            "monthly_receipts": str(self.monthly_receipts),
            "monthly_expenses": str(self.monthly_expenses),
        }


class BalanceService:
    """Balance queries for bank accounts."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def bank_balance(self, bank_account_id: str, as_of: Optional[date] = None) -> Decimal:
        """
        Bank-side balance as of a date (inclusive).

        An unknown bank account has a balance of 0.
        """
        as_of = as_of or date.today()

        account = await self.db.get(BankAccountDB, bank_account_id)
        if not account:
            return Decimal("0")

        transactions = await self._get_transactions(bank_account_id, as_of)
        return replay_bank_balance(account.opening_balance, transactions)

    async def accounting_balance(
        self,
        company_id: str,
        bank_account_id: str,
        as_of: Optional[date] = None
    ) -> Decimal:
        """
        Accounting-side balance as of a date (inclusive).

        Raises:
            ConfigurationMissingError: the control account is not provisioned
        """
        as_of = as_of or date.today()

        account = await get_bank_account(self.db, company_id, bank_account_id)
        if not account:
            return Decimal("0")

        control = await require_control_account(self.db, company_id)
        entries = await get_control_entries(self.db, company_id, control.id, date_to=as_of)
        return replay_accounting_balance(control.id, entries)

    async def get_indicators(
        self,
        company_id: str,
        bank_account_id: str,
        as_of: Optional[date] = None
    ) -> BankIndicators:
        """Balances, gap, reconciliation counts and the last month's cash flow."""
        as_of = as_of or date.today()

        bank = Decimal("0")
        transactions = []
        account = await get_bank_account(self.db, company_id, bank_account_id)
        if account:
            transactions = await self._get_transactions(bank_account_id, as_of)
            bank = replay_bank_balance(account.opening_balance, transactions)

        accounting = await self.accounting_balance(company_id, bank_account_id, as_of)

        month_start = as_of - relativedelta(months=1)
        receipts = Decimal("0")
        expenses = Decimal("0")
        reconciled = 0
        for transaction in transactions:
            if transaction.reconciled:
                reconciled += 1
            if transaction.date < month_start:
                continue
            if transaction.direction == TransactionDirection.CREDIT:
                receipts += to_decimal(transaction.amount)
            else:
                expenses += to_decimal(transaction.amount)

        return BankIndicators(
            bank_account_id=bank_account_id,
            as_of=as_of,
            bank_balance=bank,
            accounting_balance=accounting,
            gap=accounting - bank,
            reconciled_count=reconciled,
            unreconciled_count=len(transactions) - reconciled,
            monthly_receipts=receipts,
            monthly_expenses=expenses,
        )

    # ==================== Private Methods ====================

    async def _get_transactions(self, bank_account_id: str, as_of: date):
        result = await self.db.execute(
            select(BankTransactionDB)
            .where(
                BankTransactionDB.bank_account_id == bank_account_id,
                BankTransactionDB.date <= as_of
            )
            .order_by(BankTransactionDB.date, BankTransactionDB.id)
        )
        return list(result.scalars().all())
