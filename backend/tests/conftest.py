"""
Shared fixtures: a throw-away SQLite database per test and a small factory
for bank / ledger / invoice rows.
"""

import uuid
from datetime import date
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from database.connection import Base, make_session_factory
from database.reconciliation_models import (
    BankAccountDB, BankTransactionDB, LedgerAccountDB, AccountingEntryDB,
    InvoiceDB, PaymentDB, InvoiceStatus, TransactionDirection
)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed so that concurrent sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bankrec.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def company_id():
    return str(uuid.uuid4())


class LedgerFactory:
    """Inserts test rows and commits after each one."""

    def __init__(self, db, company_id: str):
        self.db = db
        self.company_id = company_id

    async def _save(self, obj):
        self.db.add(obj)
        await self.db.commit()
        return obj

    async def bank_account(self, opening_balance="0", company_id: Optional[str] = None) -> BankAccountDB:
        return await self._save(BankAccountDB(
            company_id=company_id or self.company_id,
            name="Compte courant",
            opening_balance=Decimal(opening_balance),
        ))

    async def ledger_account(self, code: str, label: str = "", company_id: Optional[str] = None) -> LedgerAccountDB:
        return await self._save(LedgerAccountDB(
            company_id=company_id or self.company_id,
            code=code,
            label=label or code,
        ))

    async def control_account(self) -> LedgerAccountDB:
        return await self.ledger_account("512", "Banque")

    async def transaction(
        self,
        account: BankAccountDB,
        amount,
        on: date,
        label: str = "",
        direction: TransactionDirection = TransactionDirection.CREDIT,
        category: Optional[str] = None,
        reconciled: bool = False
    ) -> BankTransactionDB:
        return await self._save(BankTransactionDB(
            bank_account_id=account.id,
            date=on,
            amount=Decimal(str(amount)),
            direction=direction,
            label=label,
            category=category,
            reconciled=reconciled,
        ))

    async def entry(
        self,
        amount,
        on: date,
        debit: LedgerAccountDB,
        credit: LedgerAccountDB,
        label: str = ""
    ) -> AccountingEntryDB:
        return await self._save(AccountingEntryDB(
            company_id=self.company_id,
            date=on,
            amount=Decimal(str(amount)),
            label=label,
            debit_account_id=debit.id,
            credit_account_id=credit.id,
        ))

    async def invoice(
        self,
        number: str,
        total,
        issued: date,
        client_name: str = "",
        status: InvoiceStatus = InvoiceStatus.SENT
    ) -> InvoiceDB:
        return await self._save(InvoiceDB(
            company_id=self.company_id,
            number=number,
            client_name=client_name,
            issue_date=issued,
            total_amount=Decimal(str(total)),
            status=status,
        ))

    async def payment(self, invoice: InvoiceDB, amount, on: date, reference: Optional[str] = None) -> PaymentDB:
        payment = await self._save(PaymentDB(
            invoice_id=invoice.id,
            date=on,
            amount=Decimal(str(amount)),
            reference=reference,
        ))
        await self.db.refresh(invoice, ["payments"])
        return payment


@pytest.fixture
def ledger(db, company_id):
    return LedgerFactory(db, company_id)
