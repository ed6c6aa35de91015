"""
Unit Tests for BalanceService

Tests:
- Pure replay functions
- Bank balance (opening balance, as-of cut-off, unknown account)
- Accounting balance on the control account (missing control account)
- Indicators

Run with: pytest tests/test_balance_service.py -v
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

from database.reconciliation_models import TransactionDirection
from reconciliation.errors import ConfigurationMissingError
from reconciliation.services.balance_service import (
    BalanceService,
    replay_bank_balance,
    replay_accounting_balance
)

D = date(2024, 3, 1)
CREDIT = TransactionDirection.CREDIT
DEBIT = TransactionDirection.DEBIT


class TestReplay:
    """Test the pure replay functions."""

    def test_replay_bank_balance(self):
        transactions = [
            MagicMock(amount=Decimal("500"), direction=CREDIT),
            MagicMock(amount=Decimal("200.25"), direction=DEBIT),
        ]
        assert replay_bank_balance(Decimal("1000"), transactions) == Decimal("1299.75")

    def test_replay_bank_balance_empty(self):
        assert replay_bank_balance(None, []) == Decimal("0")

    def test_replay_accounting_balance(self):
        entries = [
            MagicMock(amount=Decimal("500"), debit_account_id="512", credit_account_id="411"),
            MagicMock(amount=Decimal("200"), debit_account_id="627", credit_account_id="512"),
            MagicMock(amount=Decimal("999"), debit_account_id="601", credit_account_id="401"),
        ]
        assert replay_accounting_balance("512", entries) == Decimal("300")


class TestBalanceService:
    """Test balances against the database."""

    @pytest.fixture
    def service(self, db):
        return BalanceService(db)

    # ==================== BANK BALANCE TESTS ====================

    @pytest.mark.asyncio
    async def test_bank_balance_as_of(self, service, ledger):
        account = await ledger.bank_account(opening_balance="1000")
        await ledger.transaction(account, "500", D)
        await ledger.transaction(account, "200", D + timedelta(days=1), direction=DEBIT)
        await ledger.transaction(account, "100", D + timedelta(days=10))

        assert await service.bank_balance(account.id, D) == Decimal("1500")
        assert await service.bank_balance(account.id, D + timedelta(days=1)) == Decimal("1300")
        assert await service.bank_balance(account.id, D + timedelta(days=30)) == Decimal("1400")

    @pytest.mark.asyncio
    async def test_bank_balance_unknown_account(self, service):
        assert await service.bank_balance("missing", D) == Decimal("0")

    @pytest.mark.asyncio
    async def test_bank_balance_replay_is_stable(self, service, ledger):
        account = await ledger.bank_account()
        await ledger.transaction(account, "250.50", D)
        await ledger.transaction(account, "80.20", D, direction=DEBIT)

        first = await service.bank_balance(account.id, D)
        second = await service.bank_balance(account.id, D)
        assert first == second == Decimal("170.30")

        # A movement after the cut-off changes nothing
        await ledger.transaction(account, "1000", D + timedelta(days=1))
        assert await service.bank_balance(account.id, D) == first

    # ==================== ACCOUNTING BALANCE TESTS ====================

    @pytest.mark.asyncio
    async def test_accounting_balance(self, service, ledger):
        account = await ledger.bank_account()
        bank = await ledger.control_account()
        clients = await ledger.ledger_account("411")
        fees = await ledger.ledger_account("627")

        await ledger.entry("500", D, debit=bank, credit=clients)
        await ledger.entry("200", D, debit=fees, credit=bank)
        await ledger.entry("50", D + timedelta(days=5), debit=bank, credit=clients)

        assert await service.accounting_balance(ledger.company_id, account.id, D) == Decimal("300")
        assert await service.accounting_balance(ledger.company_id, account.id, D + timedelta(days=5)) == Decimal("350")

    @pytest.mark.asyncio
    async def test_accounting_balance_without_control_account(self, service, ledger):
        account = await ledger.bank_account()

        with pytest.raises(ConfigurationMissingError):
            await service.accounting_balance(ledger.company_id, account.id, D)

    @pytest.mark.asyncio
    async def test_accounting_balance_unknown_account(self, service, ledger):
        assert await service.accounting_balance(ledger.company_id, "missing", D) == Decimal("0")

    @pytest.mark.asyncio
    async def test_accounting_balance_is_company_scoped(self, service, ledger):
        account = await ledger.bank_account(company_id="other-company")
        await ledger.control_account()

        assert await service.accounting_balance(ledger.company_id, account.id, D) == Decimal("0")

    # ==================== INDICATORS TESTS ====================

    @pytest.mark.asyncio
    async def test_get_indicators(self, service, ledger):
        account = await ledger.bank_account(opening_balance="100")
        bank = await ledger.control_account()
        clients = await ledger.ledger_account("411")

        await ledger.transaction(account, "1000", D - timedelta(days=60), reconciled=True)
        await ledger.transaction(account, "400", D - timedelta(days=5))
        await ledger.transaction(account, "150", D - timedelta(days=2), direction=DEBIT)
        await ledger.entry("1000", D - timedelta(days=60), debit=bank, credit=clients)

        indicators = await service.get_indicators(ledger.company_id, account.id, D)

        assert indicators.bank_balance == Decimal("1350")
        assert indicators.accounting_balance == Decimal("1000")
        assert indicators.gap == Decimal("-350")
        assert indicators.reconciled_count == 1
        assert indicators.unreconciled_count == 2
        assert indicators.monthly_receipts == Decimal("400")
        assert indicators.monthly_expenses == Decimal("150")
        assert Decimal(indicators.to_dict()["gap"]) == Decimal("-350")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
