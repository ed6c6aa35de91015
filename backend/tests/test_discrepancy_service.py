"""
Unit Tests for DiscrepancyService

Tests:
- Tolerance gate
- DUPLICATE / MISSING_MOVEMENT / MISC_ENTRY / OTHER classification
- Persistence (OTHER always, others on request, no double recording)
- Resolution and listing

Run with: pytest tests/test_discrepancy_service.py -v
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

from database.reconciliation_models import DiscrepancyType
from reconciliation.errors import ConfigurationMissingError, NotFoundError
from reconciliation.services.discrepancy_service import DiscrepancyService, find_duplicates

D = date(2024, 3, 1)


def of_type(findings, discrepancy_type):
    return [f for f in findings if f.discrepancy_type == discrepancy_type]


class TestDuplicateGrouping:
    """Test the pure duplicate detector."""

    def test_groups_on_day_amount_and_label_prefix(self):
        prefix = "X" * 50
        transactions = [
            MagicMock(id="a", date=D, amount=Decimal("10"), label=prefix + " first"),
            MagicMock(id="b", date=D, amount=Decimal("10"), label=prefix + " second"),
            MagicMock(id="c", date=D, amount=Decimal("10.01"), label=prefix),
            MagicMock(id="d", date=D + timedelta(days=1), amount=Decimal("10"), label=prefix),
        ]

        findings = find_duplicates("acc", transactions, label_length=50)

        assert len(findings) == 1
        assert findings[0].transaction_ids == ["a", "b"]
        assert findings[0].bank_balance == Decimal("20")


class TestDiscrepancyService:
    """Test detection against the database."""

    @pytest.fixture
    def service(self, db):
        return DiscrepancyService(db)

    # ==================== DETECTION TESTS ====================

    @pytest.mark.asyncio
    async def test_balanced_account_has_no_findings(self, service, ledger):
        account = await ledger.bank_account()
        control = await ledger.control_account()
        clients = await ledger.ledger_account("411")
        await ledger.transaction(account, "1000", D)
        await ledger.entry("1000", D, debit=control, credit=clients)

        assert await service.detect_discrepancies(ledger.company_id, account.id, D) == []

    @pytest.mark.asyncio
    async def test_gap_within_tolerance_is_ignored(self, service, ledger):
        account = await ledger.bank_account(opening_balance="0.90")
        await ledger.control_account()

        assert await service.detect_discrepancies(ledger.company_id, account.id, D) == []

    @pytest.mark.asyncio
    async def test_duplicate_transactions(self, service, ledger):
        account = await ledger.bank_account()
        await ledger.control_account()
        first = await ledger.transaction(account, "25000", D, label="VIREMENT CLIENT")
        second = await ledger.transaction(account, "25000", D, label="VIREMENT CLIENT")

        findings = await service.detect_discrepancies(ledger.company_id, account.id, D)

        duplicates = of_type(findings, DiscrepancyType.DUPLICATE)
        assert len(duplicates) == 1
        assert set(duplicates[0].transaction_ids) == {first.id, second.id}
        assert duplicates[0].gap == Decimal("50000")

    @pytest.mark.asyncio
    async def test_missing_movement_outside_window(self, service, ledger):
        account = await ledger.bank_account(opening_balance="100")
        control = await ledger.control_account()
        clients = await ledger.ledger_account("411")
        transaction = await ledger.transaction(account, "1000", D)
        await ledger.entry("1000", D + timedelta(days=10), debit=control, credit=clients)

        findings = await service.detect_discrepancies(ledger.company_id, account.id, D + timedelta(days=10))

        missing = of_type(findings, DiscrepancyType.MISSING_MOVEMENT)
        assert [f.transaction_ids for f in missing] == [[transaction.id]]

    @pytest.mark.asyncio
    async def test_entry_inside_window_is_not_missing(self, service, ledger):
        account = await ledger.bank_account(opening_balance="100")
        control = await ledger.control_account()
        clients = await ledger.ledger_account("411")
        await ledger.transaction(account, "1000", D)
        await ledger.entry("1000", D + timedelta(days=7), debit=control, credit=clients)

        findings = await service.detect_discrepancies(ledger.company_id, account.id, D + timedelta(days=7))

        assert of_type(findings, DiscrepancyType.MISSING_MOVEMENT) == []
        assert [f.discrepancy_type for f in findings] == [DiscrepancyType.OTHER]
        assert findings[0].gap == Decimal("-100")

    @pytest.mark.asyncio
    async def test_reconciled_transactions_are_not_missing(self, service, ledger):
        account = await ledger.bank_account()
        await ledger.control_account()
        await ledger.transaction(account, "1000", D, reconciled=True)

        findings = await service.detect_discrepancies(ledger.company_id, account.id, D)

        assert of_type(findings, DiscrepancyType.MISSING_MOVEMENT) == []

    @pytest.mark.asyncio
    async def test_misc_entries(self, service, ledger):
        account = await ledger.bank_account()
        control = await ledger.control_account()
        income = await ledger.ledger_account("7788")
        charge = await ledger.ledger_account("6718")
        clients = await ledger.ledger_account("411")
        exceptional_income = await ledger.entry("300", D, debit=control, credit=income)
        exceptional_charge = await ledger.entry("50", D, debit=charge, credit=control)
        await ledger.entry("20", D, debit=control, credit=clients)

        findings = await service.detect_discrepancies(ledger.company_id, account.id, D)

        misc = of_type(findings, DiscrepancyType.MISC_ENTRY)
        assert {f.entry_ids[0]: f.gap for f in misc} == {
            exceptional_income.id: Decimal("300"),
            exceptional_charge.id: Decimal("-50"),
        }

    @pytest.mark.asyncio
    async def test_unexplained_gap_reports_other(self, service, ledger):
        account = await ledger.bank_account(opening_balance="500")
        await ledger.control_account()

        findings = await service.detect_discrepancies(ledger.company_id, account.id, D)

        assert len(findings) == 1
        assert findings[0].discrepancy_type == DiscrepancyType.OTHER
        assert findings[0].bank_balance == Decimal("500")
        assert findings[0].accounting_balance == Decimal("0")
        assert findings[0].gap == Decimal("-500")

    @pytest.mark.asyncio
    async def test_gap_always_yields_a_finding(self, service, ledger):
        account = await ledger.bank_account(opening_balance="2")
        await ledger.control_account()

        assert len(await service.detect_discrepancies(ledger.company_id, account.id, D)) >= 1

    @pytest.mark.asyncio
    async def test_missing_control_account(self, service, ledger):
        account = await ledger.bank_account(opening_balance="500")

        with pytest.raises(ConfigurationMissingError):
            await service.detect_discrepancies(ledger.company_id, account.id, D)

    @pytest.mark.asyncio
    async def test_unknown_account(self, service, ledger):
        assert await service.detect_discrepancies(ledger.company_id, "missing", D) == []

    # ==================== PERSISTENCE TESTS ====================

    @pytest.mark.asyncio
    async def test_other_is_always_persisted_once(self, service, ledger):
        account = await ledger.bank_account(opening_balance="500")
        await ledger.control_account()

        stored = await service.detect_and_persist(ledger.company_id, account.id, D)
        again = await service.detect_and_persist(ledger.company_id, account.id, D)

        assert [d.discrepancy_type for d in stored] == [DiscrepancyType.OTHER]
        assert again == []
        assert len(await service.list_unresolved(ledger.company_id, account.id)) == 1

    @pytest.mark.asyncio
    async def test_other_types_persisted_on_request(self, service, ledger):
        account = await ledger.bank_account()
        await ledger.control_account()
        await ledger.transaction(account, "25000", D, label="VIREMENT CLIENT")
        await ledger.transaction(account, "25000", D, label="VIREMENT CLIENT")

        assert await service.detect_and_persist(ledger.company_id, account.id, D) == []

        stored = await service.detect_and_persist(
            ledger.company_id, account.id, D, persist_types=[DiscrepancyType.DUPLICATE]
        )
        assert [d.discrepancy_type for d in stored] == [DiscrepancyType.DUPLICATE]
        assert len(stored[0].evidence["transaction_ids"]) == 2

    # ==================== RESOLUTION TESTS ====================

    @pytest.mark.asyncio
    async def test_resolve_discrepancy(self, service, ledger):
        account = await ledger.bank_account(opening_balance="500")
        await ledger.control_account()
        [discrepancy] = await service.detect_and_persist(ledger.company_id, account.id, D)

        resolved = await service.resolve_discrepancy(ledger.company_id, discrepancy.id)
        assert resolved.resolved is True
        assert resolved.resolved_at is not None

        again = await service.resolve_discrepancy(ledger.company_id, discrepancy.id)
        assert again.resolved_at == resolved.resolved_at
        assert await service.list_unresolved(ledger.company_id) == []

    @pytest.mark.asyncio
    async def test_resolve_other_company(self, service, ledger):
        account = await ledger.bank_account(opening_balance="500")
        await ledger.control_account()
        [discrepancy] = await service.detect_and_persist(ledger.company_id, account.id, D)

        with pytest.raises(NotFoundError):
            await service.resolve_discrepancy("other-company", discrepancy.id)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
