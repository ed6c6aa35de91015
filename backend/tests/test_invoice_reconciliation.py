"""
Unit Tests for InvoiceReconciliationService

Tests:
- Candidate search (remainders, exclusions, scoring example)
- Creation (amount capped at the remainder, payment scoping)
- Validation promoting invoices to PAID
- Coexistence with accounting reconciliations

Run with: pytest tests/test_invoice_reconciliation.py -v
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import select

from database.reconciliation_models import (
    ReconciliationAuditLogDB, CounterpartKind, InvoiceStatus, ReconciliationStatus, TransactionDirection
)
from reconciliation.errors import ConflictError, NotFoundError
from reconciliation.services.audit import ReconciliationAuditEvent
from reconciliation.services.invoice_reconciliation_service import InvoiceReconciliationService
from reconciliation.services.reconciliation_service import ReconciliationService

D = date(2024, 3, 1)


class TestInvoiceReconciliationService:
    """Test transaction ↔ invoice reconciliation."""

    @pytest.fixture
    def service(self, db):
        return InvoiceReconciliationService(db)

    # ==================== CANDIDATE TESTS ====================

    @pytest.mark.asyncio
    async def test_worked_example(self, service, ledger):
        account = await ledger.bank_account()
        invoice = await ledger.invoice("FAC-2024-001", "120000", D, client_name="Acme")
        transaction = await ledger.transaction(
            account, "120000", D + timedelta(days=2), label="VIR FAC 2024 001 SOCIETE X"
        )

        candidates = await service.find_invoice_candidates(ledger.company_id)

        assert len(candidates) == 1
        assert candidates[0].transaction_id == transaction.id
        assert candidates[0].invoice_id == invoice.id
        assert candidates[0].score == 100
        assert candidates[0].remainder == Decimal("120000")

    @pytest.mark.asyncio
    async def test_candidates_use_remainder_after_payments(self, service, ledger):
        account = await ledger.bank_account()
        invoice = await ledger.invoice("FAC-7", "1000", D)
        await ledger.payment(invoice, "400", D)
        await ledger.transaction(account, "600", D + timedelta(days=1))

        candidates = await service.find_invoice_candidates(ledger.company_id, account.id)

        assert [c.remainder for c in candidates] == [Decimal("600")]
        assert "Exact amount" in candidates[0].reasons

    @pytest.mark.asyncio
    async def test_only_open_invoices_and_credits(self, service, ledger):
        account = await ledger.bank_account()
        await ledger.invoice("DRAFT-1", "500", D, status=InvoiceStatus.DRAFT)
        settled = await ledger.invoice("FAC-8", "500", D)
        await ledger.payment(settled, "500", D)
        open_invoice = await ledger.invoice("FAC-9", "500", D)
        await ledger.transaction(account, "500", D, direction=TransactionDirection.DEBIT)
        credit = await ledger.transaction(account, "500", D)

        candidates = await service.find_invoice_candidates(ledger.company_id)

        assert [(c.transaction_id, c.invoice_id) for c in candidates] == [(credit.id, open_invoice.id)]

    @pytest.mark.asyncio
    async def test_transactions_with_active_link_are_excluded(self, service, ledger):
        account = await ledger.bank_account()
        invoice = await ledger.invoice("FAC-10", "500", D)
        transaction = await ledger.transaction(account, "500", D)
        reconciliation = await service.create_invoice_reconciliation(ledger.company_id, transaction.id, invoice.id)

        assert await service.find_invoice_candidates(ledger.company_id) == []

        await service.reject(ledger.company_id, reconciliation.id, reason="other client")
        candidates = await service.find_invoice_candidates(ledger.company_id)
        assert [c.transaction_id for c in candidates] == [transaction.id]

    @pytest.mark.asyncio
    async def test_no_candidates_without_data(self, service, ledger):
        assert await service.find_invoice_candidates(ledger.company_id) == []

    # ==================== CREATE TESTS ====================

    @pytest.mark.asyncio
    async def test_amount_capped_at_remainder(self, service, ledger):
        account = await ledger.bank_account()
        invoice = await ledger.invoice("FAC-11", "1000", D)
        transaction = await ledger.transaction(account, "1500", D)

        reconciliation = await service.create_invoice_reconciliation(
            ledger.company_id, transaction.id, invoice.id, confidence_score=65
        )

        assert reconciliation.counterpart_kind == CounterpartKind.INVOICE
        assert reconciliation.status == ReconciliationStatus.PENDING
        assert reconciliation.amount == Decimal("1000")

    @pytest.mark.asyncio
    async def test_settled_invoice_takes_transaction_amount(self, service, ledger):
        account = await ledger.bank_account()
        invoice = await ledger.invoice("FAC-12", "100", D)
        await ledger.payment(invoice, "100", D)
        transaction = await ledger.transaction(account, "80", D)

        reconciliation = await service.create_invoice_reconciliation(ledger.company_id, transaction.id, invoice.id)

        assert reconciliation.amount == Decimal("80")

    @pytest.mark.asyncio
    async def test_payment_must_belong_to_invoice(self, service, ledger):
        account = await ledger.bank_account()
        invoice = await ledger.invoice("FAC-13", "100", D)
        other = await ledger.invoice("FAC-14", "100", D)
        payment = await ledger.payment(other, "20", D, reference="REF-1")
        transaction = await ledger.transaction(account, "80", D)

        with pytest.raises(NotFoundError):
            await service.create_invoice_reconciliation(
                ledger.company_id, transaction.id, invoice.id, payment_id=payment.id
            )

        reconciliation = await service.create_invoice_reconciliation(
            ledger.company_id, transaction.id, other.id, payment_id=payment.id
        )
        assert reconciliation.payment_id == payment.id

    @pytest.mark.asyncio
    async def test_unknown_references(self, service, ledger):
        account = await ledger.bank_account()
        invoice = await ledger.invoice("FAC-15", "100", D)
        transaction = await ledger.transaction(account, "100", D)

        with pytest.raises(NotFoundError):
            await service.create_invoice_reconciliation(ledger.company_id, "missing", invoice.id)
        with pytest.raises(NotFoundError):
            await service.create_invoice_reconciliation(ledger.company_id, transaction.id, "missing")
        with pytest.raises(NotFoundError):
            await service.create_invoice_reconciliation("other-company", transaction.id, invoice.id)

    @pytest.mark.asyncio
    async def test_one_active_invoice_link_per_transaction(self, service, ledger):
        account = await ledger.bank_account()
        first = await ledger.invoice("FAC-16", "100", D)
        second = await ledger.invoice("FAC-17", "100", D)
        transaction = await ledger.transaction(account, "100", D)
        await service.create_invoice_reconciliation(ledger.company_id, transaction.id, first.id)

        with pytest.raises(ConflictError):
            await service.create_invoice_reconciliation(ledger.company_id, transaction.id, second.id)

    @pytest.mark.asyncio
    async def test_accounting_and_invoice_links_coexist(self, service, ledger, db):
        account = await ledger.bank_account()
        clients = await ledger.ledger_account("411")
        invoice = await ledger.invoice("FAC-18", "100", D)
        transaction = await ledger.transaction(account, "100", D)

        accounting = await ReconciliationService(db).create_reconciliation(
            ledger.company_id, transaction.id, ledger_account_id=clients.id
        )
        linked = await service.create_invoice_reconciliation(ledger.company_id, transaction.id, invoice.id)

        assert accounting.counterpart_kind == CounterpartKind.ACCOUNTING
        assert linked.counterpart_kind == CounterpartKind.INVOICE

    @pytest.mark.asyncio
    async def test_draft_and_cancelled_invoices_cannot_be_linked(self, service, ledger):
        account = await ledger.bank_account()
        draft = await ledger.invoice("DRAFT-2", "100", D, status=InvoiceStatus.DRAFT)
        cancelled = await ledger.invoice("FAC-22", "100", D, status=InvoiceStatus.CANCELLED)
        transaction = await ledger.transaction(account, "100", D)

        for invoice in (draft, cancelled):
            with pytest.raises(ConflictError):
                await service.create_invoice_reconciliation(ledger.company_id, transaction.id, invoice.id)

    # ==================== VALIDATION TESTS ====================

    @pytest.mark.asyncio
    async def test_invoice_cancelled_after_linking_is_not_promoted(self, service, ledger, db):
        account = await ledger.bank_account()
        invoice = await ledger.invoice("FAC-23", "100", D)
        transaction = await ledger.transaction(account, "100", D)
        reconciliation = await service.create_invoice_reconciliation(ledger.company_id, transaction.id, invoice.id)
        invoice.status = InvoiceStatus.CANCELLED
        await db.commit()

        validated = await service.validate(ledger.company_id, reconciliation.id)

        assert validated.transaction.reconciled is True
        await db.refresh(invoice)
        assert invoice.status == InvoiceStatus.CANCELLED
        result = await db.execute(
            select(ReconciliationAuditLogDB).where(
                ReconciliationAuditLogDB.action == ReconciliationAuditEvent.INVOICE_PAID
            )
        )
        assert result.scalars().all() == []

    @pytest.mark.asyncio
    async def test_partial_then_full_settlement(self, service, ledger, db):
        account = await ledger.bank_account()
        invoice = await ledger.invoice("FAC-19", "1000", D)
        await ledger.payment(invoice, "200", D)
        first_tx = await ledger.transaction(account, "500", D + timedelta(days=1))
        second_tx = await ledger.transaction(account, "300", D + timedelta(days=2))

        first = await service.create_invoice_reconciliation(ledger.company_id, first_tx.id, invoice.id)
        await service.validate(ledger.company_id, first.id)

        await db.refresh(invoice)
        assert invoice.status == InvoiceStatus.SENT
        assert await service.invoice_remainder(invoice) == Decimal("300")

        second = await service.create_invoice_reconciliation(ledger.company_id, second_tx.id, invoice.id)
        validated = await service.validate(ledger.company_id, second.id, actor="alice")

        assert validated.transaction.reconciled is True
        await db.refresh(invoice)
        assert invoice.status == InvoiceStatus.PAID
        assert await service.invoice_remainder(invoice) == Decimal("0")

        result = await db.execute(
            select(ReconciliationAuditLogDB).where(
                ReconciliationAuditLogDB.action == ReconciliationAuditEvent.INVOICE_PAID
            )
        )
        [paid_event] = result.scalars().all()
        assert paid_event.details["invoice_id"] == invoice.id
        assert paid_event.actor == "alice"

    @pytest.mark.asyncio
    async def test_rejection_keeps_invoice_open(self, service, ledger, db):
        account = await ledger.bank_account()
        invoice = await ledger.invoice("FAC-20", "100", D)
        transaction = await ledger.transaction(account, "100", D)
        reconciliation = await service.create_invoice_reconciliation(ledger.company_id, transaction.id, invoice.id)

        await service.reject(ledger.company_id, reconciliation.id)

        await db.refresh(invoice)
        assert invoice.status == InvoiceStatus.SENT
        assert await service.invoice_remainder(invoice) == Decimal("100")

    @pytest.mark.asyncio
    async def test_list_pending_invoice_reconciliations(self, service, ledger, db):
        account = await ledger.bank_account()
        clients = await ledger.ledger_account("411")
        invoice = await ledger.invoice("FAC-21", "100", D)
        transaction = await ledger.transaction(account, "100", D)

        await ReconciliationService(db).create_reconciliation(
            ledger.company_id, transaction.id, ledger_account_id=clients.id
        )
        linked = await service.create_invoice_reconciliation(ledger.company_id, transaction.id, invoice.id)

        pending = await service.list_pending_invoice_reconciliations(ledger.company_id)

        assert [r.id for r in pending] == [linked.id]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
