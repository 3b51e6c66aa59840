"""Treasury movements, transfers and party settlements."""

from decimal import Decimal

import pytest

from erp_core.app.db import transaction
from erp_core.app.errors import InsufficientFundsError, InvalidOperationError
from erp_core.app.models import FinancialTransaction, PartyType, TransactionType
from erp_core.app.models_commercial import InvoiceType
from erp_core.app.models_inventory import ItemType
from erp_core.app.services.invoice_service import InvoiceService
from erp_core.app.services.party_service import PartyService
from erp_core.app.services.treasury_service import TreasuryService


def _signed_total(db_session, treasury_id):
    rows = db_session.query(FinancialTransaction).filter(
        FinancialTransaction.treasury_id == treasury_id
    ).all()
    return sum((row.signed_amount for row in rows), Decimal("0"))


class TestTreasuryAccounts:

    def test_opening_balance_is_a_transaction(self, db_session, cashbox):
        txn = db_session.query(FinancialTransaction).filter(
            FinancialTransaction.treasury_id == cashbox.id
        ).one()
        assert txn.category == "opening_balance"
        assert txn.transaction_type == TransactionType.INCOME
        assert txn.transaction_number.startswith("TRX-")
        assert Decimal(cashbox.balance) == Decimal("1000")

    def test_duplicate_name_is_rejected(self, db_session, ctx, cashbox):
        with pytest.raises(InvalidOperationError):
            TreasuryService.create_treasury(db_session, ctx, "Main Cash")

    def test_deposit_and_withdraw(self, db_session, ctx, cashbox):
        with transaction(db_session):
            TreasuryService.deposit(db_session, ctx, cashbox.id, 250, "Owner top-up")
        with transaction(db_session):
            TreasuryService.withdraw(db_session, ctx, cashbox.id, 100, "Petty cash")

        db_session.refresh(cashbox)
        assert Decimal(cashbox.balance) == Decimal("1150")
        assert _signed_total(db_session, cashbox.id) == Decimal("1150")

    def test_withdraw_is_booked_under_its_expense_category(self, db_session, ctx, cashbox):
        with transaction(db_session):
            TreasuryService.withdraw(db_session, ctx, cashbox.id, 300, "March rent", category=" Rent ")
            TreasuryService.withdraw(db_session, ctx, cashbox.id, 50, "Office Supplies", category="office supplies")
            TreasuryService.withdraw(db_session, ctx, cashbox.id, 20)

        categories = [
            t.category for t in db_session.query(FinancialTransaction).filter(
                FinancialTransaction.reference_type == "withdrawal"
            ).order_by(FinancialTransaction.id)
        ]
        assert categories == ["rent", "office_supplies", "manual_withdraw"]

    @pytest.mark.parametrize("category", ["transfer_out", "party_payment", "rent_reversal", "x" * 41])
    def test_reserved_or_oversized_category_is_rejected(self, db_session, ctx, cashbox, category):
        with pytest.raises(InvalidOperationError):
            TreasuryService.withdraw(db_session, ctx, cashbox.id, 10, category=category)

    def test_withdraw_beyond_balance_is_rejected(self, db_session, ctx, cashbox):
        with pytest.raises(InsufficientFundsError):
            with transaction(db_session):
                TreasuryService.withdraw(db_session, ctx, cashbox.id, 1000.01)

        db_session.refresh(cashbox)
        assert Decimal(cashbox.balance) == Decimal("1000")

    @pytest.mark.parametrize("amount", [0, -5])
    def test_amount_must_be_positive(self, db_session, ctx, cashbox, amount):
        with pytest.raises(InvalidOperationError):
            TreasuryService.deposit(db_session, ctx, cashbox.id, amount)


class TestTransfers:

    @pytest.fixture
    def bank(self, db_session, ctx):
        treasury = TreasuryService.create_treasury(db_session, ctx, "Bank", treasury_type="bank")
        db_session.commit()
        return treasury

    def test_transfer_moves_money(self, db_session, ctx, cashbox, bank):
        with transaction(db_session):
            result = TreasuryService.transfer(db_session, ctx, cashbox.id, bank.id, 400)

        db_session.refresh(cashbox)
        db_session.refresh(bank)
        assert Decimal(cashbox.balance) == Decimal("600")
        assert Decimal(bank.balance) == Decimal("400")
        assert {t.category for t in result.transactions} == {"transfer_out", "transfer_in"}
        assert _signed_total(db_session, cashbox.id) == Decimal("600")
        assert _signed_total(db_session, bank.id) == Decimal("400")

    def test_transfer_to_same_treasury_is_rejected(self, db_session, ctx, cashbox):
        with pytest.raises(InvalidOperationError):
            TreasuryService.transfer(db_session, ctx, cashbox.id, cashbox.id, 10)

    def test_transfer_beyond_balance_is_rejected(self, db_session, ctx, cashbox, bank):
        with pytest.raises(InsufficientFundsError):
            with transaction(db_session):
                TreasuryService.transfer(db_session, ctx, cashbox.id, bank.id, 5000)

        db_session.refresh(bank)
        assert Decimal(bank.balance) == 0

    def test_transfer_between_currencies_is_rejected(self, db_session, ctx, cashbox):
        with transaction(db_session):
            dollars = TreasuryService.create_treasury(db_session, ctx, "USD Account", currency="USD")
        with pytest.raises(InvalidOperationError):
            TreasuryService.transfer(db_session, ctx, cashbox.id, dollars.id, 10)


class TestSettlements:

    @pytest.fixture
    def sales_invoice(self, db_session, ctx, make_item, customer):
        product = make_item(ItemType.FINISHED_PRODUCT, "Face Cream", quantity=20, unit_cost=30)
        with transaction(db_session):
            invoice = InvoiceService.create_invoice(
                db_session, ctx, InvoiceType.SALES, customer.id, [(product.id, 5, 100)]
            )
        with transaction(db_session):
            InvoiceService.post_invoice(db_session, ctx, invoice.id)
        return invoice

    def test_receipt_against_invoice(self, db_session, ctx, customer, cashbox, sales_invoice):
        with transaction(db_session):
            TreasuryService.receive_from_party(
                db_session, ctx, customer.id, cashbox.id, 200, invoice_id=sales_invoice.id
            )

        for row in (customer, cashbox, sales_invoice):
            db_session.refresh(row)
        assert Decimal(sales_invoice.paid_amount) == Decimal("200")
        assert sales_invoice.remaining_amount == Decimal("300")
        assert Decimal(customer.balance) == Decimal("300")
        assert Decimal(cashbox.balance) == Decimal("1200")

    def test_receipt_beyond_remaining_is_rejected(self, db_session, ctx, customer, cashbox, sales_invoice):
        with pytest.raises(InvalidOperationError):
            TreasuryService.receive_from_party(
                db_session, ctx, customer.id, cashbox.id, 600, invoice_id=sales_invoice.id
            )

    def test_payment_to_supplier(self, db_session, ctx, supplier, cashbox):
        with transaction(db_session):
            result, invoice = TreasuryService.pay_party(db_session, ctx, supplier.id, cashbox.id, 250)

        db_session.refresh(supplier)
        db_session.refresh(cashbox)
        assert invoice is None
        assert result.transactions[0].category == "party_payment"
        assert Decimal(supplier.balance) == Decimal("250")
        assert Decimal(cashbox.balance) == Decimal("750")

    def test_payment_beyond_funds_is_rejected(self, db_session, ctx, supplier, cashbox):
        with pytest.raises(InsufficientFundsError):
            with transaction(db_session):
                TreasuryService.pay_party(db_session, ctx, supplier.id, cashbox.id, 1500)


class TestPartyStatement:

    def test_statement_runs_balance(self, db_session, ctx, cashbox):
        with transaction(db_session):
            party = PartyService.create_party(
                db_session, ctx, "Pharmacy Plus", PartyType.CUSTOMER, opening_balance=150
            )
        with transaction(db_session):
            TreasuryService.receive_from_party(db_session, ctx, party.id, cashbox.id, 100)

        statement = PartyService.statement(db_session, party.id)
        assert statement["opening_balance"] == 0
        assert [row["balance"] for row in statement["entries"]] == [150.0, 50.0]
        assert statement["total_debit"] == 150.0
        assert statement["total_credit"] == 100.0
        assert statement["closing_balance"] == 50.0

    def test_party_with_history_is_deactivated(self, db_session, ctx):
        with transaction(db_session):
            party = PartyService.create_party(
                db_session, ctx, "Old Supplier", PartyType.SUPPLIER, opening_balance=-80
            )
        with transaction(db_session):
            outcome = PartyService.delete_party(db_session, ctx, party.id)

        db_session.refresh(party)
        assert outcome == "deactivated"
        assert party.is_active is False

    def test_party_without_history_is_deleted(self, db_session, ctx, supplier):
        with transaction(db_session):
            assert PartyService.delete_party(db_session, ctx, supplier.id) == "deleted"
