"""Profit and loss report."""

from datetime import date

import pytest

from erp_core.app.db import transaction
from erp_core.app.errors import InvalidOperationError
from erp_core.app.models_commercial import InvoiceType, ReturnDocument
from erp_core.app.models_inventory import ItemType
from erp_core.app.services.invoice_service import InvoiceService, ReturnService
from erp_core.app.services.report_service import ReportService
from erp_core.app.services.treasury_service import TreasuryService

MARCH = (date(2024, 3, 1), date(2024, 3, 31))


def _post_invoice(db_session, ctx, invoice_type, party, lines, **kwargs):
    with transaction(db_session):
        invoice = InvoiceService.create_invoice(db_session, ctx, invoice_type, party.id, lines, **kwargs)
    with transaction(db_session):
        InvoiceService.post_invoice(db_session, ctx, invoice.id)
    return invoice


@pytest.fixture
def trading_month(db_session, ctx, make_item, customer, supplier, cashbox):
    """
    March 2024: one sale of 5 @ 100 (cost 30, discount 50, tax 14), a
    linked return of 2, a voided sale and a purchase. Rent and salaries
    are paid out of the cashbox today.
    """
    product = make_item(ItemType.FINISHED_PRODUCT, "Face Cream", quantity=20, unit_cost=30)
    sale = _post_invoice(
        db_session, ctx, InvoiceType.SALES, customer, [(product.id, 5, 100)],
        discount_amount=50, tax_amount=14, transaction_date=date(2024, 3, 5),
    )
    with transaction(db_session):
        document = ReturnService.create_return(
            db_session, ctx, InvoiceType.SALES, customer.id, [(product.id, 2, 100)],
            original_invoice_id=sale.id, return_date=date(2024, 3, 10),
        )
    with transaction(db_session):
        ReturnService.post_return(db_session, ctx, document.id)

    voided = _post_invoice(
        db_session, ctx, InvoiceType.SALES, customer, [(product.id, 1, 100)],
        transaction_date=date(2024, 3, 20),
    )
    with transaction(db_session):
        InvoiceService.void_invoice(db_session, ctx, voided.id)

    _post_invoice(
        db_session, ctx, InvoiceType.PURCHASE, supplier, [(product.id, 10, 30)],
        transaction_date=date(2024, 3, 25),
    )

    with transaction(db_session):
        TreasuryService.withdraw(db_session, ctx, cashbox.id, 100, category="rent")
        TreasuryService.withdraw(db_session, ctx, cashbox.id, 40, category="salaries")
        TreasuryService.transfer(
            db_session, ctx, cashbox.id,
            TreasuryService.create_treasury(db_session, ctx, "Bank").id, 200,
        )
    return product


class TestProfitAndLoss:

    def test_month_nets_returns_out_of_sales_and_cost(self, db_session, trading_month):
        report = ReportService.profit_and_loss(db_session, *MARCH)

        assert report["invoice_count"] == 1
        assert report["return_count"] == 1
        # Tax is not revenue
        assert report["sales_revenue"] == 450
        assert report["sales_returns"] == 200
        assert report["net_sales"] == 250
        assert report["cost_of_goods_sold"] == 150
        assert report["returned_cost"] == 60
        assert report["net_cost_of_goods_sold"] == 90
        assert report["gross_profit"] == 160
        # Withdrawals were made today, outside March 2024
        assert report["expenses"] == {}
        assert report["net_profit"] == 160

    def test_expenses_are_grouped_by_category(self, db_session, trading_month):
        report = ReportService.profit_and_loss(db_session)

        # Transfers and invoice payments are not expenses
        assert report["expenses"] == {"rent": 100, "salaries": 40}
        assert report["total_expenses"] == 140
        assert report["net_profit"] == 20

    def test_period_without_activity_is_zero(self, db_session, trading_month):
        report = ReportService.profit_and_loss(db_session, date(2024, 4, 1), date(2024, 4, 30))

        assert report["invoice_count"] == 0
        assert report["gross_profit"] == 0
        assert report["net_profit"] == 0

    def test_voiding_the_return_restores_the_full_sale(self, db_session, ctx, trading_month):
        document = db_session.query(ReturnDocument).one()
        with transaction(db_session):
            ReturnService.void_return(db_session, ctx, document.id)

        report = ReportService.profit_and_loss(db_session, *MARCH)
        assert report["net_sales"] == 450
        assert report["net_cost_of_goods_sold"] == 150

    def test_inverted_range_is_rejected(self, db_session):
        with pytest.raises(InvalidOperationError):
            ReportService.profit_and_loss(db_session, date(2024, 4, 1), date(2024, 3, 1))


class TestProfitAndLossApi:

    def test_report_over_range(self, client, viewer_headers, trading_month):
        response = client.get(
            "/api/reports/profit-loss", headers=viewer_headers,
            params={"date_from": "2024-03-01", "date_to": "2024-03-31"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["date_from"] == "2024-03-01"
        assert body["gross_profit"] == 160

    def test_inverted_range_is_400(self, client, auth_headers):
        response = client.get(
            "/api/reports/profit-loss", headers=auth_headers,
            params={"date_from": "2024-04-01", "date_to": "2024-03-01"},
        )
        assert response.status_code == 400

    def test_withdraw_category_reaches_report(self, client, auth_headers, cashbox):
        response = client.post(
            f"/api/treasuries/{cashbox.id}/withdraw", headers=auth_headers,
            json={"amount": 75, "description": "Power bill", "category": "utilities"},
        )
        assert response.status_code == 200
        assert response.json()["transactions"][0]["category"] == "utilities"

        report = client.get("/api/reports/profit-loss", headers=auth_headers).json()
        assert report["expenses"] == {"utilities": 75}
        assert report["net_profit"] == -75
