"""
Report Service
==============
Profit and loss over a date range:
- Revenue from posted sales invoices, net of posted sales returns
- Cost of goods sold from the cost captured on each line at posting time
- Operating expenses from treasury withdrawals, grouped by category

Voided documents drop out because only POSTED ones are read; withdrawals
are never reversed, so every one in the range counts.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ..errors import InvalidOperationError
from ..models import FinancialTransaction, TransactionType
from ..models_commercial import DocumentStatus, Invoice, InvoiceType, ReturnDocument
from .common import MONEY, to_decimal

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _line_cost(quantity, unit_cost) -> Decimal:
    return Decimal(quantity) * Decimal(unit_cost if unit_cost is not None else 0)


class ReportService:
    """Financial reports built from posted documents and the treasury journal"""

    @staticmethod
    def profit_and_loss(
        db: Session, date_from: Optional[date] = None, date_to: Optional[date] = None
    ) -> dict:
        """
        Income statement for [date_from, date_to], both ends inclusive.

        Raises:
            InvalidOperationError: If date_from is after date_to
        """
        if date_from and date_to and date_from > date_to:
            raise InvalidOperationError("date_from must not be after date_to")

        invoices = db.query(Invoice).filter(
            Invoice.invoice_type == InvoiceType.SALES,
            Invoice.status == DocumentStatus.POSTED,
        )
        returns = db.query(ReturnDocument).filter(
            ReturnDocument.return_type == InvoiceType.SALES,
            ReturnDocument.status == DocumentStatus.POSTED,
        )
        expenses = db.query(FinancialTransaction).filter(
            FinancialTransaction.reference_type == "withdrawal",
            FinancialTransaction.transaction_type == TransactionType.EXPENSE,
            FinancialTransaction.is_reversed.is_(False),
        )
        if date_from:
            invoices = invoices.filter(Invoice.transaction_date >= date_from)
            returns = returns.filter(ReturnDocument.return_date >= date_from)
            expenses = expenses.filter(FinancialTransaction.transaction_date >= date_from)
        if date_to:
            invoices = invoices.filter(Invoice.transaction_date <= date_to)
            returns = returns.filter(ReturnDocument.return_date <= date_to)
            expenses = expenses.filter(FinancialTransaction.transaction_date <= date_to)

        revenue = ZERO
        cogs = ZERO
        invoice_count = 0
        for invoice in invoices.all():
            invoice_count += 1
            # Tax and shipping are collected for others, not earned
            revenue += Decimal(invoice.subtotal) - Decimal(invoice.discount_amount)
            for line in invoice.items:
                cogs += _line_cost(line.quantity, line.unit_cost_at_sale)

        returned_sales = ZERO
        returned_cost = ZERO
        return_count = 0
        for document in returns.all():
            return_count += 1
            returned_sales += Decimal(document.total_amount)
            for line in document.items:
                returned_cost += _line_cost(line.quantity, line.unit_cost_at_return)

        by_category: Dict[str, Decimal] = {}
        for txn in expenses.all():
            by_category[txn.category] = by_category.get(txn.category, ZERO) + Decimal(txn.amount)

        net_sales = revenue - returned_sales
        net_cogs = cogs - returned_cost
        gross_profit = net_sales - net_cogs
        total_expenses = sum(by_category.values(), ZERO)
        net_profit = gross_profit - total_expenses

        logger.info(
            "P&L %s..%s: %d invoices, %d returns, net profit %s",
            date_from, date_to, invoice_count, return_count, to_decimal(net_profit, MONEY),
        )

        def money(value: Decimal) -> float:
            return float(to_decimal(value, MONEY))

        return {
            "date_from": date_from.isoformat() if date_from else None,
            "date_to": date_to.isoformat() if date_to else None,
            "invoice_count": invoice_count,
            "return_count": return_count,
            "sales_revenue": money(revenue),
            "sales_returns": money(returned_sales),
            "net_sales": money(net_sales),
            "cost_of_goods_sold": money(cogs),
            "returned_cost": money(returned_cost),
            "net_cost_of_goods_sold": money(net_cogs),
            "gross_profit": money(gross_profit),
            "expenses": {name: money(value) for name, value in sorted(by_category.items())},
            "total_expenses": money(total_expenses),
            "net_profit": money(net_profit),
        }
