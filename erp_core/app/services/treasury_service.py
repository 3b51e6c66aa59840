"""
Treasury Service
================
Cash and bank accounts:
- Opening balances, deposits, withdrawals and transfers
- Receipts from customers and payments to suppliers, optionally applied
  against an open invoice

Every balance change goes through the posting engine, so a treasury's
balance always equals the signed sum of its financial transactions.
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..errors import InvalidOperationError
from ..models import FinancialTransaction, Party, Treasury, TreasuryType
from ..models_commercial import DocumentStatus, Invoice, InvoiceType
from ..security import AuditTrail, Permission, RequestContext
from .common import MONEY, ensure_status, get_next_sequence, get_or_raise, to_decimal
from .posting_service import PostingEngine, PostingPlan, PostingResult

logger = logging.getLogger(__name__)

DEFAULT_EXPENSE_CATEGORY = "manual_withdraw"

# Categories written by the posting code itself
SYSTEM_CATEGORIES = frozenset({
    "opening_balance", "manual_deposit", "transfer_in", "transfer_out",
    "party_receipt", "party_payment", "sales_payment", "purchase_payment",
})


def expense_category(category: Optional[str]) -> str:
    """Normalise a withdrawal category; system categories are rejected"""
    name = "_".join((category or "").strip().lower().split())
    if not name:
        return DEFAULT_EXPENSE_CATEGORY
    if len(name) > 40:
        raise InvalidOperationError("Expense category is limited to 40 characters")
    if name in SYSTEM_CATEGORIES or name.endswith("_reversal"):
        raise InvalidOperationError(f"Category {name} is reserved")
    return name


def positive_amount(amount) -> Decimal:
    amount = to_decimal(amount, MONEY)
    if amount <= 0:
        raise InvalidOperationError("Amount must be greater than zero")
    return amount


def _active_treasury(db: Session, treasury_id: int) -> Treasury:
    treasury = get_or_raise(db, Treasury, treasury_id, label="Treasury")
    if not treasury.is_active:
        raise InvalidOperationError(f"Treasury {treasury.name} is inactive")
    return treasury


class TreasuryService:
    """Treasury accounts and money movements"""

    @staticmethod
    def create_treasury(
        db: Session,
        ctx: RequestContext,
        name: str,
        treasury_type: TreasuryType = TreasuryType.CASH,
        currency: str = "EGP",
        opening_balance=0,
        account_number: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Treasury:
        ctx.require(Permission.TREASURY_MANAGE)
        if db.query(Treasury).filter(Treasury.name == name).first():
            raise InvalidOperationError(f"Treasury {name} already exists")

        opening = to_decimal(opening_balance, MONEY)
        if opening < 0:
            raise InvalidOperationError("Opening balance cannot be negative")

        treasury = Treasury(
            name=name,
            treasury_type=TreasuryType(treasury_type),
            currency=currency,
            account_number=account_number,
            description=description,
            balance=Decimal("0"),
        )
        db.add(treasury)
        db.flush()

        if opening > 0:
            plan = PostingPlan(
                reference_type="treasury_opening",
                reference_id=treasury.id,
                reference_number=treasury.name,
            ).add_treasury(treasury.id, opening, "opening_balance", description="Opening balance")
            PostingEngine(db, ctx).post(plan)

        AuditTrail.record(db, ctx, "create", "treasury", treasury.id, {
            "name": name, "opening_balance": str(opening)
        })
        return treasury

    @staticmethod
    def update_treasury(db: Session, ctx: RequestContext, treasury_id: int, changes: Dict) -> Treasury:
        """Descriptive fields only; the balance moves through transactions"""
        ctx.require(Permission.TREASURY_MANAGE)
        treasury = get_or_raise(db, Treasury, treasury_id, lock=True, label="Treasury")
        for key, value in changes.items():
            if key not in ("name", "account_number", "description", "is_active"):
                raise InvalidOperationError(f"Field {key} cannot be edited")
            setattr(treasury, key, value)
        AuditTrail.record(db, ctx, "update", "treasury", treasury.id, changes)
        return treasury

    @staticmethod
    def deposit(
        db: Session, ctx: RequestContext, treasury_id: int, amount, description: Optional[str] = None
    ) -> PostingResult:
        ctx.require(Permission.TREASURY_OPERATE)
        amount = positive_amount(amount)
        treasury = _active_treasury(db, treasury_id)

        plan = PostingPlan(
            reference_type="deposit",
            reference_id=treasury.id,
            reference_number=get_next_sequence(db, "deposit", "DEP-"),
        ).add_treasury(treasury.id, amount, "manual_deposit", description=description)
        return PostingEngine(db, ctx).post(plan)

    @staticmethod
    def withdraw(
        db: Session,
        ctx: RequestContext,
        treasury_id: int,
        amount,
        description: Optional[str] = None,
        category: str = DEFAULT_EXPENSE_CATEGORY,
    ) -> PostingResult:
        """
        Pay money out of a treasury, booked under an expense category
        (rent, salaries, utilities ...). The category feeds the profit and
        loss report.

        Raises:
            InvalidOperationError: If the category is reserved for system postings
            InsufficientFundsError: If the treasury balance does not cover the amount
        """
        ctx.require(Permission.TREASURY_OPERATE)
        amount = positive_amount(amount)
        category = expense_category(category)
        treasury = _active_treasury(db, treasury_id)

        plan = PostingPlan(
            reference_type="withdrawal",
            reference_id=treasury.id,
            reference_number=get_next_sequence(db, "withdrawal", "WDR-"),
        ).add_treasury(treasury.id, -amount, category, description=description)
        return PostingEngine(db, ctx).post(plan)

    @staticmethod
    def transfer(
        db: Session,
        ctx: RequestContext,
        from_treasury_id: int,
        to_treasury_id: int,
        amount,
        description: Optional[str] = None,
    ) -> PostingResult:
        """Move money between two distinct treasuries of the same currency"""
        ctx.require(Permission.TREASURY_OPERATE)
        if from_treasury_id == to_treasury_id:
            raise InvalidOperationError("Source and destination treasury must differ")
        amount = positive_amount(amount)
        source = _active_treasury(db, from_treasury_id)
        target = _active_treasury(db, to_treasury_id)
        if source.currency != target.currency:
            raise InvalidOperationError(
                f"Cannot transfer {source.currency} into a {target.currency} treasury"
            )

        number = get_next_sequence(db, "transfer", "TRF-")
        plan = (
            PostingPlan(reference_type="transfer", reference_id=source.id, reference_number=number)
            .add_treasury(source.id, -amount, "transfer_out",
                          description=description or f"Transfer to {target.name}")
            .add_treasury(target.id, amount, "transfer_in",
                          description=description or f"Transfer from {source.name}")
        )
        result = PostingEngine(db, ctx).post(plan)

        AuditTrail.record(db, ctx, "transfer", "treasury", source.id, {
            "to": target.id, "amount": str(amount), "reference": number
        })
        return result

    # -------------------------------------------------------------------------
    # Party receipts and payments
    # -------------------------------------------------------------------------

    @staticmethod
    def _apply_to_invoice(
        db: Session, invoice_id: int, party: Party, invoice_type: InvoiceType, amount: Decimal
    ) -> Invoice:
        invoice = get_or_raise(db, Invoice, invoice_id, lock=True, label="Invoice")
        ensure_status(invoice, {DocumentStatus.POSTED}, "settle", f"invoice {invoice.invoice_number}")
        if invoice.invoice_type != invoice_type or invoice.party_id != party.id:
            raise InvalidOperationError(
                f"Invoice {invoice.invoice_number} does not belong to {party.name}"
            )
        remaining = to_decimal(invoice.remaining_amount, MONEY)
        if amount > remaining:
            raise InvalidOperationError(
                f"Amount {amount} exceeds the remaining {remaining} on {invoice.invoice_number}"
            )
        invoice.paid_amount = to_decimal(Decimal(invoice.paid_amount) + amount, MONEY)
        return invoice

    @staticmethod
    def receive_from_party(
        db: Session,
        ctx: RequestContext,
        party_id: int,
        treasury_id: int,
        amount,
        invoice_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> Tuple[PostingResult, Optional[Invoice]]:
        """Money in: treasury +amount, party balance -amount"""
        ctx.require(Permission.TREASURY_OPERATE)
        amount = positive_amount(amount)
        party = get_or_raise(db, Party, party_id, label="Party")
        treasury = _active_treasury(db, treasury_id)

        invoice = None
        if invoice_id is not None:
            invoice = TreasuryService._apply_to_invoice(db, invoice_id, party, InvoiceType.SALES, amount)

        number = get_next_sequence(db, "receipt", "RCV-")
        text = description or (
            f"Receipt on {invoice.invoice_number}" if invoice else f"Receipt from {party.name}"
        )
        plan = (
            PostingPlan(reference_type="receipt", reference_id=party.id, reference_number=number)
            .add_treasury(treasury.id, amount, "party_receipt", party_id=party.id, description=text)
            .add_party(party.id, -amount, text)
        )
        result = PostingEngine(db, ctx).post(plan)

        AuditTrail.record(db, ctx, "receipt", "party", party.id, {
            "amount": str(amount), "treasury_id": treasury.id, "invoice_id": invoice_id,
        })
        return result, invoice

    @staticmethod
    def pay_party(
        db: Session,
        ctx: RequestContext,
        party_id: int,
        treasury_id: int,
        amount,
        invoice_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> Tuple[PostingResult, Optional[Invoice]]:
        """Money out: treasury -amount (funds required), party balance +amount"""
        ctx.require(Permission.TREASURY_OPERATE)
        amount = positive_amount(amount)
        party = get_or_raise(db, Party, party_id, label="Party")
        treasury = _active_treasury(db, treasury_id)

        invoice = None
        if invoice_id is not None:
            invoice = TreasuryService._apply_to_invoice(db, invoice_id, party, InvoiceType.PURCHASE, amount)

        number = get_next_sequence(db, "payment", "PAY-")
        text = description or (
            f"Payment on {invoice.invoice_number}" if invoice else f"Payment to {party.name}"
        )
        plan = (
            PostingPlan(reference_type="payment", reference_id=party.id, reference_number=number)
            .add_treasury(treasury.id, -amount, "party_payment", party_id=party.id, description=text)
            .add_party(party.id, amount, text)
        )
        result = PostingEngine(db, ctx).post(plan)

        AuditTrail.record(db, ctx, "payment", "party", party.id, {
            "amount": str(amount), "treasury_id": treasury.id, "invoice_id": invoice_id,
        })
        return result, invoice

    @staticmethod
    def transactions(
        db: Session,
        treasury_id: Optional[int] = None,
        date_from=None,
        date_to=None,
        limit: int = 500,
    ) -> List[FinancialTransaction]:
        query = db.query(FinancialTransaction)
        if treasury_id:
            query = query.filter(FinancialTransaction.treasury_id == treasury_id)
        if date_from:
            query = query.filter(FinancialTransaction.transaction_date >= date_from)
        if date_to:
            query = query.filter(FinancialTransaction.transaction_date <= date_to)
        return query.order_by(FinancialTransaction.id.desc()).limit(limit).all()
