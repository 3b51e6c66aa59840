"""
Commercial Document Service
===========================
Sales / purchase invoices and sales / purchase returns:
- Drafts are editable and have no stock or ledger effect
- Posting describes the document as a PostingPlan and hands it to the engine
- Voiding replays the document's journal backwards
- Only drafts can be deleted

Balance convention: a positive party balance means the party owes us.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..errors import InvalidOperationError
from ..models import Party, PartyType, Treasury
from ..models_commercial import (
    DocumentStatus, Invoice, InvoiceItem, InvoiceType, ReturnDocument, ReturnItem
)
from ..models_inventory import InventoryItem
from ..security import AuditTrail, Permission, RequestContext
from .common import COST, MONEY, QTY, ensure_status, get_next_sequence, get_or_raise, to_decimal
from .posting_service import CostRule, PostingEngine, PostingPlan, PostingResult

logger = logging.getLogger(__name__)


INVOICE_PREFIXES = {InvoiceType.SALES: "SI-", InvoiceType.PURCHASE: "PI-"}
RETURN_PREFIXES = {InvoiceType.SALES: "SR-", InvoiceType.PURCHASE: "PR-"}

# Sales documents are issued to customers, purchase documents by suppliers
PARTY_TYPES = {InvoiceType.SALES: PartyType.CUSTOMER, InvoiceType.PURCHASE: PartyType.SUPPLIER}

_HEADER_FIELDS = (
    "party_id", "treasury_id", "transaction_date", "discount_amount",
    "tax_amount", "shipping_cost", "paid_amount", "notes",
)

Line = Tuple[int, object, object]


def invoice_reference_type(invoice: Invoice) -> str:
    return f"{invoice.invoice_type.value}_invoice"


def return_reference_type(document: ReturnDocument) -> str:
    return f"{document.return_type.value}_return"


def compute_total(subtotal, discount=0, tax=0, shipping=0) -> Decimal:
    """Σ line totals − discount + tax + shipping"""
    return to_decimal(
        to_decimal(subtotal, MONEY) - to_decimal(discount, MONEY)
        + to_decimal(tax, MONEY) + to_decimal(shipping, MONEY),
        MONEY,
    )


def _line_values(db: Session, item_id: int, quantity, unit_price):
    item = get_or_raise(db, InventoryItem, item_id, label="Inventory item")
    if not item.is_active:
        raise InvalidOperationError(f"{item.code} is inactive")
    quantity = to_decimal(quantity, QTY)
    if quantity <= 0:
        raise InvalidOperationError("Line quantity must be greater than zero")
    unit_price = to_decimal(unit_price, COST)
    if unit_price < 0:
        raise InvalidOperationError("Unit price cannot be negative")
    return item, quantity, unit_price, to_decimal(quantity * unit_price, MONEY)


def _check_party(db: Session, party_id: int, document_type: InvoiceType) -> Party:
    party = get_or_raise(db, Party, party_id, label="Party")
    expected = PARTY_TYPES[document_type]
    if party.party_type != expected:
        raise InvalidOperationError(
            f"{party.name} is a {party.party_type.value}; "
            f"{document_type.value} documents need a {expected.value}"
        )
    if not party.is_active:
        raise InvalidOperationError(f"{party.name} is inactive")
    return party


# =============================================================================
# INVOICES
# =============================================================================

class InvoiceService:
    """Invoice lifecycle: draft -> posted -> void"""

    @staticmethod
    def create_invoice(
        db: Session,
        ctx: RequestContext,
        invoice_type: InvoiceType,
        party_id: int,
        lines: Iterable[Line],
        treasury_id: Optional[int] = None,
        discount_amount=0,
        tax_amount=0,
        shipping_cost=0,
        paid_amount=0,
        transaction_date=None,
        notes: Optional[str] = None,
    ) -> Invoice:
        ctx.require(Permission.INVOICE_CREATE)
        invoice_type = InvoiceType(invoice_type)
        _check_party(db, party_id, invoice_type)

        invoice = Invoice(
            invoice_type=invoice_type,
            invoice_number=get_next_sequence(
                db, f"{invoice_type.value}_invoice", INVOICE_PREFIXES[invoice_type]
            ),
            party_id=party_id,
            treasury_id=treasury_id,
            status=DocumentStatus.DRAFT,
            discount_amount=to_decimal(discount_amount, MONEY),
            tax_amount=to_decimal(tax_amount, MONEY),
            shipping_cost=to_decimal(shipping_cost, MONEY),
            paid_amount=to_decimal(paid_amount, MONEY),
            notes=notes,
            created_by=ctx.user_id,
        )
        if transaction_date is not None:
            invoice.transaction_date = transaction_date
        InvoiceService._set_lines(db, invoice, lines)
        InvoiceService._recalculate(db, invoice)

        db.add(invoice)
        db.flush()

        AuditTrail.record(db, ctx, "create", "invoice", invoice.id, {
            "invoice_number": invoice.invoice_number, "total": str(invoice.total_amount)
        })
        return invoice

    @staticmethod
    def _set_lines(db: Session, invoice: Invoice, lines: Iterable[Line]) -> None:
        new_lines = []
        for item_id, quantity, unit_price in lines:
            item, quantity, unit_price, total = _line_values(db, item_id, quantity, unit_price)
            new_lines.append(InvoiceItem(
                item=item, quantity=quantity, unit_price=unit_price, total_price=total
            ))
        if not new_lines:
            raise InvalidOperationError("An invoice needs at least one line")

        if invoice.id is not None:
            invoice.items.clear()
            db.flush()
            invoice.items.extend(new_lines)
        else:
            invoice.items = new_lines

    @staticmethod
    def _recalculate(db: Session, invoice: Invoice) -> None:
        invoice.subtotal = to_decimal(
            sum((Decimal(line.total_price) for line in invoice.items), Decimal("0")), MONEY
        )
        invoice.total_amount = compute_total(
            invoice.subtotal, invoice.discount_amount, invoice.tax_amount, invoice.shipping_cost
        )
        if invoice.total_amount < 0:
            raise InvalidOperationError("Discount cannot exceed the invoice total")

        paid = to_decimal(invoice.paid_amount, MONEY)
        if paid < 0:
            raise InvalidOperationError("Paid amount cannot be negative")
        if paid > invoice.total_amount:
            raise InvalidOperationError(
                f"Paid amount {paid} exceeds invoice total {invoice.total_amount}"
            )
        if paid > 0:
            if invoice.treasury_id is None:
                raise InvalidOperationError("A treasury is required to record a payment")
            get_or_raise(db, Treasury, invoice.treasury_id, label="Treasury")

    @staticmethod
    def update_invoice(
        db: Session,
        ctx: RequestContext,
        invoice_id: int,
        changes: Optional[Dict] = None,
        lines: Optional[Iterable[Line]] = None,
    ) -> Invoice:
        """Edit header fields and/or replace the lines of a draft"""
        ctx.require(Permission.INVOICE_CREATE)
        invoice = get_or_raise(db, Invoice, invoice_id, lock=True, label="Invoice")
        ensure_status(invoice, {DocumentStatus.DRAFT}, "edit", f"invoice {invoice.invoice_number}")

        for key, value in (changes or {}).items():
            if key not in _HEADER_FIELDS:
                raise InvalidOperationError(f"Field {key} cannot be edited")
            if key == "party_id":
                _check_party(db, value, invoice.invoice_type)
            if key in ("discount_amount", "tax_amount", "shipping_cost", "paid_amount"):
                value = to_decimal(value, MONEY)
            setattr(invoice, key, value)

        if lines is not None:
            InvoiceService._set_lines(db, invoice, lines)
        InvoiceService._recalculate(db, invoice)
        db.flush()

        AuditTrail.record(db, ctx, "update", "invoice", invoice.id, {
            "invoice_number": invoice.invoice_number,
            "fields": sorted((changes or {}).keys()),
            "lines_replaced": lines is not None,
        })
        return invoice

    @staticmethod
    def posting_plan(invoice: Invoice) -> PostingPlan:
        """
        Stock and balance effects of posting an invoice.

        Sales: stock out, party +total, party -paid, treasury +paid.
        Purchase: stock in at weighted-average cost, party -total,
        party +paid, treasury -paid.
        """
        number = invoice.invoice_number
        plan = PostingPlan(
            reference_type=invoice_reference_type(invoice),
            reference_id=invoice.id,
            reference_number=number,
            entry_date=invoice.transaction_date,
        )
        total = to_decimal(invoice.total_amount, MONEY)
        paid = to_decimal(invoice.paid_amount, MONEY)

        if invoice.invoice_type == InvoiceType.SALES:
            for line in invoice.items:
                line.unit_cost_at_sale = to_decimal(line.item.unit_cost, COST)
                plan.add_stock(line.item_id, -Decimal(line.quantity), reason=f"Sold on {number}")
            plan.add_party(invoice.party_id, total, f"Sales invoice {number}")
            plan.add_party(invoice.party_id, -paid, f"Payment received on {number}")
            if paid > 0:
                plan.add_treasury(
                    invoice.treasury_id, paid, "sales_payment",
                    party_id=invoice.party_id, description=f"Payment received on {number}",
                )
        else:
            for line in invoice.items:
                plan.add_stock(
                    line.item_id, Decimal(line.quantity),
                    cost_rule=CostRule.AVERAGE_IN,
                    unit_cost=to_decimal(line.unit_price, COST),
                    reason=f"Purchased on {number}",
                )
            plan.add_party(invoice.party_id, -total, f"Purchase invoice {number}")
            plan.add_party(invoice.party_id, paid, f"Payment made on {number}")
            if paid > 0:
                plan.add_treasury(
                    invoice.treasury_id, -paid, "purchase_payment",
                    party_id=invoice.party_id, description=f"Payment made on {number}",
                )
        return plan

    @staticmethod
    def post_invoice(
        db: Session,
        ctx: RequestContext,
        invoice_id: int,
        allow_negative_stock: bool = False,
    ) -> Tuple[Invoice, PostingResult]:
        """
        Post a draft invoice.

        Raises:
            InvalidTransitionError: If the invoice is not a draft
            InsufficientStockError: If a sale would drive stock negative
            InsufficientFundsError: If the treasury cannot cover a purchase payment
        """
        ctx.require(Permission.INVOICE_POST)
        invoice = get_or_raise(db, Invoice, invoice_id, lock=True, label="Invoice")
        ensure_status(invoice, {DocumentStatus.DRAFT}, "post", f"invoice {invoice.invoice_number}")
        if not invoice.items:
            raise InvalidOperationError("Cannot post an invoice without lines")

        result = PostingEngine(db, ctx, allow_negative_stock).post(
            InvoiceService.posting_plan(invoice)
        )
        invoice.status = DocumentStatus.POSTED
        invoice.posted_at = datetime.utcnow()

        AuditTrail.record(db, ctx, "post", "invoice", invoice.id, {
            "invoice_number": invoice.invoice_number,
            "total": str(invoice.total_amount),
            "paid": str(invoice.paid_amount),
        })
        return invoice, result

    @staticmethod
    def void_invoice(
        db: Session,
        ctx: RequestContext,
        invoice_id: int,
        allow_negative_stock: bool = False,
    ) -> Tuple[Invoice, PostingResult]:
        """
        Reverse every effect of a posted invoice.

        Raises:
            InvalidOperationError: If a posted return still references the invoice
        """
        ctx.require(Permission.INVOICE_VOID)
        invoice = get_or_raise(db, Invoice, invoice_id, lock=True, label="Invoice")
        ensure_status(invoice, {DocumentStatus.POSTED}, "void", f"invoice {invoice.invoice_number}")

        linked = db.query(ReturnDocument).filter(
            ReturnDocument.original_invoice_id == invoice.id,
            ReturnDocument.status == DocumentStatus.POSTED,
        ).all()
        if linked:
            raise InvalidOperationError(
                f"Cannot void invoice {invoice.invoice_number}: void its posted returns first "
                f"({', '.join(r.return_number for r in linked)})"
            )

        result = PostingEngine(db, ctx, allow_negative_stock).reverse(
            invoice_reference_type(invoice), invoice.id
        )
        invoice.status = DocumentStatus.VOID
        invoice.voided_at = datetime.utcnow()

        AuditTrail.record(db, ctx, "void", "invoice", invoice.id, {
            "invoice_number": invoice.invoice_number
        })
        return invoice, result

    @staticmethod
    def delete_invoice(db: Session, ctx: RequestContext, invoice_id: int) -> None:
        ctx.require(Permission.INVOICE_DELETE)
        invoice = get_or_raise(db, Invoice, invoice_id, lock=True, label="Invoice")
        ensure_status(invoice, {DocumentStatus.DRAFT}, "delete", f"invoice {invoice.invoice_number}")

        AuditTrail.record(db, ctx, "delete", "invoice", invoice.id, {
            "invoice_number": invoice.invoice_number
        })
        db.delete(invoice)
        db.flush()

    @staticmethod
    def list_invoices(
        db: Session,
        invoice_type: Optional[InvoiceType] = None,
        status: Optional[DocumentStatus] = None,
        party_id: Optional[int] = None,
    ) -> List[Invoice]:
        query = db.query(Invoice)
        if invoice_type:
            query = query.filter(Invoice.invoice_type == InvoiceType(invoice_type))
        if status:
            query = query.filter(Invoice.status == DocumentStatus(status))
        if party_id:
            query = query.filter(Invoice.party_id == party_id)
        return query.order_by(Invoice.id.desc()).all()


# =============================================================================
# RETURNS
# =============================================================================

class ReturnService:
    """Return lifecycle: draft -> posted -> void"""

    @staticmethod
    def create_return(
        db: Session,
        ctx: RequestContext,
        return_type: InvoiceType,
        party_id: int,
        lines: Iterable[Line],
        original_invoice_id: Optional[int] = None,
        return_date=None,
        notes: Optional[str] = None,
    ) -> ReturnDocument:
        ctx.require(Permission.INVOICE_CREATE)
        return_type = InvoiceType(return_type)
        _check_party(db, party_id, return_type)

        document = ReturnDocument(
            return_type=return_type,
            return_number=get_next_sequence(
                db, f"{return_type.value}_return", RETURN_PREFIXES[return_type]
            ),
            party_id=party_id,
            original_invoice_id=original_invoice_id,
            status=DocumentStatus.DRAFT,
            notes=notes,
            created_by=ctx.user_id,
        )
        if return_date is not None:
            document.return_date = return_date
        ReturnService._set_lines(db, document, lines)
        ReturnService._check_original(db, document)

        db.add(document)
        db.flush()

        AuditTrail.record(db, ctx, "create", "return", document.id, {
            "return_number": document.return_number, "total": str(document.total_amount)
        })
        return document

    @staticmethod
    def _set_lines(db: Session, document: ReturnDocument, lines: Iterable[Line]) -> None:
        new_lines = []
        for item_id, quantity, unit_price in lines:
            item, quantity, unit_price, total = _line_values(db, item_id, quantity, unit_price)
            new_lines.append(ReturnItem(
                item=item, quantity=quantity, unit_price=unit_price, total_price=total
            ))
        if not new_lines:
            raise InvalidOperationError("A return needs at least one line")

        if document.id is not None:
            document.items.clear()
            db.flush()
            document.items.extend(new_lines)
        else:
            document.items = new_lines
        document.total_amount = to_decimal(
            sum((Decimal(line.total_price) for line in new_lines), Decimal("0")), MONEY
        )

    @staticmethod
    def _check_original(db: Session, document: ReturnDocument) -> None:
        """A referenced invoice must be a posted invoice of the same kind and party"""
        if document.original_invoice_id is None:
            return
        invoice = get_or_raise(db, Invoice, document.original_invoice_id, label="Invoice")
        if invoice.invoice_type != document.return_type or invoice.party_id != document.party_id:
            raise InvalidOperationError(
                f"Invoice {invoice.invoice_number} does not match this return's type and party"
            )
        if invoice.status != DocumentStatus.POSTED:
            raise InvalidOperationError(f"Invoice {invoice.invoice_number} is not posted")

        invoiced: Dict[int, Decimal] = {}
        for line in invoice.items:
            invoiced[line.item.id] = invoiced.get(line.item.id, Decimal("0")) + Decimal(line.quantity)

        returned: Dict[int, Decimal] = {}
        previous = db.query(ReturnDocument).filter(
            ReturnDocument.original_invoice_id == invoice.id,
            ReturnDocument.status == DocumentStatus.POSTED,
        ).all()
        for other in previous:
            if other is document:
                continue
            for line in other.items:
                returned[line.item.id] = returned.get(line.item.id, Decimal("0")) + Decimal(line.quantity)
        # New lines are not flushed yet, so item_id may still be None
        for line in document.items:
            returned[line.item.id] = returned.get(line.item.id, Decimal("0")) + Decimal(line.quantity)

        for item_id, quantity in returned.items():
            if quantity > invoiced.get(item_id, Decimal("0")):
                raise InvalidOperationError(
                    f"Returned quantity of item {item_id} exceeds what invoice "
                    f"{invoice.invoice_number} covers"
                )

    @staticmethod
    def replace_lines(db: Session, ctx: RequestContext, return_id: int, lines: Iterable[Line]) -> ReturnDocument:
        ctx.require(Permission.INVOICE_CREATE)
        document = get_or_raise(db, ReturnDocument, return_id, lock=True, label="Return")
        ensure_status(document, {DocumentStatus.DRAFT}, "edit", f"return {document.return_number}")
        ReturnService._set_lines(db, document, lines)
        ReturnService._check_original(db, document)
        db.flush()
        return document

    @staticmethod
    def _sale_costs(document: ReturnDocument) -> Dict[int, Decimal]:
        """Cost each item left with on the linked sales invoice"""
        costs: Dict[int, Decimal] = {}
        if document.original_invoice is None:
            return costs
        for line in document.original_invoice.items:
            if line.unit_cost_at_sale is not None:
                costs.setdefault(line.item_id, to_decimal(line.unit_cost_at_sale, COST))
        return costs

    @staticmethod
    def posting_plan(document: ReturnDocument) -> PostingPlan:
        """
        Sales return: stock back in, party -total. Each line records the
        cost it was sold at (linked invoice) or the current cost.
        Purchase return: stock out at reverse weighted-average cost, party +total.
        """
        number = document.return_number
        plan = PostingPlan(
            reference_type=return_reference_type(document),
            reference_id=document.id,
            reference_number=number,
            entry_date=document.return_date,
        )
        total = to_decimal(document.total_amount, MONEY)

        if document.return_type == InvoiceType.SALES:
            sold_at = ReturnService._sale_costs(document)
            for line in document.items:
                line.unit_cost_at_return = sold_at.get(
                    line.item_id, to_decimal(line.item.unit_cost, COST)
                )
                plan.add_stock(line.item_id, Decimal(line.quantity), reason=f"Returned on {number}")
            plan.add_party(document.party_id, -total, f"Sales return {number}")
        else:
            for line in document.items:
                plan.add_stock(
                    line.item_id, -Decimal(line.quantity),
                    cost_rule=CostRule.AVERAGE_OUT,
                    unit_cost=to_decimal(line.unit_price, COST),
                    reason=f"Returned to supplier on {number}",
                )
            plan.add_party(document.party_id, total, f"Purchase return {number}")
        return plan

    @staticmethod
    def post_return(
        db: Session,
        ctx: RequestContext,
        return_id: int,
        allow_negative_stock: bool = False,
    ) -> Tuple[ReturnDocument, PostingResult]:
        ctx.require(Permission.INVOICE_POST)
        document = get_or_raise(db, ReturnDocument, return_id, lock=True, label="Return")
        ensure_status(document, {DocumentStatus.DRAFT}, "post", f"return {document.return_number}")
        ReturnService._check_original(db, document)

        result = PostingEngine(db, ctx, allow_negative_stock).post(
            ReturnService.posting_plan(document)
        )
        document.status = DocumentStatus.POSTED
        document.posted_at = datetime.utcnow()

        AuditTrail.record(db, ctx, "post", "return", document.id, {
            "return_number": document.return_number, "total": str(document.total_amount)
        })
        return document, result

    @staticmethod
    def void_return(
        db: Session,
        ctx: RequestContext,
        return_id: int,
        allow_negative_stock: bool = False,
    ) -> Tuple[ReturnDocument, PostingResult]:
        ctx.require(Permission.INVOICE_VOID)
        document = get_or_raise(db, ReturnDocument, return_id, lock=True, label="Return")
        ensure_status(document, {DocumentStatus.POSTED}, "void", f"return {document.return_number}")

        result = PostingEngine(db, ctx, allow_negative_stock).reverse(
            return_reference_type(document), document.id
        )
        document.status = DocumentStatus.VOID
        document.voided_at = datetime.utcnow()

        AuditTrail.record(db, ctx, "void", "return", document.id, {
            "return_number": document.return_number
        })
        return document, result

    @staticmethod
    def delete_return(db: Session, ctx: RequestContext, return_id: int) -> None:
        ctx.require(Permission.INVOICE_DELETE)
        document = get_or_raise(db, ReturnDocument, return_id, lock=True, label="Return")
        ensure_status(document, {DocumentStatus.DRAFT}, "delete", f"return {document.return_number}")

        AuditTrail.record(db, ctx, "delete", "return", document.id, {
            "return_number": document.return_number
        })
        db.delete(document)
        db.flush()
