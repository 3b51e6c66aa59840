"""
Invoices API Router
===================
Sales and purchase invoices: draft editing, posting, voiding and deletion.
"""

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db import transaction
from ..errors import ERPError, http_error
from ..models_commercial import DocumentStatus, Invoice, InvoiceType
from ..security import Permission, RequestContext, get_db, require_permission
from ..services.common import get_or_raise
from ..services.invoice_service import InvoiceService

router = APIRouter(prefix="/api/invoices", tags=["Invoices"])


# =============================================================================
# PYDANTIC SCHEMAS
# =============================================================================

class DocumentLineIn(BaseModel):
    item_id: int
    quantity: float = Field(..., gt=0)
    unit_price: float = Field(..., ge=0)


class InvoiceCreate(BaseModel):
    invoice_type: InvoiceType
    party_id: int
    treasury_id: Optional[int] = None
    transaction_date: Optional[date] = None
    items: List[DocumentLineIn] = Field(..., min_length=1)
    discount_amount: float = Field(0, ge=0)
    tax_amount: float = Field(0, ge=0)
    shipping_cost: float = Field(0, ge=0)
    paid_amount: float = Field(0, ge=0)
    notes: Optional[str] = None


class InvoiceUpdate(BaseModel):
    party_id: Optional[int] = None
    treasury_id: Optional[int] = None
    transaction_date: Optional[date] = None
    items: Optional[List[DocumentLineIn]] = None
    discount_amount: Optional[float] = Field(None, ge=0)
    tax_amount: Optional[float] = Field(None, ge=0)
    shipping_cost: Optional[float] = Field(None, ge=0)
    paid_amount: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None


class InvoiceLineOut(BaseModel):
    id: int
    item_id: int
    quantity: float
    unit_price: float
    total_price: float
    unit_cost_at_sale: Optional[float]

    class Config:
        from_attributes = True


class InvoiceOut(BaseModel):
    id: int
    invoice_type: InvoiceType
    invoice_number: str
    party_id: int
    treasury_id: Optional[int]
    transaction_date: date
    status: DocumentStatus
    subtotal: float
    discount_amount: float
    tax_amount: float
    shipping_cost: float
    total_amount: float
    paid_amount: float
    remaining_amount: float
    notes: Optional[str]
    posted_at: Optional[datetime]
    voided_at: Optional[datetime]
    items: List[InvoiceLineOut] = []

    class Config:
        from_attributes = True


def document_lines(items: List[DocumentLineIn]):
    return [(line.item_id, line.quantity, line.unit_price) for line in items]


def _transition_response(invoice: Invoice, result) -> dict:
    return {
        "success": True,
        "invoice": InvoiceOut.model_validate(invoice).model_dump(mode="json"),
        "movements": len(result.movements),
        "ledger_entries": len(result.ledger_entries),
        "transactions": len(result.transactions),
        "warnings": result.warnings,
    }


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("", response_model=List[InvoiceOut])
async def list_invoices(
    invoice_type: Optional[InvoiceType] = None,
    status: Optional[DocumentStatus] = None,
    party_id: Optional[int] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVOICE_VIEW))
):
    return InvoiceService.list_invoices(db, invoice_type, status, party_id)


@router.post("", response_model=InvoiceOut, status_code=201)
async def create_invoice(
    data: InvoiceCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVOICE_CREATE))
):
    """Create a draft. Drafts have no stock or ledger effect."""
    try:
        with transaction(db):
            invoice = InvoiceService.create_invoice(
                db, ctx,
                lines=document_lines(data.items),
                **data.model_dump(exclude={"items"}),
            )
    except ERPError as e:
        raise http_error(e)
    db.refresh(invoice)
    return invoice


@router.get("/{invoice_id}", response_model=InvoiceOut)
async def get_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVOICE_VIEW))
):
    try:
        return get_or_raise(db, Invoice, invoice_id, label="Invoice")
    except ERPError as e:
        raise http_error(e)


@router.patch("/{invoice_id}", response_model=InvoiceOut)
async def update_invoice(
    invoice_id: int,
    data: InvoiceUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVOICE_CREATE))
):
    """Edit a draft; `items`, when given, replaces every line"""
    changes = data.model_dump(exclude_unset=True, exclude={"items"})
    lines = document_lines(data.items) if data.items is not None else None
    try:
        with transaction(db):
            invoice = InvoiceService.update_invoice(db, ctx, invoice_id, changes, lines)
    except ERPError as e:
        raise http_error(e)
    db.refresh(invoice)
    return invoice


@router.post("/{invoice_id}/post")
async def post_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ctx: RequestContext = Depends(require_permission(Permission.INVOICE_POST))
):
    try:
        with transaction(db):
            invoice, result = InvoiceService.post_invoice(
                db, ctx, invoice_id, allow_negative_stock=settings.allow_negative_stock
            )
    except ERPError as e:
        raise http_error(e)
    db.refresh(invoice)
    return _transition_response(invoice, result)


@router.post("/{invoice_id}/void")
async def void_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ctx: RequestContext = Depends(require_permission(Permission.INVOICE_VOID))
):
    """Reverse every stock, ledger and treasury effect of a posted invoice"""
    try:
        with transaction(db):
            invoice, result = InvoiceService.void_invoice(
                db, ctx, invoice_id, allow_negative_stock=settings.allow_negative_stock
            )
    except ERPError as e:
        raise http_error(e)
    db.refresh(invoice)
    return _transition_response(invoice, result)


@router.delete("/{invoice_id}")
async def delete_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVOICE_DELETE))
):
    try:
        with transaction(db):
            InvoiceService.delete_invoice(db, ctx, invoice_id)
    except ERPError as e:
        raise http_error(e)
    return {"success": True}
