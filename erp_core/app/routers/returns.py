"""
Returns API Router
==================
Sales returns (customer brings goods back) and purchase returns (goods
sent back to a supplier).
"""

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db import transaction
from ..errors import ERPError, http_error
from ..models_commercial import DocumentStatus, InvoiceType, ReturnDocument
from ..security import Permission, RequestContext, get_db, require_permission
from ..services.common import get_or_raise
from ..services.invoice_service import ReturnService
from .invoices import DocumentLineIn, document_lines

router = APIRouter(prefix="/api/returns", tags=["Returns"])


class ReturnCreate(BaseModel):
    return_type: InvoiceType
    party_id: int
    original_invoice_id: Optional[int] = None
    return_date: Optional[date] = None
    items: List[DocumentLineIn] = Field(..., min_length=1)
    notes: Optional[str] = None


class ReturnLinesUpdate(BaseModel):
    items: List[DocumentLineIn] = Field(..., min_length=1)


class ReturnLineOut(BaseModel):
    id: int
    item_id: int
    quantity: float
    unit_price: float
    total_price: float
    unit_cost_at_return: Optional[float]

    class Config:
        from_attributes = True


class ReturnOut(BaseModel):
    id: int
    return_type: InvoiceType
    return_number: str
    party_id: int
    original_invoice_id: Optional[int]
    return_date: date
    status: DocumentStatus
    total_amount: float
    notes: Optional[str]
    posted_at: Optional[datetime]
    voided_at: Optional[datetime]
    items: List[ReturnLineOut] = []

    class Config:
        from_attributes = True


def _transition_response(document: ReturnDocument, result) -> dict:
    return {
        "success": True,
        "return": ReturnOut.model_validate(document).model_dump(mode="json"),
        "movements": len(result.movements),
        "ledger_entries": len(result.ledger_entries),
        "warnings": result.warnings,
    }


@router.get("", response_model=List[ReturnOut])
async def list_returns(
    return_type: Optional[InvoiceType] = None,
    status: Optional[DocumentStatus] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVOICE_VIEW))
):
    query = db.query(ReturnDocument)
    if return_type:
        query = query.filter(ReturnDocument.return_type == return_type)
    if status:
        query = query.filter(ReturnDocument.status == status)
    return query.order_by(ReturnDocument.id.desc()).all()


@router.post("", response_model=ReturnOut, status_code=201)
async def create_return(
    data: ReturnCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVOICE_CREATE))
):
    try:
        with transaction(db):
            document = ReturnService.create_return(
                db, ctx,
                lines=document_lines(data.items),
                **data.model_dump(exclude={"items"}),
            )
    except ERPError as e:
        raise http_error(e)
    db.refresh(document)
    return document


@router.get("/{return_id}", response_model=ReturnOut)
async def get_return(
    return_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVOICE_VIEW))
):
    try:
        return get_or_raise(db, ReturnDocument, return_id, label="Return")
    except ERPError as e:
        raise http_error(e)


@router.put("/{return_id}/items", response_model=ReturnOut)
async def replace_return_lines(
    return_id: int,
    data: ReturnLinesUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVOICE_CREATE))
):
    try:
        with transaction(db):
            document = ReturnService.replace_lines(db, ctx, return_id, document_lines(data.items))
    except ERPError as e:
        raise http_error(e)
    db.refresh(document)
    return document


@router.post("/{return_id}/post")
async def post_return(
    return_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ctx: RequestContext = Depends(require_permission(Permission.INVOICE_POST))
):
    try:
        with transaction(db):
            document, result = ReturnService.post_return(
                db, ctx, return_id, allow_negative_stock=settings.allow_negative_stock
            )
    except ERPError as e:
        raise http_error(e)
    db.refresh(document)
    return _transition_response(document, result)


@router.post("/{return_id}/void")
async def void_return(
    return_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ctx: RequestContext = Depends(require_permission(Permission.INVOICE_VOID))
):
    try:
        with transaction(db):
            document, result = ReturnService.void_return(
                db, ctx, return_id, allow_negative_stock=settings.allow_negative_stock
            )
    except ERPError as e:
        raise http_error(e)
    db.refresh(document)
    return _transition_response(document, result)


@router.delete("/{return_id}")
async def delete_return(
    return_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVOICE_DELETE))
):
    try:
        with transaction(db):
            ReturnService.delete_return(db, ctx, return_id)
    except ERPError as e:
        raise http_error(e)
    return {"success": True}
