"""
Parties API Router
==================
Customers and suppliers, their statements of account, and receipts /
payments against them.
"""

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from ..db import transaction
from ..errors import ERPError, http_error
from ..models import Party, PartyType
from ..security import Permission, RequestContext, get_db, require_permission
from ..services.common import get_or_raise
from ..services.export_service import XLSX_MEDIA_TYPE, statement_to_xlsx
from ..services.party_service import PartyService
from ..services.treasury_service import TreasuryService

router = APIRouter(prefix="/api/parties", tags=["Parties"])


# =============================================================================
# PYDANTIC SCHEMAS
# =============================================================================

class PartyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    party_type: PartyType
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    tax_number: Optional[str] = None
    commercial_record: Optional[str] = None
    credit_limit: Optional[float] = Field(None, ge=0)
    opening_balance: float = 0


class PartyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    tax_number: Optional[str] = None
    commercial_record: Optional[str] = None
    credit_limit: Optional[float] = Field(None, ge=0)
    is_active: Optional[bool] = None


class PartyOut(BaseModel):
    id: int
    name: str
    party_type: PartyType
    phone: Optional[str]
    email: Optional[str]
    address: Optional[str]
    tax_number: Optional[str]
    commercial_record: Optional[str]
    balance: float
    credit_limit: Optional[float]
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class SettlementRequest(BaseModel):
    """Receipt from or payment to a party"""
    treasury_id: int
    amount: float = Field(..., gt=0)
    invoice_id: Optional[int] = None
    description: Optional[str] = Field(None, max_length=255)


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("", response_model=List[PartyOut])
async def list_parties(
    party_type: Optional[PartyType] = None,
    search: Optional[str] = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.PARTY_VIEW))
):
    return PartyService.list_parties(db, party_type, search, include_inactive)


@router.post("", response_model=PartyOut, status_code=201)
async def create_party(
    data: PartyCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.PARTY_MANAGE))
):
    """A non-zero `opening_balance` becomes the first ledger entry"""
    try:
        with transaction(db):
            party = PartyService.create_party(db, ctx, **data.model_dump(exclude_none=True))
    except ERPError as e:
        raise http_error(e)
    db.refresh(party)
    return party


@router.get("/{party_id}", response_model=PartyOut)
async def get_party(
    party_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.PARTY_VIEW))
):
    try:
        return get_or_raise(db, Party, party_id, label="Party")
    except ERPError as e:
        raise http_error(e)


@router.patch("/{party_id}", response_model=PartyOut)
async def update_party(
    party_id: int,
    data: PartyUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.PARTY_MANAGE))
):
    try:
        with transaction(db):
            party = PartyService.update_party(db, ctx, party_id, data.model_dump(exclude_unset=True))
    except ERPError as e:
        raise http_error(e)
    db.refresh(party)
    return party


@router.delete("/{party_id}")
async def delete_party(
    party_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.PARTY_MANAGE))
):
    try:
        with transaction(db):
            outcome = PartyService.delete_party(db, ctx, party_id)
    except ERPError as e:
        raise http_error(e)
    return {"success": True, "outcome": outcome}


@router.get("/{party_id}/statement")
async def party_statement(
    party_id: int,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.PARTY_VIEW))
):
    try:
        return PartyService.statement(db, party_id, date_from, date_to)
    except ERPError as e:
        raise http_error(e)


@router.get("/{party_id}/statement/export")
async def export_party_statement(
    party_id: int,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.PARTY_VIEW, Permission.REPORT_EXPORT))
):
    """Statement of account as an .xlsx download"""
    try:
        statement = PartyService.statement(db, party_id, date_from, date_to)
    except ERPError as e:
        raise http_error(e)
    filename = f"statement_{party_id}_{date.today().isoformat()}.xlsx"
    return StreamingResponse(
        statement_to_xlsx(statement),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.post("/{party_id}/receipts")
async def receive_from_party(
    party_id: int,
    request: SettlementRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.TREASURY_OPERATE))
):
    """Money received from a party, optionally settling a sales invoice"""
    try:
        with transaction(db):
            result, invoice = TreasuryService.receive_from_party(
                db, ctx, party_id, request.treasury_id, request.amount,
                invoice_id=request.invoice_id, description=request.description,
            )
            txn = result.transactions[0]
            response = {
                "success": True,
                "transaction_number": txn.transaction_number,
                "treasury_balance": float(txn.balance_after),
                "party_balance": float(result.ledger_entries[0].balance_after),
                "invoice_remaining": float(invoice.remaining_amount) if invoice else None,
            }
    except ERPError as e:
        raise http_error(e)
    return response


@router.post("/{party_id}/payments")
async def pay_party(
    party_id: int,
    request: SettlementRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.TREASURY_OPERATE))
):
    """Money paid to a party, optionally settling a purchase invoice"""
    try:
        with transaction(db):
            result, invoice = TreasuryService.pay_party(
                db, ctx, party_id, request.treasury_id, request.amount,
                invoice_id=request.invoice_id, description=request.description,
            )
            txn = result.transactions[0]
            response = {
                "success": True,
                "transaction_number": txn.transaction_number,
                "treasury_balance": float(txn.balance_after),
                "party_balance": float(result.ledger_entries[0].balance_after),
                "invoice_remaining": float(invoice.remaining_amount) if invoice else None,
            }
    except ERPError as e:
        raise http_error(e)
    return response
