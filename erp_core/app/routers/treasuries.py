"""
Treasury API Router
===================
Cash / bank accounts, deposits, withdrawals, transfers and the
transaction journal.
"""

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db import transaction
from ..errors import ERPError, http_error
from ..models import Treasury, TreasuryType, TransactionType
from ..security import Permission, RequestContext, get_db, require_permission
from ..services.common import get_or_raise
from ..services.treasury_service import TreasuryService

router = APIRouter(prefix="/api/treasuries", tags=["Treasury"])


class TreasuryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    treasury_type: TreasuryType = TreasuryType.CASH
    currency: str = Field("EGP", min_length=3, max_length=10)
    opening_balance: float = Field(0, ge=0)
    account_number: Optional[str] = None
    description: Optional[str] = None


class TreasuryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    account_number: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class TreasuryOut(BaseModel):
    id: int
    name: str
    treasury_type: TreasuryType
    currency: str
    account_number: Optional[str]
    description: Optional[str]
    balance: float
    is_active: bool

    class Config:
        from_attributes = True


class AmountRequest(BaseModel):
    amount: float = Field(..., gt=0)
    description: Optional[str] = Field(None, max_length=255)


class WithdrawRequest(AmountRequest):
    category: Optional[str] = Field(None, max_length=40)


class TransferRequest(BaseModel):
    from_treasury_id: int
    to_treasury_id: int
    amount: float = Field(..., gt=0)
    description: Optional[str] = Field(None, max_length=255)


class TransactionOut(BaseModel):
    id: int
    transaction_number: str
    treasury_id: int
    party_id: Optional[int]
    transaction_type: TransactionType
    category: str
    amount: float
    balance_after: float
    description: Optional[str]
    transaction_date: date
    reference_type: Optional[str]
    reference_number: Optional[str]
    is_reversed: bool
    reversal_of_id: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True


def _posted(result) -> dict:
    return {
        "success": True,
        "transactions": [
            TransactionOut.model_validate(t).model_dump(mode="json") for t in result.transactions
        ],
    }


@router.get("", response_model=List[TreasuryOut])
async def list_treasuries(
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.TREASURY_VIEW))
):
    query = db.query(Treasury)
    if not include_inactive:
        query = query.filter(Treasury.is_active.is_(True))
    return query.order_by(Treasury.name).all()


@router.post("", response_model=TreasuryOut, status_code=201)
async def create_treasury(
    data: TreasuryCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.TREASURY_MANAGE))
):
    try:
        with transaction(db):
            treasury = TreasuryService.create_treasury(db, ctx, **data.model_dump())
    except ERPError as e:
        raise http_error(e)
    db.refresh(treasury)
    return treasury


@router.get("/transactions", response_model=List[TransactionOut])
async def list_transactions(
    treasury_id: Optional[int] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = Query(500, le=5000),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.TREASURY_VIEW))
):
    return TreasuryService.transactions(db, treasury_id, date_from, date_to, limit)


@router.post("/transfer")
async def transfer(
    request: TransferRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.TREASURY_OPERATE))
):
    try:
        with transaction(db):
            result = TreasuryService.transfer(
                db, ctx, request.from_treasury_id, request.to_treasury_id,
                request.amount, request.description,
            )
            response = _posted(result)
    except ERPError as e:
        raise http_error(e)
    return response


@router.get("/{treasury_id}", response_model=TreasuryOut)
async def get_treasury(
    treasury_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.TREASURY_VIEW))
):
    try:
        return get_or_raise(db, Treasury, treasury_id, label="Treasury")
    except ERPError as e:
        raise http_error(e)


@router.patch("/{treasury_id}", response_model=TreasuryOut)
async def update_treasury(
    treasury_id: int,
    data: TreasuryUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.TREASURY_MANAGE))
):
    try:
        with transaction(db):
            treasury = TreasuryService.update_treasury(
                db, ctx, treasury_id, data.model_dump(exclude_unset=True)
            )
    except ERPError as e:
        raise http_error(e)
    db.refresh(treasury)
    return treasury


@router.post("/{treasury_id}/deposit")
async def deposit(
    treasury_id: int,
    request: AmountRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.TREASURY_OPERATE))
):
    try:
        with transaction(db):
            result = TreasuryService.deposit(db, ctx, treasury_id, request.amount, request.description)
            response = _posted(result)
    except ERPError as e:
        raise http_error(e)
    return response


@router.post("/{treasury_id}/withdraw")
async def withdraw(
    treasury_id: int,
    request: WithdrawRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.TREASURY_OPERATE))
):
    try:
        with transaction(db):
            result = TreasuryService.withdraw(
                db, ctx, treasury_id, request.amount, request.description, request.category
            )
            response = _posted(result)
    except ERPError as e:
        raise http_error(e)
    return response
