"""
Stocktaking API Router
======================
Physical count sessions and their reconciliation into stock.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db import transaction
from ..errors import ERPError, http_error
from ..models_inventory import ItemType, StocktakingSession, StocktakingStatus, StocktakingType
from ..security import Permission, RequestContext, get_db, require_permission
from ..services.common import get_or_raise
from ..services.stocktaking_service import StocktakingService

router = APIRouter(prefix="/api/stocktaking", tags=["Stocktaking"])


class SessionCreate(BaseModel):
    session_type: StocktakingType = StocktakingType.FULL
    item_types: List[ItemType] = []
    notes: Optional[str] = None


class CountRequest(BaseModel):
    item_id: int
    counted_quantity: float = Field(..., ge=0)
    notes: Optional[str] = Field(None, max_length=255)


class LineOut(BaseModel):
    id: int
    item_id: int
    system_quantity: float
    counted_quantity: float
    difference: float
    unit_cost: float
    notes: Optional[str]
    counted_at: Optional[datetime]

    class Config:
        from_attributes = True


class SessionOut(BaseModel):
    id: int
    code: str
    session_type: StocktakingType
    status: StocktakingStatus
    item_types: Optional[str]
    notes: Optional[str]
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    lines: List[LineOut] = []

    class Config:
        from_attributes = True


@router.get("", response_model=List[SessionOut])
async def list_sessions(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.STOCKTAKING_VIEW))
):
    return db.query(StocktakingSession).order_by(StocktakingSession.id.desc()).all()


@router.post("", response_model=SessionOut, status_code=201)
async def create_session(
    data: SessionCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.STOCKTAKING_COUNT))
):
    try:
        with transaction(db):
            session = StocktakingService.create_session(
                db, ctx, data.session_type, data.item_types, data.notes
            )
    except ERPError as e:
        raise http_error(e)
    db.refresh(session)
    return session


@router.get("/{session_id}", response_model=SessionOut)
async def get_session(
    session_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.STOCKTAKING_VIEW))
):
    try:
        return get_or_raise(db, StocktakingSession, session_id, label="Stocktaking session")
    except ERPError as e:
        raise http_error(e)


@router.post("/{session_id}/start", response_model=SessionOut)
async def start_session(
    session_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.STOCKTAKING_COUNT))
):
    """Snapshot current system quantities into count lines"""
    try:
        with transaction(db):
            session = StocktakingService.start(db, ctx, session_id)
    except ERPError as e:
        raise http_error(e)
    db.refresh(session)
    return session


@router.post("/{session_id}/counts", response_model=LineOut)
async def record_count(
    session_id: int,
    request: CountRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.STOCKTAKING_COUNT))
):
    try:
        with transaction(db):
            line = StocktakingService.record_count(
                db, ctx, session_id, request.item_id, request.counted_quantity, request.notes
            )
    except ERPError as e:
        raise http_error(e)
    db.refresh(line)
    return line


@router.post("/{session_id}/reconcile")
async def reconcile_session(
    session_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ctx: RequestContext = Depends(require_permission(Permission.STOCKTAKING_RECONCILE))
):
    """Post counted minus system for every line and complete the session"""
    try:
        with transaction(db):
            session, result = StocktakingService.reconcile(
                db, ctx, session_id, allow_negative_stock=settings.allow_negative_stock
            )
    except ERPError as e:
        raise http_error(e)
    db.refresh(session)
    return {
        "success": True,
        "session": SessionOut.model_validate(session).model_dump(mode="json"),
        "movements": len(result.movements),
        "warnings": result.warnings,
    }


@router.post("/{session_id}/cancel", response_model=SessionOut)
async def cancel_session(
    session_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.STOCKTAKING_COUNT))
):
    try:
        with transaction(db):
            session = StocktakingService.cancel(db, ctx, session_id)
    except ERPError as e:
        raise http_error(e)
    db.refresh(session)
    return session
