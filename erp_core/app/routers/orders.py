"""
Manufacturing Orders API Router
===============================
Production, packaging and bundle-assembly orders.

Completing an order consumes its components and produces its output in a
single transaction; cancelling a completed order reverses it exactly.
"""

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db import transaction
from ..errors import ERPError, http_error
from ..models_inventory import Order, OrderStatus, OrderType
from ..security import Permission, RequestContext, get_db, require_permission
from ..services.common import get_or_raise
from ..services.order_service import OrderService

router = APIRouter(prefix="/api/orders", tags=["Orders"])


# =============================================================================
# PYDANTIC SCHEMAS
# =============================================================================

class OrderLineIn(BaseModel):
    item_id: int
    quantity: float = Field(..., gt=0)


class OrderCreate(BaseModel):
    order_type: OrderType
    items: List[OrderLineIn] = Field(..., min_length=1)
    order_date: Optional[date] = None
    notes: Optional[str] = None


class OrderLinesUpdate(BaseModel):
    items: List[OrderLineIn] = Field(..., min_length=1)


class OrderLineOut(BaseModel):
    id: int
    item_id: int
    quantity: float
    unit_cost: Optional[float]
    total_cost: Optional[float]

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    order_type: OrderType
    code: str
    order_date: date
    status: OrderStatus
    total_cost: float
    notes: Optional[str]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    items: List[OrderLineOut] = []

    class Config:
        from_attributes = True


def _lines(items: List[OrderLineIn]):
    return [(line.item_id, line.quantity) for line in items]


def _transition_response(order: Order, result) -> dict:
    return {
        "success": True,
        "order": OrderOut.model_validate(order).model_dump(mode="json"),
        "movements": len(result.movements) if result else 0,
        "warnings": result.warnings if result else [],
    }


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("", response_model=List[OrderOut])
async def list_orders(
    order_type: Optional[OrderType] = None,
    status: Optional[OrderStatus] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.ORDER_VIEW))
):
    query = db.query(Order)
    if order_type:
        query = query.filter(Order.order_type == order_type)
    if status:
        query = query.filter(Order.status == status)
    return query.order_by(Order.id.desc()).all()


@router.post("", response_model=OrderOut, status_code=201)
async def create_order(
    data: OrderCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.ORDER_CREATE))
):
    try:
        with transaction(db):
            order = OrderService.create_order(
                db, ctx, data.order_type, _lines(data.items),
                notes=data.notes, order_date=data.order_date,
            )
    except ERPError as e:
        raise http_error(e)
    db.refresh(order)
    return order


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.ORDER_VIEW))
):
    try:
        return get_or_raise(db, Order, order_id, label="Order")
    except ERPError as e:
        raise http_error(e)


@router.put("/{order_id}/items", response_model=OrderOut)
async def replace_order_lines(
    order_id: int,
    data: OrderLinesUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.ORDER_CREATE))
):
    try:
        with transaction(db):
            order = OrderService.replace_lines(db, ctx, order_id, _lines(data.items))
    except ERPError as e:
        raise http_error(e)
    db.refresh(order)
    return order


@router.get("/{order_id}/availability")
async def order_availability(
    order_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ctx: RequestContext = Depends(require_permission(Permission.ORDER_VIEW))
):
    """Aggregated component requirements and shortages for every line"""
    try:
        report = OrderService.availability(db, order_id, settings.default_recipe_batch_size)
    except ERPError as e:
        raise http_error(e)
    return report.as_dict()


@router.post("/{order_id}/start", response_model=OrderOut)
async def start_order(
    order_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.ORDER_COMPLETE))
):
    try:
        with transaction(db):
            order = OrderService.start(db, ctx, order_id)
    except ERPError as e:
        raise http_error(e)
    db.refresh(order)
    return order


@router.post("/{order_id}/complete")
async def complete_order(
    order_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ctx: RequestContext = Depends(require_permission(Permission.ORDER_COMPLETE))
):
    """
    Complete an order.

    With ALLOW_NEGATIVE_STOCK off a shortage rejects the request and nothing
    is applied; with it on, shortages come back as warnings.
    """
    try:
        with transaction(db):
            order, result = OrderService.complete(
                db, ctx, order_id,
                allow_negative_stock=settings.allow_negative_stock,
                default_batch_size=settings.default_recipe_batch_size,
            )
    except ERPError as e:
        raise http_error(e)
    db.refresh(order)
    return _transition_response(order, result)


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ctx: RequestContext = Depends(require_permission(Permission.ORDER_CANCEL))
):
    try:
        with transaction(db):
            order, result = OrderService.cancel(
                db, ctx, order_id, allow_negative_stock=settings.allow_negative_stock
            )
    except ERPError as e:
        raise http_error(e)
    db.refresh(order)
    return _transition_response(order, result)


@router.delete("/{order_id}")
async def delete_order(
    order_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.ORDER_DELETE))
):
    try:
        with transaction(db):
            OrderService.delete(db, ctx, order_id)
    except ERPError as e:
        raise http_error(e)
    return {"success": True}
