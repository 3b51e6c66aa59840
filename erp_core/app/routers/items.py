"""
Inventory Items API Router
==========================
Catalogue maintenance, bills of materials, stock adjustments, movement
history and availability checks.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db import transaction
from ..errors import ERPError, http_error
from ..models_inventory import InventoryItem, ItemType, MovementType
from ..security import Permission, RequestContext, get_db, require_permission
from ..services.common import get_or_raise
from ..services.inventory_service import InventoryQueryService, InventoryService
from ..services.requirements_service import RequirementsService

router = APIRouter(prefix="/api/items", tags=["Inventory"])


# =============================================================================
# PYDANTIC SCHEMAS
# =============================================================================

class BOMLineIn(BaseModel):
    component_id: int
    quantity: float = Field(..., gt=0)


class ItemCreate(BaseModel):
    item_type: ItemType
    name: str = Field(..., min_length=1, max_length=200)
    code: Optional[str] = Field(None, max_length=50)
    unit: str = "pcs"
    quantity: float = Field(0, ge=0, description="Opening stock")
    unit_cost: float = Field(0, ge=0)
    min_stock: float = Field(0, ge=0)
    sales_price: Optional[float] = Field(None, ge=0)
    recipe_batch_size: Optional[float] = None
    semi_finished_id: Optional[int] = None
    semi_finished_quantity: Optional[float] = Field(None, ge=0)
    bundle_price: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    bom: List[BOMLineIn] = []


class ItemUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    unit: Optional[str] = None
    min_stock: Optional[float] = Field(None, ge=0)
    sales_price: Optional[float] = Field(None, ge=0)
    recipe_batch_size: Optional[float] = None
    semi_finished_id: Optional[int] = None
    semi_finished_quantity: Optional[float] = Field(None, ge=0)
    bundle_price: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    is_active: Optional[bool] = None


class BOMLineOut(BaseModel):
    component_id: int
    quantity: float

    class Config:
        from_attributes = True


class ItemOut(BaseModel):
    id: int
    item_type: ItemType
    code: str
    name: str
    unit: str
    quantity: float
    min_stock: float
    unit_cost: float
    sales_price: Optional[float]
    recipe_batch_size: Optional[float]
    semi_finished_id: Optional[int]
    semi_finished_quantity: Optional[float]
    bundle_price: Optional[float]
    description: Optional[str]
    is_active: bool
    is_low_stock: bool
    bom_lines: List[BOMLineOut] = []

    class Config:
        from_attributes = True


class AdjustStockRequest(BaseModel):
    new_quantity: float
    reason: str = Field(..., min_length=3)


class MovementOut(BaseModel):
    id: int
    item_id: int
    movement_type: MovementType
    quantity_change: float
    quantity_before: float
    quantity_after: float
    unit_cost: Optional[float]
    cost_before: float
    cost_after: float
    cost_rule: Optional[str]
    reference_type: Optional[str]
    reference_id: Optional[int]
    reference_number: Optional[str]
    reason: Optional[str]
    is_reversed: bool
    reversal_of_id: Optional[int]
    movement_date: datetime

    class Config:
        from_attributes = True


# =============================================================================
# CATALOGUE
# =============================================================================

@router.get("", response_model=List[ItemOut])
async def list_items(
    item_type: Optional[ItemType] = None,
    search: Optional[str] = None,
    low_stock_only: bool = False,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVENTORY_VIEW))
):
    return InventoryQueryService.list_items(db, item_type, search, low_stock_only, include_inactive)


@router.post("", response_model=ItemOut, status_code=201)
async def create_item(
    data: ItemCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVENTORY_CREATE))
):
    """
    Create a catalogue item. A positive `quantity` is booked as opening stock
    at `unit_cost`.
    """
    try:
        with transaction(db):
            item = InventoryService.create_item(
                db, ctx,
                bom=[(line.component_id, line.quantity) for line in data.bom],
                **data.model_dump(exclude={"bom"}),
            )
    except ERPError as e:
        raise http_error(e)
    db.refresh(item)
    return item


@router.get("/{item_id}", response_model=ItemOut)
async def get_item(
    item_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVENTORY_VIEW))
):
    try:
        return get_or_raise(db, InventoryItem, item_id, label="Inventory item")
    except ERPError as e:
        raise http_error(e)


@router.patch("/{item_id}", response_model=ItemOut)
async def update_item(
    item_id: int,
    data: ItemUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVENTORY_UPDATE))
):
    try:
        with transaction(db):
            item = InventoryService.update_item(db, ctx, item_id, data.model_dump(exclude_unset=True))
    except ERPError as e:
        raise http_error(e)
    db.refresh(item)
    return item


@router.put("/{item_id}/bom", response_model=ItemOut)
async def replace_bom(
    item_id: int,
    lines: List[BOMLineIn],
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVENTORY_UPDATE))
):
    """Replace the recipe / packaging BOM / bundle contents of an item"""
    try:
        with transaction(db):
            item = InventoryService.set_bom(
                db, ctx, item_id, [(line.component_id, line.quantity) for line in lines]
            )
    except ERPError as e:
        raise http_error(e)
    db.refresh(item)
    return item


@router.delete("/{item_id}")
async def delete_item(
    item_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVENTORY_DELETE))
):
    """Delete an unused item; items with history are deactivated instead"""
    try:
        with transaction(db):
            outcome = InventoryService.delete_item(db, ctx, item_id)
    except ERPError as e:
        raise http_error(e)
    return {"success": True, "outcome": outcome}


# =============================================================================
# STOCK
# =============================================================================

@router.post("/{item_id}/adjust")
async def adjust_stock(
    item_id: int,
    request: AdjustStockRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ctx: RequestContext = Depends(require_permission(Permission.INVENTORY_ADJUST))
):
    """
    Set on-hand quantity after a physical check. The difference is posted
    as an `adjustment` stock movement.
    """
    try:
        with transaction(db):
            item, result = InventoryService.adjust_stock(
                db, ctx, item_id, request.new_quantity, request.reason,
                allow_negative_stock=settings.allow_negative_stock,
            )
            movement = result.movements[0]
    except ERPError as e:
        raise http_error(e)

    return {
        "success": True,
        "message": f"Adjusted {item.code}",
        "reference_number": movement.reference_number,
        "quantity_change": float(movement.quantity_change),
        "new_quantity": float(item.quantity),
        "warnings": result.warnings,
    }


@router.get("/{item_id}/movements", response_model=List[MovementOut])
async def item_movements(
    item_id: int,
    limit: int = Query(200, le=1000),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.INVENTORY_VIEW))
):
    return InventoryQueryService.movements(db, item_id=item_id, limit=limit)


@router.get("/{item_id}/availability")
async def item_availability(
    item_id: int,
    quantity: float = Query(..., gt=0),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    ctx: RequestContext = Depends(require_permission(Permission.INVENTORY_VIEW))
):
    """
    Components needed to make `quantity` units of a product and any shortages.
    Advisory only; nothing is reserved.
    """
    try:
        report = RequirementsService.check_item(
            db, item_id, quantity, settings.default_recipe_batch_size
        )
    except ERPError as e:
        raise http_error(e)
    return report.as_dict()
