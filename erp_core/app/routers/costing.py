"""
Costing API Router
==================
Read-only cost rollups plus the explicit "apply" that writes a derived
unit cost back onto the item.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db import transaction
from ..errors import ERPError, http_error
from ..security import Permission, RequestContext, get_db, require_permission
from ..services.costing_service import CostingService, compute_recipe_cost

router = APIRouter(prefix="/api/costing", tags=["Costing"])


class CostComponent(BaseModel):
    quantity: float = Field(..., ge=0)
    unit_cost: float = Field(..., ge=0)


class CostPreviewRequest(BaseModel):
    batch_size: float
    components: List[CostComponent]


@router.post("/preview")
async def preview_recipe_cost(
    request: CostPreviewRequest,
    ctx: RequestContext = Depends(require_permission(Permission.COSTING_VIEW))
):
    """What-if costing of an unsaved recipe"""
    return compute_recipe_cost(
        request.batch_size, [(c.quantity, c.unit_cost) for c in request.components]
    ).as_dict()


@router.get("/items/{item_id}")
async def item_cost(
    item_id: int,
    batch_size: Optional[float] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.COSTING_VIEW))
):
    """
    Cost breakdown of a semi-finished recipe, finished product or bundle.
    `batch_size` only applies to recipes.
    """
    try:
        if batch_size is not None:
            breakdown = CostingService.recipe_cost(db, item_id, batch_size)
        else:
            breakdown = CostingService.cost_for(db, item_id)
    except ERPError as e:
        raise http_error(e)
    return breakdown.as_dict()


@router.post("/items/{item_id}/apply")
async def apply_item_cost(
    item_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.COSTING_APPLY))
):
    try:
        with transaction(db):
            item = CostingService.apply_cost(db, ctx, item_id)
    except ERPError as e:
        raise http_error(e)
    return {"success": True, "item_id": item.id, "code": item.code, "unit_cost": float(item.unit_cost)}
