"""
Reports API Router
==================
Inventory valuation, low-stock listing, Excel export and profit and loss.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from ..errors import ERPError, http_error
from ..models_inventory import ItemType
from ..security import Permission, RequestContext, get_db, require_permission
from ..services.export_service import XLSX_MEDIA_TYPE, inventory_to_xlsx
from ..services.inventory_service import InventoryQueryService
from ..services.report_service import ReportService

router = APIRouter(prefix="/api/reports", tags=["Reports"])


@router.get("/inventory-valuation")
async def inventory_valuation(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.REPORT_VIEW))
):
    return InventoryQueryService.valuation(db)


@router.get("/low-stock")
async def low_stock(
    item_type: Optional[ItemType] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.REPORT_VIEW))
):
    """Active items at or below their minimum stock"""
    items = InventoryQueryService.list_items(db, item_type=item_type, low_stock_only=True)
    return [
        {
            "item_id": item.id,
            "code": item.code,
            "name": item.name,
            "item_type": item.item_type.value,
            "unit": item.unit,
            "quantity": float(item.quantity),
            "min_stock": float(item.min_stock),
        }
        for item in items
    ]


@router.get("/inventory/export")
async def export_inventory(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.REPORT_EXPORT))
):
    filename = f"inventory_{date.today().isoformat()}.xlsx"
    return StreamingResponse(
        inventory_to_xlsx(InventoryQueryService.valuation(db)),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.get("/profit-loss")
async def profit_loss(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_permission(Permission.REPORT_VIEW))
):
    """Net sales, cost of goods sold, expenses by category and net profit"""
    try:
        return ReportService.profit_and_loss(db, date_from, date_to)
    except ERPError as e:
        raise http_error(e)
