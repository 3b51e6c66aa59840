"""
Recipe / BOM Costing
====================
Pure cost rollups plus explicit "apply" operations that write a derived
unit cost back onto the parent item:
- Semi-finished recipe: percentage of batch, batch cost, unit cost
- Finished product: base semi-finished share + packaging
- Bundle: sum of components
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..errors import InvalidOperationError
from ..models_inventory import InventoryItem, ItemType
from ..security import AuditTrail, Permission, RequestContext
from .common import COST, QTY, get_or_raise, to_decimal

logger = logging.getLogger(__name__)


@dataclass
class CostLine:
    item_id: Optional[int]
    code: Optional[str]
    name: Optional[str]
    quantity: Decimal
    unit_cost: Decimal
    percentage: Decimal = Decimal("0")

    @property
    def total_cost(self) -> Decimal:
        return to_decimal(self.quantity * self.unit_cost, COST)

    def as_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "code": self.code,
            "name": self.name,
            "quantity": float(self.quantity),
            "unit_cost": float(self.unit_cost),
            "percentage": float(self.percentage),
            "total_cost": float(self.total_cost),
        }


@dataclass
class CostBreakdown:
    batch_size: Decimal
    lines: List[CostLine] = field(default_factory=list)

    @property
    def total_cost(self) -> Decimal:
        return to_decimal(sum((line.total_cost for line in self.lines), Decimal("0")), COST)

    @property
    def unit_cost(self) -> Decimal:
        if self.batch_size <= 0:
            return Decimal("0")
        return to_decimal(self.total_cost / self.batch_size, COST)

    @property
    def total_percentage(self) -> Decimal:
        return sum((line.percentage for line in self.lines), Decimal("0"))

    def as_dict(self) -> dict:
        return {
            "batch_size": float(self.batch_size),
            "lines": [line.as_dict() for line in self.lines],
            "total_percentage": float(self.total_percentage),
            "total_cost": float(self.total_cost),
            "unit_cost": float(self.unit_cost),
        }


def compute_recipe_cost(batch_size, components: Iterable[Tuple[object, object]]) -> CostBreakdown:
    """
    Cost a batch from (quantity, unit_cost) pairs.

    percentage = quantity / batch_size * 100, total = sum(quantity * unit_cost),
    unit cost = total / batch_size. A batch size <= 0 gives zero percentages
    and a zero unit cost instead of dividing by zero.
    """
    batch = to_decimal(batch_size, QTY)
    breakdown = CostBreakdown(batch_size=batch)
    for quantity, unit_cost in components:
        breakdown.lines.append(_cost_line(batch, None, quantity, unit_cost))
    return breakdown


def _cost_line(batch: Decimal, item: Optional[InventoryItem], quantity, unit_cost) -> CostLine:
    quantity = to_decimal(quantity, QTY)
    percentage = (
        to_decimal(quantity / batch * 100, COST) if batch > 0 else Decimal("0")
    )
    return CostLine(
        item_id=item.id if item is not None else None,
        code=item.code if item is not None else None,
        name=item.name if item is not None else None,
        quantity=quantity,
        unit_cost=to_decimal(unit_cost, COST),
        percentage=percentage,
    )


def _require_type(item: InventoryItem, item_type: ItemType) -> None:
    if item.item_type != item_type:
        raise InvalidOperationError(
            f"{item.code} is a {item.item_type.value}, expected {item_type.value}"
        )


class CostingService:
    """Cost rollups read from the catalogue"""

    @staticmethod
    def recipe_cost(db: Session, semi_finished_id: int, batch_size=None) -> CostBreakdown:
        """
        Cost of one recipe batch. `batch_size` overrides the stored batch size
        for what-if previews; recipe quantities stay as stored.
        """
        item = get_or_raise(db, InventoryItem, semi_finished_id, label="Semi-finished product")
        _require_type(item, ItemType.SEMI_FINISHED)

        batch = to_decimal(batch_size if batch_size is not None else item.recipe_batch_size, QTY)
        breakdown = CostBreakdown(batch_size=batch)
        for line in item.bom_lines:
            breakdown.lines.append(
                _cost_line(batch, line.component, line.quantity, line.component.unit_cost)
            )
        return breakdown

    @staticmethod
    def product_cost(db: Session, finished_product_id: int) -> CostBreakdown:
        """Per-unit cost of a finished product (batch size 1)"""
        item = get_or_raise(db, InventoryItem, finished_product_id, label="Finished product")
        _require_type(item, ItemType.FINISHED_PRODUCT)

        breakdown = CostBreakdown(batch_size=Decimal("1"))
        if item.semi_finished is not None and item.semi_finished_quantity:
            breakdown.lines.append(_cost_line(
                Decimal("0"), item.semi_finished,
                item.semi_finished_quantity, item.semi_finished.unit_cost,
            ))
        for line in item.bom_lines:
            breakdown.lines.append(
                _cost_line(Decimal("0"), line.component, line.quantity, line.component.unit_cost)
            )
        return breakdown

    @staticmethod
    def bundle_cost(db: Session, bundle_id: int) -> CostBreakdown:
        """Per-bundle cost: sum of component unit_cost x quantity"""
        item = get_or_raise(db, InventoryItem, bundle_id, label="Bundle")
        _require_type(item, ItemType.BUNDLE)

        breakdown = CostBreakdown(batch_size=Decimal("1"))
        for line in item.bom_lines:
            breakdown.lines.append(
                _cost_line(Decimal("0"), line.component, line.quantity, line.component.unit_cost)
            )
        return breakdown

    @staticmethod
    def cost_for(db: Session, item_id: int) -> CostBreakdown:
        item = get_or_raise(db, InventoryItem, item_id, label="Inventory item")
        if item.item_type == ItemType.SEMI_FINISHED:
            return CostingService.recipe_cost(db, item_id)
        if item.item_type == ItemType.FINISHED_PRODUCT:
            return CostingService.product_cost(db, item_id)
        if item.item_type == ItemType.BUNDLE:
            return CostingService.bundle_cost(db, item_id)
        raise InvalidOperationError(f"{item.code} has no bill of materials to cost")

    @staticmethod
    def apply_cost(db: Session, ctx: RequestContext, item_id: int) -> InventoryItem:
        """
        Write the derived unit cost back onto the item.

        This is the only write in this module and always user-triggered.
        """
        ctx.require(Permission.COSTING_APPLY)

        breakdown = CostingService.cost_for(db, item_id)
        item = get_or_raise(db, InventoryItem, item_id, lock=True, label="Inventory item")
        old_cost = to_decimal(item.unit_cost, COST)
        item.unit_cost = breakdown.unit_cost

        AuditTrail.record(db, ctx, "apply_cost", "inventory_item", item.id, {
            "code": item.code,
            "old_unit_cost": str(old_cost),
            "new_unit_cost": str(breakdown.unit_cost),
        })
        logger.info("Applied unit cost %s -> %s to %s", old_cost, breakdown.unit_cost, item.code)
        return item
