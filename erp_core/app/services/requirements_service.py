"""
Requirement & Availability Checks
=================================
Resolve what an output quantity consumes and compare it with stock on hand:
- Production: recipe lines scaled by quantity / batch size
- Packaging: semi-finished base + packaging materials per unit
- Assembly: bundle components per bundle

The check is advisory. Whether a shortage blocks completion is decided by
the posting engine and the ALLOW_NEGATIVE_STOCK setting.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Tuple

from sqlalchemy.orm import Session

from ..errors import InvalidOperationError
from ..models_inventory import InventoryItem, ItemType, Order, OrderType
from .common import QTY, get_or_raise, to_decimal


# Which item type each order type produces
ORDER_OUTPUT_TYPES = {
    OrderType.PRODUCTION: ItemType.SEMI_FINISHED,
    OrderType.PACKAGING: ItemType.FINISHED_PRODUCT,
    OrderType.ASSEMBLY: ItemType.BUNDLE,
}


def compute_shortage(required, available) -> Decimal:
    """max(0, required - available); never negative"""
    return max(Decimal("0"), to_decimal(required, QTY) - to_decimal(available, QTY))


@dataclass
class Requirement:
    item: InventoryItem
    required: Decimal

    @property
    def available(self) -> Decimal:
        return to_decimal(self.item.quantity, QTY)

    @property
    def shortage(self) -> Decimal:
        return compute_shortage(self.required, self.available)

    def as_dict(self) -> dict:
        return {
            "item_id": self.item.id,
            "item_type": self.item.item_type.value,
            "code": self.item.code,
            "name": self.item.name,
            "unit": self.item.unit,
            "required": float(self.required),
            "available": float(self.available),
            "shortage": float(self.shortage),
        }


@dataclass
class AvailabilityReport:
    requirements: List[Requirement] = field(default_factory=list)

    @property
    def shortages(self) -> List[Requirement]:
        return [r for r in self.requirements if r.shortage > 0]

    @property
    def available(self) -> bool:
        return not self.shortages

    def as_dict(self) -> dict:
        return {
            "available": self.available,
            "requirements": [r.as_dict() for r in self.requirements],
            "shortages": [r.as_dict() for r in self.shortages],
        }


def recipe_ratio(batch_size, quantity, default_batch_size) -> Decimal:
    """How many recipe batches `quantity` represents"""
    batch = to_decimal(batch_size, QTY)
    if batch <= 0:
        batch = to_decimal(default_batch_size, QTY)
    return to_decimal(quantity, QTY) / batch


class RequirementsService:
    """BOM explosion for one level of the product structure"""

    @staticmethod
    def components_for(
        db: Session,
        item: InventoryItem,
        quantity,
        default_batch_size=100,
    ) -> List[Tuple[InventoryItem, Decimal]]:
        """(component, required quantity) pairs to produce `quantity` of item"""
        quantity = to_decimal(quantity, QTY)

        if item.item_type == ItemType.SEMI_FINISHED:
            ratio = recipe_ratio(item.recipe_batch_size, quantity, default_batch_size)
            return [
                (line.component, to_decimal(Decimal(line.quantity) * ratio, QTY))
                for line in item.bom_lines
            ]

        if item.item_type == ItemType.FINISHED_PRODUCT:
            needs = []
            if item.semi_finished is not None and item.semi_finished_quantity:
                needs.append((
                    item.semi_finished,
                    to_decimal(Decimal(item.semi_finished_quantity) * quantity, QTY),
                ))
            needs.extend(
                (line.component, to_decimal(Decimal(line.quantity) * quantity, QTY))
                for line in item.bom_lines
            )
            return needs

        if item.item_type == ItemType.BUNDLE:
            return [
                (line.component, to_decimal(Decimal(line.quantity) * quantity, QTY))
                for line in item.bom_lines
            ]

        raise InvalidOperationError(f"{item.code} is a {item.item_type.value} and has no components")

    @staticmethod
    def aggregate(needs: Iterable[Tuple[InventoryItem, Decimal]]) -> AvailabilityReport:
        by_item: Dict[int, Requirement] = {}
        for component, required in needs:
            if component.id in by_item:
                by_item[component.id].required += required
            else:
                by_item[component.id] = Requirement(item=component, required=required)
        return AvailabilityReport(requirements=list(by_item.values()))

    @staticmethod
    def check_item(db: Session, item_id: int, quantity, default_batch_size=100) -> AvailabilityReport:
        """Requirement and shortage report for `quantity` units of one product"""
        if to_decimal(quantity, QTY) <= 0:
            raise InvalidOperationError("Quantity must be greater than zero")
        item = get_or_raise(db, InventoryItem, item_id, label="Inventory item")
        return RequirementsService.aggregate(
            RequirementsService.components_for(db, item, quantity, default_batch_size)
        )

    @staticmethod
    def check_order(db: Session, order: Order, default_batch_size=100) -> AvailabilityReport:
        """Requirements summed across every line of an order"""
        needs = []
        for line in order.items:
            needs.extend(RequirementsService.components_for(
                db, line.item, line.quantity, default_batch_size
            ))
        return RequirementsService.aggregate(needs)
