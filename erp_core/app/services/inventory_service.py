"""
Inventory Catalogue Service
===========================
Business logic for the item catalogue:
- Item creation with generated codes and opening stock
- Bill-of-materials maintenance with type rules
- Manual stock adjustments through the posting engine
- Guarded deletion
- Stock queries and valuation
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..errors import InvalidOperationError
from ..models_inventory import (
    BOMLine, InventoryItem, ItemType, ITEM_CODE_PREFIXES, OrderItem, StockMovement
)
from ..models_commercial import InvoiceItem, ReturnItem
from ..security import AuditTrail, Permission, RequestContext
from .common import COST, QTY, get_next_sequence, get_or_raise, to_decimal
from .posting_service import CostRule, PostingEngine, PostingPlan, PostingResult

logger = logging.getLogger(__name__)


# Which component types each parent type may list in its bill of materials
BOM_COMPONENT_TYPES = {
    ItemType.SEMI_FINISHED: {ItemType.RAW_MATERIAL},
    ItemType.FINISHED_PRODUCT: {ItemType.PACKAGING_MATERIAL},
    ItemType.BUNDLE: {
        ItemType.RAW_MATERIAL, ItemType.PACKAGING_MATERIAL,
        ItemType.SEMI_FINISHED, ItemType.FINISHED_PRODUCT,
    },
}

_EDITABLE_FIELDS = (
    "name", "unit", "min_stock", "sales_price", "description", "is_active",
    "recipe_batch_size", "semi_finished_id", "semi_finished_quantity", "bundle_price",
)


class InventoryService:
    """Catalogue maintenance"""

    @staticmethod
    def create_item(
        db: Session,
        ctx: RequestContext,
        item_type: ItemType,
        name: str,
        code: Optional[str] = None,
        unit: str = "pcs",
        quantity=0,
        unit_cost=0,
        min_stock=0,
        sales_price=None,
        recipe_batch_size=None,
        semi_finished_id: Optional[int] = None,
        semi_finished_quantity=None,
        bundle_price=None,
        description: Optional[str] = None,
        bom: Optional[Iterable[Tuple[int, object]]] = None,
    ) -> InventoryItem:
        """
        Create a catalogue item.

        A positive opening quantity is booked as an "opening_balance" stock
        movement so the journal explains every unit on hand.
        """
        ctx.require(Permission.INVENTORY_CREATE)
        item_type = ItemType(item_type)

        if code:
            if db.query(InventoryItem).filter(InventoryItem.code == code).first():
                raise InvalidOperationError(f"Item code {code} already exists")
        else:
            code = get_next_sequence(db, f"item_{item_type.value}", ITEM_CODE_PREFIXES[item_type])

        item = InventoryItem(
            item_type=item_type,
            code=code,
            name=name,
            unit=unit,
            quantity=Decimal("0"),
            unit_cost=to_decimal(unit_cost, COST),
            min_stock=to_decimal(min_stock, QTY),
            sales_price=sales_price,
            recipe_batch_size=recipe_batch_size if item_type == ItemType.SEMI_FINISHED else None,
            semi_finished_quantity=(
                semi_finished_quantity if item_type == ItemType.FINISHED_PRODUCT else None
            ),
            bundle_price=bundle_price if item_type == ItemType.BUNDLE else None,
            description=description,
        )
        if item_type == ItemType.FINISHED_PRODUCT and semi_finished_id is not None:
            item.semi_finished = InventoryService._semi_finished_base(db, semi_finished_id)

        db.add(item)
        db.flush()

        if bom:
            InventoryService._replace_bom(db, item, bom)

        opening = to_decimal(quantity, QTY)
        if opening < 0:
            raise InvalidOperationError("Opening quantity cannot be negative")
        if opening > 0:
            plan = PostingPlan(
                reference_type="opening_balance",
                reference_id=item.id,
                reference_number=item.code,
            ).add_stock(
                item.id, opening,
                cost_rule=CostRule.AVERAGE_IN,
                unit_cost=to_decimal(unit_cost, COST),
                reason="Opening balance",
            )
            PostingEngine(db, ctx).post(plan)

        AuditTrail.record(db, ctx, "create", "inventory_item", item.id, {
            "code": item.code, "item_type": item_type.value, "opening_quantity": str(opening)
        })
        return item

    @staticmethod
    def update_item(db: Session, ctx: RequestContext, item_id: int, changes: Dict) -> InventoryItem:
        """
        Update descriptive fields. Quantity and unit cost are not editable
        here: they only change through postings and explicit cost application.
        """
        ctx.require(Permission.INVENTORY_UPDATE)
        item = get_or_raise(db, InventoryItem, item_id, lock=True, label="Inventory item")

        for key, value in changes.items():
            if key not in _EDITABLE_FIELDS:
                raise InvalidOperationError(f"Field {key} cannot be edited")
            if key == "semi_finished_id":
                if item.item_type != ItemType.FINISHED_PRODUCT:
                    raise InvalidOperationError("Only finished products have a semi-finished base")
                item.semi_finished = (
                    InventoryService._semi_finished_base(db, value) if value is not None else None
                )
                continue
            setattr(item, key, value)

        AuditTrail.record(db, ctx, "update", "inventory_item", item.id, changes)
        return item

    @staticmethod
    def _semi_finished_base(db: Session, semi_finished_id: int) -> InventoryItem:
        base = get_or_raise(db, InventoryItem, semi_finished_id, label="Semi-finished product")
        if base.item_type != ItemType.SEMI_FINISHED:
            raise InvalidOperationError(f"{base.code} is not a semi-finished product")
        return base

    @staticmethod
    def set_bom(
        db: Session,
        ctx: RequestContext,
        parent_id: int,
        lines: Iterable[Tuple[int, object]],
    ) -> InventoryItem:
        """Replace an item's bill of materials with (component_id, quantity) pairs"""
        ctx.require(Permission.INVENTORY_UPDATE)
        parent = get_or_raise(db, InventoryItem, parent_id, lock=True, label="Inventory item")
        InventoryService._replace_bom(db, parent, lines)
        AuditTrail.record(db, ctx, "set_bom", "inventory_item", parent.id, {
            "lines": [{"component_id": c, "quantity": str(q)} for c, q in parent_lines(parent)]
        })
        return parent

    @staticmethod
    def _replace_bom(db: Session, parent: InventoryItem, lines: Iterable[Tuple[int, object]]) -> None:
        allowed = BOM_COMPONENT_TYPES.get(parent.item_type)
        if allowed is None:
            raise InvalidOperationError(f"A {parent.item_type.value} has no bill of materials")

        new_lines = []
        seen = set()
        for component_id, quantity in lines:
            if component_id == parent.id:
                raise InvalidOperationError("An item cannot contain itself")
            if component_id in seen:
                raise InvalidOperationError(f"Component {component_id} is listed twice")
            seen.add(component_id)

            component = get_or_raise(db, InventoryItem, component_id, label="Component")
            if component.item_type not in allowed:
                raise InvalidOperationError(
                    f"{component.code} ({component.item_type.value}) cannot be a component "
                    f"of a {parent.item_type.value}"
                )
            quantity = to_decimal(quantity, QTY)
            if quantity <= 0:
                raise InvalidOperationError("Component quantity must be greater than zero")
            new_lines.append(BOMLine(component=component, quantity=quantity))

        parent.bom_lines.clear()
        db.flush()
        parent.bom_lines.extend(new_lines)
        db.flush()

    @staticmethod
    def adjust_stock(
        db: Session,
        ctx: RequestContext,
        item_id: int,
        new_quantity,
        reason: str,
        allow_negative_stock: bool = False,
    ) -> Tuple[InventoryItem, PostingResult]:
        """
        Set on-hand quantity to a counted value through the posting engine.
        """
        ctx.require(Permission.INVENTORY_ADJUST)
        item = get_or_raise(db, InventoryItem, item_id, label="Inventory item")

        new_quantity = to_decimal(new_quantity, QTY)
        change = new_quantity - to_decimal(item.quantity, QTY)
        if change == 0:
            raise InvalidOperationError("No quantity change specified")

        plan = PostingPlan(
            reference_type="adjustment",
            reference_id=item.id,
            reference_number=get_next_sequence(db, "adjustment", "ADJ-"),
        ).add_stock(item.id, change, reason=reason)
        result = PostingEngine(db, ctx, allow_negative_stock).post(plan)

        AuditTrail.record(db, ctx, "adjust", "inventory_item", item.id, {
            "code": item.code, "change": str(change), "reason": reason,
        })
        return item, result

    @staticmethod
    def delete_item(db: Session, ctx: RequestContext, item_id: int) -> str:
        """
        Delete an item, or deactivate it when it has history.

        Returns "deleted" or "deactivated".

        Raises:
            InvalidOperationError: If stock is on hand or another item uses it
        """
        ctx.require(Permission.INVENTORY_DELETE)
        item = get_or_raise(db, InventoryItem, item_id, lock=True, label="Inventory item")

        if to_decimal(item.quantity, QTY) != 0:
            raise InvalidOperationError(
                f"{item.code} still has {item.quantity} {item.unit} on hand"
            )

        used_in_bom = db.query(BOMLine).filter(BOMLine.component_id == item.id).first()
        used_as_base = db.query(InventoryItem).filter(InventoryItem.semi_finished_id == item.id).first()
        if used_in_bom or used_as_base:
            raise InvalidOperationError(f"{item.code} is used in another item's bill of materials")

        has_history = any(
            db.query(model).filter(column == item.id).first() is not None
            for model, column in (
                (StockMovement, StockMovement.item_id),
                (OrderItem, OrderItem.item_id),
                (InvoiceItem, InvoiceItem.item_id),
                (ReturnItem, ReturnItem.item_id),
            )
        )

        if has_history:
            item.is_active = False
            outcome = "deactivated"
        else:
            db.delete(item)
            outcome = "deleted"

        AuditTrail.record(db, ctx, outcome[:-1], "inventory_item", item_id, {"code": item.code})
        logger.info("Inventory item %s %s", item.code, outcome)
        return outcome


def parent_lines(parent: InventoryItem) -> List[Tuple[int, Decimal]]:
    return [(line.component_id, line.quantity) for line in parent.bom_lines]


# =============================================================================
# QUERIES
# =============================================================================

class InventoryQueryService:
    """Inventory queries and reports"""

    @staticmethod
    def list_items(
        db: Session,
        item_type: Optional[ItemType] = None,
        search: Optional[str] = None,
        low_stock_only: bool = False,
        include_inactive: bool = False,
    ) -> List[InventoryItem]:
        query = db.query(InventoryItem)
        if item_type:
            query = query.filter(InventoryItem.item_type == ItemType(item_type))
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(InventoryItem.name.ilike(pattern), InventoryItem.code.ilike(pattern)))
        if not include_inactive:
            query = query.filter(InventoryItem.is_active.is_(True))
        if low_stock_only:
            query = query.filter(InventoryItem.quantity <= InventoryItem.min_stock)
        return query.order_by(InventoryItem.item_type, InventoryItem.code).all()

    @staticmethod
    def movements(
        db: Session,
        item_id: Optional[int] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[int] = None,
        limit: int = 200,
    ) -> List[StockMovement]:
        query = db.query(StockMovement)
        if item_id:
            query = query.filter(StockMovement.item_id == item_id)
        if reference_type:
            query = query.filter(StockMovement.reference_type == reference_type)
        if reference_id:
            query = query.filter(StockMovement.reference_id == reference_id)
        return query.order_by(StockMovement.id.desc()).limit(limit).all()

    @staticmethod
    def valuation(db: Session) -> dict:
        """Stock value (quantity x unit_cost) per item and per type"""
        items = InventoryQueryService.list_items(db)
        by_type: Dict[str, Decimal] = {t.value: Decimal("0") for t in ItemType}
        rows = []
        for item in items:
            value = to_decimal(Decimal(item.quantity) * Decimal(item.unit_cost), Decimal("0.01"))
            by_type[item.item_type.value] += value
            rows.append({
                "item_id": item.id,
                "code": item.code,
                "name": item.name,
                "item_type": item.item_type.value,
                "unit": item.unit,
                "quantity": float(item.quantity),
                "unit_cost": float(item.unit_cost),
                "value": float(value),
                "low_stock": item.is_low_stock,
            })
        return {
            "items": rows,
            "totals_by_type": {k: float(v) for k, v in by_type.items()},
            "total_value": float(sum(by_type.values(), Decimal("0"))),
        }
