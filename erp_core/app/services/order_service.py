"""
Manufacturing Order Service
===========================
Production, packaging and bundle-assembly orders share one lifecycle:

    pending -> inProgress -> completed -> cancelled (reversal)
    pending / inProgress -> cancelled (no stock effect)

Completion consumes the components resolved by RequirementsService and
produces the ordered quantity at the consumed cost. Cancelling a completed
order replays its stock journal backwards through the posting engine.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..errors import InvalidOperationError
from ..models_inventory import InventoryItem, Order, OrderItem, OrderStatus, OrderType
from ..security import AuditTrail, Permission, RequestContext
from .common import COST, MONEY, QTY, ensure_status, get_next_sequence, get_or_raise, to_decimal
from .posting_service import CostRule, PostingEngine, PostingPlan, PostingResult
from .requirements_service import ORDER_OUTPUT_TYPES, AvailabilityReport, RequirementsService

logger = logging.getLogger(__name__)


ORDER_CODE_PREFIXES = {
    OrderType.PRODUCTION: "PO-",
    OrderType.PACKAGING: "PKG-",
    OrderType.ASSEMBLY: "BA-",
}

OPEN_STATUSES = {OrderStatus.PENDING, OrderStatus.IN_PROGRESS}


def order_reference_type(order: Order) -> str:
    return f"{order.order_type.value}_order"


class OrderService:
    """Lifecycle of manufacturing orders"""

    @staticmethod
    def create_order(
        db: Session,
        ctx: RequestContext,
        order_type: OrderType,
        lines: Iterable[Tuple[int, object]],
        notes: Optional[str] = None,
        order_date=None,
    ) -> Order:
        """Create a pending order. No stock moves until completion."""
        ctx.require(Permission.ORDER_CREATE)
        order_type = OrderType(order_type)

        order = Order(
            order_type=order_type,
            code=get_next_sequence(db, f"{order_type.value}_order", ORDER_CODE_PREFIXES[order_type]),
            status=OrderStatus.PENDING,
            notes=notes,
            created_by=ctx.user_id,
        )
        if order_date is not None:
            order.order_date = order_date
        order.items = OrderService._build_lines(db, order_type, lines)

        db.add(order)
        db.flush()

        AuditTrail.record(db, ctx, "create", "order", order.id, {
            "code": order.code, "order_type": order_type.value, "lines": len(order.items)
        })
        return order

    @staticmethod
    def _build_lines(db: Session, order_type: OrderType, lines) -> List[OrderItem]:
        expected = ORDER_OUTPUT_TYPES[order_type]
        built = []
        for item_id, quantity in lines:
            item = get_or_raise(db, InventoryItem, item_id, label="Inventory item")
            if item.item_type != expected:
                raise InvalidOperationError(
                    f"A {order_type.value} order produces {expected.value} items, "
                    f"{item.code} is a {item.item_type.value}"
                )
            quantity = to_decimal(quantity, QTY)
            if quantity <= 0:
                raise InvalidOperationError("Order quantity must be greater than zero")
            built.append(OrderItem(item=item, quantity=quantity))

        if not built:
            raise InvalidOperationError("An order needs at least one line")
        return built

    @staticmethod
    def replace_lines(db: Session, ctx: RequestContext, order_id: int, lines) -> Order:
        ctx.require(Permission.ORDER_CREATE)
        order = get_or_raise(db, Order, order_id, lock=True, label="Order")
        ensure_status(order, {OrderStatus.PENDING}, "edit", f"order {order.code}")

        new_lines = OrderService._build_lines(db, order.order_type, lines)
        order.items.clear()
        db.flush()
        order.items.extend(new_lines)
        db.flush()
        return order

    @staticmethod
    def start(db: Session, ctx: RequestContext, order_id: int) -> Order:
        ctx.require(Permission.ORDER_COMPLETE)
        order = get_or_raise(db, Order, order_id, lock=True, label="Order")
        ensure_status(order, {OrderStatus.PENDING}, "start", f"order {order.code}")
        order.status = OrderStatus.IN_PROGRESS
        return order

    @staticmethod
    def availability(db: Session, order_id: int, default_batch_size=100) -> AvailabilityReport:
        order = get_or_raise(db, Order, order_id, label="Order")
        return RequirementsService.check_order(db, order, default_batch_size)

    @staticmethod
    def completion_plan(db: Session, order: Order, default_batch_size=100) -> PostingPlan:
        """
        Stock deltas for completing an order; also records line and order costs.

        Output is valued at the cost of what it consumes, per unit.
        """
        plan = PostingPlan(
            reference_type=order_reference_type(order),
            reference_id=order.id,
            reference_number=order.code,
            entry_date=order.order_date,
        )
        order_total = Decimal("0")

        for line in order.items:
            consumed = RequirementsService.components_for(
                db, line.item, line.quantity, default_batch_size
            )
            line_cost = Decimal("0")
            for component, required in consumed:
                line_cost += Decimal(component.unit_cost) * required
                plan.add_stock(
                    component.id, -required,
                    reason=f"Consumed by {order.code} for {line.item.code}",
                )

            quantity = to_decimal(line.quantity, QTY)
            unit_cost = to_decimal(line_cost / quantity, COST)
            plan.add_stock(
                line.item_id, quantity,
                cost_rule=CostRule.AVERAGE_IN,
                unit_cost=unit_cost,
                reason=f"Produced by {order.code}",
            )
            line.unit_cost = unit_cost
            line.total_cost = to_decimal(line_cost, MONEY)
            order_total += line_cost

        order.total_cost = to_decimal(order_total, MONEY)
        return plan

    @staticmethod
    def complete(
        db: Session,
        ctx: RequestContext,
        order_id: int,
        allow_negative_stock: bool = False,
        default_batch_size=100,
    ) -> Tuple[Order, PostingResult]:
        """
        Consume components and produce output in one transition.

        Raises:
            InvalidTransitionError: If the order is not pending or in progress
            InsufficientStockError: If components are short and negative stock is not allowed
        """
        ctx.require(Permission.ORDER_COMPLETE)
        order = get_or_raise(db, Order, order_id, lock=True, label="Order")
        ensure_status(order, OPEN_STATUSES, "complete", f"order {order.code}")

        plan = OrderService.completion_plan(db, order, default_batch_size)
        result = PostingEngine(db, ctx, allow_negative_stock).post(plan)

        order.status = OrderStatus.COMPLETED
        order.completed_at = datetime.utcnow()

        AuditTrail.record(db, ctx, "complete", "order", order.id, {
            "code": order.code,
            "total_cost": str(order.total_cost),
            "warnings": result.warnings,
        })
        return order, result

    @staticmethod
    def cancel(
        db: Session,
        ctx: RequestContext,
        order_id: int,
        allow_negative_stock: bool = False,
    ) -> Tuple[Order, Optional[PostingResult]]:
        """
        Cancel an order. A completed order has its stock effects reversed
        exactly; an open order is simply closed.
        """
        ctx.require(Permission.ORDER_CANCEL)
        order = get_or_raise(db, Order, order_id, lock=True, label="Order")
        ensure_status(
            order, OPEN_STATUSES | {OrderStatus.COMPLETED}, "cancel", f"order {order.code}"
        )

        result = None
        if order.status == OrderStatus.COMPLETED:
            result = PostingEngine(db, ctx, allow_negative_stock).reverse(
                order_reference_type(order), order.id
            )

        order.status = OrderStatus.CANCELLED
        order.cancelled_at = datetime.utcnow()

        AuditTrail.record(db, ctx, "cancel", "order", order.id, {
            "code": order.code, "reversed": result is not None,
        })
        return order, result

    @staticmethod
    def delete(db: Session, ctx: RequestContext, order_id: int) -> None:
        """Delete a pending order; anything else must be cancelled instead"""
        ctx.require(Permission.ORDER_DELETE)
        order = get_or_raise(db, Order, order_id, lock=True, label="Order")
        ensure_status(order, {OrderStatus.PENDING}, "delete", f"order {order.code}")

        AuditTrail.record(db, ctx, "delete", "order", order.id, {"code": order.code})
        db.delete(order)
        db.flush()
