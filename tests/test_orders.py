"""Production, packaging and assembly order lifecycle."""

from decimal import Decimal

import pytest

from erp_core.app.db import transaction
from erp_core.app.errors import (
    InsufficientStockError, InvalidOperationError, InvalidTransitionError
)
from erp_core.app.models_inventory import ItemType, OrderStatus, OrderType, StockMovement
from erp_core.app.services.inventory_service import InventoryService
from erp_core.app.services.order_service import OrderService


def _quantities(db_session, *items):
    for item in items:
        db_session.refresh(item)
    return [Decimal(item.quantity) for item in items]


def _create(db_session, ctx, order_type, lines):
    with transaction(db_session):
        order = OrderService.create_order(db_session, ctx, order_type, lines)
    return order


def _complete(db_session, ctx, order, **kwargs):
    with transaction(db_session):
        _, result = OrderService.complete(db_session, ctx, order.id, **kwargs)
    return result


class TestPackagingOrder:

    def test_create_assigns_code_and_leaves_stock_alone(self, db_session, ctx, packaging_setup):
        base, box, product = packaging_setup
        order = _create(db_session, ctx, OrderType.PACKAGING, [(product.id, 40)])

        assert order.code == "PKG-0001"
        assert order.status == OrderStatus.PENDING
        assert _quantities(db_session, base, box, product) == [100, 50, 0]

    def test_complete_consumes_and_produces(self, db_session, ctx, packaging_setup):
        base, box, product = packaging_setup
        order = _create(db_session, ctx, OrderType.PACKAGING, [(product.id, 40)])

        report = OrderService.availability(db_session, order.id)
        required = {r.item.code: r.required for r in report.requirements}
        assert required == {base.code: Decimal("80"), box.code: Decimal("40")}
        assert report.available

        result = _complete(db_session, ctx, order)

        assert result.warnings == []
        assert _quantities(db_session, base, box, product) == [20, 10, 40]
        db_session.refresh(order)
        assert order.status == OrderStatus.COMPLETED
        assert order.completed_at is not None
        # 80 kg x 10.00 + 40 boxes x 1.50
        assert Decimal(order.total_cost) == Decimal("860")
        assert Decimal(order.items[0].unit_cost) == Decimal("21.5")
        assert Decimal(product.unit_cost) == Decimal("21.5")

    def test_cancel_completed_restores_everything(self, db_session, ctx, packaging_setup):
        base, box, product = packaging_setup
        before = _quantities(db_session, base, box, product)
        order = _create(db_session, ctx, OrderType.PACKAGING, [(product.id, 40)])
        _complete(db_session, ctx, order)

        with transaction(db_session):
            _, result = OrderService.cancel(db_session, ctx, order.id)

        assert len(result.movements) == 3
        assert _quantities(db_session, base, box, product) == before
        assert Decimal(product.unit_cost) == 0
        db_session.refresh(order)
        assert order.status == OrderStatus.CANCELLED

        originals = db_session.query(StockMovement).filter(
            StockMovement.reference_type == "packaging_order",
            StockMovement.reversal_of_id.is_(None),
        ).all()
        assert originals and all(m.is_reversed for m in originals)

    def test_cancel_uses_journal_even_after_bom_change(self, db_session, ctx, packaging_setup):
        base, box, product = packaging_setup
        order = _create(db_session, ctx, OrderType.PACKAGING, [(product.id, 40)])
        _complete(db_session, ctx, order)

        with transaction(db_session):
            InventoryService.set_bom(db_session, ctx, product.id, [(box.id, 2)])
        with transaction(db_session):
            OrderService.cancel(db_session, ctx, order.id)

        assert _quantities(db_session, base, box, product) == [100, 50, 0]

    def test_cancel_twice_is_rejected(self, db_session, ctx, packaging_setup):
        _, _, product = packaging_setup
        order = _create(db_session, ctx, OrderType.PACKAGING, [(product.id, 10)])
        _complete(db_session, ctx, order)
        with transaction(db_session):
            OrderService.cancel(db_session, ctx, order.id)

        with pytest.raises(InvalidTransitionError):
            OrderService.cancel(db_session, ctx, order.id)

    def test_cancel_pending_has_no_stock_effect(self, db_session, ctx, packaging_setup):
        base, box, product = packaging_setup
        order = _create(db_session, ctx, OrderType.PACKAGING, [(product.id, 10)])

        with transaction(db_session):
            _, result = OrderService.cancel(db_session, ctx, order.id)

        assert result is None
        assert db_session.query(StockMovement).filter(
            StockMovement.reference_type == "packaging_order"
        ).count() == 0
        assert _quantities(db_session, base, box, product) == [100, 50, 0]

    def test_shortage_blocks_and_rolls_back(self, db_session, ctx, packaging_setup):
        base, box, product = packaging_setup
        order = _create(db_session, ctx, OrderType.PACKAGING, [(product.id, 60)])

        with pytest.raises(InsufficientStockError) as exc:
            _complete(db_session, ctx, order)

        assert {s["code"] for s in exc.value.shortages} == {base.code, box.code}
        assert _quantities(db_session, base, box, product) == [100, 50, 0]
        db_session.refresh(order)
        assert order.status == OrderStatus.PENDING

    def test_shortage_becomes_warning_when_negative_stock_allowed(self, db_session, ctx, packaging_setup):
        base, box, product = packaging_setup
        order = _create(db_session, ctx, OrderType.PACKAGING, [(product.id, 60)])

        result = _complete(db_session, ctx, order, allow_negative_stock=True)

        assert len(result.warnings) == 2
        assert _quantities(db_session, base, box, product) == [-20, -10, 60]

    def test_start_then_complete(self, db_session, ctx, packaging_setup):
        _, _, product = packaging_setup
        order = _create(db_session, ctx, OrderType.PACKAGING, [(product.id, 5)])
        with transaction(db_session):
            OrderService.start(db_session, ctx, order.id)
        db_session.refresh(order)
        assert order.status == OrderStatus.IN_PROGRESS

        _complete(db_session, ctx, order)
        db_session.refresh(order)
        assert order.status == OrderStatus.COMPLETED

    def test_complete_twice_is_rejected(self, db_session, ctx, packaging_setup):
        _, _, product = packaging_setup
        order = _create(db_session, ctx, OrderType.PACKAGING, [(product.id, 5)])
        _complete(db_session, ctx, order)

        with pytest.raises(InvalidTransitionError):
            OrderService.complete(db_session, ctx, order.id)


class TestDeletion:

    def test_pending_order_can_be_deleted(self, db_session, ctx, packaging_setup):
        base, box, product = packaging_setup
        order = _create(db_session, ctx, OrderType.PACKAGING, [(product.id, 5)])

        with transaction(db_session):
            OrderService.delete(db_session, ctx, order.id)

        assert _quantities(db_session, base, box, product) == [100, 50, 0]
        assert db_session.query(StockMovement).filter(
            StockMovement.reference_type == "packaging_order"
        ).count() == 0

    def test_completed_order_cannot_be_deleted(self, db_session, ctx, packaging_setup):
        _, _, product = packaging_setup
        order = _create(db_session, ctx, OrderType.PACKAGING, [(product.id, 5)])
        _complete(db_session, ctx, order)

        with pytest.raises(InvalidTransitionError):
            OrderService.delete(db_session, ctx, order.id)


class TestProductionAndAssembly:

    def test_production_scales_recipe_and_costs_output(self, db_session, ctx, make_item):
        oil = make_item(ItemType.RAW_MATERIAL, "Oil", quantity=100, unit_cost=2)
        wax = make_item(ItemType.RAW_MATERIAL, "Wax", quantity=100, unit_cost=5)
        base = make_item(
            ItemType.SEMI_FINISHED, "Base", recipe_batch_size=100,
            bom=[(oil.id, 60), (wax.id, 40)],
        )

        order = _create(db_session, ctx, OrderType.PRODUCTION, [(base.id, 50)])
        assert order.code == "PO-0001"
        _complete(db_session, ctx, order)

        assert _quantities(db_session, oil, wax, base) == [70, 80, 50]
        assert Decimal(base.unit_cost) == Decimal("3.2")

    def test_assembly_consumes_components_per_bundle(self, db_session, ctx, make_item):
        soap = make_item(ItemType.FINISHED_PRODUCT, "Soap", quantity=20, unit_cost=4)
        lotion = make_item(ItemType.FINISHED_PRODUCT, "Lotion", quantity=10, unit_cost=6)
        bundle = make_item(ItemType.BUNDLE, "Gift Set", bom=[(soap.id, 2), (lotion.id, 1)])

        order = _create(db_session, ctx, OrderType.ASSEMBLY, [(bundle.id, 5)])
        assert order.code == "BA-0001"
        _complete(db_session, ctx, order)

        assert _quantities(db_session, soap, lotion, bundle) == [10, 5, 5]
        assert Decimal(bundle.unit_cost) == Decimal("14")

    def test_order_rejects_wrong_output_type(self, db_session, ctx, packaging_setup):
        base, _, _ = packaging_setup
        with pytest.raises(InvalidOperationError):
            OrderService.create_order(db_session, ctx, OrderType.PACKAGING, [(base.id, 5)])

    def test_replace_lines_only_while_pending(self, db_session, ctx, packaging_setup):
        _, _, product = packaging_setup
        order = _create(db_session, ctx, OrderType.PACKAGING, [(product.id, 5)])
        with transaction(db_session):
            OrderService.replace_lines(db_session, ctx, order.id, [(product.id, 8)])
        db_session.refresh(order)
        assert Decimal(order.items[0].quantity) == 8

        _complete(db_session, ctx, order)
        with pytest.raises(InvalidTransitionError):
            OrderService.replace_lines(db_session, ctx, order.id, [(product.id, 1)])
