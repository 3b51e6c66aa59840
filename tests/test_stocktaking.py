"""Stocktaking sessions."""

from decimal import Decimal

import pytest

from erp_core.app.db import transaction
from erp_core.app.errors import InvalidOperationError, InvalidTransitionError
from erp_core.app.models_inventory import ItemType, StockMovement, StocktakingStatus, StocktakingType
from erp_core.app.services.stocktaking_service import StocktakingService


@pytest.fixture
def stock(make_item):
    oil = make_item(ItemType.RAW_MATERIAL, "Oil", quantity=100, unit_cost=2)
    box = make_item(ItemType.PACKAGING_MATERIAL, "Box", quantity=50, unit_cost="1.5")
    return oil, box


def _started(db_session, ctx, **kwargs):
    with transaction(db_session):
        session = StocktakingService.create_session(db_session, ctx, **kwargs)
    with transaction(db_session):
        StocktakingService.start(db_session, ctx, session.id)
    db_session.refresh(session)
    return session


def test_full_session_snapshots_active_items(db_session, ctx, stock):
    session = _started(db_session, ctx)

    assert session.code == "ST-0001"
    assert session.status == StocktakingStatus.IN_PROGRESS
    assert {Decimal(line.system_quantity) for line in session.lines} == {Decimal("100"), Decimal("50")}
    assert all(line.difference == 0 for line in session.lines)


def test_partial_session_limits_item_types(db_session, ctx, stock):
    _, box = stock
    session = _started(
        db_session, ctx,
        session_type=StocktakingType.PARTIAL, item_types=[ItemType.PACKAGING_MATERIAL],
    )

    assert [line.item_id for line in session.lines] == [box.id]


def test_partial_session_needs_item_types(db_session, ctx):
    with pytest.raises(InvalidOperationError):
        StocktakingService.create_session(db_session, ctx, session_type=StocktakingType.PARTIAL)


def test_reconcile_posts_differences(db_session, ctx, stock):
    oil, box = stock
    session = _started(db_session, ctx)

    with transaction(db_session):
        StocktakingService.record_count(db_session, ctx, session.id, oil.id, 95, notes="Spill")
        StocktakingService.record_count(db_session, ctx, session.id, box.id, 52)
    with transaction(db_session):
        _, result = StocktakingService.reconcile(db_session, ctx, session.id)

    db_session.refresh(oil)
    db_session.refresh(box)
    db_session.refresh(session)
    assert Decimal(oil.quantity) == Decimal("95")
    assert Decimal(box.quantity) == Decimal("52")
    assert Decimal(oil.unit_cost) == Decimal("2")
    assert len(result.movements) == 2
    assert session.status == StocktakingStatus.COMPLETED
    assert db_session.query(StockMovement).filter(
        StockMovement.reference_type == "stocktaking"
    ).count() == 2


def test_negative_count_is_rejected(db_session, ctx, stock):
    oil, _ = stock
    session = _started(db_session, ctx)

    with pytest.raises(InvalidOperationError):
        StocktakingService.record_count(db_session, ctx, session.id, oil.id, -1)


def test_count_for_item_outside_session_is_rejected(db_session, ctx, stock, make_item):
    oil, _ = stock
    session = _started(
        db_session, ctx,
        session_type=StocktakingType.PARTIAL, item_types=[ItemType.PACKAGING_MATERIAL],
    )

    with pytest.raises(InvalidOperationError):
        StocktakingService.record_count(db_session, ctx, session.id, oil.id, 10)


def test_count_before_start_is_rejected(db_session, ctx, stock):
    oil, _ = stock
    with transaction(db_session):
        session = StocktakingService.create_session(db_session, ctx)

    with pytest.raises(InvalidTransitionError):
        StocktakingService.record_count(db_session, ctx, session.id, oil.id, 10)


def test_completed_session_cannot_be_cancelled(db_session, ctx, stock):
    session = _started(db_session, ctx)
    with transaction(db_session):
        StocktakingService.reconcile(db_session, ctx, session.id)

    with pytest.raises(InvalidTransitionError):
        StocktakingService.cancel(db_session, ctx, session.id)


def test_cancel_in_progress_session(db_session, ctx, stock):
    session = _started(db_session, ctx)
    with transaction(db_session):
        StocktakingService.cancel(db_session, ctx, session.id)

    db_session.refresh(session)
    assert session.status == StocktakingStatus.CANCELLED
