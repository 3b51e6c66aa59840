"""Requirement and availability checks."""

from decimal import Decimal

import pytest

from erp_core.app.errors import InvalidOperationError
from erp_core.app.models_inventory import ItemType
from erp_core.app.services.requirements_service import (
    RequirementsService, compute_shortage, recipe_ratio
)


@pytest.mark.parametrize("required,available,expected", [
    (80, 100, 0),
    (100, 100, 0),
    (80, 50, 30),
    (0, 0, 0),
    (10, -5, 15),
])
def test_compute_shortage(required, available, expected):
    assert compute_shortage(required, available) == Decimal(expected)


def test_recipe_ratio_falls_back_to_default_batch():
    assert recipe_ratio(None, 50, 100) == Decimal("0.5")
    assert recipe_ratio(0, 50, 200) == Decimal("0.25")
    assert recipe_ratio(25, 50, 100) == Decimal("2")


def test_packaging_requirements_are_available(db_session, packaging_setup):
    base, box, product = packaging_setup
    report = RequirementsService.check_item(db_session, product.id, 40)

    by_code = {r.item.code: r for r in report.requirements}
    assert by_code[base.code].required == Decimal("80")
    assert by_code[box.code].required == Decimal("40")
    assert report.available
    assert report.shortages == []


def test_packaging_shortage_reported(db_session, packaging_setup):
    base, box, product = packaging_setup
    report = RequirementsService.check_item(db_session, product.id, 60)

    shortages = {s["code"]: s["shortage"] for s in report.as_dict()["shortages"]}
    assert shortages == {base.code: 20.0, box.code: 10.0}
    assert not report.available


def test_production_requirements_scale_by_batch(db_session, make_item):
    oil = make_item(ItemType.RAW_MATERIAL, "Oil", quantity=100)
    base = make_item(ItemType.SEMI_FINISHED, "Base", recipe_batch_size=100, bom=[(oil.id, 60)])

    report = RequirementsService.check_item(db_session, base.id, 50)
    assert report.requirements[0].required == Decimal("30")


def test_production_without_batch_size_uses_default(db_session, make_item):
    oil = make_item(ItemType.RAW_MATERIAL, "Oil", quantity=100)
    base = make_item(ItemType.SEMI_FINISHED, "Base", bom=[(oil.id, 60)])

    report = RequirementsService.check_item(db_session, base.id, 50, default_batch_size=200)
    assert report.requirements[0].required == Decimal("15")


def test_bundle_requirements_aggregate_components(db_session, make_item):
    soap = make_item(ItemType.FINISHED_PRODUCT, "Soap", quantity=3)
    bundle = make_item(ItemType.BUNDLE, "Gift Set", bom=[(soap.id, 2)])

    report = RequirementsService.check_item(db_session, bundle.id, 2)
    assert report.requirements[0].required == Decimal("4")
    assert report.requirements[0].shortage == Decimal("1")


def test_raw_material_has_no_components(db_session, make_item):
    oil = make_item(ItemType.RAW_MATERIAL, "Oil")
    with pytest.raises(InvalidOperationError):
        RequirementsService.check_item(db_session, oil.id, 1)


def test_quantity_must_be_positive(db_session, packaging_setup):
    _, _, product = packaging_setup
    with pytest.raises(InvalidOperationError):
        RequirementsService.check_item(db_session, product.id, 0)
