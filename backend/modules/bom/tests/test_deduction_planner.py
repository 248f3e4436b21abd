from types import SimpleNamespace
from unittest.mock import patch

import pytest

from modules.bom.enums.bom_enums import ComponentType
from modules.bom.models.bom_models import BOMItem
from modules.bom.schemas.bom_consumption_schemas import OrderLineItem
from modules.bom.services.deduction_planner import DeductionPlanner
from modules.bom.tests.helpers import ACCOUNT_ID


@pytest.fixture
def planner(db_session):
    return DeductionPlanner(db_session)


def line(product_id, quantity, variation_id=0):
    return OrderLineItem(product_id=product_id, variation_id=variation_id, quantity=quantity)


class TestDeductionPlanner:

    def test_simple_product_component(self, planner, catalog):
        plan = planner.plan(ACCOUNT_ID, line(100, 3))

        assert len(plan) == 2
        chocolate = plan[0]
        assert chocolate.component_type == ComponentType.COMMERCE_PRODUCT
        assert chocolate.component_id == catalog.chocolate.id
        assert chocolate.woo_id == 201
        assert chocolate.quantity_deducted == 6
        assert chocolate.previous_stock == 10
        assert chocolate.new_stock == 4

    def test_internal_component_has_no_platform_id(self, planner, catalog):
        plan = planner.plan(ACCOUNT_ID, line(100, 3))

        ribbon = plan[1]
        assert ribbon.component_type == ComponentType.INTERNAL_PRODUCT
        assert ribbon.component_id == catalog.ribbon.id
        assert ribbon.woo_id is None
        assert ribbon.new_stock == 47

    def test_variation_component(self, planner, catalog):
        plan = planner.plan(ACCOUNT_ID, line(400, 2))

        assert len(plan) == 1
        deduction = plan[0]
        assert deduction.component_type == ComponentType.PRODUCT_VARIATION
        assert deduction.component_id == catalog.t_shirt.id
        assert deduction.woo_id == 301
        assert deduction.parent_woo_id == 300
        assert "TS-RED" in deduction.component_name
        assert deduction.previous_stock == 20
        assert deduction.new_stock == 18

    def test_variable_parent_component_is_skipped(self, planner, catalog):
        assert planner.plan(ACCOUNT_ID, line(500, 1)) == []

    def test_bom_lookup_matches_exact_variation(self, planner, catalog):
        blue = planner.plan(ACCOUNT_ID, line(300, 1, variation_id=302))
        red = planner.plan(ACCOUNT_ID, line(300, 1, variation_id=301))

        assert [d.component_id for d in blue] == [catalog.blank_shirt.id]
        assert red == []

    def test_unknown_product_returns_empty_plan(self, planner, catalog):
        assert planner.plan(ACCOUNT_ID, line(999, 1)) == []

    def test_other_account_does_not_see_catalog(self, planner, catalog):
        assert planner.plan("someone-else", line(100, 1)) == []

    def test_new_stock_never_negative(self, planner, catalog):
        plan = planner.plan(ACCOUNT_ID, line(100, 8))

        assert plan[0].quantity_deducted == 16
        assert plan[0].new_stock == 0

    def test_inactive_items_are_ignored(self, planner, catalog, db_session):
        item = db_session.query(BOMItem).filter(
            BOMItem.internal_product_id == catalog.ribbon.id
        ).one()
        item.is_active = False
        db_session.commit()

        plan = planner.plan(ACCOUNT_ID, line(100, 1))

        assert [d.component_id for d in plan] == [catalog.chocolate.id]

    def test_item_without_component_is_skipped(self, planner, catalog, caplog):
        ribbon_item = catalog.gift_box_bom.items[1]
        broken = BOMItem(id=999, quantity=1, is_active=True)
        bom = SimpleNamespace(items=[broken, ribbon_item])

        with patch.object(planner, "_load_bom", return_value=bom):
            plan = planner.plan(ACCOUNT_ID, line(100, 1))

        assert [d.component_id for d in plan] == [catalog.ribbon.id]
        assert "BOM item 999 is malformed" in caplog.text

    def test_non_positive_line_quantity(self, planner, catalog):
        assert planner.plan(ACCOUNT_ID, line(100, 0)) == []

    def test_plan_order_chains_shared_components(self, planner, catalog):
        plan = planner.plan_order(ACCOUNT_ID, [line(100, 1), line(110, 2)])

        chocolate = [d for d in plan if d.component_id == catalog.chocolate.id]
        assert [(d.previous_stock, d.new_stock) for d in chocolate] == [(10, 8), (8, 4)]

    def test_planner_is_read_only(self, planner, catalog, db_session):
        planner.plan_order(ACCOUNT_ID, [line(100, 3)])
        db_session.expire_all()

        assert catalog.chocolate.stock_quantity == 10
        assert catalog.ribbon.stock_quantity == 50
