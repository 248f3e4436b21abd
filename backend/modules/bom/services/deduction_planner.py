# backend/modules/bom/services/deduction_planner.py

import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session, selectinload
from sqlalchemy.exc import SQLAlchemyError

from ..enums.bom_enums import ComponentType
from ..exceptions.bom_exceptions import InvalidBOMItemError
from ..models.bom_models import BOM, BOMItem, CommerceProduct
from ..schemas.bom_consumption_schemas import ComponentDeduction, OrderLineItem

logger = logging.getLogger(__name__)

RunningStock = Dict[Tuple[str, str, Optional[int]], float]


class DeductionPlanner:
    """Computes component deductions for sold BOM products without writing anything"""

    def __init__(self, db: Session):
        self.db = db

    def plan_order(
        self,
        account_id: str,
        line_items: List[OrderLineItem]
    ) -> List[ComponentDeduction]:
        """
        Plan every line item of an order.

        A running stock value is threaded through the whole plan so that two
        line items sharing a component chain their previous/new stock values.
        """
        running_stock: RunningStock = {}
        plan: List[ComponentDeduction] = []
        for line_item in line_items:
            plan.extend(self.plan(account_id, line_item, running_stock))
        return plan

    def plan(
        self,
        account_id: str,
        line_item: OrderLineItem,
        running_stock: Optional[RunningStock] = None
    ) -> List[ComponentDeduction]:
        """
        Plan the deductions for one line item.

        Returns an empty list when the product is unknown, has no BOM for the
        exact (product, variation) pair, or cannot be loaded.
        """
        if line_item.quantity <= 0:
            return []

        try:
            bom = self._load_bom(account_id, line_item)
        except SQLAlchemyError as e:
            logger.error(
                f"Could not load BOM for product {line_item.product_id} "
                f"variation {line_item.variation_id}: {e}"
            )
            return []

        if not bom or not bom.items:
            return []

        deductions = []
        for bom_item in bom.items:
            if not bom_item.is_active:
                continue
            try:
                deduction = self._plan_item(bom_item, line_item.quantity, running_stock)
            except InvalidBOMItemError as e:
                logger.warning(e.message)
                continue
            if deduction:
                deductions.append(deduction)

        return deductions

    def _load_bom(self, account_id: str, line_item: OrderLineItem) -> Optional[BOM]:
        product = self.db.query(CommerceProduct).filter(
            CommerceProduct.account_id == account_id,
            CommerceProduct.woo_id == line_item.product_id
        ).first()

        if not product:
            logger.debug(f"Product woo_id={line_item.product_id} not found for account {account_id}")
            return None

        return self.db.query(BOM).options(
            selectinload(BOM.items).joinedload(BOMItem.child_product),
            selectinload(BOM.items).joinedload(BOMItem.child_variation),
            selectinload(BOM.items).joinedload(BOMItem.internal_product),
        ).filter(
            BOM.product_id == product.id,
            BOM.variation_id == (line_item.variation_id or 0)
        ).first()

    def _plan_item(
        self,
        bom_item: BOMItem,
        ordered_quantity: float,
        running_stock: Optional[RunningStock]
    ) -> Optional[ComponentDeduction]:
        recipe_quantity = float(bom_item.quantity or 0)
        if recipe_quantity <= 0:
            logger.warning(f"BOM item {bom_item.id} has non-positive quantity, skipping")
            return None

        quantity = recipe_quantity * ordered_quantity
        woo_id = None
        parent_woo_id = None

        # Precedence: internal product, then variation, then product
        if bom_item.internal_product_id:
            internal = bom_item.internal_product
            if internal is None:
                logger.warning(f"BOM item {bom_item.id} references a missing internal product")
                return None
            component_type = ComponentType.INTERNAL_PRODUCT
            component_id = internal.id
            component_name = internal.name
            previous_stock = internal.stock_quantity or 0

        elif bom_item.child_variation_id:
            variation = bom_item.child_variation
            parent = bom_item.child_product
            if variation is None or parent is None:
                logger.warning(f"BOM item {bom_item.id} references a missing variation")
                return None
            component_type = ComponentType.PRODUCT_VARIATION
            component_id = parent.id
            component_name = f"{parent.name} (Variation {variation.sku or variation.woo_id})"
            woo_id = variation.woo_id
            parent_woo_id = parent.woo_id
            previous_stock = variation.cached_stock

        elif bom_item.child_product_id:
            product = bom_item.child_product
            if product is None:
                logger.warning(f"BOM item {bom_item.id} references a missing product")
                return None
            if product.is_variable:
                logger.warning(
                    f"BOM item {bom_item.id} points at variable product '{product.name}' "
                    f"(woo_id={product.woo_id}); a specific variation is required, skipping"
                )
                return None
            component_type = ComponentType.COMMERCE_PRODUCT
            component_id = product.id
            component_name = product.name
            woo_id = product.woo_id
            previous_stock = product.cached_stock

        else:
            raise InvalidBOMItemError(bom_item.id, "no component reference")

        key = (component_type.value, component_id, woo_id)
        if running_stock is not None and key in running_stock:
            previous_stock = running_stock[key]

        new_stock = max(0, previous_stock - quantity)
        if running_stock is not None:
            running_stock[key] = new_stock

        return ComponentDeduction(
            component_type=component_type,
            component_id=component_id,
            component_name=component_name,
            woo_id=woo_id,
            parent_woo_id=parent_woo_id,
            quantity_deducted=quantity,
            previous_stock=previous_stock,
            new_stock=new_stock,
        )
