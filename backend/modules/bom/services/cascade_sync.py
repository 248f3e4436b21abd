# backend/modules/bom/services/cascade_sync.py

import logging
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from ..enums.bom_enums import ComponentType
from ..models.bom_models import BOM, BOMItem, CommerceProduct, ProductVariation
from .inventory_sync_service import BOMInventorySyncService

logger = logging.getLogger(__name__)


class BOMCascadeSyncService:
    """Recompute parents that use a component whose stock just changed"""

    def __init__(self, db: Session, inventory_sync: BOMInventorySyncService):
        self.db = db
        self.inventory_sync = inventory_sync

    def find_affected_parents(
        self,
        account_id: str,
        component_id: str,
        variation_id: Optional[int] = None,
        component_type: ComponentType = ComponentType.COMMERCE_PRODUCT
    ) -> List[Tuple[str, int]]:
        """(product_id, variation_id) of every BOM with an active item on the component"""
        query = self.db.query(BOM.product_id, BOM.variation_id).join(
            BOMItem, BOMItem.bom_id == BOM.id
        ).join(
            CommerceProduct, BOM.product_id == CommerceProduct.id
        ).filter(
            CommerceProduct.account_id == account_id,
            BOMItem.is_active.is_(True)
        )

        if component_type == ComponentType.INTERNAL_PRODUCT:
            query = query.filter(BOMItem.internal_product_id == component_id)
        else:
            query = query.filter(BOMItem.child_product_id == component_id)
            if variation_id:
                query = query.join(
                    ProductVariation, BOMItem.child_variation_id == ProductVariation.id
                ).filter(ProductVariation.woo_id == variation_id)

        return [(row[0], row[1]) for row in query.distinct().all()]

    async def cascade(
        self,
        account_id: str,
        component_id: str,
        variation_id: Optional[int] = None,
        component_type: ComponentType = ComponentType.COMMERCE_PRODUCT
    ) -> int:
        """
        Re-sync effective stock of every affected parent.

        Returns:
            Number of parents synced successfully
        """
        parents = self.find_affected_parents(account_id, component_id, variation_id, component_type)
        if not parents:
            return 0

        logger.info(
            f"Cascading stock change of {component_type.value} {component_id} "
            f"to {len(parents)} parent BOMs"
        )

        synced = 0
        for product_id, parent_variation_id in parents:
            try:
                result = await self.inventory_sync.sync_effective_stock(
                    account_id, product_id, parent_variation_id
                )
            except Exception as e:
                logger.error(
                    f"Cascade sync failed for parent {product_id} variation {parent_variation_id}: {e}",
                    exc_info=True
                )
                continue

            if result.success:
                synced += 1
            else:
                logger.warning(f"Cascade sync of parent {product_id} did not apply: {result.error}")

        return synced
