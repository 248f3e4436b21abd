# backend/modules/bom/services/inventory_sync_service.py

"""
Effective stock of BOM parents.

A parent can be built as many times as its scarcest component allows:
    effective = min(floor(component_stock / (quantity * (1 + waste_factor))))
This service computes that value from live platform stock and pushes it to
the parent product or variation.
"""

import logging
import math
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session, selectinload
from sqlalchemy.exc import SQLAlchemyError

from ..config.bom_consumption_config import BOMConsumptionSettings, get_bom_settings
from ..exceptions.bom_exceptions import CommerceAPIError
from ..models.bom_models import BOM, BOMItem, CommerceProduct, ProductVariation
from ..schemas.bom_consumption_schemas import (
    BulkSyncResult, EffectiveStockComponent, EffectiveStockResult, SyncResult
)
from ..utils.retry import with_retry
from .commerce_client import WooCommerceClient, get_commerce_client, stock_payload

logger = logging.getLogger(__name__)


class BOMInventorySyncService:
    """Calculates and publishes buildable stock for BOM products"""

    def __init__(
        self,
        db: Session,
        commerce_client: Optional[WooCommerceClient] = None,
        client_factory: Callable[[Session, str], WooCommerceClient] = get_commerce_client,
        settings: Optional[BOMConsumptionSettings] = None
    ):
        self.db = db
        self.settings = settings or get_bom_settings()
        self._client_factory = client_factory
        self._clients: Dict[str, WooCommerceClient] = {}
        self._shared_client = commerce_client

    def get_client(self, account_id: str) -> WooCommerceClient:
        """Client for the account; raises CommerceCredentialsMissingError"""
        if self._shared_client is not None:
            return self._shared_client
        if account_id not in self._clients:
            self._clients[account_id] = self._client_factory(self.db, account_id)
        return self._clients[account_id]

    async def close(self):
        for client in self._clients.values():
            await client.close()
        self._clients.clear()

    def get_account_product(self, account_id: str, product_id: str) -> Optional[CommerceProduct]:
        """The account's product, or None when it belongs to another account"""
        return self.db.query(CommerceProduct).filter(
            CommerceProduct.id == product_id,
            CommerceProduct.account_id == account_id
        ).first()

    def _load_bom(self, product_id: str, variation_id: int) -> Optional[BOM]:
        return self.db.query(BOM).options(
            selectinload(BOM.items).joinedload(BOMItem.child_product),
            selectinload(BOM.items).joinedload(BOMItem.child_variation),
            selectinload(BOM.items).joinedload(BOMItem.internal_product),
        ).filter(
            BOM.product_id == product_id,
            BOM.variation_id == variation_id
        ).first()

    @staticmethod
    def _active_items(bom: Optional[BOM]) -> List[BOMItem]:
        if bom is None:
            return []
        return [
            item for item in bom.items
            if item.is_active and (item.child_product_id or item.internal_product_id)
        ]

    @staticmethod
    def _required_quantity(item: BOMItem) -> float:
        return float(item.quantity or 0) * (1 + float(item.waste_factor or 0))

    @staticmethod
    def _component(
        child_id: str, name: str, woo_id: int, required: float, stock: float
    ) -> EffectiveStockComponent:
        return EffectiveStockComponent(
            child_product_id=child_id,
            child_name=name,
            child_woo_id=woo_id,
            required_qty=required,
            child_stock=stock,
            buildable_units=max(0, math.floor(stock / required)),
        )

    def _deactivate_item(self, item: BOMItem, reason: str) -> None:
        item.is_active = False
        item.deactivated_reason = reason
        logger.warning(f"Deactivated BOM item {item.id}: {reason}")

    async def calculate_effective_stock(
        self,
        account_id: str,
        product_id: str,
        variation_id: int = 0
    ) -> Optional[EffectiveStockResult]:
        """
        Compute buildable units from live component stock.

        Components whose platform read fails fall back to the local cache.
        A component that no longer exists on the platform gets its BOM item
        deactivated so the error does not recur on every run.

        Returns:
            None when the product has no BOM or no usable components
        """
        product = self.get_account_product(account_id, product_id)
        if not product:
            logger.warning(f"Product {product_id} not found (account {account_id})")
            return None

        bom = self._load_bom(product_id, variation_id)
        items = self._active_items(bom)
        if not items:
            logger.debug(f"No BOM items for product {product.name} variation {variation_id}")
            return None

        client = self.get_client(account_id)
        variation_cache: Dict[int, Optional[List[dict]]] = {}

        async def cached_variations(parent_woo_id: int) -> Optional[List[dict]]:
            # None means the platform could not be read, not "no variations"
            if parent_woo_id not in variation_cache:
                try:
                    variation_cache[parent_woo_id] = await client.get_variations(parent_woo_id)
                except CommerceAPIError as e:
                    logger.warning(f"Could not fetch variations of {parent_woo_id}: {e}")
                    variation_cache[parent_woo_id] = None
            return variation_cache[parent_woo_id]

        current_woo_stock = await self._current_parent_stock(
            client, product, variation_id, cached_variations
        )

        components: List[EffectiveStockComponent] = []
        for item in items:
            required = self._required_quantity(item)
            if required <= 0:
                continue

            if item.internal_product_id and item.internal_product:
                internal = item.internal_product
                components.append(self._component(
                    internal.id, f"[Internal] {internal.name}", 0,
                    required, internal.stock_quantity or 0
                ))
                continue

            child = item.child_product
            if child is None:
                continue

            if item.child_variation is not None:
                variation = item.child_variation
                variations = await cached_variations(child.woo_id)
                stock = variation.cached_stock
                if variations is not None:
                    target = next((v for v in variations if v.get("id") == variation.woo_id), None)
                    if target is None:
                        self._deactivate_item(item, "VARIATION_DELETED_IN_WOO")
                        continue
                    live = target.get("stock_quantity")
                    if live is not None:
                        stock = float(live)
                        variation.stock_quantity = stock
                name = f"{child.name} (Variant {variation.sku or '#' + str(variation.woo_id)})"
                components.append(self._component(child.id, name, variation.woo_id, required, stock))
                continue

            try:
                live = (await client.get_product(child.woo_id)).get("stock_quantity")
            except CommerceAPIError as e:
                if e.is_not_found:
                    self._deactivate_item(item, "PRODUCT_404")
                    continue
                logger.warning(f"Using local stock for {child.name}: {e}")
                stock = child.cached_stock
            else:
                stock = child.cached_stock
                if live is not None:
                    stock = float(live)
                    child.stock_quantity = stock
            components.append(self._component(child.id, child.name, child.woo_id, required, stock))

        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Failed to persist refreshed component stock: {e}")

        if not components:
            logger.warning(f"BOM of product {product.name} has no valid components")
            return None

        effective_stock = min(c.buildable_units for c in components)
        could_not_fetch = current_woo_stock is None

        return EffectiveStockResult(
            product_id=product.id,
            woo_id=product.woo_id,
            variation_id=variation_id,
            effective_stock=effective_stock,
            current_woo_stock=current_woo_stock,
            needs_sync=could_not_fetch or float(current_woo_stock) != float(effective_stock),
            could_not_fetch_stock=could_not_fetch,
            components=components,
        )

    async def _current_parent_stock(self, client, product, variation_id, cached_variations) -> Optional[float]:
        if variation_id > 0:
            variations = await cached_variations(product.woo_id)
            if variations is None:
                return None
            target = next((v for v in variations if v.get("id") == variation_id), None)
            value = target.get("stock_quantity") if target else None
        else:
            try:
                value = (await client.get_product(product.woo_id)).get("stock_quantity")
            except CommerceAPIError as e:
                logger.warning(f"Could not fetch stock of {product.name}: {e}")
                return None
        return float(value) if value is not None else None

    def calculate_effective_stock_local(
        self,
        account_id: str,
        product_id: str,
        variation_id: int = 0
    ) -> Optional[EffectiveStockResult]:
        """Same calculation from the local cache only; no platform calls"""
        product = self.get_account_product(account_id, product_id)
        if not product:
            return None

        items = self._active_items(self._load_bom(product_id, variation_id))
        components: List[EffectiveStockComponent] = []
        for item in items:
            required = self._required_quantity(item)
            if required <= 0:
                continue
            if item.internal_product_id and item.internal_product:
                internal = item.internal_product
                components.append(self._component(
                    internal.id, f"[Internal] {internal.name}", 0,
                    required, internal.stock_quantity or 0
                ))
            elif item.child_variation is not None and item.child_product is not None:
                variation = item.child_variation
                components.append(self._component(
                    item.child_product.id, item.child_product.name, variation.woo_id,
                    required, variation.cached_stock
                ))
            elif item.child_product is not None:
                child = item.child_product
                components.append(self._component(
                    child.id, child.name, child.woo_id, required, child.cached_stock
                ))

        if not components:
            return None

        effective_stock = min(c.buildable_units for c in components)
        current = self._local_parent_stock(product, variation_id)
        return EffectiveStockResult(
            product_id=product.id,
            woo_id=product.woo_id,
            variation_id=variation_id,
            effective_stock=effective_stock,
            current_woo_stock=current,
            needs_sync=current is None or float(current) != float(effective_stock),
            could_not_fetch_stock=current is None,
            components=components,
        )

    def _local_parent_stock(self, product: CommerceProduct, variation_id: int) -> Optional[float]:
        if variation_id > 0:
            variation = self.db.query(ProductVariation).filter(
                ProductVariation.product_id == product.id,
                ProductVariation.woo_id == variation_id
            ).first()
            return variation.stock_quantity if variation else None
        return product.stock_quantity

    def _set_local_parent_stock(self, product_id: str, variation_id: int, stock: Optional[float]) -> bool:
        if stock is None:
            return False
        try:
            if variation_id > 0:
                self.db.query(ProductVariation).filter(
                    ProductVariation.product_id == product_id,
                    ProductVariation.woo_id == variation_id
                ).update({ProductVariation.stock_quantity: stock}, synchronize_session="fetch")
            else:
                self.db.query(CommerceProduct).filter(
                    CommerceProduct.id == product_id
                ).update({CommerceProduct.stock_quantity: stock}, synchronize_session="fetch")
            self.db.commit()
            return True
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Failed to update local stock of {product_id}: {e}")
            return False

    async def sync_effective_stock(
        self,
        account_id: str,
        product_id: str,
        variation_id: int = 0
    ) -> SyncResult:
        """
        Push a parent's effective stock to the platform when it differs.

        Variable parents are never given a stock value; stock lives on their
        variations. A parent that no longer exists on the platform has its
        BOM items deactivated.
        """
        try:
            calculation = await self.calculate_effective_stock(account_id, product_id, variation_id)
        except CommerceAPIError as e:
            return SyncResult(success=False, product_id=product_id, error=str(e))

        if not calculation:
            return SyncResult(
                success=False,
                product_id=product_id,
                error="Product has no BOM or calculation failed"
            )

        if not calculation.needs_sync:
            logger.info(f"Product {product_id} already in sync (stock: {calculation.effective_stock})")
            updated = self._set_local_parent_stock(product_id, variation_id, calculation.current_woo_stock)
            return SyncResult(
                success=True,
                product_id=calculation.product_id,
                woo_id=calculation.woo_id,
                previous_stock=calculation.current_woo_stock,
                new_stock=calculation.effective_stock,
                local_db_updated=updated,
            )

        product = self.get_account_product(account_id, product_id)
        client = self.get_client(account_id)
        payload = stock_payload(calculation.effective_stock)
        payload["stock_status"] = "instock" if calculation.effective_stock > 0 else "outofstock"

        try:
            if variation_id > 0:
                await with_retry(
                    client.update_variation, product.woo_id, variation_id, payload,
                    max_attempts=self.settings.RETRY_MAX_ATTEMPTS,
                    base_delay=self.settings.RETRY_BASE_DELAY_SECONDS,
                    context=f"Sync variation {variation_id}"
                )
            else:
                if product.is_variable:
                    logger.warning(
                        f"Refusing to set stock on variable parent {product.name} (woo_id={product.woo_id})"
                    )
                    return SyncResult(
                        success=False,
                        product_id=product_id,
                        woo_id=product.woo_id,
                        error="Cannot set stock on a variable parent; use a variation BOM instead"
                    )
                await with_retry(
                    client.update_product, product.woo_id, payload,
                    max_attempts=self.settings.RETRY_MAX_ATTEMPTS,
                    base_delay=self.settings.RETRY_BASE_DELAY_SECONDS,
                    context=f"Sync product {product.woo_id}"
                )
        except CommerceAPIError as e:
            if e.is_not_found:
                self._deactivate_bom(product_id, variation_id)
            else:
                logger.error(f"Failed to sync product {product_id} to platform: {e}")
            return SyncResult(
                success=False,
                product_id=product_id,
                woo_id=product.woo_id,
                previous_stock=calculation.current_woo_stock,
                error=str(e)
            )

        updated = self._set_local_parent_stock(product_id, variation_id, calculation.effective_stock)
        logger.info(
            f"Synced product {product.name} stock "
            f"{calculation.current_woo_stock} -> {calculation.effective_stock}"
        )
        return SyncResult(
            success=True,
            product_id=product_id,
            woo_id=product.woo_id,
            previous_stock=calculation.current_woo_stock,
            new_stock=calculation.effective_stock,
            local_db_updated=updated,
        )

    def _deactivate_bom(self, product_id: str, variation_id: int) -> None:
        logger.warning(f"Product {product_id} no longer exists on the platform, deactivating BOM items")
        bom = self._load_bom(product_id, variation_id)
        if bom is None:
            return
        try:
            for item in bom.items:
                if item.is_active:
                    self._deactivate_item(item, "PARENT_PRODUCT_404")
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to deactivate BOM items of {product_id}: {e}")

    def find_bom_parents(self, account_id: str) -> List[Tuple[str, int]]:
        """(product_id, variation_id) of every BOM with at least one active component"""
        rows = self.db.query(BOM.product_id, BOM.variation_id).join(
            CommerceProduct, BOM.product_id == CommerceProduct.id
        ).filter(
            CommerceProduct.account_id == account_id,
            BOM.items.any(BOMItem.is_active.is_(True))
        ).all()
        return [(row[0], row[1]) for row in rows]

    async def sync_all_bom_products(self, account_id: str) -> BulkSyncResult:
        """Sync every BOM parent of an account; one failure never stops the run"""
        parents = self.find_bom_parents(account_id)
        logger.info(f"Starting bulk BOM sync for {len(parents)} products (account {account_id})")

        result = BulkSyncResult(total=len(parents))
        for product_id, variation_id in parents:
            try:
                sync = await self.sync_effective_stock(account_id, product_id, variation_id)
            except Exception as e:
                logger.error(f"Uncaught error syncing product {product_id}: {e}", exc_info=True)
                result.failed += 1
                continue

            if not sync.success:
                result.failed += 1
            elif sync.previous_stock is not None and float(sync.previous_stock) == float(sync.new_stock):
                result.skipped += 1
            else:
                result.synced += 1

        logger.info(
            f"Bulk BOM sync complete for {account_id}: synced={result.synced} "
            f"skipped={result.skipped} failed={result.failed}"
        )
        return result
