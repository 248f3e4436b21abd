# backend/modules/bom/services/deduction_executor.py

import logging
from typing import Optional

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..config.bom_consumption_config import BOMConsumptionSettings, get_bom_settings
from ..enums.bom_enums import ComponentType
from ..exceptions.bom_exceptions import BOMConsumptionError, CommerceCredentialsMissingError
from ..models.bom_models import CommerceProduct, InternalProduct, ProductVariation
from ..schemas.bom_consumption_schemas import ComponentDeduction
from ..utils.retry import with_retry
from .commerce_client import WooCommerceClient, stock_payload

logger = logging.getLogger(__name__)


class DeductionExecutor:
    """
    Applies planned deductions to the local stock cache and the commerce platform.

    The same restore() path serves rollback, recovery and reversal: it adds the
    deducted quantity back onto whatever the platform currently reports.
    """

    def __init__(
        self,
        db: Session,
        account_id: str,
        commerce_client: Optional[WooCommerceClient] = None,
        settings: Optional[BOMConsumptionSettings] = None
    ):
        self.db = db
        self.account_id = account_id
        self.commerce_client = commerce_client
        self.settings = settings or get_bom_settings()

    async def execute(self, deduction: ComponentDeduction) -> None:
        """
        Write the new stock locally, then push it to the platform.

        If the push fails after retries the local write is undone before the
        error propagates, so the cache never claims a deduction the platform
        did not receive.
        """
        local_before = self._set_local_stock(deduction, deduction.new_stock)

        if deduction.component_type == ComponentType.INTERNAL_PRODUCT:
            return

        try:
            await self._push_stock(deduction, deduction.new_stock)
        except Exception:
            try:
                self._set_local_stock(deduction, local_before)
            except (SQLAlchemyError, BOMConsumptionError) as restore_error:
                logger.error(
                    f"Could not restore local stock of {deduction.component_name} "
                    f"after failed push: {restore_error}"
                )
            raise

    async def restore(self, deduction: ComponentDeduction) -> float:
        """
        Add the deducted quantity back.

        Returns:
            The stock value written
        """
        if deduction.component_type == ComponentType.INTERNAL_PRODUCT:
            return self._increment_internal(deduction)

        current = await self._fetch_stock(deduction)
        if current is None:
            current = self._get_local_stock(deduction)

        restored = current + deduction.quantity_deducted
        await self._push_stock(deduction, restored)
        self._set_local_stock(deduction, restored)

        logger.info(
            f"Restored {deduction.quantity_deducted} to {deduction.component_name} "
            f"(stock {current} -> {restored})"
        )
        return restored

    # Commerce platform
    def _client(self) -> WooCommerceClient:
        if self.commerce_client is None:
            raise CommerceCredentialsMissingError(self.account_id)
        return self.commerce_client

    async def _push_stock(self, deduction: ComponentDeduction, stock: float) -> None:
        client = self._client()
        payload = stock_payload(stock)

        if deduction.component_type == ComponentType.PRODUCT_VARIATION:
            await with_retry(
                client.update_variation,
                deduction.parent_woo_id,
                deduction.woo_id,
                payload,
                max_attempts=self.settings.RETRY_MAX_ATTEMPTS,
                base_delay=self.settings.RETRY_BASE_DELAY_SECONDS,
                context=f"Update variation {deduction.woo_id}"
            )
        else:
            await with_retry(
                client.update_product,
                deduction.woo_id,
                payload,
                max_attempts=self.settings.RETRY_MAX_ATTEMPTS,
                base_delay=self.settings.RETRY_BASE_DELAY_SECONDS,
                context=f"Update product {deduction.woo_id}"
            )

    async def _fetch_stock(self, deduction: ComponentDeduction) -> Optional[float]:
        client = self._client()

        if deduction.component_type == ComponentType.PRODUCT_VARIATION:
            return await with_retry(
                client.get_variation_stock,
                deduction.parent_woo_id,
                deduction.woo_id,
                max_attempts=self.settings.RETRY_MAX_ATTEMPTS,
                base_delay=self.settings.RETRY_BASE_DELAY_SECONDS,
                context=f"Fetch variation {deduction.woo_id}"
            )

        product = await with_retry(
            client.get_product,
            deduction.woo_id,
            max_attempts=self.settings.RETRY_MAX_ATTEMPTS,
            base_delay=self.settings.RETRY_BASE_DELAY_SECONDS,
            context=f"Fetch product {deduction.woo_id}"
        )
        stock = product.get("stock_quantity")
        return float(stock) if stock is not None else None

    # Local cache
    def _load_local_row(self, deduction: ComponentDeduction):
        if deduction.component_type == ComponentType.INTERNAL_PRODUCT:
            row = self.db.get(InternalProduct, deduction.component_id)
        elif deduction.component_type == ComponentType.PRODUCT_VARIATION:
            row = self.db.query(ProductVariation).filter(
                ProductVariation.product_id == deduction.component_id,
                ProductVariation.woo_id == deduction.woo_id
            ).first()
        else:
            row = self.db.get(CommerceProduct, deduction.component_id)

        if row is None:
            raise BOMConsumptionError(
                f"Component {deduction.component_name} not found in local catalog",
                "COMPONENT_NOT_FOUND",
                {
                    "component_type": deduction.component_type.value,
                    "component_id": deduction.component_id,
                    "woo_id": deduction.woo_id
                }
            )
        return row

    def _get_local_stock(self, deduction: ComponentDeduction) -> float:
        return self._load_local_row(deduction).stock_quantity or 0

    def _set_local_stock(self, deduction: ComponentDeduction, stock: float) -> float:
        """Write the local stock and return the value it replaced"""
        row = self._load_local_row(deduction)
        previous = row.stock_quantity or 0
        row.stock_quantity = stock
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return previous

    def _increment_internal(self, deduction: ComponentDeduction) -> float:
        row = self._load_local_row(deduction)
        row.stock_quantity = (row.stock_quantity or 0) + deduction.quantity_deducted
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        logger.info(f"Restored {deduction.quantity_deducted} to internal product {deduction.component_name}")
        return row.stock_quantity
