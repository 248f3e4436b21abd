# backend/modules/bom/services/commerce_client.py

"""
WooCommerce REST client.

Only the stock-related surface used by the BOM engine: reading products and
variations and overwriting their stock. The platform has no "increment"
operation, so every write carries an absolute value.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from core.config import settings
from ..exceptions.bom_exceptions import CommerceAPIError, CommerceCredentialsMissingError
from ..models.bom_models import CommerceStoreCredentials

logger = logging.getLogger(__name__)


def stock_payload(stock: float) -> Dict[str, Any]:
    """Build the body that sets an absolute, managed stock value"""
    value: Any = stock
    if float(stock).is_integer():
        value = int(stock)
    return {"stock_quantity": value, "manage_stock": True}


class WooCommerceClient:
    """Async client for one commerce store"""

    API_PREFIX = "/wp-json/wc/v3/"

    def __init__(
        self,
        store_url: str,
        consumer_key: str,
        consumer_secret: str,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = store_url.rstrip("/") + self.API_PREFIX
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            auth=(consumer_key, consumer_secret),
            timeout=timeout or settings.commerce_http_timeout_seconds,
        )

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> Any:
        try:
            response = await self.http_client.request(method, endpoint, params=params, json=json)
        except httpx.TransportError as e:
            raise CommerceAPIError(
                f"{method} {endpoint} transport failure: {e}",
                status_code=None,
                retryable=True,
                endpoint=endpoint
            ) from e

        if response.status_code >= 400:
            message = self._error_message(response)
            raise CommerceAPIError(
                f"{method} {endpoint} failed with {response.status_code}: {message}",
                status_code=response.status_code,
                endpoint=endpoint
            )

        return response.json()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            code = body.get("code", "")
            message = body.get("message", "")
            return f"{code} {message}".strip()
        return str(body)[:200]

    async def get_product(self, product_id: int) -> Dict[str, Any]:
        return await self._request("GET", f"products/{product_id}")

    async def update_product(self, product_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PUT", f"products/{product_id}", json=data)

    async def get_variations(self, parent_id: int) -> List[Dict[str, Any]]:
        return await self._request(
            "GET", f"products/{parent_id}/variations", params={"per_page": 100}
        )

    async def update_variation(
        self, parent_id: int, variation_id: int, data: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await self._request(
            "PUT", f"products/{parent_id}/variations/{variation_id}", json=data
        )

    async def get_variation_stock(self, parent_id: int, variation_id: int) -> Optional[float]:
        """Current stock of one variation, read through the parent's variation list"""
        variations = await self.get_variations(parent_id)
        for variation in variations:
            if variation.get("id") == variation_id:
                return variation.get("stock_quantity")
        raise CommerceAPIError(
            f"Variation {variation_id} not found on product {parent_id}",
            status_code=404,
            endpoint=f"products/{parent_id}/variations"
        )

    async def close(self):
        await self.http_client.aclose()


def get_commerce_client(db: Session, account_id: str) -> WooCommerceClient:
    """Build a client from the account's stored credentials"""
    credentials = db.query(CommerceStoreCredentials).filter(
        CommerceStoreCredentials.account_id == account_id,
        CommerceStoreCredentials.is_active.is_(True)
    ).first()

    if not credentials:
        raise CommerceCredentialsMissingError(account_id)

    return WooCommerceClient(
        store_url=credentials.store_url,
        consumer_key=credentials.consumer_key,
        consumer_secret=credentials.consumer_secret,
    )
