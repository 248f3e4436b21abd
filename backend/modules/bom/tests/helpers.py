"""In-memory stand-ins for Redis and the commerce platform used across the BOM tests."""

import fnmatch
import uuid
from unittest.mock import AsyncMock

import redis
from redis.exceptions import LockNotOwnedError

from modules.bom.exceptions.bom_exceptions import CommerceAPIError
from modules.bom.services.commerce_client import WooCommerceClient

ACCOUNT_ID = "acct-1"


class InMemoryRedis:
    """Single-process stand-in for the Redis commands the engine uses"""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("redis unavailable")

    def set(self, key, value, nx=False, ex=None):
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex:
            self.ttls[key] = ex
        return True

    def get(self, key):
        self._check()
        return self.data.get(key)

    def exists(self, *keys):
        self._check()
        return sum(1 for key in keys if key in self.data)

    def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    def scan_iter(self, match=None, count=None):
        self._check()
        return iter([key for key in list(self.data) if fnmatch.fnmatch(key, match or "*")])

    def lock(self, name, timeout=None, blocking=True):
        self._check()
        return InMemoryLock(self, name, timeout)


class InMemoryLock:

    def __init__(self, client, name, timeout):
        self.client = client
        self.name = name
        self.timeout = timeout
        self.token = uuid.uuid4().hex

    def acquire(self, blocking=None):
        return bool(self.client.set(self.name, self.token, nx=True, ex=self.timeout))

    def release(self):
        if self.client.data.get(self.name) != self.token:
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        self.client.delete(self.name)


class FakeCommerceStore:
    """Commerce platform state behind an AsyncMock client"""

    def __init__(self):
        self.products = {}
        self.variations = {}
        self.update_errors = {}
        self.read_errors = {}

        self.client = AsyncMock(spec=WooCommerceClient)
        self.client.get_product.side_effect = self._get_product
        self.client.update_product.side_effect = self._update_product
        self.client.get_variations.side_effect = self._get_variations
        self.client.update_variation.side_effect = self._update_variation
        self.client.get_variation_stock.side_effect = self._get_variation_stock

    def add_product(self, woo_id, stock, product_type="simple"):
        self.products[woo_id] = {"id": woo_id, "type": product_type, "stock_quantity": stock}

    def add_variation(self, parent_id, woo_id, stock):
        self.variations.setdefault(parent_id, {})[woo_id] = {"id": woo_id, "stock_quantity": stock}

    def stock(self, woo_id, parent_id=None):
        if parent_id is not None:
            return self.variations[parent_id][woo_id]["stock_quantity"]
        return self.products[woo_id]["stock_quantity"]

    def _get_product(self, product_id):
        if product_id in self.read_errors:
            raise self.read_errors[product_id]
        if product_id not in self.products:
            raise CommerceAPIError("Invalid ID.", status_code=404)
        return dict(self.products[product_id])

    def _update_product(self, product_id, data):
        if product_id in self.update_errors:
            raise self.update_errors[product_id]
        if product_id not in self.products:
            raise CommerceAPIError("Invalid ID.", status_code=404)
        self.products[product_id].update(data)
        return dict(self.products[product_id])

    def _get_variations(self, parent_id):
        if parent_id in self.read_errors:
            raise self.read_errors[parent_id]
        return [dict(v) for v in self.variations.get(parent_id, {}).values()]

    def _update_variation(self, parent_id, variation_id, data):
        if variation_id in self.update_errors:
            raise self.update_errors[variation_id]
        variation = self.variations.get(parent_id, {}).get(variation_id)
        if variation is None:
            raise CommerceAPIError("Invalid ID.", status_code=404)
        variation.update(data)
        return dict(variation)

    def _get_variation_stock(self, parent_id, variation_id):
        for variation in self._get_variations(parent_id):
            if variation["id"] == variation_id:
                return variation["stock_quantity"]
        raise CommerceAPIError("Variation not found", status_code=404)


def make_order(order_id, status="processing", items=None):
    return {
        "id": order_id,
        "status": status,
        "line_items": [
            {"product_id": product_id, "variation_id": variation_id, "quantity": quantity}
            for product_id, variation_id, quantity in (items or [])
        ],
    }
