# backend/modules/bom/services/consumption_markers.py

"""
Short-lived Redis markers around an order's consumption.

pending  - written before execution starts, removed on finalize or rollback
consumed - written on finalize, fast-path dedup for repeated sync events

Markers are an optimization; the ledger is the durable source of truth, so
every Redis failure here is logged and treated as "no marker".
"""

import json
import logging
from typing import Iterator, List, Optional, Tuple

import redis

from ..config.bom_consumption_config import BOMConsumptionSettings, get_bom_settings
from ..schemas.bom_consumption_schemas import ComponentDeduction

logger = logging.getLogger(__name__)

PENDING_PREFIX = "bom:pending:"
CONSUMED_PREFIX = "bom:consumed:"


def parse_marker_key(key: str, prefix: str) -> Optional[Tuple[str, int]]:
    """Split '<prefix><account>:<order>' into (account, order)"""
    if not key.startswith(prefix):
        return None
    account_id, sep, order_part = key[len(prefix):].rpartition(":")
    if not sep or not account_id:
        return None
    try:
        return account_id, int(order_part)
    except ValueError:
        return None


class ConsumptionMarkers:

    def __init__(
        self,
        redis_client: Optional[redis.Redis],
        settings: Optional[BOMConsumptionSettings] = None
    ):
        self.redis_client = redis_client
        self.settings = settings or get_bom_settings()

    @staticmethod
    def pending_key(account_id: str, order_id: int) -> str:
        return f"{PENDING_PREFIX}{account_id}:{order_id}"

    @staticmethod
    def consumed_key(account_id: str, order_id: int) -> str:
        return f"{CONSUMED_PREFIX}{account_id}:{order_id}"

    def is_consumed(self, account_id: str, order_id: int) -> bool:
        if self.redis_client is None:
            return False
        try:
            return bool(self.redis_client.exists(self.consumed_key(account_id, order_id)))
        except redis.RedisError as e:
            logger.warning(f"Consumed marker check failed for order {order_id}, using ledger: {e}")
            return False

    def mark_consumed(self, account_id: str, order_id: int) -> None:
        self._set(
            self.consumed_key(account_id, order_id),
            "1",
            self.settings.CONSUMED_MARKER_TTL_SECONDS
        )

    def clear_consumed(self, account_id: str, order_id: int) -> None:
        self.delete_key(self.consumed_key(account_id, order_id))

    def track_pending(
        self,
        account_id: str,
        order_id: int,
        plan: List[ComponentDeduction]
    ) -> None:
        payload = json.dumps([d.model_dump(mode="json") for d in plan])
        self._set(
            self.pending_key(account_id, order_id),
            payload,
            self.settings.PENDING_MARKER_TTL_SECONDS
        )

    def clear_pending(self, account_id: str, order_id: int) -> None:
        self.delete_key(self.pending_key(account_id, order_id))

    def iter_pending(self, account_id: Optional[str] = None) -> Iterator[Tuple[str, int, str]]:
        """
        Yield (account_id, order_id, key) for every pending marker, or only
        those of one account.

        Uses SCAN so a large keyspace is never blocked.
        """
        if self.redis_client is None:
            return
        try:
            match = f"{PENDING_PREFIX}{account_id}:*" if account_id else f"{PENDING_PREFIX}*"
            keys = list(self.redis_client.scan_iter(match=match, count=100))
        except redis.RedisError as e:
            logger.warning(f"Could not scan pending markers: {e}")
            return

        for key in keys:
            if isinstance(key, bytes):
                key = key.decode()
            parsed = parse_marker_key(key, PENDING_PREFIX)
            if parsed is None:
                logger.warning(f"Ignoring malformed pending marker {key}")
                continue
            if account_id and parsed[0] != account_id:
                continue
            yield parsed[0], parsed[1], key

    def delete_key(self, key: str) -> None:
        if self.redis_client is None:
            return
        try:
            self.redis_client.delete(key)
        except redis.RedisError as e:
            logger.warning(f"Failed to delete marker {key}: {e}")

    def _set(self, key: str, value: str, ttl_seconds: int) -> None:
        if self.redis_client is None:
            return
        try:
            self.redis_client.set(key, value, ex=ttl_seconds)
        except redis.RedisError as e:
            logger.warning(f"Failed to write marker {key}: {e}")
