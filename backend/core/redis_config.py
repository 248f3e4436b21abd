# backend/core/redis_config.py

"""
Redis client for order locks and consumption markers.

The engine runs without Redis: locks fall back to Postgres advisory locks and
the deduction ledger stands in for the markers.
"""

from typing import Optional, Dict, Any
import logging

import redis
from redis import Redis

from core.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[Redis] = None


def get_redis_client() -> Optional[Redis]:
    """Shared client, or None while Redis is unreachable"""
    global _redis_client

    if _redis_client is not None:
        try:
            _redis_client.ping()
            return _redis_client
        except redis.RedisError:
            _redis_client = None

    try:
        client = Redis.from_url(
            settings.effective_redis_url,
            max_connections=settings.redis_max_connections,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
        )
        client.ping()
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e}. Locks will use the database fallback.")
        return None

    logger.info("Redis connection established")
    _redis_client = client
    return _redis_client


def close_redis_connection():
    global _redis_client

    if _redis_client is None:
        return
    try:
        _redis_client.close()
    except redis.RedisError as e:
        logger.error(f"Error closing Redis client: {e}")
    finally:
        _redis_client = None


async def redis_health_check() -> Dict[str, Any]:
    """Lock backend status for the health endpoint"""
    client = get_redis_client()
    if not client:
        return {"status": "unavailable", "lock_backend": "postgres_advisory"}
    return {"status": "healthy", "lock_backend": "redis"}
