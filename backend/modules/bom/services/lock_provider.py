# backend/modules/bom/services/lock_provider.py

"""
Per-order mutual exclusion.

Redis is the primary backend. When Redis is unavailable the lock falls back
to a Postgres session-level advisory lock held on a dedicated connection, so
the same connection that took the lock is the one that releases it. If both
backends fail the lock is reported as not acquired.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import redis
from redis.exceptions import LockError, LockNotOwnedError
from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from ..enums.bom_enums import LockBackend

logger = logging.getLogger(__name__)

ORDER_LOCK_PREFIX = "bom:lock:order:"
REVERSAL_LOCK_PREFIX = "bom:lock:reversal:"


def order_lock_key(account_id: str, order_id: int) -> str:
    return f"{ORDER_LOCK_PREFIX}{account_id}:{order_id}"


def reversal_lock_key(account_id: str, order_id: int) -> str:
    return f"{REVERSAL_LOCK_PREFIX}{account_id}:{order_id}"


def lock_key_to_int32(key: str) -> int:
    """Deterministic signed 32-bit hash of a lock key (h = h * 31 + c)"""
    h = 0
    for ch in key:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h - 0x100000000 if h & 0x80000000 else h


@dataclass
class LockHandle:
    """Result of a lock attempt; pass it back to release()"""

    key: str
    acquired: bool
    backend: LockBackend
    redis_lock: Any = None
    connection: Optional[Connection] = None
    lock_id: Optional[int] = None


class DistributedLockProvider:
    """Acquire and release order locks across worker processes"""

    def __init__(self, redis_client: Optional[redis.Redis], engine: Optional[Engine]):
        self.redis_client = redis_client
        self.engine = engine

    def acquire(self, key: str, ttl_seconds: int) -> LockHandle:
        """
        Try to take the lock without blocking.

        Returns:
            LockHandle with acquired=False when the lock is held elsewhere or
            no backend could be reached
        """
        if self.redis_client is not None:
            try:
                lock = self.redis_client.lock(key, timeout=ttl_seconds, blocking=False)
                if lock.acquire(blocking=False):
                    return LockHandle(key=key, acquired=True, backend=LockBackend.REDIS, redis_lock=lock)
                return LockHandle(key=key, acquired=False, backend=LockBackend.REDIS)
            except redis.RedisError as e:
                logger.warning(f"Redis lock unavailable for {key}, falling back to advisory lock: {e}")

        return self._acquire_advisory(key)

    def _acquire_advisory(self, key: str) -> LockHandle:
        if self.engine is None:
            logger.error(f"No lock backend available for {key}")
            return LockHandle(key=key, acquired=False, backend=LockBackend.NONE)

        lock_id = lock_key_to_int32(key)
        connection = None
        try:
            connection = self.engine.connect()
            acquired = connection.execute(
                text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": lock_id}
            ).scalar()
            # Session-level advisory locks survive the commit
            connection.commit()
        except SQLAlchemyError as e:
            logger.error(f"Advisory lock failed for {key}: {e}")
            if connection is not None:
                connection.close()
            return LockHandle(key=key, acquired=False, backend=LockBackend.NONE)

        if not acquired:
            connection.close()
            return LockHandle(key=key, acquired=False, backend=LockBackend.POSTGRES_ADVISORY)

        return LockHandle(
            key=key,
            acquired=True,
            backend=LockBackend.POSTGRES_ADVISORY,
            connection=connection,
            lock_id=lock_id
        )

    def release(self, handle: Optional[LockHandle]) -> None:
        """Release a lock taken by acquire(); failures are logged only"""
        if handle is None or not handle.acquired:
            return

        if handle.backend == LockBackend.REDIS:
            try:
                handle.redis_lock.release()
            except LockNotOwnedError:
                logger.warning(f"Lock {handle.key} expired before release")
            except (LockError, redis.RedisError) as e:
                logger.warning(f"Failed to release Redis lock {handle.key}: {e}")
            return

        if handle.backend == LockBackend.POSTGRES_ADVISORY and handle.connection is not None:
            try:
                handle.connection.execute(
                    text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": handle.lock_id}
                )
                handle.connection.commit()
            except SQLAlchemyError as e:
                logger.warning(f"Failed to release advisory lock {handle.key}: {e}")
            finally:
                handle.connection.close()
                handle.connection = None
