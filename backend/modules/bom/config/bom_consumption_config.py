# backend/modules/bom/config/bom_consumption_config.py

"""
Configuration for BOM stock consumption behavior.
"""

from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class BOMConsumptionSettings(BaseSettings):
    """
    Settings for BOM component consumption, reversal and recovery.

    Lock and marker lifetimes bound how long a crashed worker can hold an
    order before the recovery sweep is allowed to roll it back.
    """

    model_config = SettingsConfigDict(env_prefix="BOM_", case_sensitive=False)

    # Order-level lock lifetimes
    ORDER_LOCK_TTL_SECONDS: int = 300
    REVERSAL_LOCK_TTL_SECONDS: int = 300

    # Marker lifetimes
    PENDING_MARKER_TTL_SECONDS: int = 1800
    CONSUMED_MARKER_TTL_SECONDS: int = 86400

    # EXECUTED ledger entries older than this without a consumed marker are crashes
    STALE_EXECUTED_MINUTES: int = 30

    # Commerce platform retry
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 1.0

    # Order status routing (lower-case)
    CONSUME_ON_STATUSES: List[str] = ["processing", "completed"]
    REVERSE_ON_STATUSES: List[str] = ["cancelled", "refunded", "failed"]

    # Background jobs
    RECOVERY_INTERVAL_MINUTES: int = 5
    INVENTORY_SYNC_INTERVAL_MINUTES: int = 60

    ENABLE_CASCADE_SYNC: bool = True


_settings: Optional[BOMConsumptionSettings] = None


def get_bom_settings() -> BOMConsumptionSettings:
    """Get BOM consumption settings singleton"""
    global _settings
    if _settings is None:
        _settings = BOMConsumptionSettings()
    return _settings


def reset_settings():
    """Reset settings (mainly for testing)"""
    global _settings
    _settings = None
