# backend/modules/bom/config/__init__.py

from .bom_consumption_config import (
    BOMConsumptionSettings,
    get_bom_settings,
    reset_settings,
)

__all__ = ["BOMConsumptionSettings", "get_bom_settings", "reset_settings"]
