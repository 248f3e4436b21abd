from .bom_models import (
    BOM,
    BOMItem,
    CommerceProduct,
    CommerceStoreCredentials,
    InternalProduct,
    ProductVariation,
)
from .ledger_models import BOMDeductionLedger

__all__ = [
    "BOM",
    "BOMItem",
    "BOMDeductionLedger",
    "CommerceProduct",
    "CommerceStoreCredentials",
    "InternalProduct",
    "ProductVariation",
]
