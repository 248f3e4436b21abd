from .bom_exceptions import (
    BOMConsumptionError,
    CommerceAPIError,
    CommerceCredentialsMissingError,
    DeductionExecutionError,
    InvalidBOMItemError,
    LedgerTransitionError,
)

__all__ = [
    "BOMConsumptionError",
    "CommerceAPIError",
    "CommerceCredentialsMissingError",
    "DeductionExecutionError",
    "InvalidBOMItemError",
    "LedgerTransitionError",
]
