# backend/modules/bom/schemas/bom_consumption_schemas.py

"""
Schemas for BOM consumption, reversal, recovery and inventory sync.
"""

from typing import List, Optional
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..enums.bom_enums import (
    ComponentType, ConsumptionState, LedgerStatus, LockBackend, SkipReason
)


# Inbound order payload (commerce platform order shape, extra keys ignored)
class OrderLineItem(BaseModel):
    """A sold product line as reported by the commerce platform"""

    model_config = ConfigDict(extra="ignore")

    product_id: int
    variation_id: int = 0
    quantity: float = Field(..., description="Units sold")
    name: str = ""

    @field_validator("variation_id", mode="before")
    @classmethod
    def default_variation(cls, v):
        return v or 0


class OrderPayload(BaseModel):
    """Order as delivered by the order-sync job"""

    model_config = ConfigDict(extra="ignore")

    id: int
    status: str = ""
    line_items: List[OrderLineItem] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        return (v or "").lower()


class ComponentDeduction(BaseModel):
    """One planned (and later executed) component stock change"""

    component_type: ComponentType
    component_id: str
    component_name: str
    woo_id: Optional[int] = None
    parent_woo_id: Optional[int] = None  # Variations only
    quantity_deducted: float
    previous_stock: float
    new_stock: float
    ledger_entry_id: Optional[int] = None

    @classmethod
    def from_ledger(cls, entry) -> "ComponentDeduction":
        return cls(
            component_type=entry.component_type,
            component_id=entry.component_id,
            component_name=entry.component_name,
            woo_id=entry.woo_id,
            parent_woo_id=entry.parent_woo_id,
            quantity_deducted=entry.quantity_deducted,
            previous_stock=entry.previous_stock,
            new_stock=entry.new_stock,
            ledger_entry_id=entry.id,
        )


class ModifiedComponent(BaseModel):
    """Component whose stock changed and whose dependants need a cascade"""

    model_config = ConfigDict(frozen=True)

    component_type: ComponentType
    component_id: str
    variation_id: Optional[int] = None

    @classmethod
    def from_deduction(cls, deduction: ComponentDeduction) -> "ModifiedComponent":
        variation_id = (
            deduction.woo_id
            if deduction.component_type == ComponentType.PRODUCT_VARIATION
            else None
        )
        return cls(
            component_type=deduction.component_type,
            component_id=deduction.component_id,
            variation_id=variation_id,
        )


# Results
class ConsumptionResult(BaseModel):
    """Outcome of consuming one order's BOM components"""

    order_id: int
    state: ConsumptionState = ConsumptionState.NOT_STARTED
    consumed: List[ComponentDeduction] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    skipped: bool = False
    skip_reason: Optional[SkipReason] = None
    lock_backend: Optional[LockBackend] = None


class ReversalResult(BaseModel):
    """Outcome of reversing one order's consumption"""

    order_id: int
    reversed_count: int = 0
    errors: List[str] = Field(default_factory=list)
    skipped: bool = False


class RollbackOutcome(BaseModel):
    """Per-deduction result of a compensating rollback"""

    restored: List[ComponentDeduction] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def restored_entry_ids(self) -> List[int]:
        return [d.ledger_entry_id for d in self.restored if d.ledger_entry_id is not None]


class RecoveryReport(BaseModel):
    """Summary of one recovery sweep"""

    pending_markers_scanned: int = 0
    stale_markers_cleared: int = 0
    orders_rolled_back: int = 0
    orders_finalized: int = 0
    orders_skipped_locked: int = 0
    errors: List[str] = Field(default_factory=list)


# Effective stock / inventory sync
class EffectiveStockComponent(BaseModel):
    """Buildable-unit contribution of one BOM component"""

    child_product_id: str
    child_name: str
    child_woo_id: int
    required_qty: float
    child_stock: float
    buildable_units: int


class EffectiveStockResult(BaseModel):
    """Buildable units of a BOM parent and whether the platform needs updating"""

    product_id: str
    woo_id: int
    variation_id: int = 0
    effective_stock: int
    current_woo_stock: Optional[float] = None
    needs_sync: bool
    could_not_fetch_stock: bool = False
    components: List[EffectiveStockComponent] = Field(default_factory=list)


class SyncResult(BaseModel):
    """Outcome of pushing one parent's effective stock"""

    success: bool
    product_id: str
    woo_id: int = 0
    previous_stock: Optional[float] = None
    new_stock: int = 0
    error: Optional[str] = None
    local_db_updated: bool = False


class BulkSyncResult(BaseModel):
    """Counters for an account-wide BOM inventory sync"""

    total: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0


class LedgerEntryResponse(BaseModel):
    """Ledger row as returned by the API"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    component_type: ComponentType
    component_id: str
    component_name: str
    quantity_deducted: float
    previous_stock: float
    new_stock: float
    status: LedgerStatus
    created_at: datetime
    completed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None
    reversed_at: Optional[datetime] = None
