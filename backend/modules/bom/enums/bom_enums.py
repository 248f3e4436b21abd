# backend/modules/bom/enums/bom_enums.py

from enum import Enum


class ComponentType(str, Enum):
    """Kind of stock-bearing entity a BOM item points at"""
    COMMERCE_PRODUCT = "commerce_product"
    PRODUCT_VARIATION = "product_variation"
    INTERNAL_PRODUCT = "internal_product"


class LedgerStatus(str, Enum):
    """Lifecycle of a deduction ledger entry"""
    EXECUTED = "executed"  # Applied, order not finished yet
    COMPLETED = "completed"  # Whole order finished
    ROLLED_BACK = "rolled_back"  # Compensated by failure handling or recovery
    REVERSED = "reversed"  # Compensated by a cancellation/refund


class ConsumptionState(str, Enum):
    """Per-order consumption progress"""
    NOT_STARTED = "not_started"
    LOCKED = "locked"
    PLANNED = "planned"
    EXECUTING = "executing"
    CASCADING = "cascading"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class SkipReason(str, Enum):
    """Why an order was not consumed"""
    INELIGIBLE_STATUS = "ineligible_status"
    ALREADY_CONSUMED = "already_consumed"
    LEDGER_HAS_ENTRIES = "ledger_has_entries"
    DEDUCTIONS_IN_FLIGHT = "deductions_in_flight"
    LOCK_NOT_ACQUIRED = "lock_not_acquired"
    NO_LINE_ITEMS = "no_line_items"


class LockBackend(str, Enum):
    """Which backend granted an order lock"""
    REDIS = "redis"
    POSTGRES_ADVISORY = "postgres_advisory"
    NONE = "none"


class ProductType(str, Enum):
    """Commerce platform product types that matter for stock"""
    SIMPLE = "simple"
    VARIABLE = "variable"
    VARIATION = "variation"
