# backend/modules/bom/exceptions/bom_exceptions.py

from typing import List, Dict, Optional


class BOMConsumptionError(Exception):
    """Base exception for all BOM consumption errors"""

    def __init__(self, message: str, error_code: str, details: Optional[Dict] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict:
        """Convert exception to dictionary for API responses"""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Substrings in platform error messages that will never succeed on retry
NON_RETRYABLE_MARKERS = ("not found", "invalid_id", "401", "403")
NON_RETRYABLE_STATUS_CODES = {400, 401, 403, 404}


class CommerceAPIError(BOMConsumptionError):
    """Raised when the commerce platform rejects or fails a request"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
        endpoint: Optional[str] = None
    ):
        self.status_code = status_code
        self.endpoint = endpoint
        if retryable is None:
            retryable = self._classify(message, status_code)
        self.retryable = retryable

        details = {
            "status_code": status_code,
            "endpoint": endpoint,
            "retryable": retryable
        }
        super().__init__(message, "COMMERCE_API_ERROR", details)

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404 or "not found" in self.message.lower()

    @staticmethod
    def _classify(message: str, status_code: Optional[int]) -> bool:
        if status_code is not None:
            return status_code not in NON_RETRYABLE_STATUS_CODES
        lowered = message.lower()
        return not any(marker in lowered for marker in NON_RETRYABLE_MARKERS)


class DeductionExecutionError(BOMConsumptionError):
    """Raised after an order's deductions failed part-way and were rolled back"""

    def __init__(
        self,
        order_id: int,
        component_name: str,
        cause: Exception,
        rollback_errors: Optional[List[str]] = None
    ):
        self.order_id = order_id
        self.component_name = component_name
        self.cause = cause
        self.rollback_errors = rollback_errors or []

        message = (
            f"Failed to execute deduction for {component_name} on order {order_id}: {cause}"
        )
        details = {
            "order_id": order_id,
            "component_name": component_name,
            "cause": str(cause),
            "cause_type": cause.__class__.__name__,
            "rollback_errors": self.rollback_errors,
            "requires_manual_review": bool(self.rollback_errors)
        }

        super().__init__(message, "DEDUCTION_EXECUTION_FAILED", details)


class LedgerTransitionError(BOMConsumptionError):
    """Raised when a guarded ledger status transition fails at the database layer"""

    def __init__(
        self,
        account_id: str,
        order_id: int,
        from_status: str,
        to_status: str,
        cause: Optional[Exception] = None
    ):
        self.account_id = account_id
        self.order_id = order_id
        self.from_status = from_status
        self.to_status = to_status

        message = (
            f"Ledger transition {from_status} -> {to_status} failed for order {order_id}"
        )
        details = {
            "account_id": account_id,
            "order_id": order_id,
            "from_status": from_status,
            "to_status": to_status,
            "cause": str(cause) if cause else None
        }

        super().__init__(message, "LEDGER_TRANSITION_FAILED", details)


class InvalidBOMItemError(BOMConsumptionError):
    """Raised when a BOM item does not reference exactly one component"""

    def __init__(self, bom_item_id: int, reason: str):
        self.bom_item_id = bom_item_id

        message = f"BOM item {bom_item_id} is malformed: {reason}"
        details = {
            "bom_item_id": bom_item_id,
            "reason": reason
        }

        super().__init__(message, "INVALID_BOM_ITEM", details)


class CommerceCredentialsMissingError(CommerceAPIError):
    """Raised when an account has no commerce platform credentials"""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(
            f"No commerce store credentials configured for account {account_id}",
            status_code=None,
            retryable=False
        )
        self.error_code = "COMMERCE_CREDENTIALS_MISSING"
