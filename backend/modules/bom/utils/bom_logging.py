# backend/modules/bom/utils/bom_logging.py

import logging
import json
import time
from typing import Dict, List, Any, Optional
from datetime import datetime
from functools import wraps
import traceback


class BOMLogger:
    """Structured logger for BOM consumption lifecycle events"""

    def __init__(self, name: str = "bom_consumption"):
        self.logger = logging.getLogger(name)

    def _format_extra_data(self, **kwargs) -> Dict:
        """Format extra data for structured logging"""
        return {
            "timestamp": datetime.utcnow().isoformat(),
            "extra_data": json.dumps(kwargs, default=str)
        }

    def log_consumption_start(self, account_id: str, order_id: int, line_item_count: int):
        self.logger.info(
            f"Processing order {order_id} with {line_item_count} line items",
            extra=self._format_extra_data(
                event="consumption_start",
                account_id=account_id,
                order_id=order_id,
                line_item_count=line_item_count
            )
        )

    def log_consumption_skipped(self, account_id: str, order_id: int, reason: str):
        self.logger.debug(
            f"Skipping order {order_id}: {reason}",
            extra=self._format_extra_data(
                event="consumption_skipped",
                account_id=account_id,
                order_id=order_id,
                reason=reason
            )
        )

    def log_consumption_success(self, account_id: str, order_id: int,
                                consumed: List[Any], processing_time_ms: float):
        self.logger.info(
            f"Order {order_id} complete: {len(consumed)} components consumed",
            extra=self._format_extra_data(
                event="consumption_success",
                account_id=account_id,
                order_id=order_id,
                consumed_count=len(consumed),
                processing_time_ms=processing_time_ms
            )
        )

    def log_execution_error(self, account_id: str, order_id: int,
                            component_name: str, error: Exception):
        self.logger.error(
            f"Failed to execute deduction for {component_name} on order {order_id}: {error}",
            extra=self._format_extra_data(
                event="execution_error",
                account_id=account_id,
                order_id=order_id,
                component_name=component_name,
                error_message=str(error),
                error_class=error.__class__.__name__
            )
        )

    def log_rollback(self, account_id: str, order_id: Optional[int],
                     restored_count: int, errors: List[str]):
        level = logging.ERROR if errors else logging.INFO
        self.logger.log(
            level,
            f"Rolled back {restored_count} deductions for order {order_id}"
            + (f" with {len(errors)} failures" if errors else ""),
            extra=self._format_extra_data(
                event="rollback",
                account_id=account_id,
                order_id=order_id,
                restored_count=restored_count,
                errors=errors,
                requires_manual_review=bool(errors)
            )
        )

    def log_reversal(self, account_id: str, order_id: int,
                     reversed_count: int, errors: List[str]):
        self.logger.info(
            f"Reversed {reversed_count} deductions for order {order_id}",
            extra=self._format_extra_data(
                event="reversal",
                account_id=account_id,
                order_id=order_id,
                reversed_count=reversed_count,
                errors=errors
            )
        )

    def log_recovery(self, account_id: str, order_id: int, source: str):
        self.logger.warning(
            f"Recovering stalled deduction for order {order_id} ({source})",
            extra=self._format_extra_data(
                event="recovery",
                account_id=account_id,
                order_id=order_id,
                source=source
            )
        )


def log_bom_operation(operation_type: str):
    """Decorator for logging BOM operations with timing"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            bom_logger = BOMLogger()
            start_time = time.monotonic()

            account_id = kwargs.get("account_id", args[1] if len(args) > 1 else "unknown")

            bom_logger.logger.debug(
                f"Starting {operation_type} operation",
                extra=bom_logger._format_extra_data(
                    event=f"{operation_type}_start",
                    account_id=account_id,
                    function=func.__name__
                )
            )

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                processing_time_ms = (time.monotonic() - start_time) * 1000
                bom_logger.logger.error(
                    f"Error in {operation_type} operation: {str(e)}",
                    extra=bom_logger._format_extra_data(
                        event=f"{operation_type}_error",
                        account_id=account_id,
                        processing_time_ms=processing_time_ms,
                        function=func.__name__,
                        error=str(e),
                        error_type=e.__class__.__name__,
                        traceback=traceback.format_exc()
                    )
                )
                raise

            processing_time_ms = (time.monotonic() - start_time) * 1000
            bom_logger.logger.debug(
                f"Completed {operation_type} operation",
                extra=bom_logger._format_extra_data(
                    event=f"{operation_type}_complete",
                    account_id=account_id,
                    processing_time_ms=processing_time_ms,
                    function=func.__name__
                )
            )
            return result

        return wrapper
    return decorator
