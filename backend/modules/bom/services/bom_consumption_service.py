# backend/modules/bom/services/bom_consumption_service.py

"""
BOM consumption orchestration.

consume_order_components: an order reached a consuming status; deduct the
    components of every sold BOM product exactly once.
reverse_order_consumption: an order was cancelled or refunded; give the
    consumed components back.
rollback_deductions: additive compensation shared by both paths and by
    the recovery sweep.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Union

import redis
from sqlalchemy.orm import Session

from ..config.bom_consumption_config import BOMConsumptionSettings, get_bom_settings
from ..enums.bom_enums import ConsumptionState, LedgerStatus, SkipReason
from ..exceptions.bom_exceptions import (
    CommerceCredentialsMissingError, DeductionExecutionError, LedgerTransitionError
)
from ..schemas.bom_consumption_schemas import (
    ComponentDeduction, ConsumptionResult, ModifiedComponent, OrderPayload,
    ReversalResult, RollbackOutcome
)
from ..utils.bom_logging import BOMLogger, log_bom_operation
from .cascade_sync import BOMCascadeSyncService
from .commerce_client import WooCommerceClient, get_commerce_client
from .consumption_markers import ConsumptionMarkers
from .deduction_executor import DeductionExecutor
from .deduction_planner import DeductionPlanner
from .inventory_sync_service import BOMInventorySyncService
from .ledger_store import DeductionLedgerStore
from .lock_provider import DistributedLockProvider, order_lock_key, reversal_lock_key

logger = logging.getLogger(__name__)


class BOMConsumptionService:
    """Service for consuming and restoring BOM component stock per order"""

    def __init__(
        self,
        db: Session,
        redis_client: Optional[redis.Redis] = None,
        commerce_client: Optional[WooCommerceClient] = None,
        client_factory: Callable[[Session, str], WooCommerceClient] = get_commerce_client,
        settings: Optional[BOMConsumptionSettings] = None,
        lock_provider: Optional[DistributedLockProvider] = None,
        inventory_sync: Optional[BOMInventorySyncService] = None,
    ):
        self.db = db
        self.settings = settings or get_bom_settings()
        self.planner = DeductionPlanner(db)
        self.ledger = DeductionLedgerStore(db)
        self.markers = ConsumptionMarkers(redis_client, self.settings)
        self.lock_provider = lock_provider or DistributedLockProvider(redis_client, db.get_bind())
        self.inventory_sync = inventory_sync or BOMInventorySyncService(
            db,
            commerce_client=commerce_client,
            client_factory=client_factory,
            settings=self.settings
        )
        self.cascade_sync = BOMCascadeSyncService(db, self.inventory_sync)
        self.bom_logger = BOMLogger()

    async def close(self):
        await self.inventory_sync.close()

    def executor_for(self, account_id: str) -> DeductionExecutor:
        """Executor bound to the account's commerce client, if it has one"""
        try:
            client = self.inventory_sync.get_client(account_id)
        except CommerceCredentialsMissingError:
            logger.warning(f"Account {account_id} has no commerce credentials; only internal stock can change")
            client = None
        return DeductionExecutor(self.db, account_id, client, self.settings)

    @staticmethod
    def _coerce_order(order: Union[OrderPayload, Dict[str, Any]]) -> OrderPayload:
        if isinstance(order, OrderPayload):
            return order
        return OrderPayload.model_validate(order)

    def _skip(
        self,
        result: ConsumptionResult,
        account_id: str,
        reason: SkipReason
    ) -> ConsumptionResult:
        result.state = ConsumptionState.SKIPPED
        result.skipped = True
        result.skip_reason = reason
        self.bom_logger.log_consumption_skipped(account_id, result.order_id, reason.value)
        return result

    def _ledger_skip_reason(self, account_id: str, order_id: int) -> Optional[SkipReason]:
        """
        Why the ledger forbids consuming this order, if it does.

        Only COMPLETED entries refresh the consumed marker. EXECUTED entries
        are left for the recovery sweep to roll back, so the order is neither
        consumed again nor recorded as consumed.
        """
        if self.ledger.has_completed(account_id, order_id):
            self.markers.mark_consumed(account_id, order_id)
            return SkipReason.LEDGER_HAS_ENTRIES
        if self.ledger.has_in_flight(account_id, order_id):
            logger.warning(
                f"Order {order_id} has unfinished deductions awaiting recovery, not consuming again"
            )
            return SkipReason.DEDUCTIONS_IN_FLIGHT
        return None

    @log_bom_operation("consumption")
    async def consume_order_components(
        self,
        account_id: str,
        order: Union[OrderPayload, Dict[str, Any]]
    ) -> ConsumptionResult:
        """
        Deduct the components of every BOM product sold in the order.

        Safe to call any number of times for the same order: the consumed
        marker, the ledger and the per-order lock together guarantee a single
        effective consumption.

        Raises:
            DeductionExecutionError: a deduction failed and the order was
                rolled back
            LedgerTransitionError: deductions applied but could not be
                finalized; the recovery sweep completes them
        """
        start_time = time.monotonic()
        order = self._coerce_order(order)
        result = ConsumptionResult(order_id=order.id)

        if order.status not in self.settings.CONSUME_ON_STATUSES:
            result.skip_reason = SkipReason.INELIGIBLE_STATUS
            return result

        if self.markers.is_consumed(account_id, order.id):
            return self._skip(result, account_id, SkipReason.ALREADY_CONSUMED)

        skip_reason = self._ledger_skip_reason(account_id, order.id)
        if skip_reason:
            return self._skip(result, account_id, skip_reason)

        handle = self.lock_provider.acquire(
            order_lock_key(account_id, order.id),
            self.settings.ORDER_LOCK_TTL_SECONDS
        )
        result.lock_backend = handle.backend
        if not handle.acquired:
            return self._skip(result, account_id, SkipReason.LOCK_NOT_ACQUIRED)

        try:
            result.state = ConsumptionState.LOCKED

            # Another worker may have finished between the ledger check and the lock
            skip_reason = self._ledger_skip_reason(account_id, order.id)
            if skip_reason:
                return self._skip(result, account_id, skip_reason)

            if not order.line_items:
                return self._skip(result, account_id, SkipReason.NO_LINE_ITEMS)

            self.bom_logger.log_consumption_start(account_id, order.id, len(order.line_items))

            plan = self.planner.plan_order(account_id, order.line_items)
            result.state = ConsumptionState.PLANNED
            if not plan:
                logger.debug(f"Order {order.id} has no BOM components to deduct")
                result.state = ConsumptionState.COMPLETED
                return result

            self.markers.track_pending(account_id, order.id, plan)

            result.state = ConsumptionState.EXECUTING
            modified = await self._execute_plan(account_id, order.id, plan, result)

            result.state = ConsumptionState.CASCADING
            if self.settings.ENABLE_CASCADE_SYNC:
                await self._cascade(account_id, modified)

            self.markers.mark_consumed(account_id, order.id)
            self.markers.clear_pending(account_id, order.id)
            self.ledger.transition(
                account_id, order.id, LedgerStatus.EXECUTED, LedgerStatus.COMPLETED
            )

            result.state = ConsumptionState.COMPLETED
            self.bom_logger.log_consumption_success(
                account_id, order.id, result.consumed,
                (time.monotonic() - start_time) * 1000
            )
            return result
        finally:
            self.lock_provider.release(handle)

    async def _execute_plan(
        self,
        account_id: str,
        order_id: int,
        plan: List[ComponentDeduction],
        result: ConsumptionResult
    ) -> List[ModifiedComponent]:
        """Apply deductions in plan order; on failure compensate and raise"""
        executor = self.executor_for(account_id)
        modified: List[ModifiedComponent] = []

        for deduction in plan:
            try:
                await executor.execute(deduction)
                result.consumed.append(deduction)
                entry = self.ledger.record_execution(account_id, order_id, deduction)
                deduction.ledger_entry_id = entry.id
            except Exception as e:
                result.state = ConsumptionState.FAILED
                result.errors.append(str(e))
                self.bom_logger.log_execution_error(account_id, order_id, deduction.component_name, e)

                outcome = await self._rollback_order(account_id, order_id, result.consumed, executor)
                result.state = ConsumptionState.ROLLED_BACK
                raise DeductionExecutionError(
                    order_id, deduction.component_name, e, outcome.errors
                ) from e

            component = ModifiedComponent.from_deduction(deduction)
            if component not in modified:
                modified.append(component)

        return modified

    async def _rollback_order(
        self,
        account_id: str,
        order_id: int,
        deductions: List[ComponentDeduction],
        executor: DeductionExecutor
    ) -> RollbackOutcome:
        outcome = await self.rollback_deductions(account_id, deductions, executor=executor, order_id=order_id)

        try:
            self.ledger.transition(
                account_id, order_id, LedgerStatus.EXECUTED, LedgerStatus.ROLLED_BACK,
                entry_ids=outcome.restored_entry_ids
            )
        except LedgerTransitionError as e:
            outcome.errors.append(e.message)

        # Unrestored entries stay EXECUTED; the pending marker lets recovery find them
        if not outcome.errors:
            self.markers.clear_pending(account_id, order_id)
        return outcome

    async def rollback_deductions(
        self,
        account_id: str,
        deductions: List[ComponentDeduction],
        executor: Optional[DeductionExecutor] = None,
        order_id: Optional[int] = None
    ) -> RollbackOutcome:
        """
        Give deducted quantities back, one component at a time.

        A failure on one component never stops the others. The caller decides
        which ledger entries to transition from outcome.restored.
        """
        outcome = RollbackOutcome()
        if not deductions:
            return outcome

        executor = executor or self.executor_for(account_id)
        for deduction in deductions:
            try:
                await executor.restore(deduction)
                outcome.restored.append(deduction)
            except Exception as e:
                message = f"Failed to restore {deduction.component_name}: {e}"
                logger.error(message)
                outcome.errors.append(message)

        self.bom_logger.log_rollback(account_id, order_id, len(outcome.restored), outcome.errors)
        return outcome

    async def _cascade(self, account_id: str, modified: List[ModifiedComponent]) -> None:
        for component in modified:
            try:
                await self.cascade_sync.cascade(
                    account_id,
                    component.component_id,
                    component.variation_id,
                    component.component_type
                )
            except Exception as e:
                logger.error(
                    f"Cascade failed for {component.component_type.value} {component.component_id}: {e}",
                    exc_info=True
                )

    @log_bom_operation("reversal")
    async def reverse_order_consumption(
        self,
        account_id: str,
        order: Union[OrderPayload, Dict[str, Any]]
    ) -> ReversalResult:
        """
        Restore the components consumed by a cancelled or refunded order.

        Only COMPLETED entries are reversed; an order that never consumed is a
        no-op. Entries whose restore fails stay COMPLETED.
        """
        order = self._coerce_order(order)
        result = ReversalResult(order_id=order.id)

        if not self.ledger.get_entries(account_id, order.id, [LedgerStatus.COMPLETED]):
            logger.debug(f"Order {order.id} has no completed consumption to reverse")
            return result

        handle = self.lock_provider.acquire(
            reversal_lock_key(account_id, order.id),
            self.settings.REVERSAL_LOCK_TTL_SECONDS
        )
        if not handle.acquired:
            logger.info(f"Reversal of order {order.id} already in progress, skipping")
            result.skipped = True
            return result

        try:
            entries = self.ledger.get_entries(account_id, order.id, [LedgerStatus.COMPLETED])
            if not entries:
                return result

            deductions = [ComponentDeduction.from_ledger(entry) for entry in entries]
            outcome = await self.rollback_deductions(account_id, deductions, order_id=order.id)
            result.errors.extend(outcome.errors)

            result.reversed_count = self.ledger.transition(
                account_id, order.id, LedgerStatus.COMPLETED, LedgerStatus.REVERSED,
                entry_ids=outcome.restored_entry_ids
            )
            self.markers.clear_consumed(account_id, order.id)

            if self.settings.ENABLE_CASCADE_SYNC:
                modified = []
                for deduction in outcome.restored:
                    component = ModifiedComponent.from_deduction(deduction)
                    if component not in modified:
                        modified.append(component)
                await self._cascade(account_id, modified)

            self.bom_logger.log_reversal(account_id, order.id, result.reversed_count, result.errors)
            return result
        finally:
            self.lock_provider.release(handle)
