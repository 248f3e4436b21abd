# backend/modules/bom/services/recovery_service.py

import logging
from datetime import datetime, timedelta
from typing import Optional

from ..enums.bom_enums import LedgerStatus
from ..schemas.bom_consumption_schemas import (
    ComponentDeduction, RecoveryReport, RollbackOutcome
)
from ..utils.bom_logging import BOMLogger
from .bom_consumption_service import BOMConsumptionService
from .lock_provider import order_lock_key

logger = logging.getLogger(__name__)


class BOMRecoveryService:
    """
    Periodic sweep for consumptions that crashed mid-flight.

    Phase 1 walks pending markers. Phase 2 catches orders whose markers
    expired or never reached Redis by looking for old EXECUTED ledger entries.
    Each order is handled under the order lock and in isolation.
    """

    def __init__(self, consumption_service: BOMConsumptionService):
        self.consumption = consumption_service
        self.db = consumption_service.db
        self.settings = consumption_service.settings
        self.ledger = consumption_service.ledger
        self.markers = consumption_service.markers
        self.lock_provider = consumption_service.lock_provider
        self.bom_logger = BOMLogger()

    async def recover_stalled_deductions(
        self,
        now: Optional[datetime] = None,
        account_id: Optional[str] = None
    ) -> RecoveryReport:
        """Sweep every account, or only account_id when given"""
        report = RecoveryReport()
        await self._recover_pending_markers(report, account_id)
        await self._recover_stale_ledger_entries(report, now or datetime.utcnow(), account_id)

        if report.orders_rolled_back or report.orders_finalized or report.errors:
            logger.info(
                f"BOM recovery sweep: rolled_back={report.orders_rolled_back} "
                f"finalized={report.orders_finalized} errors={len(report.errors)}"
            )
        return report

    async def rollback_order_from_ledger(self, account_id: str, order_id: int) -> RollbackOutcome:
        """Restore every EXECUTED entry of the order and mark it ROLLED_BACK"""
        entries = self.ledger.get_entries(account_id, order_id, [LedgerStatus.EXECUTED])
        deductions = [ComponentDeduction.from_ledger(entry) for entry in entries]

        outcome = await self.consumption.rollback_deductions(account_id, deductions, order_id=order_id)
        self.ledger.transition(
            account_id, order_id, LedgerStatus.EXECUTED, LedgerStatus.ROLLED_BACK,
            entry_ids=outcome.restored_entry_ids
        )
        return outcome

    def _is_finalized(self, account_id: str, order_id: int) -> bool:
        """
        True when the consumed marker was written by a finalize that succeeded.

        A finalize never runs after a rollback, so rolled-back entries next to
        the marker mean the marker is wrong. It is cleared and the order is
        treated as unfinished.
        """
        if not self.markers.is_consumed(account_id, order_id):
            return False
        if self.ledger.has_rolled_back(account_id, order_id):
            logger.warning(
                f"Order {order_id} (account {account_id}) is marked consumed but was rolled back; clearing marker"
            )
            self.markers.clear_consumed(account_id, order_id)
            return False
        return True

    async def _recover_pending_markers(self, report: RecoveryReport, only_account: Optional[str]) -> None:
        for account_id, order_id, key in self.markers.iter_pending(only_account):
            report.pending_markers_scanned += 1
            try:
                if self._is_finalized(account_id, order_id):
                    # Finalized, the marker outlived its cleanup
                    self.markers.delete_key(key)
                    report.stale_markers_cleared += 1
                    continue

                handle = self.lock_provider.acquire(
                    order_lock_key(account_id, order_id),
                    self.settings.ORDER_LOCK_TTL_SECONDS
                )
                if not handle.acquired:
                    # Still being processed by a live worker
                    report.orders_skipped_locked += 1
                    continue

                try:
                    self.bom_logger.log_recovery(account_id, order_id, "pending_marker")
                    outcome = await self.rollback_order_from_ledger(account_id, order_id)
                    report.orders_rolled_back += 1
                    if outcome.errors:
                        report.errors.extend(outcome.errors)
                    else:
                        self.markers.delete_key(key)
                finally:
                    self.lock_provider.release(handle)
            except Exception as e:
                logger.error(f"Recovery failed for order {order_id} (account {account_id}): {e}", exc_info=True)
                report.errors.append(f"order {order_id}: {e}")

    async def _recover_stale_ledger_entries(
        self,
        report: RecoveryReport,
        now: datetime,
        only_account: Optional[str]
    ) -> None:
        cutoff = now - timedelta(minutes=self.settings.STALE_EXECUTED_MINUTES)
        for account_id, order_id in self.ledger.find_stale_executed_orders(cutoff, only_account):
            try:
                handle = self.lock_provider.acquire(
                    order_lock_key(account_id, order_id),
                    self.settings.ORDER_LOCK_TTL_SECONDS
                )
                if not handle.acquired:
                    report.orders_skipped_locked += 1
                    continue

                try:
                    if self._is_finalized(account_id, order_id):
                        # Finalize never ran its ledger transition
                        self.bom_logger.log_recovery(account_id, order_id, "stale_executed_consumed")
                        self.ledger.transition(
                            account_id, order_id, LedgerStatus.EXECUTED, LedgerStatus.COMPLETED
                        )
                        report.orders_finalized += 1
                        continue

                    self.bom_logger.log_recovery(account_id, order_id, "stale_executed")
                    outcome = await self.rollback_order_from_ledger(account_id, order_id)
                    report.orders_rolled_back += 1
                    report.errors.extend(outcome.errors)
                    if not outcome.errors:
                        self.markers.clear_pending(account_id, order_id)
                finally:
                    self.lock_provider.release(handle)
            except Exception as e:
                logger.error(f"Recovery failed for order {order_id} (account {account_id}): {e}", exc_info=True)
                report.errors.append(f"order {order_id}: {e}")
