# backend/modules/bom/services/ledger_store.py

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..enums.bom_enums import LedgerStatus
from ..exceptions.bom_exceptions import LedgerTransitionError
from ..models.ledger_models import BOMDeductionLedger
from ..schemas.bom_consumption_schemas import ComponentDeduction

logger = logging.getLogger(__name__)

# Timestamp column stamped when an entry reaches a status
_STATUS_TIMESTAMPS = {
    LedgerStatus.COMPLETED: "completed_at",
    LedgerStatus.ROLLED_BACK: "rolled_back_at",
    LedgerStatus.REVERSED: "reversed_at",
}


class DeductionLedgerStore:
    """Append-only record of applied deductions and their lifecycle"""

    def __init__(self, db: Session):
        self.db = db

    def record_execution(
        self,
        account_id: str,
        order_id: int,
        deduction: ComponentDeduction
    ) -> BOMDeductionLedger:
        """Persist one applied deduction as EXECUTED"""
        entry = BOMDeductionLedger(
            account_id=account_id,
            order_id=order_id,
            component_type=deduction.component_type,
            component_id=deduction.component_id,
            component_name=deduction.component_name,
            woo_id=deduction.woo_id,
            parent_woo_id=deduction.parent_woo_id,
            quantity_deducted=deduction.quantity_deducted,
            previous_stock=deduction.previous_stock,
            new_stock=deduction.new_stock,
            status=LedgerStatus.EXECUTED,
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(entry)
        return entry

    def get_entries(
        self,
        account_id: str,
        order_id: int,
        statuses: Optional[Iterable[LedgerStatus]] = None
    ) -> List[BOMDeductionLedger]:
        query = self.db.query(BOMDeductionLedger).filter(
            BOMDeductionLedger.account_id == account_id,
            BOMDeductionLedger.order_id == order_id
        )
        if statuses is not None:
            query = query.filter(BOMDeductionLedger.status.in_(list(statuses)))
        return query.order_by(BOMDeductionLedger.id).all()

    def _has_status(self, account_id: str, order_id: int, status: LedgerStatus) -> bool:
        return self.db.query(BOMDeductionLedger.id).filter(
            BOMDeductionLedger.account_id == account_id,
            BOMDeductionLedger.order_id == order_id,
            BOMDeductionLedger.status == status
        ).first() is not None

    def has_completed(self, account_id: str, order_id: int) -> bool:
        """True when the order finished consuming and was not reversed"""
        return self._has_status(account_id, order_id, LedgerStatus.COMPLETED)

    def has_in_flight(self, account_id: str, order_id: int) -> bool:
        """
        True when the order has EXECUTED entries.

        They belong to a consumption that is still running, crashed, or could
        not restore everything on rollback. They never mean the order was
        consumed.
        """
        return self._has_status(account_id, order_id, LedgerStatus.EXECUTED)

    def has_rolled_back(self, account_id: str, order_id: int) -> bool:
        return self._has_status(account_id, order_id, LedgerStatus.ROLLED_BACK)

    def transition(
        self,
        account_id: str,
        order_id: int,
        from_status: LedgerStatus,
        to_status: LedgerStatus,
        entry_ids: Optional[List[int]] = None
    ) -> int:
        """
        Move entries of an order from one status to another.

        The update is filtered on the expected prior status, so a transition
        that raced with another one matches zero rows instead of applying twice.

        Returns:
            Number of entries transitioned

        Raises:
            LedgerTransitionError: the update itself failed
        """
        if entry_ids is not None and not entry_ids:
            return 0

        now = datetime.utcnow()
        values = {
            BOMDeductionLedger.status: to_status,
            BOMDeductionLedger.updated_at: now,
        }
        timestamp_column = _STATUS_TIMESTAMPS.get(to_status)
        if timestamp_column:
            values[getattr(BOMDeductionLedger, timestamp_column)] = now

        try:
            query = self.db.query(BOMDeductionLedger).filter(
                BOMDeductionLedger.account_id == account_id,
                BOMDeductionLedger.order_id == order_id,
                BOMDeductionLedger.status == from_status
            )
            if entry_ids is not None:
                query = query.filter(BOMDeductionLedger.id.in_(entry_ids))
            count = query.update(values, synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Ledger transition {from_status.value} -> {to_status.value} failed "
                f"for order {order_id}: {e}"
            )
            raise LedgerTransitionError(
                account_id, order_id, from_status.value, to_status.value, cause=e
            ) from e

        # Entities loaded earlier in this session must not keep the old status
        self.db.expire_all()
        return count

    def find_stale_executed_orders(
        self,
        older_than: datetime,
        account_id: Optional[str] = None
    ) -> List[Tuple[str, int]]:
        """Orders that still have EXECUTED entries created before the cutoff"""
        query = self.db.query(
            BOMDeductionLedger.account_id,
            BOMDeductionLedger.order_id
        ).filter(
            BOMDeductionLedger.status == LedgerStatus.EXECUTED,
            BOMDeductionLedger.created_at < older_than
        )
        if account_id is not None:
            query = query.filter(BOMDeductionLedger.account_id == account_id)
        rows = query.distinct().all()
        return [(row[0], row[1]) for row in rows]
