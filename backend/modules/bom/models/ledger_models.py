# backend/modules/bom/models/ledger_models.py

"""
Deduction ledger.

Durable proof that a stock change happened for an order. Rows are never
deleted; they only move EXECUTED -> COMPLETED / ROLLED_BACK / REVERSED.
"""

from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, DateTime, Float, Enum as SQLEnum, Index
)

from core.database import Base
from ..enums.bom_enums import ComponentType, LedgerStatus


class BOMDeductionLedger(Base):
    """One applied component deduction for one order"""
    __tablename__ = "bom_deduction_ledger"
    __table_args__ = (
        Index("ix_bom_ledger_account_order_status", "account_id", "order_id", "status"),
        Index("ix_bom_ledger_status_created", "status", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(64), nullable=False)
    order_id = Column(Integer, nullable=False)

    component_type = Column(SQLEnum(ComponentType), nullable=False)
    component_id = Column(String(36), nullable=False)
    component_name = Column(String(255), nullable=False)
    # Platform ids needed to replay a compensation without re-reading the BOM
    woo_id = Column(Integer, nullable=True)
    parent_woo_id = Column(Integer, nullable=True)

    quantity_deducted = Column(Float, nullable=False)
    previous_stock = Column(Float, nullable=False)
    new_stock = Column(Float, nullable=False)

    status = Column(SQLEnum(LedgerStatus), nullable=False, default=LedgerStatus.EXECUTED)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    rolled_back_at = Column(DateTime, nullable=True)
    reversed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return (
            f"<BOMDeductionLedger(id={self.id}, order_id={self.order_id}, "
            f"component='{self.component_name}', status='{self.status}')>"
        )
